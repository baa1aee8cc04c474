"""
Reconciliation Job
Pull-based sync against the request manager: collect, update/prune, import.

Each item is written independently; a partial run is safe to repeat.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Tuple

from .logging_config import LogContext
from .models import MediaKind, Request, UpstreamRequest
from .persistence import PersistenceManager, new_id, normalize_seasons
from .status import derive_status, is_locally_managed

logger = logging.getLogger(__name__)


@dataclass
class SyncResult:
    """Outcome counts of one reconciliation run."""
    imported: int = 0
    updated: int = 0
    pruned: int = 0
    skipped: int = 0
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "imported": self.imported,
            "updated": self.updated,
            "pruned": self.pruned,
            "skipped": self.skipped,
            "errors": list(self.errors),
        }


class ReconciliationJob:
    """Bring the local request table in line with the request manager."""

    def __init__(
        self,
        persistence: PersistenceManager,
        upstream,
        metadata=None,
        max_pages: int = 10,
        page_size: int = 20,
    ):
        self.persistence = persistence
        self.upstream = upstream
        self.metadata = metadata
        self.max_pages = max_pages
        self.page_size = page_size

    async def collect(self, result: SyncResult) -> Tuple[Dict[int, UpstreamRequest], bool]:
        """
        Page through upstream requests; a page error stops paging.

        Returns the collected items and whether the listing was exhausted.
        """
        collected: Dict[int, UpstreamRequest] = {}
        for page in range(1, self.max_pages + 1):
            try:
                data = await self.upstream.list_requests(page, self.page_size)
            except Exception as e:
                result.errors.append(f"Page {page}: {e}")
                logger.warning(f"Stopped collecting at page {page}: {e}")
                return collected, False

            if not data.results:
                return collected, True
            for item in data.results:
                collected[item.id] = item
            if page >= data.page_info.pages:
                return collected, True

        logger.warning(f"Stopped collecting after {self.max_pages} pages")
        return collected, False

    async def run(self) -> SyncResult:
        result = SyncResult()
        upstream, complete = await self.collect(result)
        if not complete:
            logger.warning("Upstream listing incomplete, pruning disabled for this run")

        # Prune or update everything known locally
        local = await self.persistence.list_requests()
        known = set()
        for request in local:
            known.add(request.upstream_id)
            with LogContext(request_id=request.id, upstream_id=request.upstream_id):
                item = upstream.get(request.upstream_id)
                if item is None:
                    if not complete:
                        continue
                    await self.persistence.delete_request(request.id)
                    await self.persistence.log_activity(
                        "pruned", request_id=request.id,
                        upstream_id=request.upstream_id, title=request.title,
                    )
                    logger.info(f"Pruned request {request.title!r}: gone upstream")
                    result.pruned += 1
                    continue

                if is_locally_managed(request.status):
                    continue
                status = derive_status(item.status, item.media_status)
                if status == request.status:
                    continue
                if await self.persistence.update_status_if_upstream_derived(
                    request.id, status
                ):
                    logger.info(
                        f"Request {request.title!r}: {request.status.value} -> {status.value}"
                    )
                    result.updated += 1

        # Import new
        for upstream_id, item in upstream.items():
            if upstream_id in known:
                continue
            with LogContext(upstream_id=upstream_id):
                try:
                    if await self.import_request(item):
                        result.imported += 1
                except Exception as e:
                    logger.warning(f"Skipped upstream request {upstream_id}: {e}")
                    result.skipped += 1

        logger.info(f"Sync complete: {result.to_dict()}")
        return result

    async def import_request(self, item: UpstreamRequest) -> bool:
        """Create a local request for an upstream item. False if it already exists."""
        catalog_id = item.catalog_id
        if not catalog_id:
            raise ValueError("upstream request has no catalog id")

        kind = item.media_kind
        meta = None
        if self.metadata is not None and self.metadata.configured:
            meta = await self.metadata.get_metadata(catalog_id, kind)

        seasons = None
        if kind == MediaKind.SERIES and item.seasons:
            seasons = normalize_seasons(s.season_number for s in item.seasons)

        now = datetime.now().timestamp()
        requested_at = item.created_at.timestamp() if item.created_at else now
        request = Request(
            id=new_id(),
            upstream_id=item.id,
            catalog_id=catalog_id,
            media_kind=kind,
            title=meta.title if meta else f"Request #{item.id}",
            year=meta.year if meta else None,
            poster_url=meta.poster_url if meta else None,
            overview=meta.overview if meta else None,
            seasons=seasons,
            status=derive_status(item.status, item.media_status),
            requested_by=item.requester,
            requested_at=requested_at,
            created_at=now,
            updated_at=now,
        )

        created = await self.persistence.insert_request_if_absent(request)
        if created:
            await self.persistence.log_activity(
                "imported", request_id=request.id, upstream_id=item.id,
                title=request.title, details=f"sync, status {request.status.value}",
            )
            logger.info(f"Imported {request.title!r} ({request.status.value})")
        return created
