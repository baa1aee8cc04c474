"""
Selection / Grab Workflow
Hands a chosen search result to the download client and records it
against the request and season it was picked for.
"""

import logging
from datetime import datetime
from typing import Optional

from .config import ConfigStore
from .exceptions import InvalidPayloadError, RequestNotFoundError
from .logging_config import LogContext
from .models import MediaKind, Request, SelectionInput, Torrent, UserContext
from .persistence import PersistenceManager, new_id
from .qbittorrent_client import QBittorrentClient, extract_display_name, extract_info_hash
from .status import RequestStatus
from .tasks import BestEffortRunner

logger = logging.getLogger(__name__)


class SelectionWorkflow:
    """
    Submit a torrent and link it to (request, season).

    The download client is called first; nothing is written locally unless
    it accepts the torrent.
    """

    def __init__(
        self,
        persistence: PersistenceManager,
        config: ConfigStore,
        download_client: QBittorrentClient,
        upstream,
        runner: BestEffortRunner,
        movie_category: str = "pickrr-movies",
        tv_category: str = "pickrr-tv",
        tag: str = "pickrr",
    ):
        self.persistence = persistence
        self.config = config
        self.download_client = download_client
        self.upstream = upstream
        self.runner = runner
        self.movie_category = movie_category
        self.tv_category = tv_category
        self.tag = tag

    def category_for(self, media_kind: MediaKind) -> str:
        if media_kind == MediaKind.MOVIE:
            return self.movie_category
        return self.tv_category

    async def select(
        self, selection: SelectionInput, user: Optional[UserContext] = None
    ) -> dict:
        user = user or UserContext()
        source = selection.magnet_url or selection.download_url
        if not source:
            raise InvalidPayloadError("No downloadUrl or magnetUrl provided")

        request: Optional[Request] = None
        if selection.request_id:
            request = await self.persistence.get_request(selection.request_id)
            if request is None:
                raise RequestNotFoundError(selection.request_id)
            media_kind = request.media_kind
        else:
            try:
                media_kind = MediaKind.parse(selection.media_kind or "movie")
            except ValueError as e:
                raise InvalidPayloadError(str(e)) from e

        save_path = await self.config.save_path(media_kind)
        torrent_hash = extract_info_hash(selection.magnet_url) or extract_info_hash(
            selection.download_url
        )

        with LogContext(
            request_id=request.id if request else None,
            season=selection.season_number,
            media_kind=media_kind.value,
            torrent_name=selection.title,
            torrent_hash=torrent_hash,
        ):
            await self.download_client.add_torrent(
                source,
                save_path,
                category=self.category_for(media_kind),
                tags=[self.tag, media_kind.value],
            )
            logger.info(f"Submitted {selection.title!r} to download client ({save_path})")

            if request is None:
                return {"ok": True, "linked": False, "hash": torrent_hash}

            torrent = await self.persistence.upsert_torrent(Torrent(
                id=new_id(),
                request_id=request.id,
                season_number=selection.season_number,
                title=selection.title,
                indexer_name=selection.indexer,
                size_bytes=selection.size,
                seeders=selection.seeders,
                leechers=selection.leechers,
                download_url=selection.download_url,
                magnet_url=selection.magnet_url,
                info_url=selection.info_url,
                download_client_hash=torrent_hash,
                selected_by=user.name,
                selected_at=datetime.now().timestamp(),
            ))
            await self.persistence.update_status(request.id, RequestStatus.DOWNLOADING)
            await self.persistence.log_activity(
                "selected", request_id=request.id, upstream_id=request.upstream_id,
                title=request.title,
                details=f"season {selection.season_number}: {selection.title} by {user.name}",
            )
            logger.info(
                f"Request {request.title!r} season {selection.season_number} -> downloading"
            )

            self.runner.spawn(
                "approve_upstream",
                self.upstream.approve_request(request.upstream_id),
                request_id=request.id, upstream_id=request.upstream_id,
            )
            if torrent_hash is None:
                self.runner.spawn(
                    "resolve_hash",
                    self._resolve_hash(torrent, selection.magnet_url),
                    request_id=request.id,
                )

        return {
            "ok": True,
            "linked": True,
            "hash": torrent_hash,
            "torrent": torrent.to_dict(),
        }

    async def _resolve_hash(self, torrent: Torrent, magnet_url: Optional[str]) -> None:
        """Find the client hash of a URL grab by name; degraded fallback."""
        name = extract_display_name(magnet_url) or torrent.title
        torrent_hash = await self.download_client.find_hash_by_name(name)
        if torrent_hash:
            await self.persistence.set_torrent_hash(torrent.id, torrent_hash)
            logger.info(f"Linked {torrent.title!r} to client hash {torrent_hash}")
        else:
            logger.warning(f"Could not resolve client hash for {torrent.title!r}")
