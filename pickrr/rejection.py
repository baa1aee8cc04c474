"""
Rejection / Removal Workflow
Removes a request locally and asks every downstream system to forget it.
No media files are deleted by this workflow.
"""

import logging

from .exceptions import RequestNotFoundError
from .logging_config import LogContext
from .models import MediaKind
from .persistence import PersistenceManager
from .qbittorrent_client import QBittorrentClient
from .tasks import BestEffortRunner

logger = logging.getLogger(__name__)


class RejectionWorkflow:

    def __init__(
        self,
        persistence: PersistenceManager,
        download_client: QBittorrentClient,
        upstream,
        radarr,
        sonarr,
        runner: BestEffortRunner,
    ):
        self.persistence = persistence
        self.download_client = download_client
        self.upstream = upstream
        self.radarr = radarr
        self.sonarr = sonarr
        self.runner = runner

    async def reject(self, request_id: str, stop_download: bool = False) -> dict:
        request = await self.persistence.get_request(request_id)
        if request is None:
            raise RequestNotFoundError(request_id)

        with LogContext(request_id=request.id, upstream_id=request.upstream_id):
            stopped = []
            if stop_download:
                for torrent in request.torrents:
                    if not torrent.download_client_hash:
                        continue
                    try:
                        await self.download_client.delete(
                            [torrent.download_client_hash], delete_files=False
                        )
                        stopped.append(torrent.download_client_hash)
                    except Exception as e:
                        logger.warning(
                            f"Could not stop download {torrent.download_client_hash}: {e}"
                        )

            await self.persistence.delete_request(request.id)
            await self.persistence.log_activity(
                "rejected", request_id=request.id, upstream_id=request.upstream_id,
                title=request.title,
                details=f"stopped {len(stopped)} download(s)" if stop_download else None,
            )
            logger.info(f"Rejected request {request.title!r}")

            library = self.radarr if request.media_kind == MediaKind.MOVIE else self.sonarr
            context = {"request_id": request.id, "upstream_id": request.upstream_id}
            self.runner.spawn(
                "delete_upstream",
                self.upstream.delete_request(request.upstream_id), **context,
            )
            self.runner.spawn(
                f"{library.service_name}_delete",
                library.delete_by_catalog_id(request.catalog_id), **context,
            )

        return {"ok": True, "stopped": stopped}
