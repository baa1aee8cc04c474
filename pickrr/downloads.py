"""
Download-Completion Poller
Reads the download client on demand, links its torrents to local
selections, and propagates completion to the request manager and the
library managers.
"""

import logging
from typing import Dict, List, Optional, Tuple

from .logging_config import LogContext
from .models import ClientTorrent, MediaKind, RemovalInput, Request, Torrent
from .persistence import PersistenceManager
from .qbittorrent_client import QBittorrentClient, is_complete
from .status import RequestStatus
from .tasks import BestEffortRunner

logger = logging.getLogger(__name__)


def match_torrents(
    client_torrents: List[ClientTorrent],
    local: List[Tuple[Torrent, Request]],
) -> Dict[str, Tuple[Torrent, Request]]:
    """
    Link client torrents (by hash) to local selections.

    A stored hash wins; an exact name match is the fallback and only
    applies to selections that have no hash yet.
    """
    by_hash = {}
    by_name: Dict[str, List[Tuple[Torrent, Request]]] = {}
    for torrent, request in local:
        if torrent.download_client_hash:
            by_hash[torrent.download_client_hash.lower()] = (torrent, request)
        else:
            by_name.setdefault(torrent.title, []).append((torrent, request))

    matches = {}
    for ct in client_torrents:
        key = ct.hash.lower()
        if key in by_hash:
            matches[key] = by_hash[key]
            continue
        candidates = by_name.get(ct.name)
        if candidates:
            if len(candidates) > 1:
                logger.warning(f"Ambiguous name match for {ct.name!r}; using newest selection")
            matches[key] = max(candidates, key=lambda pair: pair[0].selected_at)
    return matches


def merge_view(ct: ClientTorrent, linked: Optional[Tuple[Torrent, Request]]) -> dict:
    """Client-reported fields plus local linkage when the torrent is known."""
    view = {
        "hash": ct.hash.lower(),
        "name": ct.name,
        "progress": ct.progress,
        "dlspeed": ct.dlspeed,
        "upspeed": ct.upspeed,
        "eta": ct.eta,
        "size": str(ct.size),
        "num_seeds": ct.num_seeds,
        "num_leechs": ct.num_leechs,
        "state": ct.state,
    }
    if linked:
        torrent, request = linked
        view.update({
            "seasonNumber": torrent.season_number,
            "requestId": request.id,
            "requestTitle": request.title,
            "mediaKind": request.media_kind.value,
            "posterUrl": request.poster_url,
        })
    return view


class CompletionPoller:
    """Detect finished downloads and close the loop downstream."""

    def __init__(
        self,
        persistence: PersistenceManager,
        download_client: QBittorrentClient,
        upstream,
        radarr,
        sonarr,
        runner: BestEffortRunner,
        window_hours: float = 24.0,
    ):
        self.persistence = persistence
        self.download_client = download_client
        self.upstream = upstream
        self.radarr = radarr
        self.sonarr = sonarr
        self.runner = runner
        self.window_hours = window_hours

    def library_for(self, media_kind: MediaKind):
        return self.radarr if media_kind == MediaKind.MOVIE else self.sonarr

    async def poll(self) -> List[dict]:
        """One poll: returns merged torrent views, marks finished requests done."""
        client_torrents = await self.download_client.get_relevant_torrents(self.window_hours)
        local = await self.persistence.list_torrents()
        matches = match_torrents(client_torrents, local)

        completed = set()
        for ct in client_torrents:
            linked = matches.get(ct.hash.lower())
            if not linked or not is_complete(ct):
                continue
            torrent, request = linked
            if request.id in completed or request.status != RequestStatus.DOWNLOADING:
                continue
            completed.add(request.id)
            await self.complete(request, torrent, ct)

        return [merge_view(ct, matches.get(ct.hash.lower())) for ct in client_torrents]

    async def complete(self, request: Request, torrent: Torrent, ct: ClientTorrent) -> bool:
        with LogContext(
            request_id=request.id, upstream_id=request.upstream_id,
            torrent_hash=ct.hash.lower(), season=torrent.season_number,
        ):
            changed = await self.persistence.update_status(
                request.id, RequestStatus.DONE, only_from=[RequestStatus.DOWNLOADING]
            )
            if not changed:
                return False

            if not torrent.download_client_hash:
                await self.persistence.set_torrent_hash(torrent.id, ct.hash)
            await self.persistence.log_activity(
                "completed", request_id=request.id, upstream_id=request.upstream_id,
                title=request.title, details=ct.name,
            )
            logger.info(f"Request {request.title!r} -> done")

            library = self.library_for(request.media_kind)
            context = {"request_id": request.id, "upstream_id": request.upstream_id}
            self.runner.spawn(
                f"{library.service_name}_import_scan",
                library.trigger_import_scan(), **context,
            )
            self.runner.spawn(
                "mark_available_upstream",
                self.upstream.mark_available(request.upstream_id), **context,
            )
            return True

    async def apply_action(self, action: RemovalInput) -> dict:
        """
        Manual pause/resume/delete of one client torrent.

        Deleting unlinks the hash from its selection so the season can be
        re-grabbed, and moves a downloading request back to selected.
        """
        torrent_hash = action.hash.lower()
        with LogContext(torrent_hash=torrent_hash, operation=action.action):
            if action.action == "pause":
                await self.download_client.pause([torrent_hash])
            elif action.action == "resume":
                await self.download_client.resume([torrent_hash])
            else:
                await self.download_client.delete([torrent_hash], action.delete_files)
                request_ids = await self.persistence.clear_torrent_hash(torrent_hash)
                for request_id in request_ids:
                    reverted = await self.persistence.update_status(
                        request_id, RequestStatus.SELECTED,
                        only_from=[RequestStatus.DOWNLOADING],
                    )
                    await self.persistence.log_activity(
                        "download_removed", request_id=request_id,
                        details=f"{torrent_hash} (files deleted: {action.delete_files})",
                    )
                    if reverted:
                        logger.info(f"Request {request_id} reverted to selected")
            logger.info(f"Download {action.action}: {torrent_hash}")
        return {"ok": True}
