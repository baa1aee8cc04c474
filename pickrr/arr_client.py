"""
Library Manager Clients
Radarr (movies) and Sonarr (series) v3 API: import scans, entry lookup and
removal, and queue inspection. Removal never deletes media files.
"""

import logging
from abc import abstractmethod
from typing import Optional

from .exceptions import LibraryManagerError
from .models import MediaKind
from .service_client import ServiceClient

logger = logging.getLogger(__name__)


class LibraryManagerClient(ServiceClient):
    """Shared behaviour of the *arr v3 APIs."""

    error_class = LibraryManagerError
    media_kind: MediaKind = MediaKind.MOVIE
    scan_command = ""
    entry_path = ""

    def _headers(self) -> dict:
        headers = super()._headers()
        if self.api_key:
            headers["X-Api-Key"] = self.api_key
        return headers

    async def trigger_import_scan(self, path: Optional[str] = None) -> None:
        """Ask the library manager to scan its download folder for imports."""
        body = {"name": self.scan_command}
        if path:
            body["path"] = path
        await self._request("POST", "/api/v3/command", json=body)
        logger.info(f"Triggered {self.scan_command} on {self.service_name}")

    @abstractmethod
    async def find_by_catalog_id(self, catalog_id: int) -> Optional[dict]:
        """Library entry for a TMDB id, or None."""

    async def delete_by_catalog_id(self, catalog_id: int) -> bool:
        """
        Remove the library entry for a catalog id, keeping files on disk.

        Returns False when no entry exists.
        """
        entry = await self.find_by_catalog_id(catalog_id)
        if not entry:
            logger.info(f"No {self.service_name} entry for catalog id {catalog_id}")
            return False
        await self._request(
            "DELETE", f"{self.entry_path}/{entry['id']}",
            params={"deleteFiles": "false", "addImportExclusion": "false"},
            allow_404=True,
        )
        logger.info(f"Removed {self.service_name} entry {entry['id']} (catalog id {catalog_id})")
        return True

    async def get_queue(self) -> list[dict]:
        data = await self._request("GET", "/api/v3/queue", params={"pageSize": 100})
        if isinstance(data, dict):
            return data.get("records") or []
        return data or []

    async def test_connection(self, timeout: float = 5.0) -> tuple[bool, str]:
        """Test the connection to the library manager."""
        try:
            status = await self._request("GET", "/api/v3/system/status", timeout=timeout) or {}
            version = status.get("version", "unknown")
            return True, f"Connected to {self.service_name} {version}"
        except Exception as e:
            return False, str(e)


class RadarrClient(LibraryManagerClient):
    service_name = "radarr"
    url_setting = "radarr_url"
    media_kind = MediaKind.MOVIE
    scan_command = "DownloadedMoviesScan"
    entry_path = "/api/v3/movie"

    async def find_by_catalog_id(self, catalog_id: int) -> Optional[dict]:
        movies = await self._request("GET", self.entry_path, params={"tmdbId": catalog_id})
        for movie in movies or []:
            if movie.get("tmdbId") == catalog_id:
                return movie
        return None


class SonarrClient(LibraryManagerClient):
    service_name = "sonarr"
    url_setting = "sonarr_url"
    media_kind = MediaKind.SERIES
    scan_command = "DownloadedEpisodesScan"
    entry_path = "/api/v3/series"

    async def find_by_catalog_id(self, catalog_id: int) -> Optional[dict]:
        # Sonarr has no tmdbId filter; match client-side
        series = await self._request("GET", self.entry_path)
        for entry in series or []:
            if entry.get("tmdbId") == catalog_id:
                return entry
        return None
