"""
Metadata Provider Client
Resolves a catalog id to display metadata through the TMDB v3 API.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Optional, Tuple

from .exceptions import MetadataProviderError
from .models import MediaKind
from .service_client import ServiceClient

logger = logging.getLogger(__name__)


@dataclass
class MediaMetadata:
    """Display metadata for one title."""
    title: str
    year: Optional[int] = None
    poster_url: Optional[str] = None
    overview: Optional[str] = None


class MetadataClient(ServiceClient):
    """
    TMDB client with an in-process TTL cache.

    ``get_metadata`` returns None when the title is unknown (HTTP 404) and
    raises ``MetadataProviderError`` when the provider is unreachable.
    """

    service_name = "tmdb"
    error_class = MetadataProviderError
    url_setting = "tmdb_api_key"

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.themoviedb.org/3",
        image_base: str = "https://image.tmdb.org/t/p/w500",
        cache_ttl: float = 86400.0,
        max_cache_entries: int = 1000,
    ):
        super().__init__(base_url, api_key)
        self.image_base = image_base.rstrip("/")
        self.cache_ttl = cache_ttl
        self.max_cache_entries = max_cache_entries
        self._cache: Dict[Tuple[str, int], Tuple[float, Optional[MediaMetadata]]] = {}

    @property
    def configured(self) -> bool:
        return bool(self.base_url and self.api_key)

    async def get_metadata(
        self, catalog_id: int, media_kind: MediaKind
    ) -> Optional[MediaMetadata]:
        """Look up title, year, poster and overview for a catalog id."""
        kind = MediaKind.parse(media_kind)
        key = (kind.value, int(catalog_id))
        now = datetime.now().timestamp()

        cached = self._cache.get(key)
        if cached and cached[0] > now:
            return cached[1]

        data = await self._request(
            "GET", f"/{kind.value}/{catalog_id}",
            params={"api_key": self.api_key}, allow_404=True,
        )
        metadata = self._parse(data, kind) if data else None
        if metadata is None:
            logger.warning(f"No metadata for {kind.value} {catalog_id}")

        self._evict(now)
        self._cache[key] = (now + self.cache_ttl, metadata)
        return metadata

    def _evict(self, now: float) -> None:
        """Drop expired entries, then the soonest-expiring ones above the cap."""
        for key in [k for k, (expires, _) in self._cache.items() if expires <= now]:
            del self._cache[key]
        overflow = len(self._cache) - self.max_cache_entries + 1
        if overflow > 0:
            for key in sorted(self._cache, key=lambda k: self._cache[k][0])[:overflow]:
                del self._cache[key]

    def _parse(self, data: dict, kind: MediaKind) -> Optional[MediaMetadata]:
        if kind == MediaKind.MOVIE:
            title = data.get("title") or data.get("original_title")
            date = data.get("release_date")
        else:
            title = data.get("name") or data.get("original_name")
            date = data.get("first_air_date")
        if not title:
            return None

        year = None
        if date and len(date) >= 4 and date[:4].isdigit():
            year = int(date[:4])

        poster_path = data.get("poster_path")
        return MediaMetadata(
            title=title,
            year=year,
            poster_url=f"{self.image_base}{poster_path}" if poster_path else None,
            overview=data.get("overview") or None,
        )

    async def test_connection(self, timeout: float = 5.0) -> tuple[bool, str]:
        """Test the connection to TMDB."""
        try:
            await self._request(
                "GET", "/configuration",
                params={"api_key": self.api_key}, timeout=timeout,
            )
            return True, "Connected to TMDB"
        except Exception as e:
            return False, str(e)
