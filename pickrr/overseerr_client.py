"""
Upstream Request Manager Client
Talks to the Overseerr v1 API: paginated request listing, approve,
delete and mark-available.
"""

import logging
from typing import Optional

from .exceptions import UpstreamError
from .models import UpstreamPage, UpstreamPageInfo, UpstreamRequest
from .service_client import ServiceClient

logger = logging.getLogger(__name__)


class OverseerrClient(ServiceClient):
    """Client for the Overseerr request manager."""

    service_name = "overseerr"
    error_class = UpstreamError
    url_setting = "overseerr_url"

    def _headers(self) -> dict:
        headers = super()._headers()
        if self.api_key:
            headers["X-Api-Key"] = self.api_key
        return headers

    async def list_requests(self, page: int = 1, take: int = 20) -> UpstreamPage:
        """
        Fetch one page of requests (1-based page number).

        Items that fail validation are dropped with a warning rather than
        failing the page.
        """
        data = await self._request(
            "GET", "/api/v1/request",
            params={"take": take, "skip": (page - 1) * take, "sort": "added"},
        )
        data = data or {}

        results = []
        for item in data.get("results") or []:
            try:
                results.append(UpstreamRequest.model_validate(item))
            except ValueError as e:
                logger.warning(f"Skipping malformed upstream request: {e}")

        page_info = data.get("pageInfo") or {}
        return UpstreamPage(
            page_info=UpstreamPageInfo.model_validate(page_info), results=results
        )

    async def get_request(self, upstream_id: int) -> Optional[UpstreamRequest]:
        data = await self._request(
            "GET", f"/api/v1/request/{upstream_id}", allow_404=True
        )
        return UpstreamRequest.model_validate(data) if data else None

    async def approve_request(self, upstream_id: int) -> None:
        await self._request("POST", f"/api/v1/request/{upstream_id}/approve")
        logger.info(f"Approved upstream request {upstream_id}")

    async def delete_request(self, upstream_id: int) -> None:
        await self._request("DELETE", f"/api/v1/request/{upstream_id}", allow_404=True)
        logger.info(f"Deleted upstream request {upstream_id}")

    async def mark_available(self, upstream_id: int) -> None:
        """Mark the media behind a request as available."""
        request = await self.get_request(upstream_id)
        if request is None or request.media is None or request.media.id is None:
            raise UpstreamError(
                f"Cannot mark request {upstream_id} available",
                "request or media not found",
            )
        await self._request("POST", f"/api/v1/media/{request.media.id}/available")
        logger.info(f"Marked upstream request {upstream_id} available")

    async def test_connection(self, timeout: float = 5.0) -> tuple[bool, str]:
        """Test the connection to Overseerr."""
        try:
            status = await self._request("GET", "/api/v1/status", timeout=timeout) or {}
            version = status.get("version", "unknown")
            return True, f"Connected to Overseerr {version}"
        except Exception as e:
            return False, str(e)
