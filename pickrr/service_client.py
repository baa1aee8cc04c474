"""
Shared aiohttp plumbing for the external service clients.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Optional, Type

import aiohttp

from .exceptions import ExternalServiceError, MissingCredentialsError

logger = logging.getLogger(__name__)


class ServiceClient(ABC):
    """
    Base class for JSON-over-HTTP service clients.

    Subclasses set ``service_name`` and ``error_class`` and build requests
    through ``_request``. Transport failures and non-2xx responses are
    raised as ``error_class``.
    """

    service_name = "service"
    error_class: Type[ExternalServiceError] = ExternalServiceError
    url_setting = "url"

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        timeout: Optional[float] = None,
    ):
        self.base_url = (base_url or "").rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self._session: Optional[aiohttp.ClientSession] = None

    @property
    def configured(self) -> bool:
        return bool(self.base_url)

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create aiohttp session."""
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=self.timeout) if self.timeout else None
            self._session = aiohttp.ClientSession(timeout=timeout)
        return self._session

    async def close(self) -> None:
        """Close the client connection."""
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None

    def _headers(self) -> dict:
        return {"Accept": "application/json"}

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[dict] = None,
        json: Optional[dict] = None,
        allow_404: bool = False,
        timeout: Optional[float] = None,
    ):
        """
        Perform a request and decode the JSON body.

        Returns None for empty bodies, and for 404 when ``allow_404`` is set.
        """
        if not self.configured:
            raise MissingCredentialsError(self.service_name, self.url_setting)

        session = await self._get_session()
        url = f"{self.base_url}{path}"
        kwargs = {"params": params, "json": json, "headers": self._headers()}
        if timeout:
            kwargs["timeout"] = aiohttp.ClientTimeout(total=timeout)

        try:
            async with session.request(method, url, **kwargs) as response:
                if allow_404 and response.status == 404:
                    return None
                if response.status >= 400:
                    body = await response.text()
                    raise self.error_class(
                        f"{self.service_name} returned HTTP {response.status}",
                        body[:200] or response.reason,
                        status=response.status,
                    )
                if response.status == 204 or response.content_length == 0:
                    return None
                return await response.json(content_type=None)

        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error(f"{self.service_name} request failed: {method} {path}: {e}")
            raise self.error_class(
                f"{self.service_name} unreachable", str(e) or type(e).__name__
            ) from e

    @abstractmethod
    async def test_connection(self, timeout: float = 5.0) -> tuple[bool, str]:
        """Return (reachable, human-readable detail) without raising."""
