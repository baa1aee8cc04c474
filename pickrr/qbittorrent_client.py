"""
Download Client Adapter
qBittorrent Web API v2: authentication, adding torrents by URL or magnet,
listing, pause/resume and delete.
"""

import asyncio
import base64
import binascii
import logging
import re
import urllib.parse
from datetime import datetime
from typing import Iterable, List, Optional

import aiohttp

from .exceptions import DownloadClientAuthError, DownloadClientError, MissingCredentialsError
from .models import ClientTorrent
from .service_client import ServiceClient

logger = logging.getLogger(__name__)


# qBittorrent states meaning the payload is fully present
SEEDING_STATES = frozenset({"uploading", "stalledUP", "forcedUP"})
ERROR_STATES = frozenset({"error", "missingFiles"})

_BTIH = re.compile(r"urn:btih:([A-Za-z0-9]+)", re.IGNORECASE)


def extract_info_hash(magnet_url: Optional[str]) -> Optional[str]:
    """
    Extract the lowercase hex info-hash from a magnet link.

    Accepts 40-char hex and 32-char base32 ``xt=urn:btih:`` values.
    """
    if not magnet_url or not magnet_url.lower().startswith("magnet:"):
        return None
    params = urllib.parse.parse_qs(urllib.parse.urlparse(magnet_url).query)
    for xt in params.get("xt", []):
        match = _BTIH.search(xt)
        if not match:
            continue
        value = match.group(1)
        if len(value) == 40 and re.fullmatch(r"[0-9A-Fa-f]{40}", value):
            return value.lower()
        if len(value) == 32:
            try:
                return base64.b32decode(value.upper()).hex()
            except (binascii.Error, ValueError):
                return None
    return None


def extract_display_name(magnet_url: Optional[str]) -> Optional[str]:
    """Extract the ``dn`` display name from a magnet link."""
    if not magnet_url:
        return None
    params = urllib.parse.parse_qs(urllib.parse.urlparse(magnet_url).query)
    if "dn" in params:
        return params["dn"][0]
    return None


def is_complete(torrent: ClientTorrent) -> bool:
    """True when the client reports the payload fully downloaded."""
    return torrent.progress >= 1.0 or torrent.state in SEEDING_STATES


class CredentialCache:
    """
    Download-client session cookie with a fixed lifetime.

    Concurrent refreshes are harmless: each login yields a valid SID and
    the last one written wins.
    """

    def __init__(self, ttl: float = 3600.0):
        self.ttl = ttl
        self._value: Optional[str] = None
        self._expires_at: float = 0.0

    def get(self) -> Optional[str]:
        if self._value and datetime.now().timestamp() < self._expires_at:
            return self._value
        return None

    def set(self, value: str) -> None:
        self._value = value
        self._expires_at = datetime.now().timestamp() + self.ttl

    def invalidate(self) -> None:
        self._value = None
        self._expires_at = 0.0


class QBittorrentClient(ServiceClient):
    """
    Client for the qBittorrent Web API.

    The SID cookie lives in an injectable ``CredentialCache``; an expired
    or rejected session is re-established once per call.
    """

    service_name = "qbittorrent"
    error_class = DownloadClientError
    url_setting = "qbit_url"

    def __init__(
        self,
        base_url: str,
        username: str = "",
        password: str = "",
        credentials: Optional[CredentialCache] = None,
        timeout: Optional[float] = None,
    ):
        super().__init__(base_url, timeout=timeout)
        self.username = username
        self.password = password
        self.credentials = credentials or CredentialCache()

    async def login(self) -> str:
        """Authenticate and cache the session cookie."""
        if not self.configured:
            raise MissingCredentialsError(self.service_name, self.url_setting)

        session = await self._get_session()
        try:
            async with session.post(
                f"{self.base_url}/api/v2/auth/login",
                data={"username": self.username, "password": self.password},
                headers={"Referer": self.base_url},
            ) as response:
                body = (await response.text()).strip()
                sid = response.cookies.get("SID")
                if response.status != 200 or body.lower().startswith("fails") or sid is None:
                    raise DownloadClientAuthError(
                        "qBittorrent auth failed",
                        f"HTTP {response.status}: {body[:100]}",
                        status=response.status,
                    )
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise DownloadClientError("qbittorrent unreachable", str(e) or type(e).__name__) from e

        self.credentials.set(sid.value)
        logger.info(f"qBittorrent authenticated as {self.username or 'anonymous'}")
        return sid.value

    async def _call(
        self,
        method: str,
        path: str,
        params: Optional[dict] = None,
        data: Optional[dict] = None,
        expect_json: bool = False,
        timeout: Optional[float] = None,
        _retry: bool = True,
    ):
        sid = self.credentials.get() or await self.login()
        session = await self._get_session()
        kwargs = {
            "params": params,
            "data": data,
            "headers": {"Cookie": f"SID={sid}", "Referer": self.base_url},
        }
        if timeout:
            kwargs["timeout"] = aiohttp.ClientTimeout(total=timeout)

        try:
            async with session.request(method, f"{self.base_url}{path}", **kwargs) as response:
                if response.status == 403 and _retry:
                    self.credentials.invalidate()
                    stale = True
                else:
                    stale = False
                    if response.status >= 400:
                        body = await response.text()
                        raise DownloadClientError(
                            f"qbittorrent returned HTTP {response.status}",
                            body[:200] or response.reason,
                            status=response.status,
                        )
                    if expect_json:
                        return await response.json(content_type=None)
                    return await response.text()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error(f"qbittorrent request failed: {method} {path}: {e}")
            raise DownloadClientError("qbittorrent unreachable", str(e) or type(e).__name__) from e

        if stale:
            logger.info("qBittorrent session rejected, re-authenticating")
            return await self._call(
                method, path, params=params, data=data,
                expect_json=expect_json, timeout=timeout, _retry=False,
            )

    async def add_torrent(
        self,
        url: str,
        save_path: str,
        category: str = "",
        tags: Iterable[str] = (),
    ) -> None:
        """Submit a torrent URL or magnet link."""
        form = {"urls": url, "savepath": save_path}
        if category:
            form["category"] = category
        tags = [t for t in tags if t]
        if tags:
            form["tags"] = ",".join(tags)

        body = await self._call("POST", "/api/v2/torrents/add", data=form)
        if body and body.strip().lower().startswith("fails"):
            raise DownloadClientError("qBittorrent rejected the torrent", body.strip())
        logger.info(f"Torrent submitted to qBittorrent (category={category or 'none'})")

    async def list_torrents(
        self,
        category: Optional[str] = None,
        hashes: Optional[Iterable[str]] = None,
    ) -> List[ClientTorrent]:
        params = {}
        if category:
            params["category"] = category
        if hashes:
            params["hashes"] = "|".join(h.lower() for h in hashes)

        data = await self._call(
            "GET", "/api/v2/torrents/info", params=params or None, expect_json=True
        )
        torrents = []
        for item in data or []:
            try:
                torrents.append(ClientTorrent.model_validate(item))
            except ValueError as e:
                logger.warning(f"Skipping malformed torrent entry: {e}")
        return torrents

    async def get_relevant_torrents(self, window_hours: float = 24.0) -> List[ClientTorrent]:
        """
        Torrents worth showing: incomplete, errored, or completed recently.
        """
        cutoff = datetime.now().timestamp() - window_hours * 3600
        return [
            t for t in await self.list_torrents()
            if t.progress < 1.0
            or t.state in ERROR_STATES
            or (t.completion_on and t.completion_on >= cutoff)
        ]

    async def find_hash_by_name(self, name: str) -> Optional[str]:
        """Hash of the one torrent named exactly ``name``; None if absent or ambiguous."""
        if not name:
            return None
        matches = {t.hash.lower() for t in await self.list_torrents() if t.name == name}
        if len(matches) > 1:
            logger.warning(f"{len(matches)} torrents named {name!r}; not linking by name")
            return None
        return matches.pop() if matches else None

    async def _toggle(self, action: str, fallback: str, hashes: List[str]) -> None:
        data = {"hashes": "|".join(h.lower() for h in hashes)}
        try:
            await self._call("POST", f"/api/v2/torrents/{action}", data=data)
        except DownloadClientError as e:
            # qBittorrent 5 renamed pause/resume to stop/start
            if e.status != 404:
                raise
            await self._call("POST", f"/api/v2/torrents/{fallback}", data=data)

    async def pause(self, hashes: List[str]) -> None:
        await self._toggle("pause", "stop", hashes)

    async def resume(self, hashes: List[str]) -> None:
        await self._toggle("resume", "start", hashes)

    async def delete(self, hashes: List[str], delete_files: bool = False) -> None:
        await self._call("POST", "/api/v2/torrents/delete", data={
            "hashes": "|".join(h.lower() for h in hashes),
            "deleteFiles": "true" if delete_files else "false",
        })
        logger.info(f"Deleted {len(hashes)} torrent(s) from qBittorrent (files={delete_files})")

    async def test_connection(self, timeout: float = 5.0) -> tuple[bool, str]:
        """Test the connection to qBittorrent."""
        try:
            version = await self._call("GET", "/api/v2/app/version", timeout=timeout)
            return True, f"Connected to qBittorrent {(version or '').strip()}"
        except Exception as e:
            return False, str(e)
