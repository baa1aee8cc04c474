"""
Data models for Pickrr.

Pydantic models validate payloads at the boundary with external systems
(request manager, download client, HTTP callers). Dataclasses describe the
rows persisted locally.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Literal, Optional, List

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from .status import RequestStatus


class MediaKind(str, Enum):
    """Media kind. Values match the request manager's wire format."""
    MOVIE = "movie"
    SERIES = "tv"

    @classmethod
    def parse(cls, value) -> "MediaKind":
        if isinstance(value, cls):
            return value
        normalized = str(value or "").strip().lower()
        if normalized in ("tv", "series", "show"):
            return cls.SERIES
        if normalized == "movie":
            return cls.MOVIE
        raise ValueError(f"Unknown media kind: {value!r}")


class _Boundary(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


# =============================================================================
# Request manager (upstream) DTOs
# =============================================================================


class UpstreamUser(_Boundary):
    id: Optional[int] = None
    username: Optional[str] = None
    display_name: Optional[str] = Field(default=None, alias="displayName")
    email: Optional[str] = None

    @property
    def label(self) -> str:
        return self.display_name or self.username or self.email or "unknown"


class UpstreamSeason(_Boundary):
    season_number: int = Field(alias="seasonNumber")


class UpstreamMedia(_Boundary):
    id: Optional[int] = None
    tmdb_id: Optional[int] = Field(default=None, alias="tmdbId")
    media_type: Optional[str] = Field(default=None, alias="mediaType")
    status: Optional[int] = None


class UpstreamRequest(_Boundary):
    id: int
    status: Optional[int] = None
    type: Optional[str] = None
    created_at: Optional[datetime] = Field(default=None, alias="createdAt")
    media: Optional[UpstreamMedia] = None
    seasons: List[UpstreamSeason] = Field(default_factory=list)
    requested_by: Optional[UpstreamUser] = Field(default=None, alias="requestedBy")

    @property
    def catalog_id(self) -> Optional[int]:
        return self.media.tmdb_id if self.media else None

    @property
    def media_kind(self) -> MediaKind:
        raw = (self.media.media_type if self.media else None) or self.type
        return MediaKind.parse(raw or "movie")

    @property
    def media_status(self) -> Optional[int]:
        return self.media.status if self.media else None

    @property
    def requester(self) -> str:
        return self.requested_by.label if self.requested_by else "unknown"


class UpstreamPageInfo(_Boundary):
    pages: int = 1
    page: int = 1
    results: int = 0


class UpstreamPage(_Boundary):
    page_info: UpstreamPageInfo = Field(
        default_factory=UpstreamPageInfo, alias="pageInfo"
    )
    results: List[UpstreamRequest] = Field(default_factory=list)


# =============================================================================
# Webhook payload
# =============================================================================


class WebhookMedia(_Boundary):
    media_type: Optional[str] = None
    catalog_id: Optional[int] = Field(
        default=None, validation_alias=AliasChoices("tmdbId", "catalogId", "catalog_id")
    )
    status: Optional[str] = None


class WebhookRequestInfo(_Boundary):
    id: Optional[int] = Field(
        default=None, validation_alias=AliasChoices("id", "request_id")
    )
    requested_by_username: Optional[str] = Field(
        default=None, alias="requestedBy_username"
    )


class WebhookPayload(_Boundary):
    notification_type: str = ""
    subject: Optional[str] = None
    media: Optional[WebhookMedia] = None
    request: Optional[WebhookRequestInfo] = None


@dataclass
class WebhookJob:
    """Normalized unit of webhook work, shared by fast path and queue."""
    upstream_id: int
    catalog_id: int
    media_kind: MediaKind
    title: str
    requested_by: str

    def to_dict(self) -> dict:
        return {
            "upstream_id": self.upstream_id,
            "catalog_id": self.catalog_id,
            "media_kind": self.media_kind.value,
            "title": self.title,
            "requested_by": self.requested_by,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "WebhookJob":
        return cls(
            upstream_id=int(data["upstream_id"]),
            catalog_id=int(data["catalog_id"]),
            media_kind=MediaKind.parse(data["media_kind"]),
            title=data.get("title") or "Unknown",
            requested_by=data.get("requested_by") or "unknown",
        )


# =============================================================================
# Download client DTOs
# =============================================================================


class ClientTorrent(_Boundary):
    """A torrent as reported by the download client."""
    hash: str
    name: str = ""
    size: int = 0
    progress: float = 0.0
    dlspeed: int = 0
    upspeed: int = 0
    num_seeds: int = 0
    num_leechs: int = 0
    eta: int = 8640000
    state: str = "unknown"
    save_path: str = ""
    category: str = ""
    tags: str = ""
    added_on: int = 0
    completion_on: int = 0


# =============================================================================
# Operation inputs
# =============================================================================


class SelectionInput(_Boundary):
    """A search result chosen by a user, optionally bound to a request."""
    request_id: Optional[str] = Field(default=None, alias="requestId")
    media_kind: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("mediaKind", "mediaType", "media_kind")
    )
    season_number: int = Field(default=0, ge=0, alias="seasonNumber")
    title: str = Field(min_length=1)
    indexer: str
    size: int = Field(ge=0)
    seeders: int = 0
    leechers: int = 0
    download_url: Optional[str] = Field(default=None, alias="downloadUrl")
    magnet_url: Optional[str] = Field(default=None, alias="magnetUrl")
    info_url: Optional[str] = Field(default=None, alias="infoUrl")


class RemovalInput(_Boundary):
    hash: str = Field(min_length=1)
    action: Literal["pause", "resume", "delete"]
    delete_files: bool = Field(default=False, alias="deleteFiles")


class RejectionInput(_Boundary):
    stop_download: bool = Field(default=False, alias="stopDownload")


class ServiceTestInput(_Boundary):
    service: Literal["qbittorrent", "overseerr", "radarr", "sonarr", "tmdb"]


@dataclass
class UserContext:
    """Caller identity supplied by the fronting auth layer."""
    name: str = "admin"
    role: str = "admin"


# =============================================================================
# Local rows
# =============================================================================


@dataclass
class Torrent:
    """A selected torrent for one (request, season) pair."""
    id: str
    request_id: str
    season_number: int
    title: str
    indexer_name: str
    size_bytes: int
    seeders: int
    leechers: int
    selected_by: str
    selected_at: float
    download_url: Optional[str] = None
    magnet_url: Optional[str] = None
    info_url: Optional[str] = None
    download_client_hash: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "requestId": self.request_id,
            "seasonNumber": self.season_number,
            "title": self.title,
            "indexer": self.indexer_name,
            # 64-bit sizes are serialized as strings for JS callers
            "size": str(self.size_bytes),
            "seeders": self.seeders,
            "leechers": self.leechers,
            "downloadUrl": self.download_url,
            "magnetUrl": self.magnet_url,
            "infoUrl": self.info_url,
            "downloadClientHash": self.download_client_hash,
            "selectedBy": self.selected_by,
            "selectedAt": _iso(self.selected_at),
        }


@dataclass
class Request:
    """A local record of one upstream media request."""
    id: str
    upstream_id: int
    catalog_id: int
    media_kind: MediaKind
    title: str
    status: RequestStatus
    requested_by: str
    requested_at: float
    created_at: float
    updated_at: float
    year: Optional[int] = None
    poster_url: Optional[str] = None
    overview: Optional[str] = None
    seasons: Optional[List[int]] = None
    torrents: List[Torrent] = field(default_factory=list)

    def to_dict(self, include_torrents: bool = True) -> dict:
        data = {
            "id": self.id,
            "upstreamId": self.upstream_id,
            "catalogId": self.catalog_id,
            "mediaKind": self.media_kind.value,
            "title": self.title,
            "year": self.year,
            "posterUrl": self.poster_url,
            "overview": self.overview,
            "seasons": self.seasons,
            "status": self.status.value,
            "requestedBy": self.requested_by,
            "requestedAt": _iso(self.requested_at),
            "createdAt": _iso(self.created_at),
            "updatedAt": _iso(self.updated_at),
        }
        if include_torrents:
            data["torrents"] = [t.to_dict() for t in self.torrents]
        return data


def _iso(timestamp: Optional[float]) -> Optional[str]:
    if timestamp is None:
        return None
    return datetime.fromtimestamp(timestamp).isoformat()
