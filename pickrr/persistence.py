"""
Persistence Layer for Pickrr
SQLite-based storage for requests, torrents, queued webhook jobs,
settings and the activity log.

Idempotence is enforced by uniqueness constraints, not by in-process locks:
``requests.upstream_id`` and ``torrents(request_id, season_number)`` are
unique, and every write that may race uses ``ON CONFLICT``.
"""

import asyncio
import aiosqlite
import json
import logging
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Optional, List, Dict, Iterable, Tuple

from .exceptions import DatabaseConnectionError, InvalidSeasonError
from .models import MediaKind, Request, Torrent
from .status import LOCALLY_MANAGED, UPSTREAM_DERIVED, RequestStatus

logger = logging.getLogger(__name__)


@dataclass
class PersistedJob:
    """Queued webhook job."""
    id: str
    payload: dict
    attempts: int
    max_attempts: int
    next_attempt_at: float
    created_at: float
    last_error: Optional[str] = None


@dataclass
class ActivityLogEntry:
    """Activity log entry."""
    id: Optional[int]
    timestamp: float
    request_id: Optional[str]
    upstream_id: Optional[int]
    title: Optional[str]
    action: str
    details: Optional[str]
    level: str = "INFO"


# SQL Schema
SCHEMA = """
CREATE TABLE IF NOT EXISTS requests (
    id TEXT PRIMARY KEY,
    upstream_id INTEGER NOT NULL UNIQUE,
    catalog_id INTEGER NOT NULL,
    media_kind TEXT NOT NULL,
    title TEXT NOT NULL,
    year INTEGER,
    poster_url TEXT,
    overview TEXT,
    seasons TEXT,
    status TEXT NOT NULL,
    requested_by TEXT NOT NULL DEFAULT 'unknown',
    requested_at REAL NOT NULL,
    created_at REAL NOT NULL,
    updated_at REAL NOT NULL
);

CREATE TABLE IF NOT EXISTS torrents (
    id TEXT PRIMARY KEY,
    request_id TEXT NOT NULL REFERENCES requests(id) ON DELETE CASCADE,
    season_number INTEGER NOT NULL DEFAULT 0,
    title TEXT NOT NULL,
    indexer_name TEXT NOT NULL,
    size_bytes INTEGER NOT NULL DEFAULT 0,
    seeders INTEGER NOT NULL DEFAULT 0,
    leechers INTEGER NOT NULL DEFAULT 0,
    download_url TEXT,
    magnet_url TEXT,
    info_url TEXT,
    download_client_hash TEXT,
    selected_by TEXT NOT NULL,
    selected_at REAL NOT NULL,
    UNIQUE (request_id, season_number)
);

CREATE TABLE IF NOT EXISTS webhook_jobs (
    id TEXT PRIMARY KEY,
    payload TEXT NOT NULL,
    attempts INTEGER NOT NULL DEFAULT 0,
    max_attempts INTEGER NOT NULL DEFAULT 3,
    next_attempt_at REAL NOT NULL,
    last_error TEXT,
    created_at REAL NOT NULL
);

CREATE TABLE IF NOT EXISTS settings (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS activity_log (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    timestamp REAL NOT NULL,
    request_id TEXT,
    upstream_id INTEGER,
    title TEXT,
    action TEXT NOT NULL,
    details TEXT,
    level TEXT DEFAULT 'INFO'
);

CREATE INDEX IF NOT EXISTS idx_requests_status ON requests(status);
CREATE INDEX IF NOT EXISTS idx_torrents_hash ON torrents(download_client_hash);
CREATE INDEX IF NOT EXISTS idx_jobs_due ON webhook_jobs(next_attempt_at);
CREATE INDEX IF NOT EXISTS idx_activity_timestamp ON activity_log(timestamp DESC);
"""

_LOCAL = tuple(s.value for s in LOCALLY_MANAGED)
_DERIVED = tuple(s.value for s in UPSTREAM_DERIVED)


def _placeholders(values: Iterable) -> str:
    return ",".join("?" * len(tuple(values)))


def normalize_seasons(seasons: Optional[Iterable[int]]) -> Optional[List[int]]:
    """
    Validate a requested season list: sorted, deduplicated, all >= 1.

    Season 0 is the full-pack/movie sentinel and is dropped here; negative
    or non-integer values are rejected.
    """
    if not seasons:
        return None
    result = set()
    for season in seasons:
        if isinstance(season, bool) or not isinstance(season, int) or season < 0:
            raise InvalidSeasonError(season)
        if season == 0:
            continue
        result.add(season)
    return sorted(result) or None


def new_id() -> str:
    return uuid.uuid4().hex


class PersistenceManager:
    """
    Manages state persistence to SQLite.
    Provides async CRUD operations for requests, torrents, jobs and settings.
    """

    def __init__(self, db_path: str = "pickrr.db", timeout: float = 30.0):
        self.db_path = db_path
        self.timeout = timeout
        self._lock = asyncio.Lock()
        self._initialized = False

    @asynccontextmanager
    async def _connect(self):
        try:
            db = await aiosqlite.connect(self.db_path, timeout=self.timeout)
        except Exception as e:
            raise DatabaseConnectionError(
                "Could not open database", f"{self.db_path}: {e}"
            ) from e
        try:
            db.row_factory = aiosqlite.Row
            await db.execute("PRAGMA foreign_keys = ON")
            yield db
        finally:
            await db.close()

    async def initialize(self) -> None:
        """Create database and tables if they don't exist."""
        async with self._lock:
            if self._initialized:
                return

            db_dir = Path(self.db_path).parent
            if db_dir and str(db_dir) != ".":
                db_dir.mkdir(parents=True, exist_ok=True)

            async with self._connect() as db:
                await db.execute("PRAGMA journal_mode = WAL")
                await db.executescript(SCHEMA)
                await db.commit()

            self._initialized = True
            logger.info(f"Persistence initialized: {self.db_path}")

    async def close(self) -> None:
        """Close the persistence manager."""
        self._initialized = False

    # -------------------------------------------------------------------------
    # Row mapping
    # -------------------------------------------------------------------------

    @staticmethod
    def _row_to_request(row) -> Request:
        return Request(
            id=row["id"],
            upstream_id=row["upstream_id"],
            catalog_id=row["catalog_id"],
            media_kind=MediaKind.parse(row["media_kind"]),
            title=row["title"],
            year=row["year"],
            poster_url=row["poster_url"],
            overview=row["overview"],
            seasons=json.loads(row["seasons"]) if row["seasons"] else None,
            status=RequestStatus(row["status"]),
            requested_by=row["requested_by"],
            requested_at=row["requested_at"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _row_to_torrent(row) -> Torrent:
        return Torrent(
            id=row["id"],
            request_id=row["request_id"],
            season_number=row["season_number"],
            title=row["title"],
            indexer_name=row["indexer_name"],
            size_bytes=row["size_bytes"],
            seeders=row["seeders"],
            leechers=row["leechers"],
            download_url=row["download_url"],
            magnet_url=row["magnet_url"],
            info_url=row["info_url"],
            download_client_hash=row["download_client_hash"],
            selected_by=row["selected_by"],
            selected_at=row["selected_at"],
        )

    @staticmethod
    def _request_params(request: Request) -> tuple:
        seasons = normalize_seasons(request.seasons)
        return (
            request.id, request.upstream_id, request.catalog_id,
            MediaKind.parse(request.media_kind).value, request.title,
            request.year, request.poster_url, request.overview,
            json.dumps(seasons) if seasons else None,
            RequestStatus(request.status).value, request.requested_by,
            request.requested_at, request.created_at, request.updated_at,
        )

    # -------------------------------------------------------------------------
    # Request Operations
    # -------------------------------------------------------------------------

    async def insert_request_if_absent(self, request: Request) -> bool:
        """
        Create a request unless one with the same upstream id exists.

        Returns True when a row was created.
        """
        now = datetime.now().timestamp()
        request.created_at = request.created_at or now
        request.updated_at = now

        async with self._connect() as db:
            cursor = await db.execute("""
                INSERT INTO requests
                (id, upstream_id, catalog_id, media_kind, title, year, poster_url,
                 overview, seasons, status, requested_by, requested_at,
                 created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(upstream_id) DO NOTHING
            """, self._request_params(request))
            await db.commit()
            return cursor.rowcount == 1

    async def upsert_request_from_webhook(
        self, request: Request
    ) -> Tuple[Request, bool]:
        """
        Idempotent upsert keyed on upstream id.

        On create the row is written as given. On update only the status is
        re-asserted, and only when the stored status is not locally managed.

        Returns (stored request, created).
        """
        now = datetime.now().timestamp()
        request.created_at = request.created_at or now
        request.updated_at = now
        status = RequestStatus(request.status).value

        async with self._connect() as db:
            cursor = await db.execute("""
                INSERT INTO requests
                (id, upstream_id, catalog_id, media_kind, title, year, poster_url,
                 overview, seasons, status, requested_by, requested_at,
                 created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(upstream_id) DO NOTHING
            """, self._request_params(request))
            created = cursor.rowcount == 1

            if not created:
                await db.execute(f"""
                    UPDATE requests SET status = ?, updated_at = ?
                    WHERE upstream_id = ? AND status != ?
                      AND status NOT IN ({_placeholders(_LOCAL)})
                """, (status, now, request.upstream_id, status, *_LOCAL))
            await db.commit()

            async with db.execute(
                "SELECT * FROM requests WHERE upstream_id = ?", (request.upstream_id,)
            ) as cur:
                row = await cur.fetchone()

        return self._row_to_request(row), created

    async def get_request(self, request_id: str) -> Optional[Request]:
        """Get a request and its torrents by local id."""
        async with self._connect() as db:
            async with db.execute(
                "SELECT * FROM requests WHERE id = ?", (request_id,)
            ) as cursor:
                row = await cursor.fetchone()
            if not row:
                return None
            request = self._row_to_request(row)
            request.torrents = await self._fetch_torrents(db, [request.id])
            return request

    async def get_request_by_upstream_id(self, upstream_id: int) -> Optional[Request]:
        """Get a request by the request manager's id."""
        async with self._connect() as db:
            async with db.execute(
                "SELECT * FROM requests WHERE upstream_id = ?", (upstream_id,)
            ) as cursor:
                row = await cursor.fetchone()
            if not row:
                return None
            request = self._row_to_request(row)
            request.torrents = await self._fetch_torrents(db, [request.id])
            return request

    async def list_requests(
        self,
        statuses: Optional[Iterable] = None,
        order_by: str = "requested_at",
    ) -> List[Request]:
        """List requests, newest first, with torrents ordered by season."""
        if order_by not in ("requested_at", "updated_at", "created_at"):
            raise ValueError(f"Unsupported order: {order_by}")

        query = "SELECT * FROM requests"
        params: list = []
        if statuses:
            values = [RequestStatus(s).value for s in statuses]
            query += f" WHERE status IN ({_placeholders(values)})"
            params.extend(values)
        query += f" ORDER BY {order_by} DESC"

        async with self._connect() as db:
            async with db.execute(query, params) as cursor:
                rows = await cursor.fetchall()
            requests = [self._row_to_request(row) for row in rows]
            if requests:
                torrents = await self._fetch_torrents(db, [r.id for r in requests])
                by_request: Dict[str, List[Torrent]] = {}
                for torrent in torrents:
                    by_request.setdefault(torrent.request_id, []).append(torrent)
                for request in requests:
                    request.torrents = by_request.get(request.id, [])
            return requests

    async def update_status(
        self,
        request_id: str,
        status: RequestStatus,
        only_from: Optional[Iterable[RequestStatus]] = None,
    ) -> bool:
        """
        Set a request's status, optionally only when it is currently in
        one of ``only_from``. Returns True when a row changed.
        """
        now = datetime.now().timestamp()
        query = "UPDATE requests SET status = ?, updated_at = ? WHERE id = ?"
        params: list = [RequestStatus(status).value, now, request_id]
        if only_from is not None:
            values = [RequestStatus(s).value for s in only_from]
            query += f" AND status IN ({_placeholders(values)})"
            params.extend(values)

        async with self._connect() as db:
            cursor = await db.execute(query, params)
            await db.commit()
            return cursor.rowcount > 0

    async def update_status_if_upstream_derived(
        self, request_id: str, status: RequestStatus
    ) -> bool:
        """Apply a derived status unless the request is locally managed."""
        now = datetime.now().timestamp()
        value = RequestStatus(status).value
        async with self._connect() as db:
            cursor = await db.execute(f"""
                UPDATE requests SET status = ?, updated_at = ?
                WHERE id = ? AND status != ?
                  AND status IN ({_placeholders(_DERIVED)})
            """, (value, now, request_id, value, *_DERIVED))
            await db.commit()
            return cursor.rowcount > 0

    async def delete_request(self, request_id: str) -> bool:
        """Delete a request; its torrents go with it."""
        async with self._connect() as db:
            await db.execute("DELETE FROM torrents WHERE request_id = ?", (request_id,))
            cursor = await db.execute("DELETE FROM requests WHERE id = ?", (request_id,))
            await db.commit()
            return cursor.rowcount > 0

    # -------------------------------------------------------------------------
    # Torrent Operations
    # -------------------------------------------------------------------------

    async def _fetch_torrents(self, db, request_ids: List[str]) -> List[Torrent]:
        torrents: List[Torrent] = []
        # Stay well below SQLite's bound-parameter limit
        for start in range(0, len(request_ids), 500):
            chunk = request_ids[start:start + 500]
            async with db.execute(
                f"SELECT * FROM torrents WHERE request_id IN ({_placeholders(chunk)}) "
                "ORDER BY season_number ASC",
                chunk,
            ) as cursor:
                torrents.extend(self._row_to_torrent(row) for row in await cursor.fetchall())
        return torrents

    async def upsert_torrent(self, torrent: Torrent) -> Torrent:
        """
        Insert or replace the selection for (request, season).

        The row id of an existing selection is preserved.
        """
        async with self._connect() as db:
            await db.execute("""
                INSERT INTO torrents
                (id, request_id, season_number, title, indexer_name, size_bytes,
                 seeders, leechers, download_url, magnet_url, info_url,
                 download_client_hash, selected_by, selected_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(request_id, season_number) DO UPDATE SET
                    title = excluded.title,
                    indexer_name = excluded.indexer_name,
                    size_bytes = excluded.size_bytes,
                    seeders = excluded.seeders,
                    leechers = excluded.leechers,
                    download_url = excluded.download_url,
                    magnet_url = excluded.magnet_url,
                    info_url = excluded.info_url,
                    download_client_hash = excluded.download_client_hash,
                    selected_by = excluded.selected_by,
                    selected_at = excluded.selected_at
            """, (
                torrent.id, torrent.request_id, torrent.season_number,
                torrent.title, torrent.indexer_name, torrent.size_bytes,
                torrent.seeders, torrent.leechers, torrent.download_url,
                torrent.magnet_url, torrent.info_url,
                torrent.download_client_hash, torrent.selected_by,
                torrent.selected_at,
            ))
            await db.commit()

            async with db.execute(
                "SELECT * FROM torrents WHERE request_id = ? AND season_number = ?",
                (torrent.request_id, torrent.season_number),
            ) as cursor:
                row = await cursor.fetchone()
            return self._row_to_torrent(row)

    async def list_torrents(self) -> List[Tuple[Torrent, Request]]:
        """All torrents paired with their parent request."""
        requests = await self.list_requests()
        return [(t, r) for r in requests for t in r.torrents]

    async def set_torrent_hash(self, torrent_id: str, torrent_hash: str) -> None:
        """Record the download-client handle for a selection."""
        async with self._connect() as db:
            await db.execute(
                "UPDATE torrents SET download_client_hash = ? WHERE id = ?",
                (torrent_hash.lower(), torrent_id),
            )
            await db.commit()

    async def clear_torrent_hash(self, torrent_hash: str) -> List[str]:
        """
        Forget a download-client handle so the season can be re-grabbed.

        Returns the ids of the requests whose torrents were unlinked.
        """
        torrent_hash = torrent_hash.lower()
        async with self._connect() as db:
            async with db.execute(
                "SELECT DISTINCT request_id FROM torrents WHERE download_client_hash = ?",
                (torrent_hash,),
            ) as cursor:
                request_ids = [row["request_id"] for row in await cursor.fetchall()]
            await db.execute(
                "UPDATE torrents SET download_client_hash = NULL "
                "WHERE download_client_hash = ?",
                (torrent_hash,),
            )
            await db.commit()
            return request_ids

    # -------------------------------------------------------------------------
    # Webhook Job Queue Operations
    # -------------------------------------------------------------------------

    async def enqueue_job(self, payload: dict, max_attempts: int = 3) -> str:
        """Persist a webhook job for the worker. Returns the job id."""
        now = datetime.now().timestamp()
        job_id = new_id()
        async with self._connect() as db:
            await db.execute("""
                INSERT INTO webhook_jobs
                (id, payload, attempts, max_attempts, next_attempt_at, created_at)
                VALUES (?, ?, 0, ?, ?, ?)
            """, (job_id, json.dumps(payload), max_attempts, now, now))
            await db.commit()
        return job_id

    async def get_due_jobs(self, now: float = None, limit: int = 50) -> List[PersistedJob]:
        """Get jobs whose next attempt time has passed, oldest first."""
        now = now if now is not None else datetime.now().timestamp()
        async with self._connect() as db:
            async with db.execute("""
                SELECT * FROM webhook_jobs WHERE next_attempt_at <= ?
                ORDER BY next_attempt_at ASC LIMIT ?
            """, (now, limit)) as cursor:
                rows = await cursor.fetchall()
        return [self._row_to_job(row) for row in rows]

    async def get_jobs(self) -> List[PersistedJob]:
        """Get all queued jobs ordered by creation time."""
        async with self._connect() as db:
            async with db.execute(
                "SELECT * FROM webhook_jobs ORDER BY created_at ASC"
            ) as cursor:
                rows = await cursor.fetchall()
        return [self._row_to_job(row) for row in rows]

    @staticmethod
    def _row_to_job(row) -> PersistedJob:
        return PersistedJob(
            id=row["id"],
            payload=json.loads(row["payload"]),
            attempts=row["attempts"],
            max_attempts=row["max_attempts"],
            next_attempt_at=row["next_attempt_at"],
            created_at=row["created_at"],
            last_error=row["last_error"],
        )

    async def reschedule_job(
        self, job_id: str, attempts: int, next_attempt_at: float, error: str
    ) -> None:
        """Record a failed attempt and when to try again."""
        async with self._connect() as db:
            await db.execute("""
                UPDATE webhook_jobs
                SET attempts = ?, next_attempt_at = ?, last_error = ?
                WHERE id = ?
            """, (attempts, next_attempt_at, error, job_id))
            await db.commit()

    async def delete_job(self, job_id: str) -> None:
        """Delete a queued job."""
        async with self._connect() as db:
            await db.execute("DELETE FROM webhook_jobs WHERE id = ?", (job_id,))
            await db.commit()

    async def clear_jobs(self) -> int:
        """Clear all queued jobs. Returns count deleted."""
        async with self._connect() as db:
            cursor = await db.execute("DELETE FROM webhook_jobs")
            await db.commit()
            return cursor.rowcount

    # -------------------------------------------------------------------------
    # Settings Operations
    # -------------------------------------------------------------------------

    async def get_setting(self, key: str) -> Optional[str]:
        """Get a stored setting value."""
        async with self._connect() as db:
            async with db.execute(
                "SELECT value FROM settings WHERE key = ?", (key,)
            ) as cursor:
                row = await cursor.fetchone()
        return row["value"] if row else None

    async def get_settings(self, keys: List[str]) -> Dict[str, str]:
        """Get several stored settings; missing keys are omitted."""
        if not keys:
            return {}
        async with self._connect() as db:
            async with db.execute(
                f"SELECT key, value FROM settings WHERE key IN ({_placeholders(keys)})",
                keys,
            ) as cursor:
                rows = await cursor.fetchall()
        return {row["key"]: row["value"] for row in rows}

    async def set_setting(self, key: str, value: str) -> None:
        """Save or update a setting."""
        async with self._connect() as db:
            await db.execute("""
                INSERT INTO settings (key, value) VALUES (?, ?)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value
            """, (key, value))
            await db.commit()

    # -------------------------------------------------------------------------
    # Activity Log Operations
    # -------------------------------------------------------------------------

    async def log_activity(
        self,
        action: str,
        request_id: str = None,
        upstream_id: int = None,
        title: str = None,
        details: str = None,
        level: str = "INFO",
    ) -> None:
        """Log an activity entry."""
        async with self._connect() as db:
            await db.execute("""
                INSERT INTO activity_log
                (timestamp, request_id, upstream_id, title, action, details, level)
                VALUES (?, ?, ?, ?, ?, ?, ?)
            """, (
                datetime.now().timestamp(),
                request_id, upstream_id, title, action, details, level
            ))
            await db.commit()

    async def get_activity_log(
        self,
        limit: int = 100,
        level: str = None,
        request_id: str = None,
        since: float = None,
    ) -> List[ActivityLogEntry]:
        """Get activity log entries with optional filtering."""
        query = "SELECT * FROM activity_log WHERE 1=1"
        params = []

        if level:
            level_priority = {
                "DEBUG": 10, "INFO": 20, "WARNING": 30, "ERROR": 40, "CRITICAL": 50
            }
            min_priority = level_priority.get(level.upper(), 0)
            levels = [l for l, p in level_priority.items() if p >= min_priority]
            query += f" AND level IN ({_placeholders(levels)})"
            params.extend(levels)

        if request_id:
            query += " AND request_id = ?"
            params.append(request_id)

        if since:
            query += " AND timestamp >= ?"
            params.append(since)

        query += " ORDER BY timestamp DESC, id DESC LIMIT ?"
        params.append(limit)

        async with self._connect() as db:
            async with db.execute(query, params) as cursor:
                rows = await cursor.fetchall()
                return [ActivityLogEntry(
                    id=row["id"],
                    timestamp=row["timestamp"],
                    request_id=row["request_id"],
                    upstream_id=row["upstream_id"],
                    title=row["title"],
                    action=row["action"],
                    details=row["details"],
                    level=row["level"],
                ) for row in rows]

    async def prune_activity_log(self, max_entries: int = 10000) -> int:
        """Prune old activity log entries. Returns count deleted."""
        async with self._connect() as db:
            async with db.execute("SELECT COUNT(*) FROM activity_log") as cursor:
                row = await cursor.fetchone()
                total = row[0] if row else 0

            if total <= max_entries:
                return 0

            to_delete = total - max_entries
            await db.execute("""
                DELETE FROM activity_log WHERE id IN (
                    SELECT id FROM activity_log ORDER BY timestamp ASC, id ASC LIMIT ?
                )
            """, (to_delete,))
            await db.commit()
            return to_delete

    # -------------------------------------------------------------------------
    # Utility Operations
    # -------------------------------------------------------------------------

    async def get_stats(self) -> Dict:
        """Get database statistics."""
        async with self._connect() as db:
            stats = {}

            for table in ["requests", "torrents", "webhook_jobs", "settings", "activity_log"]:
                async with db.execute(f"SELECT COUNT(*) FROM {table}") as cursor:
                    row = await cursor.fetchone()
                    stats[table] = row[0] if row else 0

            async with db.execute(
                "SELECT status, COUNT(*) AS n FROM requests GROUP BY status"
            ) as cursor:
                stats["requests_by_status"] = {
                    row["status"]: row["n"] for row in await cursor.fetchall()
                }

            return stats
