"""
Pytest configuration and shared fixtures.
"""

import time
from unittest.mock import AsyncMock, MagicMock

import pytest

from pickrr.models import MediaKind, Request, Torrent
from pickrr.status import RequestStatus


# ============================================================================
# Persistence Fixtures
# ============================================================================

@pytest.fixture
def temp_db_path(tmp_path):
    """Create a temporary database path."""
    return str(tmp_path / "test.db")


@pytest.fixture
async def persistence(temp_db_path):
    """Create an initialized persistence manager."""
    from pickrr.persistence import PersistenceManager

    manager = PersistenceManager(temp_db_path)
    await manager.initialize()
    yield manager
    await manager.close()


@pytest.fixture
def config_store(persistence):
    """Config store that ignores the process environment."""
    from pickrr.config import ConfigStore

    return ConfigStore(persistence, environ={})


# ============================================================================
# External Service Mocks
# ============================================================================

@pytest.fixture
def download_client():
    """Mock qBittorrent client."""
    client = MagicMock()
    client.service_name = "qbittorrent"
    client.configured = True
    client.add_torrent = AsyncMock(return_value=None)
    client.list_torrents = AsyncMock(return_value=[])
    client.get_relevant_torrents = AsyncMock(return_value=[])
    client.find_hash_by_name = AsyncMock(return_value=None)
    client.pause = AsyncMock()
    client.resume = AsyncMock()
    client.delete = AsyncMock()
    client.test_connection = AsyncMock(return_value=(True, "Connected"))
    client.close = AsyncMock()
    return client


@pytest.fixture
def upstream():
    """Mock request manager client."""
    client = MagicMock()
    client.service_name = "overseerr"
    client.configured = True
    client.list_requests = AsyncMock()
    client.get_request = AsyncMock(return_value=None)
    client.approve_request = AsyncMock()
    client.delete_request = AsyncMock()
    client.mark_available = AsyncMock()
    client.test_connection = AsyncMock(return_value=(True, "Connected"))
    client.close = AsyncMock()
    return client


def _library(name):
    client = MagicMock()
    client.service_name = name
    client.configured = True
    client.trigger_import_scan = AsyncMock()
    client.delete_by_catalog_id = AsyncMock(return_value=True)
    client.test_connection = AsyncMock(return_value=(True, "Connected"))
    client.close = AsyncMock()
    return client


@pytest.fixture
def radarr():
    return _library("radarr")


@pytest.fixture
def sonarr():
    return _library("sonarr")


@pytest.fixture
def metadata():
    """Mock metadata provider; unconfigured unless a test says otherwise."""
    client = MagicMock()
    client.service_name = "tmdb"
    client.configured = False
    client.get_metadata = AsyncMock(return_value=None)
    client.test_connection = AsyncMock(return_value=(True, "Connected"))
    client.close = AsyncMock()
    return client


@pytest.fixture
def runner():
    from pickrr.tasks import BestEffortRunner

    return BestEffortRunner()


# ============================================================================
# Sample Data Fixtures
# ============================================================================

@pytest.fixture
def make_request():
    """Factory for local request rows."""
    counter = {"n": 0}

    def _make(
        upstream_id=None,
        media_kind=MediaKind.MOVIE,
        status=RequestStatus.AWAITING_SELECTION,
        title="Test Movie",
        catalog_id=603,
        seasons=None,
    ):
        counter["n"] += 1
        now = time.time()
        return Request(
            id=f"req-{counter['n']}",
            upstream_id=upstream_id if upstream_id is not None else 100 + counter["n"],
            catalog_id=catalog_id,
            media_kind=media_kind,
            title=title,
            status=status,
            requested_by="alice",
            requested_at=now,
            created_at=now,
            updated_at=now,
            seasons=seasons,
        )
    return _make


@pytest.fixture
def make_torrent():
    """Factory for selection rows."""
    def _make(request_id, season_number=0, title="Test.Movie.2024.1080p", torrent_hash=None):
        return Torrent(
            id=f"t-{request_id}-{season_number}",
            request_id=request_id,
            season_number=season_number,
            title=title,
            indexer_name="TestIndexer",
            size_bytes=1500000000,
            seeders=42,
            leechers=3,
            selected_by="admin",
            selected_at=time.time(),
            magnet_url=None,
            download_client_hash=torrent_hash,
        )
    return _make


MAGNET_HASH = "c12fe1c06bba254a9dc9f519b335aa7c1367a88a"
MAGNET = f"magnet:?xt=urn:btih:{MAGNET_HASH.upper()}&dn=Test.Movie.2024.1080p"


@pytest.fixture
def magnet():
    return MAGNET


@pytest.fixture
def magnet_hash():
    return MAGNET_HASH


# ============================================================================
# Logging Fixtures
# ============================================================================

@pytest.fixture
def activity_log_handler():
    """Create an activity log handler for tests."""
    from pickrr.logging_config import ActivityLogHandler

    return ActivityLogHandler(max_entries=100)


@pytest.fixture
def clean_logging():
    """Clean up logging handlers before and after test."""
    import logging

    root = logging.getLogger()
    original_handlers = root.handlers[:]
    original_level = root.level

    yield

    # Restore original state
    for handler in root.handlers[:]:
        root.removeHandler(handler)
    for handler in original_handlers:
        root.addHandler(handler)
    root.setLevel(original_level)
