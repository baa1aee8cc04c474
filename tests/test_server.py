"""
Tests for the Pickrr HTTP API
"""

from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

from pickrr.config import WEBHOOK_SECRET, Settings
from pickrr.downloads import CompletionPoller
from pickrr.exceptions import DownloadClientError
from pickrr.models import ClientTorrent, UpstreamPage
from pickrr.reconcile import ReconciliationJob
from pickrr.rejection import RejectionWorkflow
from pickrr.selection import SelectionWorkflow
from pickrr.services import Services
from pickrr.status import RequestStatus
from pickrr.webhook import JobQueue, WebhookPipeline

MAGNET = "magnet:?xt=urn:btih:c12fe1c06bba254a9dc9f519b335aa7c1367a88a&dn=Test"


@pytest.fixture
def services(
    persistence, config_store, runner, metadata, download_client, upstream, radarr, sonarr,
):
    """Services wired to a real store and mocked external clients."""
    queue = JobQueue(persistence)
    return Services(
        settings=Settings(_env_file=None),
        persistence=persistence,
        config=config_store,
        runner=runner,
        metadata=metadata,
        qbit=download_client,
        overseerr=upstream,
        radarr=radarr,
        sonarr=sonarr,
        queue=queue,
        webhook=WebhookPipeline(persistence, config_store, queue, metadata=metadata),
        reconciliation=ReconciliationJob(persistence, upstream, metadata=metadata),
        selection=SelectionWorkflow(persistence, config_store, download_client, upstream, runner),
        poller=CompletionPoller(persistence, download_client, upstream, radarr, sonarr, runner),
        rejection=RejectionWorkflow(persistence, download_client, upstream, radarr, sonarr, runner),
    )


@pytest.fixture
def client(services):
    """Create test client with mocked services."""
    from pickrr.server import app

    with patch("pickrr.server.services", services):
        yield TestClient(app)


def approved(upstream_id=42):
    return {
        "notification_type": "MEDIA_APPROVED",
        "subject": "The Matrix (1999)",
        "media": {"media_type": "movie", "tmdbId": "603"},
        "request": {"request_id": str(upstream_id), "requestedBy_username": "alice"},
    }


class TestWebhookEndpoint:

    def test_creates_request(self, client):
        response = client.post("/api/webhook/overseerr", json=approved())
        assert response.status_code == 200
        body = response.json()
        assert body["ok"] is True
        assert body["created"] is True

        listed = client.get("/api/requests").json()
        assert len(listed) == 1
        assert listed[0]["status"] == "awaiting_selection"
        assert listed[0]["upstreamId"] == 42

    def test_invalid_json(self, client):
        response = client.post(
            "/api/webhook/overseerr", content=b"{oops",
            headers={"Content-Type": "application/json"},
        )
        assert response.status_code == 400
        assert response.json()["ok"] is False

    def test_ignored_event(self, client):
        response = client.post("/api/webhook/overseerr", json={"notification_type": "TEST"})
        assert response.status_code == 200
        assert response.json() == {"ok": True, "skipped": True}

    @pytest.mark.asyncio
    async def test_secret_required(self, client, config_store):
        await config_store.set(WEBHOOK_SECRET, "s3cret")

        assert client.post("/api/webhook/overseerr", json=approved()).status_code == 401
        assert client.post(
            "/api/webhook/overseerr", json=approved(), headers={"X-Webhook-Secret": "bad"}
        ).status_code == 401
        assert client.post(
            "/api/webhook/overseerr?secret=s3cret", json=approved()
        ).status_code == 200
        assert client.post(
            "/api/webhook/overseerr", json=approved(43),
            headers={"Authorization": "Bearer s3cret"},
        ).status_code == 200


class TestRequestEndpoints:

    @pytest.mark.asyncio
    async def test_list_and_filter(self, client, persistence, make_request):
        await persistence.insert_request_if_absent(make_request(status=RequestStatus.DONE))
        await persistence.insert_request_if_absent(make_request())

        assert len(client.get("/api/requests").json()) == 2
        done = client.get("/api/requests?status=done,failed").json()
        assert [r["status"] for r in done] == ["done"]
        assert client.get("/api/requests?status=bogus").status_code == 400

    @pytest.mark.asyncio
    async def test_get_one(self, client, persistence, make_request):
        request = make_request()
        await persistence.insert_request_if_absent(request)

        body = client.get(f"/api/requests/{request.id}").json()
        assert body["id"] == request.id
        assert body["torrents"] == []
        assert client.get("/api/requests/nope").status_code == 404

    @pytest.mark.asyncio
    async def test_history(self, client, persistence, make_request):
        await persistence.insert_request_if_absent(make_request(status=RequestStatus.DONE))
        await persistence.insert_request_if_absent(make_request(status=RequestStatus.FAILED))
        await persistence.insert_request_if_absent(make_request())

        statuses = {r["status"] for r in client.get("/api/history").json()}
        assert statuses == {"done", "failed"}

    def test_sync(self, client, upstream):
        upstream.list_requests.return_value = UpstreamPage.model_validate({
            "pageInfo": {"pages": 1},
            "results": [{"id": 5, "status": 2, "media": {"tmdbId": 11, "status": 2}}],
        })
        body = client.post("/api/requests/sync").json()
        assert body["ok"] is True
        assert body["imported"] == 1

    @pytest.mark.asyncio
    async def test_reject_with_empty_body(self, client, persistence, make_request, upstream):
        request = make_request()
        await persistence.insert_request_if_absent(request)

        response = client.post(f"/api/requests/{request.id}/reject")
        assert response.status_code == 200
        assert response.json() == {"ok": True, "stopped": []}
        assert client.get(f"/api/requests/{request.id}").status_code == 404

    def test_reject_unknown(self, client):
        response = client.post("/api/requests/nope/reject", json={"stopDownload": True})
        assert response.status_code == 404
        assert response.json()["ok"] is False


class TestDownloadEndpoints:

    @pytest.mark.asyncio
    async def test_grab(self, client, persistence, make_request):
        request = make_request()
        await persistence.insert_request_if_absent(request)

        response = client.post("/api/download", json={
            "requestId": request.id,
            "title": "Test.Movie.1080p",
            "indexer": "Idx",
            "size": 123,
            "magnetUrl": MAGNET,
        }, headers={"X-Pickrr-User": "bob"})
        assert response.status_code == 200
        body = response.json()
        assert body["linked"] is True
        assert body["torrent"]["selectedBy"] == "bob"

        stored = client.get(f"/api/requests/{request.id}").json()
        assert stored["status"] == "downloading"

    def test_grab_validation(self, client):
        response = client.post("/api/download", json={"indexer": "Idx", "size": -1})
        assert response.status_code == 400
        fields = {e["field"] for e in response.json()["detail"]}
        assert {"title", "size"} <= fields

    def test_grab_without_source(self, client):
        response = client.post("/api/download", json={"title": "x", "indexer": "i", "size": 1})
        assert response.status_code == 400

    def test_grab_download_client_down(self, client, download_client):
        download_client.add_torrent.side_effect = DownloadClientError("qbittorrent unreachable")
        response = client.post("/api/download", json={
            "title": "x", "indexer": "i", "size": 1, "magnetUrl": MAGNET,
        })
        assert response.status_code == 502
        assert response.json() == {"ok": False, "error": "qbittorrent unreachable"}

    def test_downloads(self, client, download_client):
        download_client.get_relevant_torrents.return_value = [
            ClientTorrent(hash="ABC", name="Thing", size=2 ** 40, progress=0.3),
        ]
        body = client.get("/api/downloads").json()
        assert body[0]["hash"] == "abc"
        assert body[0]["size"] == str(2 ** 40)

    def test_remove_action(self, client, download_client):
        response = client.post("/api/downloads/remove", json={"hash": "ABC", "action": "pause"})
        assert response.status_code == 200
        download_client.pause.assert_awaited_once_with(["abc"])

        bad = client.post("/api/downloads/remove", json={"hash": "ABC", "action": "explode"})
        assert bad.status_code == 400


class TestOperationalEndpoints:

    def test_service_test(self, client, upstream):
        upstream.test_connection.return_value = (False, "overseerr returned HTTP 401")
        body = client.post("/api/settings/test", json={"service": "overseerr"}).json()
        assert body["ok"] is False
        assert body["service"] == "overseerr"
        assert "401" in body["error"]

        assert client.post("/api/settings/test", json={"service": "plex"}).status_code == 400

    def test_health(self, client):
        body = client.get("/health").json()
        assert body["status"] == "healthy"
        assert body["components"]["store"]["ok"] is True
        assert body["components"]["qbittorrent"]["configured"] is True

    def test_health_before_startup(self):
        from pickrr.server import app

        with patch("pickrr.server.services", None):
            response = TestClient(app).get("/health")
        assert response.status_code == 503

    def test_endpoints_unavailable_before_startup(self):
        from pickrr.server import app

        with patch("pickrr.server.services", None):
            response = TestClient(app).get("/api/requests")
        assert response.status_code == 503

    def test_logs(self, client, activity_log_handler):
        import logging

        with patch("pickrr.server.activity_log_handler", activity_log_handler):
            activity_log_handler.emit(logging.LogRecord(
                "pickrr", logging.INFO, "x.py", 1, "hello", (), None,
            ))
            body = client.get("/api/logs").json()
        assert body["count"] == 1
        assert body["logs"][0]["message"] == "hello"


class TestSanitizeErrorMessage:

    def test_sensitive_message_hidden(self):
        from pickrr.server import sanitize_error_message

        assert "internal error" in sanitize_error_message(Exception("bad password for admin"))

    def test_long_message_truncated(self):
        from pickrr.server import sanitize_error_message

        assert sanitize_error_message(Exception("x" * 500)).endswith("...")
