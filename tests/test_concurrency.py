"""
Tests for concurrent writers on the same request.
Webhook deliveries, reconciliation runs and selections racing each other
must converge through the store's uniqueness constraints.
"""

import asyncio
from dataclasses import replace

import pytest

from pickrr.models import MediaKind, UpstreamPage, UpstreamPageInfo, UpstreamRequest, WebhookJob
from pickrr.reconcile import ReconciliationJob
from pickrr.status import RequestStatus
from pickrr.webhook import ingest_job


def listing(upstream_id, catalog_id):
    item = UpstreamRequest.model_validate({
        "id": upstream_id,
        "status": 2,
        "type": "movie",
        "media": {"id": 1, "tmdbId": catalog_id, "mediaType": "movie", "status": 2},
        "requestedBy": {"displayName": "Alice"},
    })
    return UpstreamPage(page_info=UpstreamPageInfo(pages=1, page=1, results=1), results=[item])


class TestRequestUpsertConcurrency:
    """Racing writers for one upstream id."""

    @pytest.mark.asyncio
    async def test_webhooks_and_syncs_leave_one_row(self, persistence, upstream, metadata):
        upstream.list_requests.return_value = listing(42, 603)
        job = WebhookJob(42, 603, MediaKind.MOVIE, "The Matrix", "alice")
        sync = ReconciliationJob(persistence, upstream, metadata=metadata)

        results = await asyncio.gather(
            *[ingest_job(job, persistence, metadata) for _ in range(10)],
            *[sync.run() for _ in range(5)],
            return_exceptions=True,
        )

        errors = [r for r in results if isinstance(r, Exception)]
        assert errors == []
        stats = await persistence.get_stats()
        assert stats["requests"] == 1

        created = [r[1] for r in results[:10]]
        imported = sum(r.imported for r in results[10:])
        assert created.count(True) + imported == 1

    @pytest.mark.asyncio
    async def test_concurrent_webhooks_keep_local_status(self, persistence, make_request):
        await persistence.insert_request_if_absent(
            make_request(upstream_id=42, status=RequestStatus.DOWNLOADING)
        )
        job = WebhookJob(42, 603, MediaKind.MOVIE, "The Matrix", "alice")

        await asyncio.gather(*[ingest_job(job, persistence) for _ in range(10)])

        stored = await persistence.get_request_by_upstream_id(42)
        assert stored.status == RequestStatus.DOWNLOADING
        assert (await persistence.get_stats())["requests"] == 1


class TestTorrentUpsertConcurrency:
    """Racing selections for one (request, season)."""

    @pytest.mark.asyncio
    async def test_one_row_per_season(self, persistence, make_request, make_torrent):
        request = make_request(media_kind=MediaKind.SERIES, seasons=[1, 2])
        await persistence.insert_request_if_absent(request)
        base = make_torrent(request.id, season_number=1)
        selections = [
            replace(base, id=f"sel-{i}", title=f"Show.S01.Pick{i}") for i in range(8)
        ]

        stored = await asyncio.gather(*[persistence.upsert_torrent(t) for t in selections])

        rows = (await persistence.get_request(request.id)).torrents
        assert len(rows) == 1
        assert rows[0].season_number == 1
        assert rows[0].title in {t.title for t in selections}
        assert {t.id for t in stored} == {rows[0].id}

    @pytest.mark.asyncio
    async def test_different_seasons_do_not_collide(self, persistence, make_request, make_torrent):
        request = make_request(media_kind=MediaKind.SERIES, seasons=[1, 2, 3])
        await persistence.insert_request_if_absent(request)

        await asyncio.gather(*[
            persistence.upsert_torrent(make_torrent(request.id, season_number=s))
            for s in (1, 2, 3)
        ])

        rows = (await persistence.get_request(request.id)).torrents
        assert [t.season_number for t in rows] == [1, 2, 3]
