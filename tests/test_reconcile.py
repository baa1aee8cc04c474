"""
Tests for the reconciliation job.
"""

import pytest

from pickrr.exceptions import MetadataProviderError, UpstreamError
from pickrr.metadata_client import MediaMetadata
from pickrr.models import MediaKind, UpstreamPage, UpstreamPageInfo, UpstreamRequest
from pickrr.reconcile import ReconciliationJob
from pickrr.status import RequestStatus


def item(upstream_id, status=2, media_status=2, kind="movie", tmdb_id=None, seasons=None):
    return UpstreamRequest.model_validate({
        "id": upstream_id,
        "status": status,
        "type": kind,
        "createdAt": "2024-05-01T12:00:00.000Z",
        "media": {
            "id": 1000 + upstream_id,
            "tmdbId": tmdb_id if tmdb_id is not None else 500 + upstream_id,
            "mediaType": kind,
            "status": media_status,
        },
        "seasons": [{"seasonNumber": s} for s in (seasons or [])],
        "requestedBy": {"displayName": "Alice"},
    })


def page(items, pages=1, number=1):
    return UpstreamPage(
        page_info=UpstreamPageInfo(pages=pages, page=number, results=len(items)),
        results=items,
    )


@pytest.fixture
def job(persistence, upstream, metadata):
    return ReconciliationJob(persistence, upstream, metadata=metadata, max_pages=5, page_size=2)


class TestImport:

    @pytest.mark.asyncio
    async def test_imports_new_items(self, job, upstream, persistence):
        upstream.list_requests.return_value = page([item(1), item(2, media_status=5)])

        result = await job.run()
        assert result.imported == 2
        assert result.errors == []

        first = await persistence.get_request_by_upstream_id(1)
        assert first.status == RequestStatus.AWAITING_SELECTION
        assert first.title == "Request #1"
        assert first.requested_by == "Alice"
        assert first.catalog_id == 501
        second = await persistence.get_request_by_upstream_id(2)
        assert second.status == RequestStatus.AVAILABLE

    @pytest.mark.asyncio
    async def test_second_run_is_a_no_op(self, job, upstream, persistence):
        upstream.list_requests.return_value = page([item(1), item(2)])
        await job.run()

        result = await job.run()
        assert result.to_dict() == {
            "imported": 0, "updated": 0, "pruned": 0, "skipped": 0, "errors": [],
        }
        assert (await persistence.get_stats())["requests"] == 2

    @pytest.mark.asyncio
    async def test_series_seasons_sorted(self, job, upstream, persistence):
        upstream.list_requests.return_value = page([item(3, kind="tv", seasons=[3, 1, 2])])
        await job.run()

        request = await persistence.get_request_by_upstream_id(3)
        assert request.media_kind == MediaKind.SERIES
        assert request.seasons == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_declined_imported_as_declined(self, job, upstream, persistence):
        upstream.list_requests.return_value = page([item(4, status=3)])
        await job.run()
        assert (await persistence.get_request_by_upstream_id(4)).status == RequestStatus.DECLINED

    @pytest.mark.asyncio
    async def test_uses_metadata(self, job, upstream, persistence, metadata):
        metadata.configured = True
        metadata.get_metadata.return_value = MediaMetadata(title="Dune", year=2021)
        upstream.list_requests.return_value = page([item(5)])

        await job.run()
        request = await persistence.get_request_by_upstream_id(5)
        assert request.title == "Dune"
        assert request.year == 2021

    @pytest.mark.asyncio
    async def test_failed_item_is_skipped(self, job, upstream, persistence, metadata):
        metadata.configured = True
        metadata.get_metadata.side_effect = [
            MetadataProviderError("tmdb unreachable"),
            MediaMetadata(title="Fine"),
        ]
        upstream.list_requests.return_value = page([item(6), item(7)])

        result = await job.run()
        assert result.imported == 1
        assert result.skipped == 1
        assert await persistence.get_request_by_upstream_id(6) is None
        assert (await persistence.get_request_by_upstream_id(7)).title == "Fine"

    @pytest.mark.asyncio
    async def test_item_without_catalog_id_skipped(self, job, upstream):
        upstream.list_requests.return_value = page([item(8, tmdb_id=0)])
        result = await job.run()
        assert result.skipped == 1
        assert result.imported == 0


class TestUpdateAndPrune:

    @pytest.mark.asyncio
    async def test_updates_derived_status(self, job, upstream, persistence):
        upstream.list_requests.return_value = page([item(1)])
        await job.run()

        upstream.list_requests.return_value = page([item(1, media_status=5)])
        result = await job.run()
        assert result.updated == 1
        assert (await persistence.get_request_by_upstream_id(1)).status == RequestStatus.AVAILABLE

    @pytest.mark.asyncio
    @pytest.mark.parametrize("local_status", [
        RequestStatus.SELECTED, RequestStatus.DOWNLOADING,
        RequestStatus.DONE, RequestStatus.FAILED,
    ])
    async def test_locally_managed_status_preserved(
        self, job, upstream, persistence, local_status
    ):
        upstream.list_requests.return_value = page([item(1)])
        await job.run()
        request = await persistence.get_request_by_upstream_id(1)
        await persistence.update_status(request.id, local_status)

        upstream.list_requests.return_value = page([item(1, status=3, media_status=5)])
        result = await job.run()
        assert result.updated == 0
        assert (await persistence.get_request(request.id)).status == local_status

    @pytest.mark.asyncio
    async def test_prunes_requests_gone_upstream(self, job, upstream, persistence):
        upstream.list_requests.return_value = page([item(1), item(2)])
        await job.run()

        upstream.list_requests.return_value = page([item(2)])
        result = await job.run()
        assert result.pruned == 1
        assert await persistence.get_request_by_upstream_id(1) is None
        assert await persistence.get_request_by_upstream_id(2) is not None

    @pytest.mark.asyncio
    async def test_prune_applies_to_locally_managed(self, job, upstream, persistence):
        upstream.list_requests.return_value = page([item(1)])
        await job.run()
        request = await persistence.get_request_by_upstream_id(1)
        await persistence.update_status(request.id, RequestStatus.DOWNLOADING)

        upstream.list_requests.return_value = page([])
        result = await job.run()
        assert result.pruned == 1

    @pytest.mark.asyncio
    async def test_page_error_disables_prune(self, job, upstream, persistence):
        upstream.list_requests.return_value = page([item(1), item(2)])
        await job.run()

        upstream.list_requests.side_effect = [
            page([item(1)], pages=2),
            UpstreamError("overseerr returned HTTP 500"),
        ]
        result = await job.run()
        assert result.pruned == 0
        assert len(result.errors) == 1
        assert "Page 2" in result.errors[0]
        assert (await persistence.get_stats())["requests"] == 2

    @pytest.mark.asyncio
    async def test_page_limit_disables_prune(self, persistence, upstream, make_request):
        job = ReconciliationJob(persistence, upstream, max_pages=1, page_size=1)
        await persistence.insert_request_if_absent(make_request(upstream_id=99))

        upstream.list_requests.return_value = page([item(1)], pages=3)
        result = await job.run()
        assert result.pruned == 0
        assert await persistence.get_request_by_upstream_id(99) is not None


class TestCollect:

    @pytest.mark.asyncio
    async def test_pages_until_exhausted(self, job, upstream):
        from pickrr.reconcile import SyncResult

        upstream.list_requests.side_effect = [
            page([item(1), item(2)], pages=2, number=1),
            page([item(3)], pages=2, number=2),
        ]
        collected, complete = await job.collect(SyncResult())
        assert complete is True
        assert sorted(collected) == [1, 2, 3]
        assert [c.args for c in upstream.list_requests.await_args_list] == [(1, 2), (2, 2)]
