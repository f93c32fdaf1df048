"""Tests for the IndexingDecoupler."""

import asyncio
from datetime import datetime, timezone

import pytest

from sitecorpus.exceptions import WebsiteNotFoundError
from sitecorpus.models.index_models import DocumentState, OperationResult
from sitecorpus.models.website_models import (
    JobStatus,
    JobType,
    PageStatus,
    PageUpdate,
    utc_now,
)
from sitecorpus.services.indexing import IndexingDecoupler, chunked

HOME = "https://acme.com/"
ABOUT = "https://acme.com/about"


@pytest.fixture
def decoupler(store, index_service, test_settings):
    return IndexingDecoupler(store, index_service, test_settings)


def staged(store, website, url, status=PageStatus.READY_FOR_INDEXING, **fields):
    fields.setdefault("markdown_content", f"Text of {url}")
    return store.add_page(website.id, url, status=status, title=f"Title {url}", **fields)


class TestChunked:
    def test_splits_evenly_and_keeps_remainder(self):
        assert [list(c) for c in chunked([1, 2, 3, 4, 5], 2)] == [[1, 2], [3, 4], [5]]


class TestUploads:
    """Pages staged for (re-)indexing."""

    @pytest.mark.asyncio
    async def test_ready_page_becomes_active(self, decoupler, store, index_service, website):
        page = staged(store, website, HOME, path="/")

        result = await decoupler.index(website.id)

        page = store.page(website.id, HOME)
        assert page.status == PageStatus.ACTIVE
        assert page.index_document_id.startswith("fileSearchStores/acme/documents/")
        assert page.index_operation_id is None
        assert page.error_message is None
        assert result.indexed == 1
        assert result.document_states["active"] == 1

        container, text, metadata = index_service.uploads[0]
        assert container == "fileSearchStores/acme"
        assert text == "Text of https://acme.com/"
        assert metadata.url == HOME
        assert metadata.title == f"Title {HOME}"

        job = store.get_job(result.job_id)
        assert job.job_type == JobType.INDEXING
        assert job.status == JobStatus.COMPLETED
        assert job.urls_updated == 1

    @pytest.mark.asyncio
    async def test_re_index_retires_stale_document_first(
        self, decoupler, store, index_service, website
    ):
        staged(
            store,
            website,
            ABOUT,
            status=PageStatus.READY_FOR_RE_INDEXING,
            stale_index_document_id="fileSearchStores/acme/documents/old",
        )

        await decoupler.index(website.id)

        page = store.page(website.id, ABOUT)
        assert index_service.deleted == ["fileSearchStores/acme/documents/old"]
        assert page.status == PageStatus.ACTIVE
        assert page.stale_index_document_id is None
        assert page.index_document_id != "fileSearchStores/acme/documents/old"

    @pytest.mark.asyncio
    async def test_upload_failure_leaves_page_ready(self, decoupler, store, index_service, website):
        staged(store, website, HOME)
        staged(store, website, ABOUT)
        index_service.upload_errors.add(ABOUT)

        result = await decoupler.index(website.id)

        assert store.page(website.id, HOME).status == PageStatus.ACTIVE
        about = store.page(website.id, ABOUT)
        assert about.status == PageStatus.READY_FOR_INDEXING
        assert "Upload failed" in about.error_message
        assert result.indexed == 1
        assert [e.url for e in result.errors] == [ABOUT]
        assert store.get_job(result.job_id).status == JobStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_stale_document_delete_failure_does_not_block_upload(
        self, decoupler, store, index_service, website
    ):
        staged(
            store,
            website,
            ABOUT,
            status=PageStatus.READY_FOR_RE_INDEXING,
            stale_index_document_id="fileSearchStores/acme/documents/old",
        )
        index_service.delete_errors.add("fileSearchStores/acme/documents/old")

        result = await decoupler.index(website.id)

        page = store.page(website.id, ABOUT)
        assert index_service.uploaded_urls() == [ABOUT]
        assert page.status == PageStatus.ACTIVE
        assert page.stale_index_document_id == "fileSearchStores/acme/documents/old"
        assert result.indexed == 1

    @pytest.mark.asyncio
    async def test_leftover_stale_document_is_retired_next_run(
        self, decoupler, store, index_service, website
    ):
        staged(
            store,
            website,
            ABOUT,
            status=PageStatus.ACTIVE,
            index_document_id="fileSearchStores/acme/documents/new",
            stale_index_document_id="fileSearchStores/acme/documents/old",
        )

        await decoupler.index(website.id)

        page = store.page(website.id, ABOUT)
        assert index_service.deleted == ["fileSearchStores/acme/documents/old"]
        assert index_service.uploads == []
        assert page.status == PageStatus.ACTIVE
        assert page.stale_index_document_id is None
        assert page.index_document_id == "fileSearchStores/acme/documents/new"

    @pytest.mark.asyncio
    async def test_processing_operation_is_resumed_next_run(
        self, decoupler, store, index_service, website
    ):
        staged(store, website, HOME)
        index_service.outcome_for_url[HOME] = DocumentState.PROCESSING

        first = await decoupler.index(website.id)

        page = store.page(website.id, HOME)
        assert page.status == PageStatus.READY_FOR_INDEXING
        assert page.index_operation_id is not None
        assert first.document_states["processing"] == 1

        operation_id = page.index_operation_id
        index_service.operations[operation_id] = OperationResult(
            operation_id=operation_id,
            state=DocumentState.ACTIVE,
            document_id="fileSearchStores/acme/documents/late",
        )

        second = await decoupler.index(website.id)

        page = store.page(website.id, HOME)
        assert len(index_service.uploads) == 1
        assert page.status == PageStatus.ACTIVE
        assert page.index_document_id == "fileSearchStores/acme/documents/late"
        assert second.indexed == 1

    @pytest.mark.asyncio
    async def test_operation_handle_survives_poll_failure(
        self, decoupler, store, index_service, website
    ):
        staged(store, website, HOME)
        original_upload = index_service.upload

        async def upload_then_lose_track(container_id, text, metadata):
            operation_id = await original_upload(container_id, text, metadata)
            index_service.poll_errors.add(operation_id)
            return operation_id

        index_service.upload = upload_then_lose_track

        result = await decoupler.index(website.id)

        page = store.page(website.id, HOME)
        assert page.status == PageStatus.READY_FOR_INDEXING
        assert page.index_operation_id in index_service.operations
        assert result.document_states["processing"] == 1

    @pytest.mark.asyncio
    async def test_rejected_document_is_removed(self, decoupler, store, index_service, website):
        staged(store, website, HOME)
        index_service.outcome_for_url[HOME] = DocumentState.FAILED

        result = await decoupler.index(website.id)

        page = store.page(website.id, HOME)
        assert page.status == PageStatus.READY_FOR_INDEXING
        assert page.index_operation_id is None
        assert page.index_document_id is None
        assert "Indexing failed" in page.error_message
        assert len(index_service.deleted) == 1
        assert result.document_states["failed"] == 1

    @pytest.mark.asyncio
    async def test_page_without_text_is_not_uploaded(self, decoupler, store, index_service, website):
        store.add_page(website.id, HOME, status=PageStatus.READY_FOR_INDEXING)

        result = await decoupler.index(website.id)

        assert index_service.uploads == []
        assert store.page(website.id, HOME).error_message == "No captured text to index"
        assert result.document_states["error"] == 1

    @pytest.mark.asyncio
    async def test_sub_batches_cover_all_pages(self, store, index_service, website, test_settings):
        test_settings.index_concurrency = 2
        decoupler = IndexingDecoupler(store, index_service, test_settings)
        for n in range(5):
            staged(store, website, f"https://acme.com/p{n}")

        result = await decoupler.index(website.id)

        assert result.indexed == 5
        assert store.count_pages_by_status(website.id) == {"active": 5}


class TestDeletions:
    """Pages marked for deletion."""

    @pytest.mark.asyncio
    async def test_marked_page_is_tombstoned(self, decoupler, store, index_service, website):
        staged(
            store,
            website,
            ABOUT,
            status=PageStatus.READY_FOR_DELETION,
            index_document_id="fileSearchStores/acme/documents/d1",
        )

        result = await decoupler.index(website.id)

        page = store.page(website.id, ABOUT)
        assert page.status == PageStatus.DELETED
        assert page.index_document_id is None
        assert index_service.deleted == ["fileSearchStores/acme/documents/d1"]
        assert result.deleted == 1
        assert store.get_job(result.job_id).urls_deleted == 1

    @pytest.mark.asyncio
    async def test_delete_failure_keeps_page_marked(self, decoupler, store, index_service, website):
        staged(
            store,
            website,
            ABOUT,
            status=PageStatus.READY_FOR_DELETION,
            index_document_id="fileSearchStores/acme/documents/d1",
        )
        index_service.delete_errors.add("fileSearchStores/acme/documents/d1")

        result = await decoupler.index(website.id)

        page = store.page(website.id, ABOUT)
        assert page.status == PageStatus.READY_FOR_DELETION
        assert page.index_document_id == "fileSearchStores/acme/documents/d1"
        assert "Failed to delete document" in page.error_message
        assert result.deleted == 0

    @pytest.mark.asyncio
    async def test_never_indexed_page_is_tombstoned_without_calls(
        self, decoupler, store, index_service, website
    ):
        store.add_page(website.id, ABOUT, status=PageStatus.READY_FOR_DELETION)

        await decoupler.index(website.id)

        assert store.page(website.id, ABOUT).status == PageStatus.DELETED
        assert index_service.deleted == []


class TestScopeAndContainer:
    """Job scoping and index container handling."""

    @pytest.mark.asyncio
    async def test_job_scope_limits_uploads_not_deletions(
        self, decoupler, store, index_service, website
    ):
        staged(store, website, HOME, created_by_job_id="job-a")
        staged(store, website, ABOUT, last_updated_by_sync_id="job-b")
        store.add_page(website.id, "https://acme.com/old", status=PageStatus.READY_FOR_DELETION)

        result = await decoupler.index(website.id, job_id="job-a")

        assert index_service.uploaded_urls() == [HOME]
        assert store.page(website.id, ABOUT).status == PageStatus.READY_FOR_INDEXING
        assert store.page(website.id, "https://acme.com/old").status == PageStatus.DELETED
        assert store.get_job(result.job_id).parent_job_id == "job-a"

    @pytest.mark.asyncio
    async def test_missing_container_is_created(self, decoupler, store, index_service, website):
        store.websites[website.id] = website.model_copy(update={"index_store_id": None})
        staged(store, website, HOME)

        await decoupler.index(website.id)

        assert len(index_service.containers) == 1
        assert store.get_website(website.id).index_store_id == index_service.containers[0]
        assert index_service.uploads[0][0] == index_service.containers[0]

    @pytest.mark.asyncio
    async def test_unknown_website(self, decoupler):
        with pytest.raises(WebsiteNotFoundError):
            await decoupler.index("missing")

    @pytest.mark.asyncio
    async def test_nothing_staged(self, decoupler, store, website):
        result = await decoupler.index(website.id)

        assert result.indexed == 0
        assert store.get_job(result.job_id).status == JobStatus.COMPLETED


class TestBatchLimit:
    """One page budget per run, deletions first."""

    @pytest.mark.asyncio
    async def test_limit_is_shared_across_statuses(
        self, store, index_service, website, test_settings
    ):
        test_settings.index_batch_limit = 2
        decoupler = IndexingDecoupler(store, index_service, test_settings)
        store.add_page(website.id, "https://acme.com/old", status=PageStatus.READY_FOR_DELETION)
        staged(store, website, "https://acme.com/p0")
        staged(store, website, "https://acme.com/p1", status=PageStatus.READY_FOR_RE_INDEXING)
        staged(store, website, "https://acme.com/p2")

        result = await decoupler.index(website.id)

        assert result.deleted == 1
        assert result.indexed == 1
        assert index_service.uploaded_urls() == ["https://acme.com/p0"]
        assert store.get_job(result.job_id).urls_discovered == 2

    @pytest.mark.asyncio
    async def test_deletions_can_use_the_whole_budget(
        self, store, index_service, website, test_settings
    ):
        test_settings.index_batch_limit = 1
        decoupler = IndexingDecoupler(store, index_service, test_settings)
        store.add_page(website.id, "https://acme.com/old", status=PageStatus.READY_FOR_DELETION)
        staged(store, website, HOME)

        result = await decoupler.index(website.id)

        assert result.deleted == 1
        assert index_service.uploads == []
        assert store.page(website.id, HOME).status == PageStatus.READY_FOR_INDEXING


class TestClaims:
    """Overlapping runs and pages that move on mid-run."""

    @pytest.mark.asyncio
    async def test_overlapping_run_skips_claimed_page(
        self, decoupler, store, index_service, website
    ):
        staged(store, website, HOME)
        original_upload = index_service.upload
        overlapping = []

        async def upload_during_second_run(container_id, text, metadata):
            if not overlapping:
                overlapping.append(await decoupler.index(website.id))
            return await original_upload(container_id, text, metadata)

        index_service.upload = upload_during_second_run

        first = await decoupler.index(website.id)

        assert index_service.uploaded_urls() == [HOME]
        assert first.indexed == 1
        assert overlapping[0].indexed == 0
        assert store.get_job(overlapping[0].job_id).metadata["skipped"] == 1
        page = store.page(website.id, HOME)
        assert page.status == PageStatus.ACTIVE
        assert page.index_claimed_by is None

    @pytest.mark.asyncio
    async def test_concurrent_runs_upload_once(self, decoupler, store, index_service, website):
        staged(store, website, HOME)
        staged(store, website, ABOUT)

        results = await asyncio.gather(decoupler.index(website.id), decoupler.index(website.id))

        assert sorted(index_service.uploaded_urls()) == [HOME, ABOUT]
        assert sum(r.indexed for r in results) == 2

    @pytest.mark.asyncio
    async def test_page_moved_mid_run_is_not_promoted(
        self, decoupler, store, index_service, website
    ):
        page = staged(store, website, HOME)
        original_upload = index_service.upload

        async def upload_then_page_removed(container_id, text, metadata):
            operation_id = await original_upload(container_id, text, metadata)
            store.update_page(page.id, PageUpdate(status=PageStatus.READY_FOR_DELETION))
            return operation_id

        index_service.upload = upload_then_page_removed

        result = await decoupler.index(website.id)

        page = store.page(website.id, HOME)
        assert page.status == PageStatus.READY_FOR_DELETION
        assert page.index_document_id is None
        assert page.index_operation_id is None
        assert page.index_claimed_by is None
        assert result.indexed == 0
        assert index_service.deleted == [
            index_service.operations[op].document_id for op in index_service.operations
        ]

    @pytest.mark.asyncio
    async def test_live_claim_of_another_run_is_respected(
        self, decoupler, store, index_service, website
    ):
        staged(store, website, HOME, index_claimed_by="other-run", index_claimed_at=utc_now())

        result = await decoupler.index(website.id)

        assert index_service.uploads == []
        assert store.page(website.id, HOME).index_claimed_by == "other-run"
        assert store.get_job(result.job_id).metadata["skipped"] == 1

    @pytest.mark.asyncio
    async def test_expired_claim_is_taken_over(self, decoupler, store, index_service, website):
        staged(
            store,
            website,
            HOME,
            index_claimed_by="crashed-run",
            index_claimed_at=datetime(2020, 1, 1, tzinfo=timezone.utc),
        )

        result = await decoupler.index(website.id)

        page = store.page(website.id, HOME)
        assert index_service.uploaded_urls() == [HOME]
        assert page.status == PageStatus.ACTIVE
        assert page.index_claimed_by is None
        assert result.indexed == 1


class TestCrashRecovery:
    """A run interrupted part way through is finished by the next one."""

    @pytest.mark.asyncio
    async def test_rerun_after_interruption_uploads_each_page_once(
        self, store, index_service, website, test_settings
    ):
        test_settings.index_concurrency = 2
        decoupler = IndexingDecoupler(store, index_service, test_settings)
        urls = [f"https://acme.com/p{n}" for n in range(5)]
        for url in urls:
            staged(store, website, url)
        index_service.cancel_on_upload = 3

        with pytest.raises(asyncio.CancelledError):
            await decoupler.index(website.id)

        done = {url: store.page(website.id, url).index_document_id for url in urls[:2]}
        assert all(done.values())
        assert all(p.index_claimed_by is None for p in store.pages.values())

        result = await decoupler.index(website.id)

        assert sorted(index_service.uploaded_urls()) == urls
        assert store.count_pages_by_status(website.id) == {"active": 5}
        assert result.indexed == 3
        for url, document_id in done.items():
            assert store.page(website.id, url).index_document_id == document_id
