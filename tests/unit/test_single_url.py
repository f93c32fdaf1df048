"""Tests for SingleUrlService."""

from unittest.mock import MagicMock

import pytest

from sitecorpus.exceptions import (
    InvalidTransitionError,
    InvalidUrlError,
    PageNotFoundError,
    WebsiteNotFoundError,
)
from sitecorpus.models.website_models import CaptureMode, JobStatus, JobType, PageStatus
from sitecorpus.services.content_hasher import content_hash
from sitecorpus.services.single_url import SingleUrlService

HOME = "https://acme.com/"
ABOUT = "https://acme.com/about"
CONTACT = "https://acme.com/contact"
OLD_DOCUMENT = "fileSearchStores/acme/documents/d1"


@pytest.fixture
def dispatcher():
    return MagicMock()


@pytest.fixture
def service(store, fetcher, dispatcher, test_settings):
    return SingleUrlService(store, fetcher, dispatcher=dispatcher, settings=test_settings)


@pytest.fixture
def indexed_about(store, fetcher, website):
    """ABOUT active and indexed with the text the fetcher currently serves."""
    return store.add_page(
        website.id,
        ABOUT,
        status=PageStatus.ACTIVE,
        markdown_content=fetcher.site[ABOUT],
        index_document_id=OLD_DOCUMENT,
        capture_count=1,
    )


class TestAddUrl:
    """add_url: capture one URL and hand it to indexing."""

    @pytest.mark.asyncio
    async def test_new_url_is_captured_and_queued(self, service, store, fetcher, dispatcher, website):
        result = await service.add_url(website.id, "https://ACME.com/about/")

        assert result.outcome == "queued"
        assert result.url == ABOUT
        assert result.status == PageStatus.READY_FOR_INDEXING
        assert result.new_hash == content_hash(fetcher.site[ABOUT])

        page = store.page(website.id, ABOUT)
        assert page.status == PageStatus.READY_FOR_INDEXING
        assert page.markdown_content == fetcher.site[ABOUT]
        assert page.created_by_job_id == result.job_id

        job = store.get_job(result.job_id)
        assert job.job_type == JobType.CAPTURE
        assert job.capture_mode == CaptureMode.MANUAL
        assert job.status == JobStatus.COMPLETED
        assert job.urls_updated == 1
        dispatcher.submit.assert_called_once_with(website.id, result.job_id)

    @pytest.mark.asyncio
    async def test_url_on_another_domain_is_rejected(self, service, store, website):
        with pytest.raises(InvalidUrlError):
            await service.add_url(website.id, "https://elsewhere.org/page")

        assert store.jobs == {}

    @pytest.mark.asyncio
    async def test_unknown_website(self, service):
        with pytest.raises(WebsiteNotFoundError):
            await service.add_url("missing", ABOUT)

    @pytest.mark.asyncio
    async def test_url_without_content_is_not_written(self, service, store, dispatcher, website):
        result = await service.add_url(website.id, CONTACT)

        assert result.outcome == "failed"
        assert store.get_page_by_url(website.id, CONTACT) is None
        assert [(e.url, e.stage) for e in result.errors] == [(CONTACT, "validate")]
        assert store.get_job(result.job_id).urls_errored == 1
        dispatcher.submit.assert_not_called()

    @pytest.mark.asyncio
    async def test_gone_page_is_not_written(self, service, store, fetcher, website):
        fetcher.http_status[ABOUT] = 404

        result = await service.add_url(website.id, ABOUT)

        assert result.outcome == "failed"
        assert store.get_page_by_url(website.id, ABOUT) is None

    @pytest.mark.asyncio
    async def test_active_page_is_left_alone(self, service, store, dispatcher, website, indexed_about):
        result = await service.add_url(website.id, ABOUT)

        assert result.outcome == "already_active"
        assert result.job_id is None
        assert store.jobs == {}
        dispatcher.submit.assert_not_called()

    @pytest.mark.asyncio
    async def test_queued_page_only_triggers_indexing(self, service, store, dispatcher, website):
        store.add_page(
            website.id, ABOUT, status=PageStatus.READY_FOR_INDEXING, markdown_content="Hi"
        )

        result = await service.add_url(website.id, ABOUT)

        assert result.outcome == "queued"
        assert result.job_id is None
        dispatcher.submit.assert_called_once_with(website.id, None)

    @pytest.mark.asyncio
    async def test_deleted_page_is_captured_again(self, service, store, fetcher, website):
        store.add_page(website.id, ABOUT, status=PageStatus.DELETED, markdown_content="Old text")

        result = await service.add_url(website.id, ABOUT)

        page = store.page(website.id, ABOUT)
        assert result.outcome == "queued"
        assert page.status == PageStatus.READY_FOR_INDEXING
        assert page.markdown_content == fetcher.site[ABOUT]
        assert page.last_updated_by_sync_id == result.job_id

    @pytest.mark.asyncio
    async def test_failing_error_page_keeps_its_error(self, service, store, website):
        store.add_page(website.id, CONTACT, status=PageStatus.ERROR, error_message="timeout")

        result = await service.add_url(website.id, CONTACT)

        page = store.page(website.id, CONTACT)
        assert result.outcome == "failed"
        assert page.status == PageStatus.ERROR
        assert page.error_message == "no content"


class TestReindexUrl:
    """reindex_url: forced re-fetch of a known page."""

    @pytest.mark.asyncio
    async def test_unchanged_page_only_refreshes_timestamps(
        self, service, store, dispatcher, website, indexed_about
    ):
        result = await service.reindex_url(website.id, ABOUT)

        page = store.page(website.id, ABOUT)
        assert result.outcome == "unchanged"
        assert result.content_changed is False
        assert page.status == PageStatus.ACTIVE
        assert page.index_document_id == OLD_DOCUMENT
        assert page.capture_count == 2
        assert page.last_scraped is not None
        dispatcher.submit.assert_not_called()

    @pytest.mark.asyncio
    async def test_changed_page_is_requeued_with_stale_handle(
        self, service, store, fetcher, dispatcher, website, indexed_about
    ):
        fetcher.site[ABOUT] = "Acme now only sells umbrellas for falling anvils."

        result = await service.reindex_url(website.id, ABOUT)

        page = store.page(website.id, ABOUT)
        assert result.outcome == "queued"
        assert result.content_changed is True
        assert result.previous_hash == indexed_about.content_hash
        assert page.status == PageStatus.READY_FOR_RE_INDEXING
        assert page.stale_index_document_id == OLD_DOCUMENT
        assert page.index_document_id is None
        assert page.markdown_content == fetcher.site[ABOUT]
        assert page.content_hash == result.new_hash
        dispatcher.submit.assert_called_once_with(website.id, result.job_id)

    @pytest.mark.asyncio
    async def test_page_out_of_index_is_always_requeued(self, service, store, fetcher, website):
        store.add_page(
            website.id,
            ABOUT,
            status=PageStatus.ERROR,
            markdown_content=fetcher.site[ABOUT],
            error_message="Upload failed",
        )

        result = await service.reindex_url(website.id, ABOUT)

        page = store.page(website.id, ABOUT)
        assert result.outcome == "queued"
        assert result.content_changed is False
        assert page.status == PageStatus.READY_FOR_INDEXING
        assert page.error_message is None

    @pytest.mark.asyncio
    async def test_failed_fetch_of_active_page_keeps_it_searchable(
        self, service, store, fetcher, website, indexed_about
    ):
        fetcher.site[ABOUT] = None

        result = await service.reindex_url(website.id, ABOUT)

        page = store.page(website.id, ABOUT)
        assert result.outcome == "failed"
        assert result.status == PageStatus.ACTIVE
        assert page.status == PageStatus.ACTIVE
        assert page.error_message == "no content"
        assert page.index_document_id == OLD_DOCUMENT

    @pytest.mark.asyncio
    async def test_unknown_page(self, service, website):
        with pytest.raises(PageNotFoundError):
            await service.reindex_url(website.id, "https://acme.com/nope")


class TestRestorePage:
    """restore_page: bring a deleted page back."""

    @pytest.mark.asyncio
    async def test_deleted_page_is_requeued(self, service, store, fetcher, dispatcher, website):
        store.add_page(website.id, ABOUT, status=PageStatus.DELETED, markdown_content="Old text")

        result = await service.restore_page(website.id, ABOUT)

        page = store.page(website.id, ABOUT)
        assert result.outcome == "queued"
        assert page.status == PageStatus.READY_FOR_INDEXING
        assert page.markdown_content == fetcher.site[ABOUT]
        assert store.get_job(result.job_id).metadata["request"] == "restore"
        dispatcher.submit.assert_called_once_with(website.id, result.job_id)

    @pytest.mark.asyncio
    async def test_live_page_cannot_be_restored(self, service, store, website, indexed_about):
        with pytest.raises(InvalidTransitionError):
            await service.restore_page(website.id, ABOUT)

        assert store.jobs == {}


class TestMarkDeleted:
    """mark_deleted: removal on request."""

    def test_active_page_is_marked(self, service, store, dispatcher, website, indexed_about):
        result = service.mark_deleted(website.id, "https://acme.com/about/")

        page = store.page(website.id, ABOUT)
        assert result.outcome == "marked_for_deletion"
        assert page.status == PageStatus.READY_FOR_DELETION
        assert page.index_document_id == OLD_DOCUMENT
        dispatcher.submit.assert_called_once_with(website.id, None)

    def test_deleted_page_is_left_alone(self, service, store, dispatcher, website):
        store.add_page(website.id, ABOUT, status=PageStatus.DELETED)

        result = service.mark_deleted(website.id, ABOUT)

        assert result.status == PageStatus.DELETED
        dispatcher.submit.assert_not_called()

    def test_unknown_page(self, service, website):
        with pytest.raises(PageNotFoundError):
            service.mark_deleted(website.id, "https://acme.com/nope")
