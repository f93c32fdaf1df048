"""Shared pytest fixtures and configuration.

Fixture Categories:
1. Settings: test_settings with zero poll and pause intervals
2. Fakes: store, fetcher, index_service (see tests/fakes.py)
3. Wiring: website, pipeline
4. Infrastructure: mock_supabase_client, respx_mock, mock_logfire
"""

import os

# Required settings must exist before any module calls get_settings()
os.environ.setdefault("SUPABASE_URL", "https://test.supabase.co")
os.environ.setdefault("SUPABASE_SERVICE_KEY", "test-service-key")
os.environ.setdefault("LOGFIRE_IGNORE_NO_CONFIG", "1")
os.environ.setdefault("LOGFIRE_SEND_TO_LOGFIRE", "false")
os.environ.setdefault("LOGFIRE_CONSOLE", "false")

from unittest.mock import MagicMock, Mock

import pytest
import respx

from sitecorpus.config import Settings
from sitecorpus.models.website_models import WebsiteCreate
from sitecorpus.services.pipeline import build_pipeline, set_pipeline
from tests.fakes import FakeContentFetcher, FakeIndexService, InMemoryRecordStore

ACME_SITE = {
    "https://acme.com/": "Welcome to Acme. We sell anvils, rockets and jet skates.",
    "https://acme.com/about": "Acme has supplied coyotes with quality gear since 1949.",
    "https://acme.com/contact": None,
}


@pytest.fixture
def test_settings():
    """Settings with no waiting between polls or sub-batches."""
    return Settings(
        _env_file=None,
        supabase_url="https://test.supabase.co",
        supabase_service_key="test-service-key",
        firecrawl_api_key="fc-test",
        gemini_api_key="gemini-test",
        env="local",
        logfire_token=None,
        batch_poll_interval_seconds=0,
        batch_max_wait_seconds=5,
        batch_progress_log_seconds=0,
        index_batch_pause_seconds=0,
        upload_poll_interval_seconds=0,
        upload_max_wait_seconds=5,
    )


@pytest.fixture
def store():
    return InMemoryRecordStore()


@pytest.fixture
def fetcher():
    """Fetcher serving the three-page Acme site plus one foreign link."""
    return FakeContentFetcher(
        urls=list(ACME_SITE) + ["https://elsewhere.org/page"],
        site=ACME_SITE,
    )


@pytest.fixture
def index_service():
    return FakeIndexService()


@pytest.fixture
def website(store):
    """An Acme website record with an index container and no pages."""
    return store.create_website(
        WebsiteCreate(
            seed_url="https://acme.com/",
            domain="acme.com",
            display_name="Acme",
            index_store_id="fileSearchStores/acme",
        )
    )


@pytest.fixture
def pipeline(test_settings, store, fetcher, index_service):
    """Pipeline wired to the in-memory fakes and installed as the global."""
    pipeline = build_pipeline(test_settings, store, fetcher, index_service)
    pipeline.dispatcher._retry_base_seconds = 0
    set_pipeline(pipeline)
    yield pipeline
    set_pipeline(None)


@pytest.fixture
def respx_mock():
    """Respx mock fixture for HTTP mocking."""
    with respx.mock(assert_all_called=False) as mock:
        yield mock


@pytest.fixture
def mock_supabase_client():
    """Mock Supabase client; configure chains per test."""
    client = MagicMock()
    execute_result = MagicMock()
    execute_result.data = []
    client.table.return_value.select.return_value.eq.return_value.limit.return_value.execute.return_value = execute_result
    return client


@pytest.fixture
def mock_logfire(monkeypatch):
    """Replace logfire in modules whose log calls tests assert on."""
    from contextlib import contextmanager

    @contextmanager
    def mock_span(*args, **kwargs):
        yield {}

    mock_logfire_module = MagicMock()
    mock_logfire_module.info = Mock()
    mock_logfire_module.debug = Mock()
    mock_logfire_module.warning = Mock()
    mock_logfire_module.error = Mock()
    mock_logfire_module.span = mock_span
    mock_logfire_module.configure = Mock()
    mock_logfire_module.instrument_fastapi = Mock()
    mock_logfire_module.instrument_pydantic = Mock()

    monkeypatch.setattr("sitecorpus.db.query_executor.logfire", mock_logfire_module)
    monkeypatch.setattr("sitecorpus.logging_config.logfire", mock_logfire_module)
    monkeypatch.setattr("sitecorpus.services.job_tracker.logfire", mock_logfire_module)
    return mock_logfire_module
