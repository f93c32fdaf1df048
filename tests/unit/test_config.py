"""Tests for application configuration."""

import pytest
from hypothesis import given, strategies as st
from pydantic import ValidationError

from sitecorpus.config import Settings, get_settings
from sitecorpus.constants import (
    DEFAULT_DELETION_THRESHOLD,
    DEFAULT_SIMILARITY_THRESHOLD,
)

REQUIRED = {
    "supabase_url": "https://test.supabase.co",
    "supabase_service_key": "service-key",
}


class TestSettings:
    """Test Settings model validation."""

    def test_settings_required_fields(self, monkeypatch):
        """Supabase credentials are required."""
        monkeypatch.delenv("SUPABASE_URL", raising=False)
        monkeypatch.delenv("SUPABASE_SERVICE_KEY", raising=False)

        with pytest.raises(ValidationError):
            Settings(_env_file=None)

    def test_settings_default_values(self, monkeypatch):
        """Defaults come from the constants module."""
        for key in ("CONTENT_FETCHER", "SIMILARITY_THRESHOLD", "DELETION_THRESHOLD", "ENV"):
            monkeypatch.delenv(key, raising=False)

        settings = Settings(_env_file=None, **REQUIRED)

        assert settings.content_fetcher == "firecrawl"
        assert settings.env == "local"
        assert settings.similarity_threshold == DEFAULT_SIMILARITY_THRESHOLD
        assert settings.deletion_threshold == DEFAULT_DELETION_THRESHOLD
        assert settings.database_url is None

    def test_settings_read_from_environment(self, monkeypatch):
        monkeypatch.setenv("CONTENT_FETCHER", "crawler")
        monkeypatch.setenv("DELETION_THRESHOLD", "5")

        settings = Settings(_env_file=None, **REQUIRED)

        assert settings.content_fetcher == "crawler"
        assert settings.deletion_threshold == 5

    def test_unknown_fetcher_rejected(self):
        with pytest.raises(ValidationError):
            Settings(_env_file=None, content_fetcher="selenium", **REQUIRED)

    @pytest.mark.parametrize("threshold", [-0.1, 1.5])
    def test_similarity_threshold_bounds(self, threshold):
        with pytest.raises(ValidationError):
            Settings(_env_file=None, similarity_threshold=threshold, **REQUIRED)

    def test_deletion_threshold_must_be_positive(self):
        with pytest.raises(ValidationError):
            Settings(_env_file=None, deletion_threshold=0, **REQUIRED)

    @given(st.floats(min_value=0.0, max_value=1.0))
    def test_any_threshold_in_range_is_accepted(self, threshold):
        settings = Settings(_env_file=None, similarity_threshold=threshold, **REQUIRED)
        assert settings.similarity_threshold == threshold


class TestGetSettings:
    """Test get_settings() caching."""

    def test_get_settings_is_cached(self):
        get_settings.cache_clear()
        try:
            assert get_settings() is get_settings()
        finally:
            get_settings.cache_clear()
