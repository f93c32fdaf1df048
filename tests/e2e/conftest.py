"""Fixtures for end-to-end API tests."""

from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

from sitecorpus.main import app


@pytest.fixture
def test_client(pipeline):
    """TestClient running the app lifespan against the in-memory pipeline."""
    with patch("sitecorpus.main.setup_logfire"):
        with TestClient(app) as client:
            yield client
