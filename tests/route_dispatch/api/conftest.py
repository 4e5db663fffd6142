"""Shared fixtures for API tests."""

from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

from route_dispatch.api.deps import get_coordinator, get_estimator
from route_dispatch.api.main import create_app
from route_dispatch.config import get_settings
from route_dispatch.dispatch import DispatchCoordinator


# --- Test Credentials ---
@pytest.fixture
def test_api_key():
    """Valid API key for testing."""
    return "test-api-key"

@pytest.fixture
def cron_secret():
    return "cron-s3cret"

# --- Mock Settings Fixture ---
@pytest.fixture
def mock_settings(test_api_key, cron_secret):
    """Settings for API tests with known credentials."""
    return {**get_settings(), "api_keys": [test_api_key], "cron_secret": cron_secret}

# --- Test Client Fixture ---
@pytest.fixture
def client(mock_settings, seeded_db, live_estimator, team_sender, sms_sender):
    """
    FastAPI TestClient over the seeded in-memory database, with fake senders
    and a fake live distance provider.
    """
    with patch("route_dispatch.api.deps.get_settings", return_value=mock_settings):
        app = create_app()
        app.dependency_overrides[get_coordinator] = lambda: DispatchCoordinator(team_sender, sms_sender)
        app.dependency_overrides[get_estimator] = lambda: live_estimator

        with TestClient(app) as test_client:
            yield test_client

        app.dependency_overrides = {}
