"""Shared fixtures for the bridge test suite."""

from unittest.mock import Mock

import pytest
import requests

from bridge_config import BridgeConfig


_NO_JSON = object()


class FakeClock:
    """Manually advanced time source."""

    def __init__(self, start: float = 1700000000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_response(status_code: int = 200, json_data=_NO_JSON):
    """Mock requests.Response with json() and raise_for_status() behaving like the real thing."""
    response = Mock()
    response.status_code = status_code
    if json_data is _NO_JSON:
        response.json.side_effect = ValueError("Expecting value")
    else:
        response.json.return_value = json_data

    def raise_for_status():
        if status_code >= 400:
            raise requests.exceptions.HTTPError(f"{status_code} Error", response=response)

    response.raise_for_status.side_effect = raise_for_status
    return response


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def http_response():
    """Factory: http_response(status_code, json_data)."""
    return make_response


@pytest.fixture
def config():
    return BridgeConfig(
        google_client_id="client-id.apps.googleusercontent.com",
        google_client_secret="client-secret",
        development_redirect_uri="https://abc123.ngrok-free.app/auth/google/success",
        production_redirect_uri="https://bridge.example.com/auth/google/success",
        environment="development",
        ticketing_api_base_url="https://tickets.example.com/api",
        upstream_timeout=5.0,
        rate_limit_enabled=False,
    )
