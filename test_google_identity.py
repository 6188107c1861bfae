"""
Tests for the Google identity exchange client.
"""

import urllib.parse
from unittest.mock import Mock

import pytest
import requests

from google_identity import (
    GoogleAuthError,
    GoogleIdentity,
    GoogleIdentityExchange,
    GoogleProfileError,
)


REDIRECT_URI = "https://abc123.ngrok-free.app/auth/google/success"

PROFILE = {
    "id": "1234567890",
    "email": "jane.doe@example.com",
    "verified_email": True,
    "name": "Jane Doe",
    "picture": "https://lh3.googleusercontent.com/a/photo.jpg",
}


@pytest.fixture
def session():
    return Mock(spec=requests.Session)


@pytest.fixture
def exchange(config, session):
    return GoogleIdentityExchange(config, session=session)


class TestAuthorizationUrl:

    def test_contains_all_parameters(self, exchange, config):
        url = exchange.build_authorization_url("state-123", REDIRECT_URI)

        parsed = urllib.parse.urlparse(url)
        params = dict(urllib.parse.parse_qsl(parsed.query))

        assert f"{parsed.scheme}://{parsed.netloc}{parsed.path}" == "https://accounts.google.com/o/oauth2/auth"
        assert params == {
            "client_id": config.google_client_id,
            "redirect_uri": REDIRECT_URI,
            "scope": "https://www.googleapis.com/auth/userinfo.email https://www.googleapis.com/auth/userinfo.profile",
            "response_type": "code",
            "access_type": "offline",
            "state": "state-123",
            "prompt": "select_account",
            "include_granted_scopes": "true",
        }


class TestExchange:

    def test_success(self, exchange, session, http_response, config):
        session.post.return_value = http_response(200, {"access_token": "ya29.token", "expires_in": 3599})
        session.get.return_value = http_response(200, PROFILE)

        identity = exchange.exchange("4/0AbCode", REDIRECT_URI)

        assert identity == GoogleIdentity(
            provider_id="1234567890",
            email="jane.doe@example.com",
            name="Jane Doe",
            picture_url="https://lh3.googleusercontent.com/a/photo.jpg",
            email_verified=True,
        )
        assert identity.email_local_part == "jane.doe"

        post_kwargs = session.post.call_args.kwargs
        assert session.post.call_args.args[0] == "https://oauth2.googleapis.com/token"
        assert post_kwargs["data"] == {
            "code": "4/0AbCode",
            "client_id": config.google_client_id,
            "client_secret": config.google_client_secret,
            "redirect_uri": REDIRECT_URI,
            "grant_type": "authorization_code",
        }
        assert post_kwargs["timeout"] == config.upstream_timeout

        assert session.get.call_args.args[0] == "https://www.googleapis.com/oauth2/v2/userinfo"
        assert session.get.call_args.kwargs["headers"] == {"Authorization": "Bearer ya29.token"}
        assert session.get.call_args.kwargs["timeout"] == config.upstream_timeout

    def test_identity_is_immutable(self):
        identity = GoogleIdentity(provider_id="1", email="a@b.c")
        with pytest.raises(AttributeError):
            identity.email = "other@b.c"

    def test_rejected_code_carries_upstream_description(self, exchange, session, http_response):
        session.post.return_value = http_response(400, {"error": "invalid_grant", "error_description": "Bad Request"})

        with pytest.raises(GoogleAuthError) as exc_info:
            exchange.exchange("used-code", REDIRECT_URI)

        assert exc_info.value.description == "Bad Request"
        session.get.assert_not_called()

    def test_rejected_code_without_description(self, exchange, session, http_response):
        session.post.return_value = http_response(400)

        with pytest.raises(GoogleAuthError) as exc_info:
            exchange.exchange("used-code", REDIRECT_URI)

        assert exc_info.value.description == "Invalid authorization code"

    def test_missing_access_token(self, exchange, session, http_response):
        session.post.return_value = http_response(200, {"token_type": "Bearer"})

        with pytest.raises(GoogleAuthError):
            exchange.exchange("code", REDIRECT_URI)

    def test_token_timeout_is_auth_error(self, exchange, session):
        session.post.side_effect = requests.exceptions.Timeout("timed out")

        with pytest.raises(GoogleAuthError):
            exchange.exchange("code", REDIRECT_URI)

    def test_profile_failure(self, exchange, session, http_response):
        session.post.return_value = http_response(200, {"access_token": "ya29.token"})
        session.get.return_value = http_response(500, {"error": "backendError"})

        with pytest.raises(GoogleProfileError):
            exchange.exchange("code", REDIRECT_URI)

    def test_profile_network_error(self, exchange, session, http_response):
        session.post.return_value = http_response(200, {"access_token": "ya29.token"})
        session.get.side_effect = requests.exceptions.ConnectionError("reset")

        with pytest.raises(GoogleProfileError):
            exchange.exchange("code", REDIRECT_URI)

    @pytest.mark.parametrize("missing", ["id", "email"])
    def test_incomplete_profile(self, exchange, session, http_response, missing):
        profile = {k: v for k, v in PROFILE.items() if k != missing}
        session.post.return_value = http_response(200, {"access_token": "ya29.token"})
        session.get.return_value = http_response(200, profile)

        with pytest.raises(GoogleProfileError):
            exchange.exchange("code", REDIRECT_URI)
