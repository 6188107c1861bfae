"""
Google Identity Exchange

Turns a Google authorization code into a verified Google identity:

1. POST https://oauth2.googleapis.com/token (code -> Google access token)
2. GET  https://www.googleapis.com/oauth2/v2/userinfo (access token -> profile)

Step 1 failures raise GoogleAuthError (client-side problem, mapped to 400).
Step 2 failures raise GoogleProfileError (server-side problem, mapped to 500).
No retries; every call carries the configured timeout.
"""

import logging
import urllib.parse
from dataclasses import dataclass
from typing import Optional

import requests


class GoogleAuthError(Exception):
    """Authorization code could not be exchanged for a Google access token."""

    def __init__(self, description: str = "Invalid authorization code"):
        self.description = description
        super().__init__(description)


class GoogleProfileError(Exception):
    """Google profile could not be fetched or is incomplete."""
    pass


@dataclass(frozen=True)
class GoogleIdentity:
    """Verified Google profile. Derived per sign-in attempt, never cached."""
    provider_id: str
    email: str
    name: Optional[str] = None
    picture_url: Optional[str] = None
    email_verified: bool = False

    @property
    def email_local_part(self) -> str:
        return self.email.split("@", 1)[0]


class GoogleIdentityExchange:
    """Narrow client for the three Google OAuth2 endpoints used by the bridge."""

    AUTHORIZATION_ENDPOINT = "https://accounts.google.com/o/oauth2/auth"
    TOKEN_ENDPOINT = "https://oauth2.googleapis.com/token"
    USERINFO_ENDPOINT = "https://www.googleapis.com/oauth2/v2/userinfo"

    SCOPES = (
        "https://www.googleapis.com/auth/userinfo.email",
        "https://www.googleapis.com/auth/userinfo.profile",
    )

    def __init__(self, config, session: Optional[requests.Session] = None):
        """
        Args:
            config: BridgeConfig (client id/secret, upstream timeout)
            session: Optional requests.Session (injectable for tests)
        """
        self.client_id = config.google_client_id
        self.client_secret = config.google_client_secret
        self.timeout = config.upstream_timeout
        self.http = session or requests.Session()

    def build_authorization_url(self, state: str, redirect_uri: str) -> str:
        """
        Build the Google consent URL.

        Args:
            state: State token issued by the ledger
            redirect_uri: Redirect URI registered for this environment

        Returns:
            Full authorization URL
        """
        params = {
            "client_id": self.client_id,
            "redirect_uri": redirect_uri,
            "scope": " ".join(self.SCOPES),
            "response_type": "code",
            "access_type": "offline",
            "state": state,
            "prompt": "select_account",
            "include_granted_scopes": "true",
        }
        return f"{self.AUTHORIZATION_ENDPOINT}?{urllib.parse.urlencode(params)}"

    def exchange(self, authorization_code: str, redirect_uri: str) -> GoogleIdentity:
        """
        Exchange an authorization code for the user's Google identity.

        Raises:
            GoogleAuthError: Token exchange failed
            GoogleProfileError: Userinfo lookup failed
        """
        access_token = self._exchange_code(authorization_code, redirect_uri)
        return self._fetch_profile(access_token)

    def _exchange_code(self, authorization_code: str, redirect_uri: str) -> str:
        payload = {
            "code": authorization_code,
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "redirect_uri": redirect_uri,
            "grant_type": "authorization_code",
        }

        try:
            logging.debug(f"Exchanging Google authorization code: {authorization_code[:10]}...")
            response = self.http.post(self.TOKEN_ENDPOINT, data=payload, timeout=self.timeout)

            if response.status_code != 200:
                logging.error(f"Google token exchange failed with status {response.status_code}")
                raise GoogleAuthError(self._error_description(response))

            data = response.json()
        except requests.exceptions.RequestException as e:
            logging.error(f"Google token exchange request failed: {e}")
            raise GoogleAuthError(f"Token exchange request failed: {e}")
        except ValueError as e:
            logging.error(f"Google token response is not JSON: {e}")
            raise GoogleAuthError("Invalid token response from Google")

        access_token = data.get("access_token")
        if not access_token:
            logging.error(f"Google token response missing access_token. Present fields: {list(data.keys())}")
            raise GoogleAuthError(data.get("error_description") or "Invalid authorization code")

        logging.info("Exchanged Google authorization code for access token")
        return access_token

    def _fetch_profile(self, access_token: str) -> GoogleIdentity:
        try:
            response = self.http.get(
                self.USERINFO_ENDPOINT,
                headers={"Authorization": f"Bearer {access_token}"},
                timeout=self.timeout
            )
            response.raise_for_status()
            data = response.json()
        except requests.exceptions.RequestException as e:
            logging.error(f"Failed to fetch Google profile: {e}")
            raise GoogleProfileError(f"Failed to fetch Google profile: {e}")
        except ValueError as e:
            logging.error(f"Google userinfo response is not JSON: {e}")
            raise GoogleProfileError("Invalid userinfo response from Google")

        if not data.get("id") or not data.get("email"):
            logging.error(f"Google profile incomplete. Present fields: {list(data.keys())}")
            raise GoogleProfileError("Google profile is missing id or email")

        identity = GoogleIdentity(
            provider_id=str(data["id"]),
            email=data["email"],
            name=data.get("name"),
            picture_url=data.get("picture"),
            email_verified=bool(data.get("verified_email", False)),
        )
        logging.info(f"Fetched Google profile for {identity.email}")
        return identity

    @staticmethod
    def _error_description(response) -> str:
        try:
            data = response.json()
        except ValueError:
            return "Invalid authorization code"
        if not isinstance(data, dict):
            return "Invalid authorization code"
        return data.get("error_description") or "Invalid authorization code"
