"""
Ticketing API Client

Register/login calls against the ticketing API, which only knows
username/password accounts. Responses are parsed into TicketingAccount;
everything else becomes a TicketingError subclass so the reconciliation
engine can branch on the kind of failure.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import requests


CONFLICT_MARKERS = ("already exists", "existe déjà")


class TicketingError(Exception):
    """Base class for ticketing API failures."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class TicketingConflictError(TicketingError):
    """The account (username or email) already exists."""
    pass


class MalformedTicketingResponse(TicketingError):
    """Success status but the body lacks user.id or access_token."""
    pass


class TicketingRequestError(TicketingError):
    """Any other HTTP error, network error or timeout."""
    pass


@dataclass
class TicketingAccount:
    """Parsed successful register/login response."""
    user_id: Any
    access_token: str
    refresh_token: Optional[str] = None
    admin: Optional[Any] = None
    admin_level: Optional[Any] = None
    company: Optional[Any] = None

    @classmethod
    def from_payload(cls, payload: Any) -> "TicketingAccount":
        """
        Raises:
            MalformedTicketingResponse: If user.id or access_token is missing
        """
        if not isinstance(payload, dict):
            raise MalformedTicketingResponse("Ticketing response is not a JSON object")

        user = payload.get("user")
        if not isinstance(user, dict) or user.get("id") is None:
            raise MalformedTicketingResponse("Ticketing response missing user.id")
        if not payload.get("access_token"):
            raise MalformedTicketingResponse("Ticketing response missing access_token")

        return cls(
            user_id=user["id"],
            access_token=payload["access_token"],
            refresh_token=payload.get("refresh_token"),
            admin=user.get("admin"),
            admin_level=user.get("admin_level"),
            company=user.get("company"),
        )


class TicketingClient:
    """HTTP client for the ticketing register/login endpoints."""

    HEADERS = {
        "Content-Type": "application/json",
        "Accept": "application/json",
    }

    def __init__(self, config, session: Optional[requests.Session] = None):
        """
        Args:
            config: BridgeConfig (endpoint URLs, timeout, conflict fallback flag)
            session: Optional requests.Session (injectable for tests)
        """
        self.register_url = config.register_url
        self.login_url = config.login_url
        self.timeout = config.upstream_timeout
        self.conflict_message_fallback = config.conflict_message_fallback
        self.http = session or requests.Session()

    def register(self, name: Optional[str], email: str, username: str, password: str) -> TicketingAccount:
        payload = {
            "name": name,
            "email": email,
            "username": username,
            "password": password,
        }
        logging.info(f"Registering ticketing account for username: {username}")
        return self._post(self.register_url, payload)

    def login(self, identity: str, password: str) -> TicketingAccount:
        logging.info(f"Logging in to ticketing API as: {identity}")
        return self._post(self.login_url, {"identity": identity, "password": password})

    def _post(self, url: str, payload: Dict[str, Any]) -> TicketingAccount:
        try:
            response = self.http.post(url, json=payload, headers=self.HEADERS, timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            logging.error(f"Ticketing API request failed: {e}")
            raise TicketingRequestError(f"Ticketing API request failed: {e}")

        try:
            body = response.json()
        except ValueError:
            body = None

        if 200 <= response.status_code < 300:
            if body is None:
                raise MalformedTicketingResponse(
                    "Ticketing response is not JSON", status_code=response.status_code
                )
            return TicketingAccount.from_payload(body)

        message = self._error_message(body) or f"HTTP {response.status_code}"
        logging.warning(f"Ticketing API returned {response.status_code}: {message}")

        if self._is_conflict(response.status_code, message):
            raise TicketingConflictError(message, status_code=response.status_code)
        raise TicketingRequestError(message, status_code=response.status_code)

    def _is_conflict(self, status_code: int, message: str) -> bool:
        if status_code == 409:
            return True
        if self.conflict_message_fallback and 400 <= status_code < 500:
            text = message.lower()
            return any(marker in text for marker in CONFLICT_MARKERS)
        return False

    @staticmethod
    def _error_message(body: Any) -> str:
        if not isinstance(body, dict):
            return ""
        parts = [str(body[key]) for key in ("error", "message") if body.get(key)]
        return " - ".join(parts)
