"""
Google Auth Bridge endpoint handlers

Framework-independent handlers (dicts/strings in, dicts/HTML out) for the
bridge flow:

- GET  /auth/google/url        issue state + Google consent URL
- POST /auth/google/complete   code + state -> AuthSession
- GET  /auth/google/success    browser redirect target (HTML)
- GET  /auth/check-session     mobile client poll
- GET  /auth/check/{key}       development-only session-key lookup
- GET|POST /auth/clear-session reset mailbox and state ledger
- GET  /health

server.py wires these into Starlette routes and maps BridgeError to JSON.
"""

import logging
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from jinja2 import Environment, FileSystemLoader, select_autoescape
from starlette.concurrency import run_in_threadpool

from account_reconciler import AccountReconciler, ReconciliationOutcome
from google_identity import GoogleAuthError, GoogleIdentityExchange, GoogleProfileError
from handoff_mailbox import AuthSession, RedirectHandoff, new_session_key


SERVICE_NAME = "Google Auth Service"

SUCCESS_PAGE_AUTO_CLOSE_MS = 10000


class BridgeError(Exception):
    """Handler-level failure returned to the client as JSON."""

    def __init__(self, error: str, message: str, status_code: int = 400):
        self.error = error
        self.message = message
        self.status_code = status_code
        super().__init__(f"{error}: {message}")

    def to_dict(self) -> Dict[str, Any]:
        return {"success": False, "error": self.error, "message": self.message}


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class BridgeEndpoints:
    """
    Endpoint handlers for the Google Auth Bridge.

    All collaborators are injected; nothing here holds module-level state.
    """

    def __init__(
        self,
        config,
        ledger,
        mailbox,
        google: GoogleIdentityExchange,
        reconciler: AccountReconciler,
    ):
        """
        Args:
            config: BridgeConfig
            ledger: StateLedger or RedisStateLedger
            mailbox: HandoffMailbox or RedisHandoffMailbox
            google: Google identity exchange client
            reconciler: Account reconciliation engine
        """
        self.config = config
        self.ledger = ledger
        self.mailbox = mailbox
        self.google = google
        self.reconciler = reconciler

        template_dir = Path(__file__).parent / "templates"
        self.jinja_env = Environment(
            loader=FileSystemLoader(str(template_dir)),
            autoescape=select_autoescape(['html', 'xml'])
        )

        logging.info(
            f"Bridge endpoints initialized (environment={config.environment}, "
            f"ledger={ledger.backend}, mailbox={mailbox.backend})"
        )

    async def handle_auth_url(self) -> Dict[str, Any]:
        """
        Issue a state token and build the Google consent URL.

        Any item still waiting in the mailbox belongs to a previous sign-in
        and is discarded first.

        Raises:
            BridgeError: If Google OAuth is not configured
        """
        if not self.config.google_client_id or not self.config.redirect_uri:
            logging.error(f"Cannot build Google auth URL, missing settings: {self.config.missing_settings()}")
            raise BridgeError(
                'Failed to generate Google auth URL',
                'Google OAuth is not configured on this server',
                500
            )

        self.mailbox.clear()
        state = self.ledger.issue()

        logging.info(f"Using redirect URI: {self.config.redirect_uri}")
        auth_url = self.google.build_authorization_url(state.token, self.config.redirect_uri)
        logging.info("Google auth URL generated with account selection")

        return {"auth_url": auth_url, "state": state.token}

    async def handle_complete(self, body: Dict[str, Any]) -> Dict[str, Any]:
        """
        Complete sign-in with a code the client obtained itself.

        The resulting session is also published to the mailbox.

        Raises:
            BridgeError: Missing parameters, invalid state, or upstream failure
        """
        auth_code = body.get('authCode')
        state = body.get('state')

        if not isinstance(auth_code, str) or not auth_code or not isinstance(state, str) or not state:
            logging.warning("Google auth completion rejected: authCode and state must be non-empty strings")
            raise BridgeError('Missing required parameters', 'authCode and state are required')

        logging.info(f"Processing Google auth completion, code: {auth_code[:10]}...")

        if not self.ledger.validate(state):
            raise BridgeError('Invalid state token', 'State token is invalid or expired')

        session = await run_in_threadpool(self._authenticate, auth_code)
        self.mailbox.publish(session)
        return session.to_dict()

    async def handle_success(self, params: Dict[str, Any]) -> str:
        """
        Browser redirect target registered with Google.

        Stores the raw code + state for the polling client and renders an
        HTML page. Never raises for OAuth-level errors; they become pages.
        """
        code = params.get('code')
        state = params.get('state')
        error = params.get('error')
        error_description = params.get('error_description')

        logging.info(
            f"Google OAuth redirect received (code: {'present' if code else 'missing'}, "
            f"state: {'present' if state else 'missing'}, error: {error or 'none'})"
        )

        if error:
            logging.error(f"Google OAuth error: {error} {error_description or ''}")
            if error == 'access_denied':
                message = "Vous avez annulé l'authentification. Veuillez réessayer si vous souhaitez vous connecter."
            else:
                message = f"Une erreur s'est produite: {error_description or error}"
            return self._render_error("Erreur d'Authentification Google", message, allow_retry=True)

        if not code or not state:
            logging.error("No authorization code or state received")
            return self._render_error(
                "Erreur d'Authentification",
                "Aucun code d'autorisation reçu de Google. Veuillez réessayer l'authentification.",
                allow_retry=False
            )

        redirect = RedirectHandoff(authorization_code=code, state=state, received_at=time.time())
        session_key = new_session_key()
        self.mailbox.stash(session_key, redirect)
        self.mailbox.publish(redirect)
        logging.info("New auth data stored for mobile app pickup")

        template = self.jinja_env.get_template('auth_success.html')
        return template.render(session_key=session_key, auto_close_ms=SUCCESS_PAGE_AUTO_CLOSE_MS)

    async def handle_check_session(self) -> Dict[str, Any]:
        """
        Mobile client poll. Drains the mailbox (read-once).

        Returns:
            AuthSession dict, or the "no session" body when the mailbox is empty

        Raises:
            BridgeError: Invalid state or upstream failure while processing a raw redirect
        """
        item = self.mailbox.take()

        if item is None:
            logging.debug("No authentication session found")
            return {
                "success": False,
                "authCode": None,
                "state": None,
                "message": "No authentication session found",
            }

        if isinstance(item, AuthSession):
            logging.info("Returning processed authentication data to mobile app")
            return item.to_dict()

        logging.info("Found raw OAuth data, processing with ticketing API")
        if not self.ledger.validate(item.state):
            raise BridgeError('Invalid state token', 'State token is invalid or expired')

        session = await run_in_threadpool(self._authenticate, item.authorization_code)
        return session.to_dict()

    async def handle_check_session_key(self, session_key: str) -> Dict[str, Any]:
        """
        Development-only lookup of a raw redirect by the key shown on the success page.

        Raises:
            BridgeError: 404 outside development mode or when the key is unknown/used
        """
        if not self.config.is_development:
            raise BridgeError('Not found', 'Session lookup is only available in development', 404)

        redirect = self.mailbox.claim(session_key)
        if redirect is None:
            raise BridgeError('Session not found', 'Session not found or expired', 404)

        return {
            "success": True,
            "authCode": redirect.authorization_code,
            "state": redirect.state,
        }

    async def handle_clear_session(self, pre_auth: bool = False) -> Dict[str, Any]:
        """
        Reset the mailbox (slot and stashed session keys) and every issued state.

        Args:
            pre_auth: True for the GET variant called before a new sign-in
        """
        self.mailbox.clear_all()
        cleared_states = self.ledger.clear()
        logging.info(f"Cleared authentication session data and {cleared_states} stored states")

        if pre_auth:
            message = "Previous authentication session cleared - ready for new authentication"
        else:
            message = "Authentication session cleared successfully"

        return {
            "success": True,
            "message": message,
            "cleared_states": cleared_states,
            "timestamp": _now_iso(),
        }

    async def handle_health(self) -> Dict[str, Any]:
        return {
            "status": "healthy",
            "service": SERVICE_NAME,
            "timestamp": _now_iso(),
            "environment": self.config.environment,
            "storage": {
                "state_ledger": self.ledger.backend,
                "handoff_mailbox": self.mailbox.backend,
            },
            "endpoints": {
                "auth_url": "/auth/google/url",
                "complete_auth": "/auth/google/complete",
                "check_session": "/auth/check-session",
                "clear_session": "/auth/clear-session",
            },
        }

    def _authenticate(self, authorization_code: str) -> AuthSession:
        """
        Blocking chain: Google code exchange, then account reconciliation.

        Runs in a worker thread.
        """
        try:
            identity = self.google.exchange(authorization_code, self.config.redirect_uri)
        except GoogleAuthError as e:
            raise BridgeError('Google authentication failed', e.description, 400)
        except GoogleProfileError as e:
            logging.error(f"Google profile lookup failed: {e}")
            raise BridgeError(
                'Failed to process authentication',
                'An unexpected error occurred during authentication',
                500
            )

        outcome: ReconciliationOutcome = self.reconciler.reconcile(identity)
        logging.info(f"Reconciliation finished: {outcome.terminal} via {' -> '.join(outcome.transitions)}")

        if not outcome.succeeded:
            raise BridgeError('Registration failed', outcome.error or 'Registration failed', 500)

        return outcome.session

    def _render_error(self, title: str, message: str, allow_retry: bool) -> str:
        template = self.jinja_env.get_template('auth_error.html')
        return template.render(title=title, message=message, allow_retry=allow_retry)
