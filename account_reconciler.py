"""
Account Reconciliation Engine

Maps a verified Google identity onto an account of the ticketing API, which
only understands username/password credentials.

States:
    S0 derive             username + primary password + alternative candidates
    S1 register           new account -> full
    S2 login              primary password -> full
    S3 alternative_login  ordered scan of legacy password patterns -> full
    S4 unique_retry       register a disambiguated account -> full
    S5 limited            Google identity only, no tokens

Upstream failures never escape reconcile(); every path ends in exactly one
terminal (full, limited or failed).

The password derivation is guesswork kept for compatibility with accounts
created by earlier releases of the bridge. A server-side mapping from Google
id to ticketing account would replace S2-S4 entirely.
"""

import logging
import secrets
import time
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from audit_logger import AuditAction, AuditSeverity, get_audit_logger
from google_identity import GoogleIdentity
from handoff_mailbox import MODE_FULL, MODE_LIMITED, AuthSession, SessionUser
from ticketing_client import (
    TicketingAccount,
    TicketingConflictError,
    TicketingError,
)


TERMINAL_FULL = "full"
TERMINAL_LIMITED = "limited"
TERMINAL_FAILED = "failed"

REGISTRATION_FAILED = "Failed to register Google user with ticketing API"

MESSAGE_REGISTERED = "New Google user registered with full ticketing API access"
MESSAGE_PRIMARY_LOGIN = "Existing Google user authenticated with stored credentials"
MESSAGE_ALTERNATIVE_LOGIN = "Existing Google user authenticated with alternative password pattern {index}"
MESSAGE_UNIQUE_RETRY = "Google user registered with unique credentials"
MESSAGE_LIMITED = "Google user authenticated in limited mode - unable to link with existing account"


def primary_password(google_id: str, local_part: str) -> str:
    return f"GoogleAuth_{google_id}_{local_part}"


def alternative_passwords(google_id: str, local_part: str) -> List[str]:
    """Legacy password patterns, in the order they are tried."""
    return [
        f"GoogleAuth_{google_id}",
        f"GoogleAuth_{local_part}_{google_id}",
        f"Google_{google_id}_{local_part}",
        f"GoogleAuth_{google_id}_{local_part.lower()}",
        f"GoogleAuth_{google_id}_{local_part.replace('.', '')}",
    ]


@dataclass
class ReconciliationAttempt:
    """Working state of one reconciliation. Never persisted."""
    identity: GoogleIdentity
    username: str
    password: str
    alternatives: List[str]

    @classmethod
    def derive(cls, identity: GoogleIdentity) -> "ReconciliationAttempt":
        local_part = identity.email_local_part
        return cls(
            identity=identity,
            username=local_part,
            password=primary_password(identity.provider_id, local_part),
            alternatives=alternative_passwords(identity.provider_id, local_part),
        )


@dataclass
class ReconciliationOutcome:
    """Terminal result of reconcile()."""
    terminal: str
    transitions: List[str] = field(default_factory=list)
    session: Optional[AuthSession] = None
    error: Optional[str] = None
    matched_pattern: Optional[int] = None

    @property
    def succeeded(self) -> bool:
        return self.terminal in (TERMINAL_FULL, TERMINAL_LIMITED)


class AccountReconciler:
    """Drives the S0-S5 state machine against a TicketingClient."""

    def __init__(
        self,
        ticketing,
        clock: Callable[[], float] = time.time,
        token_hex: Callable[[int], str] = secrets.token_hex,
    ):
        """
        Args:
            ticketing: TicketingClient (register/login)
            clock: Time source for the unique-retry username suffix
            token_hex: Random source for the unique-retry password
        """
        self.ticketing = ticketing
        self._clock = clock
        self._token_hex = token_hex

    def reconcile(self, identity: GoogleIdentity) -> ReconciliationOutcome:
        outcome = ReconciliationOutcome(terminal=TERMINAL_FAILED)

        self._enter(outcome, "derive", identity)
        attempt = ReconciliationAttempt.derive(identity)

        self._enter(outcome, "register", identity)
        try:
            account = self.ticketing.register(
                identity.name, identity.email, attempt.username, attempt.password
            )
            return self._finish_full(outcome, identity, attempt.username, account, MESSAGE_REGISTERED)
        except TicketingConflictError:
            logging.info(f"Ticketing account already exists for {identity.email}")
        except TicketingError as e:
            logging.error(f"Ticketing registration failed for {identity.email}: {e}")
            outcome.error = REGISTRATION_FAILED
            self._audit(outcome, identity)
            return outcome

        self._enter(outcome, "login", identity)
        try:
            account = self.ticketing.login(identity.email, attempt.password)
            return self._finish_full(outcome, identity, attempt.username, account, MESSAGE_PRIMARY_LOGIN)
        except TicketingError as e:
            logging.info(f"Primary password login failed for {identity.email}: {e}")

        self._enter(outcome, "alternative_login", identity)
        for index, candidate in enumerate(attempt.alternatives, start=1):
            try:
                account = self.ticketing.login(identity.email, candidate)
            except TicketingError as e:
                logging.info(f"Alternative password pattern {index}/{len(attempt.alternatives)} failed: {e}")
                continue
            outcome.matched_pattern = index
            return self._finish_full(
                outcome, identity, attempt.username, account,
                MESSAGE_ALTERNATIVE_LOGIN.format(index=index)
            )

        self._enter(outcome, "unique_retry", identity)
        unique_username = f"{attempt.username}_{int(self._clock() * 1000)}"
        unique_password = f"GoogleAuth_{self._token_hex(12)}"
        try:
            account = self.ticketing.register(
                identity.name, identity.email, unique_username, unique_password
            )
            return self._finish_full(outcome, identity, unique_username, account, MESSAGE_UNIQUE_RETRY)
        except TicketingError as e:
            logging.warning(f"Unique-credential registration failed for {identity.email}: {e}")

        self._enter(outcome, "limited", identity)
        outcome.terminal = TERMINAL_LIMITED
        outcome.session = AuthSession(
            user=SessionUser(
                email=identity.email,
                name=identity.name,
                username=attempt.username,
                google_id=identity.provider_id,
                picture=identity.picture_url,
                verified_email=identity.email_verified,
                has_api_access=False,
                google_only_mode=True,
            ),
            mode=MODE_LIMITED,
            message=MESSAGE_LIMITED,
        )
        self._audit(outcome, identity)
        return outcome

    def _finish_full(
        self,
        outcome: ReconciliationOutcome,
        identity: GoogleIdentity,
        username: str,
        account: TicketingAccount,
        message: str,
    ) -> ReconciliationOutcome:
        outcome.terminal = TERMINAL_FULL
        outcome.session = AuthSession(
            user=SessionUser(
                id=account.user_id,
                email=identity.email,
                name=identity.name,
                username=username,
                google_id=identity.provider_id,
                picture=identity.picture_url,
                verified_email=identity.email_verified,
                admin=account.admin,
                admin_level=account.admin_level,
                company=account.company,
                has_api_access=True,
                google_only_mode=False,
            ),
            mode=MODE_FULL,
            message=message,
            access_token=account.access_token,
            refresh_token=account.refresh_token,
            matched_pattern=outcome.matched_pattern,
        )
        logging.info(f"Reconciled {identity.email}: {message}")
        self._audit(outcome, identity)
        return outcome

    @staticmethod
    def _enter(outcome: ReconciliationOutcome, state: str, identity: GoogleIdentity) -> None:
        outcome.transitions.append(state)
        logging.debug(f"Reconciliation of {identity.email} entering state: {state}")

    @staticmethod
    def _audit(outcome: ReconciliationOutcome, identity: GoogleIdentity) -> None:
        severity = AuditSeverity.HIGH if outcome.terminal == TERMINAL_FAILED else AuditSeverity.MEDIUM
        fields = {
            "terminal": outcome.terminal,
            "transitions": list(outcome.transitions),
        }
        if outcome.matched_pattern is not None:
            fields["matched_pattern"] = outcome.matched_pattern

        get_audit_logger().log_event(
            event_type="account_reconciliation",
            severity=severity,
            action=AuditAction.AUTH,
            status="failure" if outcome.terminal == TERMINAL_FAILED else "success",
            user_id=identity.provider_id,
            error_message=outcome.error,
            additional_safe_fields=fields,
        )
