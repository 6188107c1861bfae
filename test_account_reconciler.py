"""
Tests for the account reconciliation state machine.

Scenarios:
A. fresh Google user -> registered
B. existing user, primary password works
C. existing user, third alternative pattern works
D. all logins fail, unique-credential registration works
E. everything fails -> limited mode
"""

import json

import pytest

from account_reconciler import (
    MESSAGE_LIMITED,
    REGISTRATION_FAILED,
    TERMINAL_FAILED,
    TERMINAL_FULL,
    TERMINAL_LIMITED,
    AccountReconciler,
    ReconciliationAttempt,
    alternative_passwords,
    primary_password,
)
from google_identity import GoogleIdentity
from ticketing_client import (
    MalformedTicketingResponse,
    TicketingAccount,
    TicketingConflictError,
    TicketingRequestError,
)


IDENTITY = GoogleIdentity(
    provider_id="1234567890",
    email="Jane.Doe@example.com",
    name="Jane Doe",
    picture_url="https://lh3.googleusercontent.com/a/photo.jpg",
    email_verified=True,
)

PRIMARY = "GoogleAuth_1234567890_Jane.Doe"
ALTERNATIVES = [
    "GoogleAuth_1234567890",
    "GoogleAuth_Jane.Doe_1234567890",
    "Google_1234567890_Jane.Doe",
    "GoogleAuth_1234567890_jane.doe",
    "GoogleAuth_1234567890_JaneDoe",
]


def account(user_id=42) -> TicketingAccount:
    return TicketingAccount(
        user_id=user_id,
        access_token=f"access-{user_id}",
        refresh_token=f"refresh-{user_id}",
        admin=False,
        admin_level=0,
        company="ACME",
    )


class ScriptedTicketing:
    """
    Ticketing fake driven by a script.

    register_results: consumed in order, one per register() call
    login_results: password -> result; unknown passwords get invalid credentials
    """

    def __init__(self, register_results, login_results=None):
        self.register_results = list(register_results)
        self.login_results = dict(login_results or {})
        self.calls = []

    def register(self, name, email, username, password):
        self.calls.append(("register", username, password))
        return self._resolve(self.register_results.pop(0))

    def login(self, identity, password):
        self.calls.append(("login", identity, password))
        return self._resolve(
            self.login_results.get(password, TicketingRequestError("Invalid credentials", status_code=401))
        )

    @staticmethod
    def _resolve(result):
        if isinstance(result, Exception):
            raise result
        return result


def conflict():
    return TicketingConflictError("User already exists", status_code=409)


@pytest.fixture
def reconciler_for(clock):
    def build(ticketing):
        return AccountReconciler(ticketing, clock=clock, token_hex=lambda n: "ab" * n)
    return build


class TestDerivation:

    def test_primary_password(self):
        assert primary_password("42", "john.smith") == "GoogleAuth_42_john.smith"

    def test_alternative_order(self):
        assert alternative_passwords("1234567890", "Jane.Doe") == ALTERNATIVES

    def test_attempt(self):
        attempt = ReconciliationAttempt.derive(IDENTITY)

        assert attempt.username == "Jane.Doe"
        assert attempt.password == PRIMARY
        assert attempt.alternatives == ALTERNATIVES


class TestScenarios:

    def test_a_fresh_user_is_registered(self, reconciler_for):
        ticketing = ScriptedTicketing([account()])

        outcome = reconciler_for(ticketing).reconcile(IDENTITY)

        assert outcome.terminal == TERMINAL_FULL
        assert outcome.transitions == ["derive", "register"]
        assert ticketing.calls == [("register", "Jane.Doe", PRIMARY)]

        body = outcome.session.to_dict()
        assert body["mode"] == "full"
        assert body["access_token"] == "access-42"
        assert body["refresh_token"] == "refresh-42"
        assert body["user"]["id"] == 42
        assert body["user"]["username"] == "Jane.Doe"
        assert body["user"]["google_id"] == "1234567890"
        assert body["user"]["company"] == "ACME"
        assert "password" not in json.dumps(body)

    def test_b_existing_user_primary_login(self, reconciler_for):
        ticketing = ScriptedTicketing([conflict()], {PRIMARY: account(7)})

        outcome = reconciler_for(ticketing).reconcile(IDENTITY)

        assert outcome.terminal == TERMINAL_FULL
        assert outcome.transitions == ["derive", "register", "login"]
        assert ticketing.calls[-1] == ("login", "Jane.Doe@example.com", PRIMARY)
        assert outcome.session.user.id == 7
        assert outcome.matched_pattern is None

    def test_c_third_alternative_matches(self, reconciler_for):
        ticketing = ScriptedTicketing([conflict()], {ALTERNATIVES[2]: account(9)})

        outcome = reconciler_for(ticketing).reconcile(IDENTITY)

        assert outcome.terminal == TERMINAL_FULL
        assert outcome.transitions == ["derive", "register", "login", "alternative_login"]
        assert outcome.matched_pattern == 3
        assert "pattern 3" in outcome.session.message
        assert outcome.session.to_dict()["matched_pattern"] == 3

        login_passwords = [call[2] for call in ticketing.calls if call[0] == "login"]
        assert login_passwords == [PRIMARY] + ALTERNATIVES[:3]

    def test_d_unique_retry(self, reconciler_for):
        ticketing = ScriptedTicketing([conflict(), account(11)])

        outcome = reconciler_for(ticketing).reconcile(IDENTITY)

        assert outcome.terminal == TERMINAL_FULL
        assert outcome.transitions == ["derive", "register", "login", "alternative_login", "unique_retry"]

        _, username, password = ticketing.calls[-1]
        assert username == "Jane.Doe_1700000000000"
        assert password == "GoogleAuth_" + "ab" * 12
        assert len(password) == len("GoogleAuth_") + 24
        assert outcome.session.user.username == "Jane.Doe_1700000000000"
        assert outcome.session.user.id == 11

    def test_e_limited_mode(self, reconciler_for):
        ticketing = ScriptedTicketing([conflict(), conflict()])

        outcome = reconciler_for(ticketing).reconcile(IDENTITY)

        assert outcome.terminal == TERMINAL_LIMITED
        assert outcome.transitions == [
            "derive", "register", "login", "alternative_login", "unique_retry", "limited"
        ]
        body = outcome.session.to_dict()
        assert body["success"] is True
        assert body["mode"] == "limited"
        assert body["has_api_access"] is False
        assert body["google_only_mode"] is True
        assert body["message"] == MESSAGE_LIMITED
        assert "access_token" not in body
        assert body["user"]["email"] == "Jane.Doe@example.com"
        assert body["user"]["id"] is None


class TestFailures:

    def test_non_conflict_registration_failure_is_terminal(self, reconciler_for):
        ticketing = ScriptedTicketing([TicketingRequestError("Service unavailable", status_code=503)])

        outcome = reconciler_for(ticketing).reconcile(IDENTITY)

        assert outcome.terminal == TERMINAL_FAILED
        assert outcome.error == REGISTRATION_FAILED
        assert outcome.session is None
        assert outcome.transitions == ["derive", "register"]
        assert len(ticketing.calls) == 1

    def test_malformed_registration_response_is_terminal(self, reconciler_for):
        ticketing = ScriptedTicketing([MalformedTicketingResponse("missing user.id")])

        outcome = reconciler_for(ticketing).reconcile(IDENTITY)

        assert outcome.terminal == TERMINAL_FAILED

    def test_malformed_login_response_moves_on(self, reconciler_for):
        ticketing = ScriptedTicketing(
            [conflict()],
            {PRIMARY: MalformedTicketingResponse("missing access_token"), ALTERNATIVES[0]: account(5)},
        )

        outcome = reconciler_for(ticketing).reconcile(IDENTITY)

        assert outcome.terminal == TERMINAL_FULL
        assert outcome.matched_pattern == 1


class TestProperties:

    def test_deterministic(self, reconciler_for):
        def run():
            ticketing = ScriptedTicketing([conflict(), conflict()], {ALTERNATIVES[4]: account(3)})
            outcome = reconciler_for(ticketing).reconcile(IDENTITY)
            return outcome.terminal, outcome.transitions, ticketing.calls

        assert run() == run()

    @pytest.mark.parametrize("register_results,login_results", [
        ([account()], {}),
        ([conflict()], {PRIMARY: account()}),
        ([conflict(), account()], {}),
        ([conflict(), conflict()], {}),
        ([TicketingRequestError("boom")], {}),
    ])
    def test_exactly_one_terminal(self, reconciler_for, register_results, login_results):
        ticketing = ScriptedTicketing(register_results, login_results)

        outcome = reconciler_for(ticketing).reconcile(IDENTITY)

        assert outcome.terminal in (TERMINAL_FULL, TERMINAL_LIMITED, TERMINAL_FAILED)
        assert (outcome.session is None) == (outcome.terminal == TERMINAL_FAILED)
