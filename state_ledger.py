"""
State Ledger

Issues and validates single-use OAuth "state" tokens (CSRF protection) for the
Google authorization flow.

Two backends share the same contract:
- StateLedger: in-process dict guarded by a lock (single instance deployments)
- RedisStateLedger: Redis keys with TTL, consumed with an atomic Lua script
  (multi-instance deployments)

A state is valid for exactly one completion attempt and expires after
STATE_TTL seconds even if never used. validate() does not tell the caller
why a token was rejected (absent, consumed and expired look the same).
"""

import logging
import secrets
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional


STATE_TTL = 600  # 10 minutes


@dataclass
class AuthorizationState:
    """An issued state token."""
    token: str
    created_at: float

    def expired(self, now: float, ttl: int = STATE_TTL) -> bool:
        return now - self.created_at > ttl


def generate_state_token() -> str:
    """
    Generate secure random state parameter.

    Returns:
        URL-safe random token (32 bytes of entropy = 43 chars)
    """
    return secrets.token_urlsafe(32)


class StateLedger:
    """In-memory state ledger. Safe for concurrent callers."""

    backend = "memory"

    def __init__(self, ttl: int = STATE_TTL, clock: Callable[[], float] = time.time):
        """
        Initialize the ledger.

        Args:
            ttl: State lifetime in seconds
            clock: Time source (injectable for tests)
        """
        self.ttl = ttl
        self._clock = clock
        self._states: Dict[str, AuthorizationState] = {}
        self._lock = threading.Lock()

    def issue(self) -> AuthorizationState:
        """
        Mint a new state token and sweep expired ones.

        Returns:
            The issued AuthorizationState
        """
        now = self._clock()
        with self._lock:
            self._sweep(now)
            token = generate_state_token()
            while token in self._states:
                token = generate_state_token()
            state = AuthorizationState(token=token, created_at=now)
            self._states[token] = state

        logging.debug(f"Issued OAuth state: {token[:10]}... ({len(self._states)} resident)")
        return state

    def validate(self, token: Optional[str]) -> bool:
        """
        Consume a state token.

        Args:
            token: State received from the client

        Returns:
            True exactly once for a live token, False otherwise
        """
        if not isinstance(token, str) or not token:
            return False

        now = self._clock()
        with self._lock:
            state = self._states.pop(token, None)

        if state is None:
            logging.warning(f"OAuth state not found or already consumed: {token[:10]}...")
            return False
        if state.expired(now, self.ttl):
            logging.warning(f"OAuth state expired: {token[:10]}...")
            return False

        logging.debug(f"Consumed OAuth state: {token[:10]}...")
        return True

    def clear(self) -> int:
        """Drop every resident state. Returns how many were removed."""
        with self._lock:
            cleared = len(self._states)
            self._states.clear()
        return cleared

    def count(self) -> int:
        with self._lock:
            return len(self._states)

    def _sweep(self, now: float) -> None:
        # Caller holds the lock
        expired = [key for key, state in self._states.items() if state.expired(now, self.ttl)]
        for key in expired:
            del self._states[key]
        if expired:
            logging.debug(f"Swept {len(expired)} expired OAuth states")


class RedisStateLedger:
    """
    Redis-backed state ledger.

    Expiry is delegated to Redis (SETEX); consumption uses a server-side
    get-and-delete script so two concurrent validations of the same state
    cannot both succeed.
    """

    backend = "redis"
    STATE_PREFIX = "bridge:state:"

    def __init__(self, redis_client, ttl: int = STATE_TTL, clock: Callable[[], float] = time.time):
        """
        Initialize the ledger.

        Args:
            redis_client: redis.Redis instance (decode_responses=True)
            ttl: State lifetime in seconds
            clock: Time source used for the stored creation timestamp
        """
        self.redis_client = redis_client
        self.ttl = ttl
        self._clock = clock

        # Returns the value if found and deletes it, or nil if not found
        self.atomic_get_and_delete = self.redis_client.register_script("""
            local value = redis.call('GET', KEYS[1])
            if value then
                redis.call('DEL', KEYS[1])
            end
            return value
        """)

    def issue(self) -> AuthorizationState:
        now = self._clock()
        token = generate_state_token()
        key = f"{self.STATE_PREFIX}{token}"
        # NX guards against the (astronomically unlikely) token collision
        while not self.redis_client.set(key, str(now), ex=self.ttl, nx=True):
            token = generate_state_token()
            key = f"{self.STATE_PREFIX}{token}"

        logging.debug(f"Stored OAuth state in Redis: {token[:10]}...")
        return AuthorizationState(token=token, created_at=now)

    def validate(self, token: Optional[str]) -> bool:
        if not isinstance(token, str) or not token:
            return False

        data = self.atomic_get_and_delete(keys=[f"{self.STATE_PREFIX}{token}"])
        if not data:
            logging.warning(f"OAuth state not found, expired or already consumed: {token[:10]}...")
            return False

        logging.debug(f"Atomically consumed OAuth state: {token[:10]}...")
        return True

    def clear(self) -> int:
        keys = list(self.redis_client.scan_iter(match=f"{self.STATE_PREFIX}*"))
        if not keys:
            return 0
        return int(self.redis_client.delete(*keys))

    def count(self) -> int:
        return sum(1 for _ in self.redis_client.scan_iter(match=f"{self.STATE_PREFIX}*"))
