"""
Handoff Mailbox

Single-slot staging area between the browser redirect handler and the
polling mobile client. The two run as unrelated requests; the mailbox is the
only synchronization point between them.

Contract:
- publish(item): overwrite the slot (latest wins, used on account switch)
- take(): atomically read and clear the slot (read-once)
- clear(): reset the slot

The slot holds either a RedirectHandoff (raw code + state from Google) or a
fully reconciled AuthSession. A keyed side store (stash/claim) backs the
development-only direct session lookup.
"""

import json
import logging
import secrets
import string
import threading
import time
from dataclasses import dataclass, asdict, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, Tuple, Union


HANDOFF_TTL = 600  # 10 minutes

MODE_FULL = "full"
MODE_LIMITED = "limited"

_BASE36 = string.digits + string.ascii_lowercase


@dataclass
class RedirectHandoff:
    """Raw OAuth redirect data captured by the success endpoint."""
    authorization_code: str
    state: str
    received_at: float

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RedirectHandoff":
        return cls(**data)

    @property
    def received_at_iso(self) -> str:
        return datetime.fromtimestamp(self.received_at, tz=timezone.utc).isoformat()


@dataclass
class SessionUser:
    """User block of an AuthSession (Google profile + ticketing account fields)."""
    email: str
    name: Optional[str]
    username: str
    google_id: str
    picture: Optional[str] = None
    verified_email: bool = False
    id: Optional[Any] = None
    admin: Optional[Any] = None
    admin_level: Optional[Any] = None
    company: Optional[Any] = None
    has_api_access: bool = False
    google_only_mode: bool = True
    provider: str = "google"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SessionUser":
        return cls(**data)


@dataclass
class AuthSession:
    """
    Terminal successful result of a Google sign-in.

    mode == "full": the ticketing API issued tokens.
    mode == "limited": only the Google identity is known, no tokens.
    """
    user: SessionUser
    mode: str
    message: str
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    matched_pattern: Optional[int] = None
    timestamp: int = field(default_factory=lambda: int(time.time() * 1000))

    @property
    def has_api_access(self) -> bool:
        return self.mode == MODE_FULL

    def to_dict(self) -> Dict[str, Any]:
        """Client-facing JSON body."""
        body: Dict[str, Any] = {
            "success": True,
            "user": self.user.to_dict(),
            "mode": self.mode,
            "has_api_access": self.has_api_access,
            "message": self.message,
            "timestamp": self.timestamp,
        }
        if self.mode == MODE_FULL:
            body["access_token"] = self.access_token
            body["refresh_token"] = self.refresh_token
            body["google_ticketing_mode"] = True
        else:
            body["google_only_mode"] = True
        if self.matched_pattern is not None:
            body["matched_pattern"] = self.matched_pattern
        return body

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AuthSession":
        return cls(
            user=SessionUser.from_dict(data["user"]),
            mode=data["mode"],
            message=data.get("message", ""),
            access_token=data.get("access_token"),
            refresh_token=data.get("refresh_token"),
            matched_pattern=data.get("matched_pattern"),
            timestamp=data.get("timestamp", int(time.time() * 1000)),
        )


PendingHandoff = Union[RedirectHandoff, AuthSession]


def serialize_handoff(item: PendingHandoff) -> Dict[str, Any]:
    if isinstance(item, RedirectHandoff):
        return {"kind": "redirect", "data": item.to_dict()}
    if isinstance(item, AuthSession):
        return {"kind": "session", "data": item.to_dict()}
    raise TypeError(f"Unsupported handoff item: {type(item).__name__}")


def deserialize_handoff(payload: Dict[str, Any]) -> PendingHandoff:
    kind = payload.get("kind")
    if kind == "redirect":
        return RedirectHandoff.from_dict(payload["data"])
    if kind == "session":
        return AuthSession.from_dict(payload["data"])
    raise ValueError(f"Unknown handoff kind: {kind!r}")


def new_session_key(clock: Callable[[], float] = time.time) -> str:
    """Human-copyable key shown on the success page: auth_<epoch ms>_<9 base36 chars>."""
    suffix = "".join(secrets.choice(_BASE36) for _ in range(9))
    return f"auth_{int(clock() * 1000)}_{suffix}"


class HandoffMailbox:
    """In-memory single-slot mailbox. Safe for concurrent callers."""

    backend = "memory"

    def __init__(self, ttl: int = HANDOFF_TTL, clock: Callable[[], float] = time.time):
        """
        Args:
            ttl: Seconds after which an unclaimed item reads as empty
            clock: Time source (injectable for tests)
        """
        self.ttl = ttl
        self._clock = clock
        self._lock = threading.Lock()
        self._slot: Optional[Tuple[PendingHandoff, float]] = None
        self._stash: Dict[str, Tuple[RedirectHandoff, float]] = {}

    def publish(self, item: Optional[PendingHandoff]) -> None:
        with self._lock:
            if self._slot is not None and item is not None:
                logging.info("Discarding unclaimed handoff item (latest wins)")
            self._slot = (item, self._clock()) if item is not None else None

    def take(self) -> Optional[PendingHandoff]:
        with self._lock:
            slot, self._slot = self._slot, None

        if slot is None:
            return None
        item, published_at = slot
        if self._clock() - published_at > self.ttl:
            logging.warning("Discarding expired handoff item")
            return None
        return item

    def clear(self) -> None:
        self.publish(None)

    def stash(self, session_key: str, redirect: RedirectHandoff) -> None:
        now = self._clock()
        with self._lock:
            expired = [k for k, (_, at) in self._stash.items() if now - at > self.ttl]
            for k in expired:
                del self._stash[k]
            self._stash[session_key] = (redirect, now)

    def claim(self, session_key: str) -> Optional[RedirectHandoff]:
        with self._lock:
            entry = self._stash.pop(session_key, None)
        if entry is None:
            return None
        redirect, stashed_at = entry
        if self._clock() - stashed_at > self.ttl:
            return None
        return redirect

    def clear_all(self) -> None:
        with self._lock:
            self._slot = None
            self._stash.clear()


class RedisHandoffMailbox:
    """
    Redis-backed mailbox for multi-instance deployments.

    The slot is a single key; take() is an atomic server-side get-and-delete.
    Payloads are sealed with HandoffCipher when a key is configured.
    """

    backend = "redis"
    SLOT_KEY = "bridge:handoff:slot"
    STASH_PREFIX = "bridge:handoff:key:"

    def __init__(self, redis_client, cipher=None, ttl: int = HANDOFF_TTL):
        """
        Args:
            redis_client: redis.Redis instance (decode_responses=True)
            cipher: Optional HandoffCipher for encryption at rest
            ttl: Key lifetime in seconds
        """
        self.redis_client = redis_client
        self.cipher = cipher
        self.ttl = ttl

        self.atomic_get_and_delete = self.redis_client.register_script("""
            local value = redis.call('GET', KEYS[1])
            if value then
                redis.call('DEL', KEYS[1])
            end
            return value
        """)

    def _encode(self, payload: Dict[str, Any]) -> str:
        if self.cipher:
            return self.cipher.seal(payload)
        return json.dumps(payload)

    def _decode(self, raw) -> Optional[Dict[str, Any]]:
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        try:
            if self.cipher:
                return self.cipher.open(raw)
            return json.loads(raw)
        except ValueError as e:
            logging.error(f"Failed to decode handoff payload: {e}")
            return None

    def publish(self, item: Optional[PendingHandoff]) -> None:
        if item is None:
            self.redis_client.delete(self.SLOT_KEY)
            return
        self.redis_client.setex(self.SLOT_KEY, self.ttl, self._encode(serialize_handoff(item)))
        logging.debug(f"Published {type(item).__name__} to Redis handoff slot")

    def take(self) -> Optional[PendingHandoff]:
        raw = self.atomic_get_and_delete(keys=[self.SLOT_KEY])
        if not raw:
            return None
        payload = self._decode(raw)
        if payload is None:
            return None
        try:
            return deserialize_handoff(payload)
        except (KeyError, TypeError, ValueError) as e:
            logging.error(f"Invalid handoff payload in Redis: {e}")
            return None

    def clear(self) -> None:
        self.publish(None)

    def stash(self, session_key: str, redirect: RedirectHandoff) -> None:
        self.redis_client.setex(
            f"{self.STASH_PREFIX}{session_key}",
            self.ttl,
            self._encode(redirect.to_dict())
        )

    def claim(self, session_key: str) -> Optional[RedirectHandoff]:
        raw = self.atomic_get_and_delete(keys=[f"{self.STASH_PREFIX}{session_key}"])
        if not raw:
            return None
        payload = self._decode(raw)
        if payload is None:
            return None
        try:
            return RedirectHandoff.from_dict(payload)
        except TypeError as e:
            logging.error(f"Invalid stashed redirect in Redis: {e}")
            return None

    def clear_all(self) -> None:
        keys = [self.SLOT_KEY] + list(self.redis_client.scan_iter(match=f"{self.STASH_PREFIX}*"))
        self.redis_client.delete(*keys)
