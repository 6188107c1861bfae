"""
Rate Limiter for the bridge endpoints

Per-IP sliding-window limits, one limiter per endpoint. Protects against:
- State exhaustion (auth URL spam)
- Authorization code replay / enumeration on complete and success
- Session-key guessing on the development lookup

The in-memory backend serves single-instance deployments; the Redis backend
shares windows across instances and fails open on Redis errors.
"""

import logging
import threading
from abc import ABC, abstractmethod
import time
import uuid
from collections import deque
from typing import Callable, Deque, Dict, Optional, Tuple

from redis.exceptions import RedisError
from starlette.requests import Request
from starlette.responses import JSONResponse, Response


class RateLimiter(ABC):
    """Shared request inspection and response helpers."""

    backend = "none"

    def __init__(self, requests_per_minute: int, window_size: int = 60):
        self.requests_per_minute = requests_per_minute
        self.window_size = window_size
        self.enabled = True

    @staticmethod
    def get_client_ip(request: Request) -> str:
        """
        Client IP, honouring X-Forwarded-For (first hop) behind a reverse proxy.
        """
        forwarded = request.headers.get("X-Forwarded-For")
        if forwarded:
            return forwarded.split(",")[0].strip()

        client = request.client
        if client:
            return client.host

        return "unknown"

    def check_rate_limit(self, request: Request, endpoint_name: str) -> Tuple[bool, int]:
        """
        Record the request and decide whether it is within the limit.

        Returns:
            Tuple of (allowed, remaining_requests)
        """
        if not self.enabled:
            return True, self.requests_per_minute

        client_ip = self.get_client_ip(request)
        allowed, remaining = self._hit(f"rate_limit:{endpoint_name}:{client_ip}")

        if not allowed:
            logging.warning(
                f"Rate limit exceeded for {client_ip} on {endpoint_name}: "
                f"{self.requests_per_minute} requests/{self.window_size}s"
            )
        return allowed, remaining

    @abstractmethod
    def _hit(self, key: str) -> Tuple[bool, int]:
        """Record one request for key. Returns (allowed, remaining)."""

    def create_rate_limit_response(self, retry_after: Optional[int] = None) -> JSONResponse:
        """429 Too Many Requests with Retry-After and X-RateLimit-* headers."""
        retry_after = retry_after or self.window_size
        return JSONResponse(
            status_code=429,
            content={
                "success": False,
                "error": "too_many_requests",
                "message": f"Rate limit exceeded. Please retry after {retry_after} seconds."
            },
            headers={
                "Retry-After": str(retry_after),
                "X-RateLimit-Limit": str(self.requests_per_minute),
                "X-RateLimit-Remaining": "0",
                "X-RateLimit-Reset": str(int(time.time()) + retry_after)
            }
        )

    def apply_headers(self, response: Response, remaining: int) -> Response:
        response.headers["X-RateLimit-Limit"] = str(self.requests_per_minute)
        response.headers["X-RateLimit-Remaining"] = str(remaining)
        response.headers["X-RateLimit-Reset"] = str(int(time.time()) + self.window_size)
        return response


class InMemoryRateLimiter(RateLimiter):
    """Process-local sliding window (timestamps per key)."""

    backend = "memory"

    def __init__(self, requests_per_minute: int, window_size: int = 60, clock: Callable[[], float] = time.time):
        super().__init__(requests_per_minute, window_size)
        self._clock = clock
        self._windows: Dict[str, Deque[float]] = {}
        self._last_sweep = clock()
        self._lock = threading.Lock()

    def _hit(self, key: str) -> Tuple[bool, int]:
        now = self._clock()
        min_time = now - self.window_size

        with self._lock:
            if now - self._last_sweep >= self.window_size:
                self._sweep(min_time)
                self._last_sweep = now
            window = self._windows.setdefault(key, deque())
            while window and window[0] <= min_time:
                window.popleft()

            if len(window) >= self.requests_per_minute:
                return False, 0

            window.append(now)
            return True, self.requests_per_minute - len(window)

    def _sweep(self, min_time: float) -> None:
        """Drop keys whose newest request has left the window. Caller holds the lock."""
        stale = [key for key, window in self._windows.items() if not window or window[-1] <= min_time]
        for key in stale:
            del self._windows[key]


class RedisRateLimiter(RateLimiter):
    """
    Redis-backed sliding window (sorted set of request timestamps).

    Fails open: a Redis outage must not lock users out of sign-in.
    """

    backend = "redis"

    def __init__(self, redis_client, requests_per_minute: int, window_size: int = 60):
        super().__init__(requests_per_minute, window_size)
        self.redis_client = redis_client

        self.rate_limit_script = self.redis_client.register_script("""
            local key = KEYS[1]
            local limit = tonumber(ARGV[1])
            local window_ms = tonumber(ARGV[2])
            local now = tonumber(ARGV[3])
            local member = ARGV[4]

            redis.call('ZREMRANGEBYSCORE', key, '-inf', now - window_ms)

            local count = redis.call('ZCARD', key)
            if count < limit then
                redis.call('ZADD', key, now, member)
                redis.call('PEXPIRE', key, window_ms)
                return {1, limit - count - 1}
            end
            return {0, 0}
        """)

        logging.info(f"Redis rate limiter initialized: {requests_per_minute} requests per {window_size}s")

    def _hit(self, key: str) -> Tuple[bool, int]:
        now_ms = int(time.time() * 1000)
        try:
            result = self.rate_limit_script(
                keys=[key],
                args=[self.requests_per_minute, self.window_size * 1000, now_ms, f"{now_ms}-{uuid.uuid4().hex}"]
            )
        except RedisError as e:
            logging.error(f"Rate limit check failed: {e}, allowing request")
            return True, self.requests_per_minute

        return bool(result[0]), int(result[1])


BRIDGE_RATE_LIMITS = {
    # Auth URL: users tapping "Sign in with Google"
    "auth_url": {"requests_per_minute": 10, "window_size": 60},

    # Direct completion with a code obtained by the client
    "complete": {"requests_per_minute": 10, "window_size": 60},

    # Browser redirect target
    "success": {"requests_per_minute": 10, "window_size": 60},

    # Mobile client polls this repeatedly
    "check_session": {"requests_per_minute": 60, "window_size": 60},

    # Development session-key lookup
    "check_session_key": {"requests_per_minute": 10, "window_size": 60},

    "clear_session": {"requests_per_minute": 10, "window_size": 60},
}


def create_rate_limiter(endpoint_name: str, redis_client=None) -> Optional[RateLimiter]:
    """
    Build the limiter for an endpoint listed in BRIDGE_RATE_LIMITS.

    Args:
        endpoint_name: Key in BRIDGE_RATE_LIMITS
        redis_client: Redis client; the in-memory backend is used when None

    Returns:
        RateLimiter, or None if the endpoint has no configured limit
    """
    config = BRIDGE_RATE_LIMITS.get(endpoint_name)
    if not config:
        logging.warning(f"No rate limit config for endpoint: {endpoint_name}")
        return None

    if redis_client is not None:
        return RedisRateLimiter(redis_client, **config)
    return InMemoryRateLimiter(**config)
