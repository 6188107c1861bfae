"""
Google Auth Bridge HTTP server

Starlette application exposing the bridge endpoints. Run with:

    python server.py
    uvicorn server:create_app --factory --port 3001

Storage backends are selected from configuration: in-memory by default,
Redis (shared across instances) when REDIS_URL is set.
"""

import logging
import sys
import uuid
from typing import Awaitable, Callable, Dict, Optional

import redis
import uvicorn
from starlette.applications import Starlette
from starlette.middleware import Middleware
from starlette.middleware.cors import CORSMiddleware
from starlette.requests import Request
from starlette.responses import HTMLResponse, JSONResponse, Response
from starlette.routing import Route
from starlette.types import ASGIApp, Receive, Scope, Send

from account_reconciler import AccountReconciler
from audit_decorator import audit_endpoint, clear_request_metadata, set_request_metadata
from audit_logger import AuditAction, AuditSeverity
from bridge_config import BridgeConfig
from bridge_endpoints import BridgeEndpoints, BridgeError
from google_identity import GoogleIdentityExchange
from handoff_mailbox import HandoffMailbox, RedisHandoffMailbox
from rate_limiter import BRIDGE_RATE_LIMITS, RateLimiter, create_rate_limiter
from state_ledger import RedisStateLedger, StateLedger
from ticketing_client import TicketingClient
from token_encryption import get_handoff_cipher


INTERNAL_ERROR_BODY = {
    "success": False,
    "error": "Internal server error",
    "message": "An unexpected error occurred",
}


def create_redis_client(redis_url: str):
    """
    Connect to Redis.

    Returns:
        redis.Redis, or None if the server cannot be reached
    """
    client = redis.from_url(
        redis_url,
        decode_responses=True,
        socket_connect_timeout=5,
        socket_keepalive=True
    )
    try:
        client.ping()
    except redis.RedisError as e:
        logging.error(f"Redis connection failed: {e}")
        logging.error("Falling back to in-memory storage; sessions will not be shared across instances")
        return None

    logging.info("Redis connection successful")
    return client


def build_endpoints(config: BridgeConfig, redis_client=None) -> BridgeEndpoints:
    """Wire storage backends and upstream clients into the endpoint handlers."""
    if redis_client is not None:
        ledger = RedisStateLedger(redis_client)
        mailbox = RedisHandoffMailbox(redis_client, cipher=get_handoff_cipher(config.handoff_encryption_key))
    else:
        ledger = StateLedger()
        mailbox = HandoffMailbox()

    google = GoogleIdentityExchange(config)
    reconciler = AccountReconciler(TicketingClient(config))
    return BridgeEndpoints(config, ledger, mailbox, google, reconciler)


def build_rate_limiters(config: BridgeConfig, redis_client=None) -> Dict[str, RateLimiter]:
    if not config.rate_limit_enabled:
        logging.warning("Rate limiting DISABLED (RATE_LIMIT_ENABLED=false)")
        return {}

    limiters = {name: create_rate_limiter(name, redis_client) for name in BRIDGE_RATE_LIMITS}
    logging.info(f"Rate limiters initialized ({'redis' if redis_client is not None else 'memory'})")
    return limiters


class RequestMetadataMiddleware:
    """Puts request id, client IP and user agent into the audit context variables."""

    def __init__(self, app: ASGIApp):
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        request = Request(scope)
        tokens = set_request_metadata(
            request.headers.get("X-Request-ID") or str(uuid.uuid4()),
            RateLimiter.get_client_ip(request),
            request.headers.get("User-Agent"),
        )
        try:
            await self.app(scope, receive, send)
        finally:
            clear_request_metadata(tokens)


def create_app(
    config: Optional[BridgeConfig] = None,
    endpoints: Optional[BridgeEndpoints] = None,
    rate_limiters: Optional[Dict[str, RateLimiter]] = None,
) -> Starlette:
    """
    Build the Starlette application.

    Args:
        config: Bridge configuration (default: from environment)
        endpoints: Pre-built handlers (default: built from config)
        rate_limiters: Limiters keyed by endpoint name (default: from config)
    """
    config = config or BridgeConfig.from_env()

    redis_client = None
    if config.redis_url and (endpoints is None or rate_limiters is None):
        redis_client = create_redis_client(config.redis_url)

    if endpoints is None:
        endpoints = build_endpoints(config, redis_client)
    if rate_limiters is None:
        rate_limiters = build_rate_limiters(config, redis_client)

    async def guarded(request: Request, endpoint_name: str, call: Callable[[], Awaitable[Response]]) -> Response:
        limiter = rate_limiters.get(endpoint_name)
        remaining = None
        if limiter:
            allowed, remaining = limiter.check_rate_limit(request, endpoint_name)
            if not allowed:
                return limiter.create_rate_limit_response()

        try:
            response = await call()
        except BridgeError as e:
            logging.warning(f"{endpoint_name} failed: {e.error} ({e.status_code}): {e.message}")
            response = JSONResponse(e.to_dict(), status_code=e.status_code)
        except Exception as e:
            logging.error(f"Unexpected error in {endpoint_name}: {e}", exc_info=True)
            response = JSONResponse(INTERNAL_ERROR_BODY, status_code=500)

        if limiter:
            limiter.apply_headers(response, remaining)
        return response

    @audit_endpoint(AuditSeverity.MEDIUM, AuditAction.AUTHORIZE)
    async def auth_url(request: Request):
        """GET /auth/google/url"""
        async def call():
            return JSONResponse(await endpoints.handle_auth_url())
        return await guarded(request, "auth_url", call)

    @audit_endpoint(AuditSeverity.MEDIUM, AuditAction.AUTH)
    async def complete(request: Request):
        """POST /auth/google/complete"""
        async def call():
            try:
                body = await request.json()
            except ValueError:
                raise BridgeError('Invalid request body', 'Request body must be valid JSON')
            if not isinstance(body, dict):
                raise BridgeError('Invalid request body', 'Request body must be a JSON object')
            return JSONResponse(await endpoints.handle_complete(body))
        return await guarded(request, "complete", call)

    @audit_endpoint(AuditSeverity.MEDIUM, AuditAction.CALLBACK)
    async def success(request: Request):
        """GET /auth/google/success - redirect target registered with Google"""
        async def call():
            return HTMLResponse(await endpoints.handle_success(dict(request.query_params)))
        return await guarded(request, "success", call)

    @audit_endpoint(AuditSeverity.MEDIUM, AuditAction.POLL)
    async def check_session(request: Request):
        """GET /auth/check-session - polled by the mobile client"""
        async def call():
            return JSONResponse(await endpoints.handle_check_session())
        return await guarded(request, "check_session", call)

    @audit_endpoint(AuditSeverity.MEDIUM, AuditAction.POLL)
    async def check_session_key(request: Request):
        """GET /auth/check/{session_key} - development only"""
        async def call():
            return JSONResponse(await endpoints.handle_check_session_key(request.path_params["session_key"]))
        return await guarded(request, "check_session_key", call)

    @audit_endpoint(AuditSeverity.CRITICAL, AuditAction.CLEAR)
    async def clear_session(request: Request):
        """POST|GET /auth/clear-session"""
        async def call():
            return JSONResponse(await endpoints.handle_clear_session(pre_auth=request.method == "GET"))
        return await guarded(request, "clear_session", call)

    @audit_endpoint(AuditSeverity.LOW, AuditAction.HEALTH)
    async def health(request: Request):
        """GET /health"""
        async def call():
            return JSONResponse(await endpoints.handle_health())
        return await guarded(request, "health", call)

    routes = [
        Route("/auth/google/url", auth_url, methods=["GET"]),
        Route("/auth/google/complete", complete, methods=["POST"]),
        Route("/auth/google/success", success, methods=["GET"]),
        Route("/auth/check-session", check_session, methods=["GET"]),
        Route("/auth/check/{session_key}", check_session_key, methods=["GET"]),
        Route("/auth/clear-session", clear_session, methods=["GET", "POST"]),
        Route("/health", health, methods=["GET"]),
    ]

    middleware = [
        Middleware(
            CORSMiddleware,
            allow_origins=config.cors_allow_origins,
            allow_methods=["*"],
            allow_headers=["*"],
        ),
        Middleware(RequestMetadataMiddleware),
    ]

    app = Starlette(routes=routes, middleware=middleware)
    app.state.config = config
    app.state.endpoints = endpoints
    app.state.rate_limiters = rate_limiters
    return app


def main():
    config = BridgeConfig.from_env()

    logging.basicConfig(
        level=getattr(logging, config.log_level, logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[logging.StreamHandler(sys.stderr)]
    )

    logging.info("Starting Google Auth Bridge")
    for name, status in config.describe().items():
        logging.info(f"  {name}: {status}")

    missing = config.missing_settings()
    if missing:
        logging.warning(f"Missing required settings: {', '.join(missing)}")

    app = create_app(config)
    logging.info(f"Google Auth Bridge listening on port {config.port}")
    uvicorn.run(app, host="0.0.0.0", port=config.port)


if __name__ == "__main__":
    main()
