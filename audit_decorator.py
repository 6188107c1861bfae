"""
Audit logging decorator for the bridge's HTTP handlers.

Request metadata (request id, client IP, user agent) is placed in context
variables by the request metadata middleware in server.py and picked up here,
so handlers do not need to pass it around.
"""

import functools
import time
import uuid
from contextvars import ContextVar
from typing import Any, Callable, Optional

from audit_logger import AuditAction, AuditSeverity, get_audit_logger

# Set by middleware for the duration of a request
request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
source_ip_var: ContextVar[Optional[str]] = ContextVar("source_ip", default=None)
user_agent_var: ContextVar[Optional[str]] = ContextVar("user_agent", default=None)


def audit_endpoint(severity: AuditSeverity, action: AuditAction):
    """
    Log an audit event when an async handler finishes.

    The status code is taken from the returned response (Starlette Response
    or anything with a status_code attribute, 200 otherwise) or from the
    raised exception's status_code (500 otherwise). Only the exception type
    is logged, never its message or the handler's arguments.

    Example:
        @audit_endpoint(AuditSeverity.MEDIUM, AuditAction.POLL)
        async def check_session(request):
            ...
    """

    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        async def wrapper(*args, **kwargs) -> Any:
            audit_logger = get_audit_logger()
            start_time = time.time()
            req_id = request_id_var.get() or str(uuid.uuid4())

            try:
                result = await func(*args, **kwargs)
            except Exception as e:
                audit_logger.log_event(
                    event_type=func.__name__,
                    severity=severity,
                    action=action,
                    status="failure",
                    status_code=getattr(e, "status_code", None) or 500,
                    error_message=type(e).__name__,
                    request_id=req_id,
                    source_ip=source_ip_var.get(),
                    user_agent=user_agent_var.get(),
                    duration_ms=int((time.time() - start_time) * 1000),
                )
                raise

            status_code = getattr(result, "status_code", 200)
            audit_logger.log_event(
                event_type=func.__name__,
                severity=severity,
                action=action,
                status="success" if status_code < 400 else "failure",
                status_code=status_code,
                request_id=req_id,
                source_ip=source_ip_var.get(),
                user_agent=user_agent_var.get(),
                duration_ms=int((time.time() - start_time) * 1000),
            )
            return result

        return wrapper

    return decorator


def set_request_metadata(request_id: str, source_ip: Optional[str] = None, user_agent: Optional[str] = None):
    """Called by middleware at the start of each request. Returns reset tokens."""
    return (
        request_id_var.set(request_id),
        source_ip_var.set(source_ip),
        user_agent_var.set(user_agent),
    )


def clear_request_metadata(tokens=None):
    """Called by middleware at the end of each request."""
    if tokens:
        request_token, ip_token, agent_token = tokens
        request_id_var.reset(request_token)
        source_ip_var.reset(ip_token)
        user_agent_var.reset(agent_token)
        return
    request_id_var.set(None)
    source_ip_var.set(None)
    user_agent_var.set(None)
