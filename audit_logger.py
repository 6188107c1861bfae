"""
Audit logging for the Google Auth Bridge.

Security-relevant events (state issuance, OAuth redirects, session pickups,
account reconciliation outcomes, session clears) are written to stdout as
one JSON object per line, prefixed with "AUDIT: ", through a dedicated
logger that does not propagate to the root logger.

Only metadata is logged: never authorization codes, tokens or passwords.

Environment:
- AUDIT_LOG_ENABLED       on/off switch, default true
- AUDIT_LOG_LEVEL         lowest severity written (CRITICAL, HIGH, MEDIUM), default MEDIUM
- AUDIT_LOG_INCLUDE_LOW   also write LOW events such as health checks, default false
"""

import json
import logging
import os
import re
import sys
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


AUDIT_LOGGER_NAME = "bridge.audit"


class AuditSeverity(Enum):
    """Audit severities; values are the matching logging levels."""
    CRITICAL = logging.CRITICAL  # Session clears, state/CSRF rejections
    HIGH = logging.ERROR         # Failed reconciliations, token exchange failures
    MEDIUM = logging.WARNING     # Sign-ins, session pickups, auth URL issuance
    LOW = logging.INFO           # Health checks


class AuditAction(Enum):
    """What kind of bridge operation an event describes."""
    AUTHORIZE = "authorize"   # auth URL issued
    CALLBACK = "callback"     # browser redirect from Google
    POLL = "poll"             # mobile client pickup
    AUTH = "auth"             # code exchange + account reconciliation
    CLEAR = "clear"
    HEALTH = "health"


class AuditLogFilter(logging.Filter):
    """Drops audit records below the configured severity (LOW is opt-in)."""

    def __init__(self, min_severity: AuditSeverity, include_low: bool = False):
        super().__init__()
        self.min_severity = min_severity
        self.include_low = include_low

    def filter(self, record: logging.LogRecord) -> bool:
        severity = getattr(record, 'audit_severity', None)
        if severity is None:
            return True

        if severity == AuditSeverity.LOW:
            return self.include_low

        return severity.value >= self.min_severity.value


class AuditLogFormatter(logging.Formatter):
    """Formats audit records as `AUDIT: {json}`."""

    MAX_ERROR_LENGTH = 500

    BEARER_PATTERN = re.compile(r"\bbearer\s+\S+", re.IGNORECASE)
    SENSITIVE_PATTERN = re.compile(
        r"\b(password|passwd|secret|[a-z_]*token|code|authorization)\s*[=:]\s*\S+",
        re.IGNORECASE
    )

    def format(self, record: logging.LogRecord) -> str:
        if not hasattr(record, 'audit_event'):
            return super().format(record)

        event = dict(record.audit_event)
        if event.get('error_message'):
            event['error_message'] = self._sanitize_error_message(event['error_message'])

        try:
            return f"AUDIT: {json.dumps(event, ensure_ascii=False, default=str)}"
        except (TypeError, ValueError) as e:
            return f"AUDIT: {{\"error\": \"Failed to serialize audit event: {type(e).__name__}\"}}"

    @classmethod
    def _sanitize_error_message(cls, error_message: str) -> str:
        """Truncate long messages and redact anything that looks like a credential."""
        if len(error_message) > cls.MAX_ERROR_LENGTH:
            error_message = error_message[:cls.MAX_ERROR_LENGTH - 3] + "..."
        error_message = cls.BEARER_PATTERN.sub("Bearer [REDACTED]", error_message)
        return cls.SENSITIVE_PATTERN.sub(lambda m: f"{m.group(1)}=[REDACTED]", error_message)


class AuditLogHandler(logging.StreamHandler):
    """stdout handler, flushed after every event."""

    def __init__(self, stream=None):
        super().__init__(stream=stream or sys.stdout)
        self.setFormatter(AuditLogFormatter())

    def emit(self, record: logging.LogRecord) -> None:
        super().emit(record)
        self.flush()


class AuditLogger:
    """
    Writes audit events through the bridge.audit logger.

    Settings default to the AUDIT_LOG_* environment variables; explicit
    arguments override them (used by tests).
    """

    def __init__(
        self,
        enabled: Optional[bool] = None,
        min_severity: Optional[AuditSeverity] = None,
        include_low: Optional[bool] = None,
        stream=None,
    ):
        if enabled is None:
            enabled = os.getenv("AUDIT_LOG_ENABLED", "true").lower() in ("true", "1", "yes")
        self.enabled = enabled

        if min_severity is None:
            level_str = os.getenv("AUDIT_LOG_LEVEL", "MEDIUM").upper()
            try:
                min_severity = AuditSeverity[level_str]
            except KeyError:
                logging.warning(f"Invalid AUDIT_LOG_LEVEL '{level_str}', defaulting to MEDIUM")
                min_severity = AuditSeverity.MEDIUM
        self.min_severity = min_severity

        if include_low is None:
            include_low = os.getenv("AUDIT_LOG_INCLUDE_LOW", "false").lower() in ("true", "1", "yes")
        self.include_low = include_low

        self.logger = logging.getLogger(AUDIT_LOGGER_NAME)
        self.logger.setLevel(logging.DEBUG)  # filtering happens in AuditLogFilter
        self.logger.propagate = False

        for existing in list(self.logger.handlers):
            if isinstance(existing, AuditLogHandler):
                self.logger.removeHandler(existing)

        handler = AuditLogHandler(stream)
        handler.addFilter(AuditLogFilter(self.min_severity, self.include_low))
        self.logger.addHandler(handler)

    def should_log(self, severity: AuditSeverity) -> bool:
        if not self.enabled:
            return False
        if severity == AuditSeverity.LOW:
            return self.include_low
        return severity.value >= self.min_severity.value

    def log_event(
        self,
        event_type: str,
        severity: AuditSeverity,
        action: AuditAction,
        status: str,
        user_id: Optional[str] = None,
        status_code: Optional[int] = None,
        error_message: Optional[str] = None,
        request_id: Optional[str] = None,
        source_ip: Optional[str] = None,
        user_agent: Optional[str] = None,
        duration_ms: Optional[int] = None,
        additional_safe_fields: Optional[Dict[str, Any]] = None
    ) -> None:
        """
        Write one audit event. Callers pass metadata only, never secrets.

        Args:
            event_type: Handler or operation name (e.g. "handle_check_session")
            severity: Filtered against min_severity
            action: AuditAction of the operation
            status: "success" or "failure"
            user_id: Google account id, when known
            status_code: HTTP status code returned to the caller
            error_message: Generic error message (sanitized before output)
            request_id: X-Request-ID or a generated uuid
            source_ip: Client IP address
            user_agent: Client user agent
            duration_ms: Handler wall time
            additional_safe_fields: Extra known-safe fields
        """
        if not self.should_log(severity):
            return

        event = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "event_type": event_type,
            "severity": severity.name,
            "action": action.value,
            "status": status,
        }

        optional = {
            "user_id": user_id,
            "status_code": status_code,
            "error_message": error_message,
            "request_id": request_id,
            "source_ip": source_ip,
            "user_agent": user_agent,
            "duration_ms": duration_ms,
        }
        event.update({key: value for key, value in optional.items() if value is not None})

        if additional_safe_fields:
            event.update(additional_safe_fields)

        self.logger.log(
            severity.value,
            "Audit event",
            extra={'audit_event': event, 'audit_severity': severity}
        )


_audit_logger: Optional[AuditLogger] = None


def get_audit_logger() -> AuditLogger:
    """Process-wide audit logger, created on first use."""
    global _audit_logger
    if _audit_logger is None:
        _audit_logger = AuditLogger()
    return _audit_logger


def set_audit_logger(audit_logger: Optional[AuditLogger]) -> None:
    """Replace (or reset, with None) the process-wide audit logger."""
    global _audit_logger
    _audit_logger = audit_logger
