"""
Audit logging for the authorization server.

Security-relevant transitions (code issuance, token exchange, login and every
MFA lifecycle step) are recorded as structured events. Each event is written
to stdout as JSON through Python's logging infrastructure and appended to a
Redis stream that serves as the append-only audit sink.

Failure outcomes always use a different action name than the matching
success, so monitoring can alert on repeated failures by action alone.

Configuration (see config.ServerConfig):
- AUDIT_LOG_ENABLED: Enable/disable audit logging (default: true)
- AUDIT_LOG_STREAM_MAXLEN: Approximate cap on the Redis stream length
"""

import json
import logging
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

import redis

AUDIT_STREAM_KEY = "audit:events"

# Request metadata, set per request by the server middleware
request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
source_ip_var: ContextVar[Optional[str]] = ContextVar("source_ip", default=None)
user_agent_var: ContextVar[Optional[str]] = ContextVar("user_agent", default=None)


class AuditSeverity(Enum):
    """Severity levels for audit events mapped to Python logging levels."""
    CRITICAL = logging.CRITICAL
    HIGH = logging.ERROR
    MEDIUM = logging.WARNING
    LOW = logging.INFO


class AuditAction(Enum):
    """Audited actions."""
    # OAuth 2.0
    OAUTH2_CODE_ISSUED = "OAUTH2_CODE_ISSUED"
    OAUTH2_AUTHORIZE_FAILED = "OAUTH2_AUTHORIZE_FAILED"
    OAUTH2_TOKEN_ISSUED = "OAUTH2_TOKEN_ISSUED"
    OAUTH2_TOKEN_FAILED = "OAUTH2_TOKEN_FAILED"
    OAUTH2_PKCE_FAILED = "OAUTH2_PKCE_FAILED"
    OAUTH2_CLIENT_REGISTERED = "OAUTH2_CLIENT_REGISTERED"
    OAUTH2_CLIENT_UPDATED = "OAUTH2_CLIENT_UPDATED"
    OAUTH2_CLIENT_DELETED = "OAUTH2_CLIENT_DELETED"

    # Password step
    LOGIN_SUCCESS = "LOGIN_SUCCESS"
    LOGIN_MFA_REQUIRED = "LOGIN_MFA_REQUIRED"
    LOGIN_FAILED = "LOGIN_FAILED"

    # MFA lifecycle
    MFA_SETUP_INITIATED = "MFA_SETUP_INITIATED"
    MFA_SETUP_FAILED = "MFA_SETUP_FAILED"
    MFA_ENABLED = "MFA_ENABLED"
    MFA_VERIFY_SUCCESS = "MFA_VERIFY_SUCCESS"
    MFA_VERIFY_FAILED = "MFA_VERIFY_FAILED"
    MFA_BACKUP_CODE_USED = "MFA_BACKUP_CODE_USED"
    MFA_BACKUP_CODE_FAILED = "MFA_BACKUP_CODE_FAILED"
    MFA_DISABLED = "MFA_DISABLED"
    MFA_DISABLE_FAILED = "MFA_DISABLE_FAILED"
    MFA_BACKUP_CODES_REGENERATED = "MFA_BACKUP_CODES_REGENERATED"
    MFA_BACKUP_REGEN_FAILED = "MFA_BACKUP_REGEN_FAILED"


# Failures and credential changes rank above routine successes
_ACTION_SEVERITY = {
    AuditAction.OAUTH2_CODE_ISSUED: AuditSeverity.MEDIUM,
    AuditAction.OAUTH2_AUTHORIZE_FAILED: AuditSeverity.HIGH,
    AuditAction.OAUTH2_TOKEN_ISSUED: AuditSeverity.MEDIUM,
    AuditAction.OAUTH2_TOKEN_FAILED: AuditSeverity.HIGH,
    AuditAction.OAUTH2_PKCE_FAILED: AuditSeverity.CRITICAL,
    AuditAction.OAUTH2_CLIENT_REGISTERED: AuditSeverity.HIGH,
    AuditAction.OAUTH2_CLIENT_UPDATED: AuditSeverity.HIGH,
    AuditAction.OAUTH2_CLIENT_DELETED: AuditSeverity.CRITICAL,
    AuditAction.LOGIN_SUCCESS: AuditSeverity.MEDIUM,
    AuditAction.LOGIN_MFA_REQUIRED: AuditSeverity.MEDIUM,
    AuditAction.LOGIN_FAILED: AuditSeverity.HIGH,
    AuditAction.MFA_SETUP_INITIATED: AuditSeverity.MEDIUM,
    AuditAction.MFA_SETUP_FAILED: AuditSeverity.HIGH,
    AuditAction.MFA_ENABLED: AuditSeverity.CRITICAL,
    AuditAction.MFA_VERIFY_SUCCESS: AuditSeverity.MEDIUM,
    AuditAction.MFA_VERIFY_FAILED: AuditSeverity.HIGH,
    AuditAction.MFA_BACKUP_CODE_USED: AuditSeverity.HIGH,
    AuditAction.MFA_BACKUP_CODE_FAILED: AuditSeverity.HIGH,
    AuditAction.MFA_DISABLED: AuditSeverity.CRITICAL,
    AuditAction.MFA_DISABLE_FAILED: AuditSeverity.HIGH,
    AuditAction.MFA_BACKUP_CODES_REGENERATED: AuditSeverity.CRITICAL,
    AuditAction.MFA_BACKUP_REGEN_FAILED: AuditSeverity.HIGH,
}


class AuditLogFilter(logging.Filter):
    """Drops audit records below a minimum severity."""

    def __init__(self, min_severity: AuditSeverity = AuditSeverity.LOW):
        super().__init__()
        self.min_severity = min_severity

    def filter(self, record: logging.LogRecord) -> bool:
        severity = getattr(record, 'audit_severity', None)
        if severity is None:
            return True
        return severity.value >= self.min_severity.value


class AuditLogFormatter(logging.Formatter):
    """
    Formatter for audit log records that outputs structured JSON.

    The "details" mapping is scrubbed of keys that could carry credentials
    before it is written.
    """

    SENSITIVE_KEYS = ("secret", "password", "token", "code", "verifier", "otp")

    def format(self, record: logging.LogRecord) -> str:
        if not hasattr(record, 'audit_event'):
            return super().format(record)

        event = dict(record.audit_event)
        if event.get('details'):
            event['details'] = self.sanitize_details(event['details'])

        try:
            return f"AUDIT: {json.dumps(event, ensure_ascii=False, default=str)}"
        except (TypeError, ValueError) as e:
            return f"AUDIT: {{\"error\": \"Failed to serialize audit event: {type(e).__name__}\"}}"

    @classmethod
    def sanitize_details(cls, details: Dict[str, Any]) -> Dict[str, Any]:
        """
        Redact values whose key names suggest a credential.

        Args:
            details: Event details

        Returns:
            Copy with sensitive values replaced by "[REDACTED]"
        """
        cleaned = {}
        for key, value in details.items():
            lowered = key.lower()
            # Counts and flags about codes are safe, the codes themselves are not
            if any(s in lowered for s in cls.SENSITIVE_KEYS) and not isinstance(value, (bool, int)):
                cleaned[key] = "[REDACTED]"
            else:
                cleaned[key] = value
        return cleaned


class AuditLogHandler(logging.StreamHandler):
    """Writes audit records to stdout and flushes after each one."""

    def __init__(self):
        super().__init__(stream=sys.stdout)
        self.setFormatter(AuditLogFormatter())

    def emit(self, record: logging.LogRecord) -> None:
        super().emit(record)
        self.flush()


class AuditLogger:
    """
    Audit sink used by the services.

    Events go to a dedicated "oauth2.audit" logger (JSON on stdout) and, when
    a Redis client is given, to the audit:events stream.
    """

    def __init__(
        self,
        redis_client: Optional[redis.Redis] = None,
        enabled: bool = True,
        stream_maxlen: int = 10000,
        min_severity: AuditSeverity = AuditSeverity.LOW
    ):
        """
        Initialize the audit logger.

        Args:
            redis_client: Redis client for the audit stream (None: stdout only)
            enabled: AUDIT_LOG_ENABLED
            stream_maxlen: AUDIT_LOG_STREAM_MAXLEN
            min_severity: Lowest severity written to stdout
        """
        self.redis_client = redis_client
        self.enabled = enabled
        self.stream_maxlen = stream_maxlen

        self.logger = logging.getLogger("oauth2.audit")
        self.logger.setLevel(logging.DEBUG)
        self.logger.propagate = False
        if not any(isinstance(h, AuditLogHandler) for h in self.logger.handlers):
            handler = AuditLogHandler()
            handler.addFilter(AuditLogFilter(min_severity))
            self.logger.addHandler(handler)

    @classmethod
    def from_config(cls, config, redis_client: Optional[redis.Redis] = None) -> "AuditLogger":
        return cls(
            redis_client=redis_client,
            enabled=config.audit_log_enabled,
            stream_maxlen=config.audit_log_stream_maxlen
        )

    def log_event(
        self,
        action: AuditAction,
        success: bool,
        username: Optional[str] = None,
        resource_type: Optional[str] = None,
        resource_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ) -> Optional[Dict[str, Any]]:
        """
        Record an audit event.

        Request id, source IP and user agent are taken from the request
        context set by the server middleware.

        Args:
            action: Audited action
            success: Outcome
            username: Acting user, if known
            resource_type: Kind of object acted on (e.g. "OAUTH2_CLIENT", "USER")
            resource_id: Identifier of that object
            details: Additional safe fields

        Returns:
            The event that was recorded, or None when auditing is disabled
        """
        if not self.enabled:
            return None

        event = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "action": action.value,
            "success": success,
            "username": username,
            "resource_type": resource_type,
            "resource_id": resource_id,
            "details": details or {},
            "request_id": request_id_var.get(),
            "source_ip": source_ip_var.get(),
            "user_agent": user_agent_var.get(),
        }

        severity = _ACTION_SEVERITY.get(action, AuditSeverity.MEDIUM)
        self.logger.log(severity.value, "Audit event", extra={
            'audit_event': event,
            'audit_severity': severity
        })

        if self.redis_client is not None:
            self._append_to_stream(event)

        return event

    def _append_to_stream(self, event: Dict[str, Any]) -> None:
        # Stream fields are flat strings
        fields = {}
        for key, value in event.items():
            if value is None:
                fields[key] = ""
            elif isinstance(value, bool):
                fields[key] = "true" if value else "false"
            else:
                fields[key] = str(value)
        fields["details"] = json.dumps(AuditLogFormatter.sanitize_details(event["details"]), default=str)
        try:
            self.redis_client.xadd(
                AUDIT_STREAM_KEY,
                fields,
                maxlen=self.stream_maxlen,
                approximate=True
            )
        except redis.RedisError as e:
            # stdout copy above is still authoritative
            logging.error(f"Failed to append audit event {event['action']} to stream: {e}")

    def recent_events(self, count: int = 100) -> list:
        """
        Read the newest events from the audit stream.

        Args:
            count: Maximum number of events

        Returns:
            List of event dicts, newest first
        """
        if self.redis_client is None:
            return []
        entries = self.redis_client.xrevrange(AUDIT_STREAM_KEY, count=count)
        events = []
        for _entry_id, fields in entries:
            event = {self._text(k): self._text(v) for k, v in fields.items()}
            event["success"] = event.get("success") == "true"
            event["details"] = json.loads(event.get("details") or "{}")
            for key in ("username", "resource_type", "resource_id", "request_id", "source_ip", "user_agent"):
                if event.get(key) == "":
                    event[key] = None
            events.append(event)
        return events

    @staticmethod
    def _text(value) -> str:
        return value.decode('utf-8') if isinstance(value, bytes) else value
