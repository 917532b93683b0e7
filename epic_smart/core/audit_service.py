"""
Audit Service - HIPAA-oriented audit trail for EHR interactions

Records authentication and FHIR request outcomes as structured events:
- Token exchange and refresh (success and failure)
- FHIR request outcomes (endpoint, status, resource type)
- Bulk data export lifecycle
- Session start/end

Events carry metadata only. Token values, authorization codes and PKCE
verifiers are redacted before an event is stored or emitted, and clinical
payloads are never attached.
"""

import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional

from epic_smart.core.logging import get_logger

logger = get_logger(__name__)

REDACTED = "[REDACTED]"

SENSITIVE_KEYS = frozenset(
    {
        "access_token",
        "refresh_token",
        "id_token",
        "code",
        "code_verifier",
        "client_secret",
        "authorization",
        "token",
    }
)


class AuditEventType(Enum):
    """Types of audit events"""

    # Authentication
    TOKEN_EXCHANGE_SUCCESS = "auth.token_exchange.success"
    TOKEN_EXCHANGE_ERROR = "auth.token_exchange.error"
    TOKEN_REFRESH_SUCCESS = "auth.token_refresh.success"
    TOKEN_REFRESH_ERROR = "auth.token_refresh.error"

    # FHIR REST
    FHIR_REQUEST_SUCCESS = "fhir.request.success"
    FHIR_REQUEST_ERROR = "fhir.request.error"

    # Bulk Data Export
    BULK_EXPORT_KICKOFF = "fhir.bulk_export.kickoff"
    BULK_EXPORT_STATUS = "fhir.bulk_export.status"
    BULK_EXPORT_FILE = "fhir.bulk_export.file"

    # Session
    SESSION_START = "session.start"
    SESSION_END = "session.end"


class AuditSeverity(Enum):
    """Audit event severity levels"""

    INFO = "info"
    NOTICE = "notice"
    WARNING = "warning"
    CRITICAL = "critical"


def redact(metadata: Dict[str, Any]) -> Dict[str, Any]:
    """Replace secret-bearing values, recursing into nested dicts."""
    clean: Dict[str, Any] = {}
    for key, value in metadata.items():
        if key.lower() in SENSITIVE_KEYS:
            clean[key] = REDACTED
        elif isinstance(value, dict):
            clean[key] = redact(value)
        else:
            clean[key] = value
    return clean


@dataclass
class AuditEvent:
    """An audit log event"""

    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    event_type: AuditEventType = AuditEventType.FHIR_REQUEST_SUCCESS
    severity: AuditSeverity = AuditSeverity.INFO
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    identity: Optional[str] = None  # patient | clinician
    resource_type: Optional[str] = None
    endpoint: Optional[str] = None
    method: Optional[str] = None
    status_code: Optional[int] = None
    outcome: str = "success"  # success, failure
    description: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage"""
        return {
            "id": self.id,
            "event_type": self.event_type.value,
            "severity": self.severity.value,
            "timestamp": self.timestamp.isoformat(),
            "identity": self.identity,
            "resource_type": self.resource_type,
            "endpoint": self.endpoint,
            "method": self.method,
            "status_code": self.status_code,
            "outcome": self.outcome,
            "description": self.description,
            "metadata": self.metadata,
        }


class AuditService:
    """
    Audit trail for the client core.

    Provides:
    - Redaction of secret-bearing metadata
    - Structured log emission (``audit_event``)
    - Bounded in-memory history for inspection
    - Optional sink for forwarding to durable storage
    """

    def __init__(
        self,
        sink: Optional[Callable[[AuditEvent], None]] = None,
        max_in_memory: int = 1000,
    ):
        self.sink = sink
        self._events: Deque[AuditEvent] = deque(maxlen=max_in_memory)

    async def log(self, event: AuditEvent) -> str:
        """
        Log an audit event.

        Returns event ID.
        """
        event.metadata = redact(event.metadata)
        self._events.append(event)

        logger.info("audit_event", **event.to_dict())

        if self.sink:
            self.sink(event)

        return event.id

    async def record(
        self,
        event_type: AuditEventType,
        outcome: str = "success",
        **kwargs: Any,
    ) -> str:
        """Build and log an event in one call."""
        severity = kwargs.pop("severity", None)
        if severity is None:
            severity = AuditSeverity.INFO if outcome == "success" else AuditSeverity.WARNING
        event = AuditEvent(event_type=event_type, outcome=outcome, severity=severity, **kwargs)
        return await self.log(event)

    def recent(
        self,
        limit: int = 100,
        event_type: Optional[AuditEventType] = None,
    ) -> List[AuditEvent]:
        """Most recent events, oldest first"""
        events = [e for e in self._events if event_type is None or e.event_type == event_type]
        return events[-limit:]

    def clear(self) -> None:
        self._events.clear()


__all__ = [
    "AuditEvent",
    "AuditEventType",
    "AuditService",
    "AuditSeverity",
    "redact",
]
