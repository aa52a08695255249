"""Audit trail for security-relevant events.

Audit writes are best effort: a failing or slow sink is logged and never
changes the outcome of the request that produced the event.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import structlog

from loftguard.shared.log_colors import LogColors
from .stores import AuditSink, StoreUnavailable, call_store

logger = structlog.get_logger(__name__)


# Actions emitted by the security layer
API_ACCESS = "api_access"
ACCESS_DENIED = "access_denied"
SECURITY_ALERT = "security_alert"
IDENTIFIER_BLOCKED = "identifier_blocked"
RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"


@dataclass(frozen=True)
class AuditEvent:
    actor_id: Optional[str]
    action: str
    resource_type: str
    resource_id: Optional[str]
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: float = field(default_factory=time.time)


class InMemoryAuditSink:
    """Keeps events in a list; used in development and tests."""

    def __init__(self) -> None:
        self.events: List[AuditEvent] = []

    async def record(
        self,
        actor_id: Optional[str],
        action: str,
        resource_type: str,
        resource_id: Optional[str],
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.events.append(
            AuditEvent(actor_id, action, resource_type, resource_id, dict(metadata or {}))
        )

    def actions(self) -> List[str]:
        return [e.action for e in self.events]


class LoggingAuditSink:
    """Writes audit events to the structured log only."""

    async def record(
        self,
        actor_id: Optional[str],
        action: str,
        resource_type: str,
        resource_id: Optional[str],
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        logger.info(
            "audit_event",
            actor_id=actor_id,
            action=action,
            resource_type=resource_type,
            resource_id=resource_id,
            metadata=metadata or {},
        )


class AuditTrail:
    """Bounded, non-raising front for an AuditSink."""

    def __init__(self, sink: AuditSink, timeout_sec: float = 0.1):
        self.sink = sink
        self.timeout_sec = timeout_sec

    async def record(
        self,
        actor_id: Optional[str],
        action: str,
        resource_type: str,
        resource_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Record an event. Returns False when the sink failed."""
        try:
            await call_store(
                self.sink.record(actor_id, action, resource_type, resource_id, metadata or {}),
                timeout=self.timeout_sec,
                operation="audit.record",
            )
            return True
        except StoreUnavailable as e:
            logger.warning(
                f"{LogColors.STORE_LABEL} audit_record_failed",
                action=action,
                resource_type=resource_type,
                error=str(e),
            )
            return False


__all__ = [
    "ACCESS_DENIED",
    "API_ACCESS",
    "IDENTIFIER_BLOCKED",
    "RATE_LIMIT_EXCEEDED",
    "SECURITY_ALERT",
    "AuditEvent",
    "AuditTrail",
    "InMemoryAuditSink",
    "LoggingAuditSink",
]
