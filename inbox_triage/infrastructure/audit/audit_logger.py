"""
AuditLogger - Centralized audit logging for decision-engine state changes.

This module records the operations that must never happen silently:
- Sender model resets (single sender or full data reset)
- Explicit VIP flags set or cleared by the user
- Trust stage transitions

Usage:
    from inbox_triage.infrastructure.audit import audit_logger

    audit_logger.log(
        user_id="user-123",
        action="sender_model_reset",
        resource_type="sender_model",
        resource_id="snd_4f1c...",
        metadata={"reason": "user_request"},
    )

Design Principles:
- Write to structured logs (searchable) and keep a bounded in-memory trail
  that the owning session can inspect or persist
- Never fail the caller if audit logging fails
"""

import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from inbox_triage.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

DEFAULT_TRAIL_SIZE = 500


@dataclass(frozen=True)
class AuditEvent:
    """One immutable audit entry."""

    user_id: str
    action: str
    resource_type: str | None
    resource_id: str | None
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))


class AuditLogger:
    """
    Centralized audit logging service.

    Logs every audited operation to:
    1. Structured logs (stdout) - Real-time monitoring
    2. An in-memory trail (newest last) - bounded, inspectable

    Thread-safe.
    """

    def __init__(self, max_events: int = DEFAULT_TRAIL_SIZE):
        self._events: deque[AuditEvent] = deque(maxlen=max_events)
        self._lock = threading.Lock()

    def log(
        self,
        user_id: str,
        action: str,
        resource_type: str | None = None,
        resource_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> bool:
        """
        Log an audit event.

        Args:
            user_id: User whose state changed (required)
            action: Action name (e.g., "sender_model_reset", "sender_vip_flagged")
            resource_type: Type of resource (e.g., "sender_model", "trust_profile")
            resource_id: Specific resource ID (e.g., sender id)
            metadata: Additional context (JSON-serializable dict)

        Returns:
            True if logged successfully, False if failed (never raises)
        """
        try:
            event = AuditEvent(
                user_id=user_id,
                action=action,
                resource_type=resource_type,
                resource_id=resource_id,
                metadata=dict(metadata or {}),
            )
            logger.info(
                "Audit event",
                audit_action=action,
                user_id=user_id,
                resource_type=resource_type,
                resource_id=resource_id,
                metadata=event.metadata,
            )
            with self._lock:
                self._events.append(event)
            return True

        except Exception as e:
            # Never fail the caller due to audit logging failure
            logger.error(
                "CRITICAL: Failed to record audit event",
                error=str(e),
                error_type=type(e).__name__,
                action=action,
                user_id=user_id,
            )
            return False

    def recent(self, limit: int = 50, action: str | None = None) -> list[AuditEvent]:
        """Return the newest events first, optionally filtered by action."""
        with self._lock:
            events = list(self._events)
        events.reverse()
        if action:
            events = [e for e in events if e.action == action]
        return events[:limit]

    def clear(self) -> None:
        with self._lock:
            self._events.clear()


audit_logger = AuditLogger()
