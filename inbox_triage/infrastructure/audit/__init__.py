"""
Audit logging infrastructure for explicit, user-visible state changes.

Sender-model resets and manual VIP flags go through here so they are never
silent.
"""

from inbox_triage.infrastructure.audit.audit_logger import AuditEvent, AuditLogger, audit_logger

__all__ = ["AuditEvent", "AuditLogger", "audit_logger"]
