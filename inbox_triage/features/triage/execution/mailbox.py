"""
Mailbox mutation boundary.

The engine never talks to a provider directly: it calls a ``MailboxClient``
and gets back the data needed to reverse what it did. Every non-advisory
AIActionType has exactly one mutation here.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Protocol, runtime_checkable

from inbox_triage.features.triage.domain.models import (
    ADVISORY_ACTIONS,
    AIActionType,
    UndoableAction,
    utcnow,
)

INBOX_FOLDER = "INBOX"
DEFAULT_SNOOZE = timedelta(hours=24)


class MailboxMutationError(Exception):
    """A mailbox call failed. Usually safe to retry."""

    def __init__(
        self,
        message: str,
        email_id: str | None = None,
        action: str | None = None,
        recoverable: bool = True,
    ):
        super().__init__(message)
        self.email_id = email_id
        self.action = action
        self.recoverable = recoverable


@runtime_checkable
class MailboxClient(Protocol):
    async def archive(self, email_id: str) -> None: ...

    async def delete(self, email_id: str) -> None: ...

    async def star(self, email_id: str, starred: bool) -> None: ...

    async def mark_read(self, email_id: str) -> None: ...

    async def mark_unread(self, email_id: str) -> None: ...

    async def unsubscribe(self, email_id: str) -> None: ...

    async def snooze(self, email_id: str, until: datetime) -> None: ...

    async def restore(self, email_id: str, folder: str) -> None: ...


@dataclass(frozen=True)
class MutationRecord:
    """What was done and how to take it back."""

    action: AIActionType
    email_id: str
    description: str
    undo_data: dict[str, Any] = field(default_factory=dict)
    reversible: bool = True


async def execute_action(
    client: MailboxClient,
    action: AIActionType,
    email_id: str,
    *,
    subject: str = "",
    snooze_until: datetime | None = None,
) -> MutationRecord:
    """
    Run the mailbox mutation for ``action``.

    Raises:
        ValueError: For advisory actions (keep, reply), which have no mutation
        MailboxMutationError: When the client call fails
    """
    action = AIActionType(action)
    if action in ADVISORY_ACTIONS:
        raise ValueError(f"{action.value} is advisory and has no mailbox mutation")

    label = subject or email_id
    try:
        if action is AIActionType.ARCHIVE:
            await client.archive(email_id)
            return MutationRecord(action, email_id, f"Archived: {label}", {"original_folder": INBOX_FOLDER})
        if action is AIActionType.DELETE:
            await client.delete(email_id)
            return MutationRecord(action, email_id, f"Deleted: {label}", {"original_folder": INBOX_FOLDER})
        if action is AIActionType.STAR:
            await client.star(email_id, True)
            return MutationRecord(action, email_id, f"Starred: {label}", {"original_is_starred": False})
        if action is AIActionType.MARK_READ:
            await client.mark_read(email_id)
            return MutationRecord(action, email_id, f"Marked read: {label}", {"original_is_read": False})
        if action is AIActionType.SNOOZE:
            until = snooze_until or utcnow() + DEFAULT_SNOOZE
            await client.snooze(email_id, until)
            return MutationRecord(
                action,
                email_id,
                f"Snoozed: {label}",
                {"original_folder": INBOX_FOLDER, "snooze_until": until.isoformat()},
            )
        if action is AIActionType.UNSUBSCRIBE:
            await client.unsubscribe(email_id)
            return MutationRecord(action, email_id, f"Unsubscribed: {label}", {}, reversible=False)
    except MailboxMutationError:
        raise
    except Exception as e:
        raise MailboxMutationError(
            f"Mailbox {action.value} failed: {e}", email_id=email_id, action=action.value
        ) from e

    raise ValueError(f"No mailbox mutation registered for {action.value}")


async def reverse_action(client: MailboxClient, entry: UndoableAction) -> None:
    """Undo one recorded mutation using its ``undo_data``."""
    action = AIActionType(entry.type)
    data = entry.undo_data
    if action in (AIActionType.ARCHIVE, AIActionType.DELETE, AIActionType.SNOOZE):
        await client.restore(entry.email_id, data.get("original_folder", INBOX_FOLDER))
    elif action is AIActionType.STAR:
        await client.star(entry.email_id, bool(data.get("original_is_starred", False)))
    elif action is AIActionType.MARK_READ:
        if not data.get("original_is_read", False):
            await client.mark_unread(entry.email_id)
    else:
        raise ValueError(f"{action.value} cannot be reversed")
