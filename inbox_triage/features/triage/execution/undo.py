"""
Undo log - reversal records for executed mutations.

Entries stay undoable for ``UNDO_RETENTION_DAYS`` (30 by default); the log
keeps at most ``UNDO_MAX_ACTIONS`` entries, newest first. The actual
reversal is delegated to an injected async ``reverser``.
"""

from __future__ import annotations

import threading
import uuid
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta
from typing import Any

from inbox_triage.config import Settings, settings
from inbox_triage.features.triage.domain.models import UndoableAction, utcnow
from inbox_triage.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

Reverser = Callable[[UndoableAction], Awaitable[None]]


class UndoError(Exception):
    """Raised when an entry cannot be undone."""

    def __init__(self, message: str, action_id: str | None = None, recoverable: bool = False):
        super().__init__(message)
        self.action_id = action_id
        self.recoverable = recoverable


class UndoLog:
    def __init__(self, *, reverser: Reverser | None = None, config: Settings = settings):
        self.reverser = reverser
        self.retention = timedelta(days=config.UNDO_RETENTION_DAYS)
        self.max_actions = config.UNDO_MAX_ACTIONS
        self._actions: list[UndoableAction] = []  # newest first
        self._in_progress: set[str] = set()
        self._lock = threading.Lock()

    def push(
        self,
        *,
        type: str,
        email_id: str,
        account_id: str,
        description: str,
        undo_data: dict[str, Any],
        user_id: str,
        performed_at: datetime | None = None,
    ) -> UndoableAction:
        performed_at = performed_at or utcnow()
        entry = UndoableAction(
            id=f"undo_{uuid.uuid4().hex}",
            type=type,
            email_id=email_id,
            account_id=account_id,
            description=description,
            user_id=user_id,
            performed_at=performed_at,
            expires_at=performed_at + self.retention,
            undo_data=dict(undo_data),
        )
        with self._lock:
            self._actions.insert(0, entry)
            del self._actions[self.max_actions :]
        logger.debug("Undo entry recorded", undo_id=entry.id, type=type, email_id=email_id)
        return entry

    def get(self, action_id: str) -> UndoableAction | None:
        with self._lock:
            return next((a for a in self._actions if a.id == action_id), None)

    def undoable_actions(self, limit: int = 20, now: datetime | None = None) -> list[UndoableAction]:
        now = now or utcnow()
        with self._lock:
            return [a for a in self._actions if not a.is_undone and a.expires_at > now][:limit]

    def latest_undoable(self, now: datetime | None = None) -> UndoableAction | None:
        actions = self.undoable_actions(limit=1, now=now)
        return actions[0] if actions else None

    async def undo_action(self, action_id: str, now: datetime | None = None) -> UndoableAction:
        """
        Reverse one entry.

        Raises:
            UndoError: Unknown, expired, already undone or in progress, or
                the reverser failed (the entry then stays undoable)
        """
        now = now or utcnow()
        with self._lock:
            entry = next((a for a in self._actions if a.id == action_id), None)
            if entry is None:
                raise UndoError(f"Unknown undo entry {action_id}", action_id)
            if entry.is_undone:
                raise UndoError(f"Undo entry {action_id} was already undone", action_id)
            if entry.expires_at <= now:
                raise UndoError(f"Undo entry {action_id} has expired", action_id)
            if action_id in self._in_progress:
                raise UndoError(f"Undo entry {action_id} is already being undone", action_id)
            self._in_progress.add(action_id)

        try:
            if self.reverser is not None:
                await self.reverser(entry)
        except Exception as e:
            logger.error("Undo failed", undo_id=action_id, error=str(e), error_type=type(e).__name__)
            raise UndoError(f"Undo of {action_id} failed: {e}", action_id, recoverable=True) from e
        finally:
            with self._lock:
                self._in_progress.discard(action_id)

        entry.is_undone = True
        logger.info("Action undone", undo_id=action_id, type=entry.type, email_id=entry.email_id)
        return entry

    async def undo_latest(self, now: datetime | None = None) -> UndoableAction | None:
        entry = self.latest_undoable(now)
        if entry is None:
            return None
        return await self.undo_action(entry.id, now=now)

    def cleanup_expired(self, now: datetime | None = None) -> int:
        now = now or utcnow()
        with self._lock:
            before = len(self._actions)
            self._actions = [a for a in self._actions if a.expires_at > now]
            removed = before - len(self._actions)
        if removed:
            logger.info("Expired undo entries removed", removed=removed)
        return removed

    def actions(self) -> list[UndoableAction]:
        with self._lock:
            return list(self._actions)

    def load(self, actions: list[UndoableAction]) -> None:
        with self._lock:
            self._actions = list(actions)[: self.max_actions]
