"""
Action queue - state machine for recommendations awaiting human disposition.

    pending -> approved -> completed
    pending -> rejected

Every transition happens under one lock, so two dispositions racing for
the same item resolve to exactly one winner. The loser sees NOOP (same
target status) or QueueConflictError (different target status).

Capacity is bounded. Under pressure the oldest completed items go first,
then the oldest rejected ones. Pending items and approved items still
waiting for their mutation are never evicted.
"""

from __future__ import annotations

import threading
from collections.abc import Callable, Iterable
from dataclasses import replace
from datetime import datetime
from enum import Enum

from inbox_triage.config import Settings, settings
from inbox_triage.features.triage.domain.models import (
    ActionQueueItem,
    AIActionType,
    QueueStatus,
    utcnow,
)
from inbox_triage.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

ALLOWED_TRANSITIONS = {
    QueueStatus.PENDING: {QueueStatus.APPROVED, QueueStatus.REJECTED},
    QueueStatus.APPROVED: {QueueStatus.COMPLETED},
    QueueStatus.REJECTED: set(),
    QueueStatus.COMPLETED: set(),
}

EVICTION_ORDER = (QueueStatus.COMPLETED, QueueStatus.REJECTED)


class TransitionResult(str, Enum):
    APPLIED = "applied"
    NOOP = "noop"


class QueueItemNotFoundError(KeyError):
    """Raised when an item id is not in the queue."""


class QueueConflictError(Exception):
    """Raised when a transition contradicts the item's current status."""

    def __init__(self, item_id: str, current: QueueStatus, requested: QueueStatus):
        super().__init__(
            f"Queue item {item_id} is {current.value}; cannot move to {requested.value}"
        )
        self.item_id = item_id
        self.current = current
        self.requested = requested
        self.recoverable = False


class ActionQueue:
    """Bounded, linearizable store of ActionQueueItems (newest first)."""

    def __init__(self, *, capacity: int | None = None, config: Settings = settings):
        self.capacity = capacity or config.ACTION_QUEUE_CAPACITY
        # Insertion order == age, oldest first.
        self._items: dict[str, ActionQueueItem] = {}
        self._lock = threading.RLock()

    def __len__(self) -> int:
        return len(self._items)

    def add_item(self, item: ActionQueueItem) -> bool:
        return self.add_items([item]) == 1

    def add_items(self, items: Iterable[ActionQueueItem]) -> int:
        """
        Insert at the head; the first item of ``items`` ends up newest.

        Ids already in the queue are ignored, so a stale copy can never
        reopen an item that has moved on.

        Returns:
            Number of items actually inserted
        """
        with self._lock:
            fresh: list[ActionQueueItem] = []
            seen: set[str] = set()
            for item in items:
                if item.id in self._items or item.id in seen:
                    logger.warning(
                        "Ignoring queue item with an existing id",
                        item_id=item.id,
                        status=item.status.value,
                    )
                    continue
                seen.add(item.id)
                fresh.append(item)
            for item in reversed(fresh):
                self._items[item.id] = item
            self._evict()
        return len(fresh)

    def get(self, item_id: str) -> ActionQueueItem | None:
        with self._lock:
            item = self._items.get(item_id)
            return replace(item) if item else None

    def items(self, status: QueueStatus | None = None) -> list[ActionQueueItem]:
        """Copies of the items, newest first."""
        with self._lock:
            return [
                replace(item)
                for item in reversed(self._items.values())
                if status is None or item.status is status
            ]

    def pending_items(self) -> list[ActionQueueItem]:
        return self.items(QueueStatus.PENDING)

    def update_status(
        self,
        item_id: str,
        status: QueueStatus | str,
        executed_at: datetime | None = None,
    ) -> TransitionResult:
        """
        Move one item to ``status``.

        Returns:
            APPLIED when the transition happened, NOOP when the item was
            already in ``status``

        Raises:
            QueueItemNotFoundError: Unknown id
            QueueConflictError: Transition not allowed from the current status
        """
        status = QueueStatus(status)
        with self._lock:
            item = self._items.get(item_id)
            if item is None:
                raise QueueItemNotFoundError(item_id)
            result = self._transition(item, status, executed_at)
            if result is TransitionResult.APPLIED:
                self._evict()
        return result

    def approve_all(
        self, predicate: Callable[[ActionQueueItem], bool] | None = None
    ) -> list[ActionQueueItem]:
        """
        Approve every pending item matching ``predicate`` in one step.

        The predicate runs over every candidate before anything changes, so
        a failing predicate leaves the queue untouched.

        Returns:
            Copies of the items that moved to approved
        """
        with self._lock:
            candidates = [
                item
                for item in self._items.values()
                if item.status is QueueStatus.PENDING and (predicate is None or predicate(replace(item)))
            ]
            for item in candidates:
                self._transition(item, QueueStatus.APPROVED, None)
            approved = [replace(item) for item in reversed(candidates)]

        if approved:
            logger.info("Bulk approval applied", approved=len(approved))
        return approved

    def record_error(self, item_id: str, error: str | None) -> None:
        with self._lock:
            item = self._items.get(item_id)
            if item is None:
                raise QueueItemNotFoundError(item_id)
            item.last_error = error

    def set_applied_action(self, item_id: str, action: AIActionType) -> None:
        with self._lock:
            item = self._items.get(item_id)
            if item is None:
                raise QueueItemNotFoundError(item_id)
            item.applied_action = action

    def remove_item(self, item_id: str) -> bool:
        with self._lock:
            return self._items.pop(item_id, None) is not None

    def clear_completed(self) -> int:
        """Drop every item that is no longer pending or awaiting execution."""
        with self._lock:
            finished = [
                key
                for key, item in self._items.items()
                if item.status in (QueueStatus.COMPLETED, QueueStatus.REJECTED)
            ]
            for key in finished:
                del self._items[key]
        return len(finished)

    def snapshot_items(self, limit: int | None = None) -> list[ActionQueueItem]:
        """
        Bounded subset for persistence, newest first.

        Every pending and approved item is kept; finished items fill the
        remaining room up to ``limit``.
        """
        items = self.items()
        if limit is None:
            return items
        open_items = [i for i in items if i.status in (QueueStatus.PENDING, QueueStatus.APPROVED)]
        room = max(0, limit - len(open_items))
        finished = [i for i in items if i.status not in (QueueStatus.PENDING, QueueStatus.APPROVED)]
        keep = {i.id for i in open_items} | {i.id for i in finished[:room]}
        return [i for i in items if i.id in keep]

    def load(self, items: Iterable[ActionQueueItem]) -> None:
        """Replace contents with restored items (given newest first)."""
        with self._lock:
            self._items = {}
            for item in reversed(list(items)):
                self._items[item.id] = item

    def _transition(
        self, item: ActionQueueItem, status: QueueStatus, executed_at: datetime | None
    ) -> TransitionResult:
        if item.status is status:
            return TransitionResult.NOOP
        if status not in ALLOWED_TRANSITIONS[item.status]:
            logger.warning(
                "Queue transition conflict",
                item_id=item.id,
                current=item.status.value,
                requested=status.value,
            )
            raise QueueConflictError(item.id, item.status, status)

        now = utcnow()
        item.status = status
        if status in (QueueStatus.APPROVED, QueueStatus.REJECTED):
            item.resolved_at = now
        if status is QueueStatus.COMPLETED:
            item.executed_at = executed_at or now
            item.last_error = None
        return TransitionResult.APPLIED

    def _evict(self) -> None:
        overflow = len(self._items) - self.capacity
        if overflow <= 0:
            return
        for status in EVICTION_ORDER:
            if overflow <= 0:
                break
            victims = [key for key, item in self._items.items() if item.status is status][:overflow]
            for key in victims:
                del self._items[key]
            overflow -= len(victims)
        if overflow > 0:
            logger.warning(
                "Action queue above capacity with only open items",
                capacity=self.capacity,
                size=len(self._items),
            )
