from inbox_triage.features.triage.queue.service import (
    ActionQueue,
    QueueConflictError,
    QueueItemNotFoundError,
    TransitionResult,
)

__all__ = ["ActionQueue", "QueueConflictError", "QueueItemNotFoundError", "TransitionResult"]
