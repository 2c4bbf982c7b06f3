from inbox_triage.features.triage.execution.mailbox import (
    MailboxClient,
    MailboxMutationError,
    MutationRecord,
    execute_action,
    reverse_action,
)
from inbox_triage.features.triage.execution.undo import UndoError, UndoLog

__all__ = [
    "MailboxClient",
    "MailboxMutationError",
    "MutationRecord",
    "UndoError",
    "UndoLog",
    "execute_action",
    "reverse_action",
]
