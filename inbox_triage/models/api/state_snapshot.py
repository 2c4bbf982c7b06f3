"""
Persisted session state.

One versioned envelope per user carrying the sender models, the trust
profile, a bounded subset of the action queue and the undo log. Older
versions load; newer versions are refused rather than half-read.
"""

import json
from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from inbox_triage.features.triage.domain.models import (
    ActionQueueItem,
    SenderModel,
    TrustProfile,
    UndoableAction,
    utcnow,
)

CURRENT_SCHEMA_VERSION = 1


class SnapshotVersionError(Exception):
    """Raised when a snapshot was written by a newer schema."""

    def __init__(self, found: int, supported: int = CURRENT_SCHEMA_VERSION):
        super().__init__(f"Snapshot schema version {found} is newer than supported version {supported}")
        self.found = found
        self.supported = supported
        self.recoverable = False


class SessionSnapshot(BaseModel):
    schema_version: int = CURRENT_SCHEMA_VERSION
    user_id: str
    saved_at: datetime = Field(default_factory=utcnow)
    senders: list[SenderModel] = Field(default_factory=list)
    trust_profile: TrustProfile
    auto_approve_threshold: float = Field(..., ge=0.0, le=1.0)
    queue_items: list[ActionQueueItem] = Field(default_factory=list)
    undo_actions: list[UndoableAction] = Field(default_factory=list)

    @classmethod
    def from_payload(cls, payload: str | bytes | dict[str, Any]) -> "SessionSnapshot":
        """
        Parse a stored snapshot.

        Raises:
            SnapshotVersionError: Written by a newer schema
            pydantic.ValidationError: Structurally invalid payload
        """
        data = json.loads(payload) if isinstance(payload, (str, bytes)) else payload
        version = data.get("schema_version", CURRENT_SCHEMA_VERSION) if isinstance(data, dict) else None
        if isinstance(version, int) and version > CURRENT_SCHEMA_VERSION:
            raise SnapshotVersionError(version)
        return cls.model_validate(data)
