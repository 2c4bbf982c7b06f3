"""
Domain models for the triage decision engine.

Plain dataclasses and closed enums shared by the sender model, the
predictors, the trust controller and the action queue. Derived values
(rates, thresholds) are properties over stored fields so they can never
drift from the counters they summarize.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any


def utcnow() -> datetime:
    return datetime.now(UTC)


class AIActionType(str, Enum):
    """Everything the engine can recommend for a message."""

    KEEP = "keep"
    ARCHIVE = "archive"
    DELETE = "delete"
    STAR = "star"
    SNOOZE = "snooze"
    UNSUBSCRIBE = "unsubscribe"
    REPLY = "reply"
    MARK_READ = "mark_read"


# No mailbox mutation backs these; they are never auto-executed.
ADVISORY_ACTIONS = frozenset({AIActionType.KEEP, AIActionType.REPLY})


class BehaviorEventType(str, Enum):
    """Terminal user actions observed on a message from a sender."""

    RESPOND = "respond"
    ARCHIVE = "archive"
    DELETE = "delete"
    STAR = "star"
    IGNORE = "ignore"


class TrustStage(str, Enum):
    TRAINING_WHEELS = "training_wheels"
    BUILDING_CONFIDENCE = "building_confidence"
    EARNED_AUTONOMY = "earned_autonomy"


class DispositionOutcome(str, Enum):
    APPROVED = "approved"
    REJECTED = "rejected"
    MODIFIED = "modified"


class QueueStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    COMPLETED = "completed"


@dataclass
class EmailMessage:
    """The subset of a message the engine reads. Missing fields stay empty."""

    id: str
    sender: str = ""
    subject: str = ""
    body: str = ""
    account_id: str = "default"
    thread_id: str | None = None
    received_at: datetime | None = None


@dataclass
class SenderModel:
    """Rolling per-sender statistics, one per (user, sender) pair."""

    sender_id: str
    sender_email: str
    sender_domain: str
    user_id: str
    sender_name: str | None = None

    total_emails: int = 0
    responded_emails: int = 0
    archived_emails: int = 0
    deleted_emails: int = 0
    starred_emails: int = 0
    ignored_emails: int = 0

    avg_read_time_seconds: float = 0.0
    avg_response_time_seconds: float = 0.0
    read_samples: int = 0
    response_samples: int = 0

    importance_score: float = 0.0
    urgency_score: float = 0.0
    decayed_weight: float = 1.0

    first_seen: datetime = field(default_factory=utcnow)
    last_interaction: datetime = field(default_factory=utcnow)
    last_updated: datetime = field(default_factory=utcnow)
    is_vip: bool = False
    vip_source: str | None = None  # "user" (explicit, either way) or "importance"

    def _rate(self, count: int) -> float:
        if self.total_emails <= 0:
            return 0.0
        return count / self.total_emails

    @property
    def response_rate(self) -> float:
        return self._rate(self.responded_emails)

    @property
    def archive_rate(self) -> float:
        return self._rate(self.archived_emails)

    @property
    def delete_rate(self) -> float:
        return self._rate(self.deleted_emails)

    @property
    def star_rate(self) -> float:
        return self._rate(self.starred_emails)

    @property
    def ignore_rate(self) -> float:
        return self._rate(self.ignored_emails)


@dataclass(frozen=True)
class TierPrediction:
    """Output of one prediction tier."""

    source: str  # "statistical" or "semantic"
    predicted_action: AIActionType
    confidence: float
    reasoning: str
    factors: dict[str, float] = field(default_factory=dict)
    intent: str | None = None


@dataclass(frozen=True)
class EnsembleWeights:
    tier1: float
    tier2: float
    tier3: float

    def total(self) -> float:
        return self.tier1 + self.tier2 + self.tier3


@dataclass(frozen=True)
class FinalPrediction:
    action: AIActionType
    confidence: float
    reasoning: str
    requires_approval: bool


@dataclass(frozen=True)
class PredictionResult:
    """One decision-engine run for one email. Immutable."""

    prediction_id: str
    email_id: str
    user_id: str
    sender_id: str
    tier1_prediction: TierPrediction
    ensemble_weights: EnsembleWeights
    final_prediction: FinalPrediction
    tier3_prediction: TierPrediction | None = None
    thread_id: str | None = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class TrustProfile:
    """Per-user autonomy state. Only the trust controller writes it."""

    user_id: str
    trust_stage: TrustStage = TrustStage.TRAINING_WHEELS
    trust_score: float = 0.0
    total_interactions: int = 0
    approved_actions: int = 0
    rejected_actions: int = 0
    modified_actions: int = 0
    auto_executed_actions: int = 0
    recent_outcomes: list[DispositionOutcome] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)
    last_updated: datetime = field(default_factory=utcnow)


@dataclass
class ActionQueueItem:
    """A recommendation awaiting, or past, human disposition."""

    id: str
    email_id: str
    email_subject: str
    sender_email: str
    account_id: str
    user_id: str
    prediction: PredictionResult
    status: QueueStatus = QueueStatus.PENDING
    created_at: datetime = field(default_factory=utcnow)
    thread_id: str | None = None
    resolved_at: datetime | None = None
    executed_at: datetime | None = None
    applied_action: AIActionType | None = None
    last_error: str | None = None

    @property
    def proposed_action(self) -> AIActionType:
        return self.prediction.final_prediction.action

    @property
    def confidence(self) -> float:
        return self.prediction.final_prediction.confidence


@dataclass
class UndoableAction:
    """Reversal record for an executed mailbox mutation."""

    id: str
    type: str
    email_id: str
    account_id: str
    description: str
    user_id: str
    performed_at: datetime
    expires_at: datetime
    undo_data: dict[str, Any] = field(default_factory=dict)
    is_undone: bool = False
