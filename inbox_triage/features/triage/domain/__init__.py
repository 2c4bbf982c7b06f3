"""Domain types for the triage feature."""

from inbox_triage.features.triage.domain.models import (
    ADVISORY_ACTIONS,
    ActionQueueItem,
    AIActionType,
    BehaviorEventType,
    DispositionOutcome,
    EmailMessage,
    EnsembleWeights,
    FinalPrediction,
    PredictionResult,
    QueueStatus,
    SenderModel,
    TierPrediction,
    TrustProfile,
    TrustStage,
    UndoableAction,
)

__all__ = [
    "ADVISORY_ACTIONS",
    "AIActionType",
    "ActionQueueItem",
    "BehaviorEventType",
    "DispositionOutcome",
    "EmailMessage",
    "EnsembleWeights",
    "FinalPrediction",
    "PredictionResult",
    "QueueStatus",
    "SenderModel",
    "TierPrediction",
    "TrustProfile",
    "TrustStage",
    "UndoableAction",
]
