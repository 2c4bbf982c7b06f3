import math
from pathlib import Path

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

ENV_PATH = Path(__file__).resolve().parent.parent / ".env.local"

WEIGHT_TOLERANCE = 1e-6

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


class Settings(BaseSettings):
    # Environment settings
    environment: str = "development"
    debug: bool = False
    LOG_LEVEL: str = "INFO"

    # Semantic classifier (Tier 3)
    OPENAI_API_KEY: str | None = None
    OPENAI_MODEL: str = "gpt-4o-mini"
    OPENAI_MAX_TOKENS: int = 300
    OPENAI_TEMPERATURE: float = 0.1
    OPENAI_MAX_RETRIES: int = 2
    SEMANTIC_CLASSIFIER_TIMEOUT_SECONDS: float = 10.0

    # Persistence
    REDIS_URL: str | None = None
    STATE_TTL_SECONDS: int | None = None

    # =================================================================
    # TIER 1 - sender statistics
    # =================================================================
    MIN_EMAILS_FOR_CONFIDENCE: int = 3
    SENDER_DECAY_HALF_LIFE_DAYS: float = 10.0
    SAMPLE_SIZE_PENALTY: float = 0.2
    PRIOR_RESPONSE: float = 0.3
    PRIOR_ARCHIVE: float = 0.4
    PRIOR_DELETE: float = 0.1
    LOW_CONFIDENCE_FLOOR: float = 0.3
    VIP_IMPORTANCE_THRESHOLD: float = 0.7

    # =================================================================
    # ENSEMBLE
    # =================================================================
    LLM_FALLBACK_THRESHOLD: float = 0.6
    ENSEMBLE_WEIGHT_TIER1: float = 0.5
    ENSEMBLE_WEIGHT_TIER2: float = 0.1  # reserved slot, no tier-2 signal yet
    ENSEMBLE_WEIGHT_TIER3: float = 0.4
    AGREEMENT_BOOST: float = 0.15
    SUGGESTION_THRESHOLD: float = 0.4
    MAX_CONCURRENT_LLM: int = 3
    PREDICTION_CACHE_SIZE: int = 100

    # =================================================================
    # TRUST STAGES
    # =================================================================
    TRAINING_WHEELS_THRESHOLD: float = 0.95
    BUILDING_CONFIDENCE_THRESHOLD: float = 0.85
    EARNED_AUTONOMY_THRESHOLD: float = 0.75
    TRAINING_WHEELS_AUTO_EXEC_CAP: int = 0
    BUILDING_CONFIDENCE_AUTO_EXEC_CAP: int = 10
    EARNED_AUTONOMY_AUTO_EXEC_CAP: int = 50
    TRAINING_WHEELS_REQUIRED_INTERACTIONS: int = 50
    TRAINING_WHEELS_MIN_APPROVAL_RATE: float = 0.7
    BUILDING_CONFIDENCE_REQUIRED_INTERACTIONS: int = 200
    BUILDING_CONFIDENCE_MIN_APPROVAL_RATE: float = 0.85
    TRUST_WINDOW_SIZE: int = 50

    # =================================================================
    # QUEUE & UNDO
    # =================================================================
    ACTION_QUEUE_CAPACITY: int = 100
    ACTION_QUEUE_PERSISTED_ITEMS: int = 50
    UNDO_RETENTION_DAYS: int = 30
    UNDO_MAX_ACTIONS: int = 1000

    model_config = SettingsConfigDict(
        env_file=str(ENV_PATH),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @model_validator(mode="after")
    def _validate_engine_invariants(self) -> "Settings":
        if self.LOG_LEVEL.upper() not in LOG_LEVELS:
            raise ValueError(f"LOG_LEVEL must be one of {LOG_LEVELS}, got {self.LOG_LEVEL}")

        weights = self.default_weights()
        if any(w < 0 for w in weights.values()):
            raise ValueError(f"Ensemble weights must be non-negative: {weights}")
        total = sum(weights.values())
        if not math.isclose(total, 1.0, abs_tol=WEIGHT_TOLERANCE):
            raise ValueError(f"Ensemble weights must sum to 1.0, got {total:.6f}")

        thresholds = {
            "LLM_FALLBACK_THRESHOLD": self.LLM_FALLBACK_THRESHOLD,
            "SUGGESTION_THRESHOLD": self.SUGGESTION_THRESHOLD,
            "LOW_CONFIDENCE_FLOOR": self.LOW_CONFIDENCE_FLOOR,
            "VIP_IMPORTANCE_THRESHOLD": self.VIP_IMPORTANCE_THRESHOLD,
            "TRAINING_WHEELS_THRESHOLD": self.TRAINING_WHEELS_THRESHOLD,
            "BUILDING_CONFIDENCE_THRESHOLD": self.BUILDING_CONFIDENCE_THRESHOLD,
            "EARNED_AUTONOMY_THRESHOLD": self.EARNED_AUTONOMY_THRESHOLD,
            "TRAINING_WHEELS_MIN_APPROVAL_RATE": self.TRAINING_WHEELS_MIN_APPROVAL_RATE,
            "BUILDING_CONFIDENCE_MIN_APPROVAL_RATE": self.BUILDING_CONFIDENCE_MIN_APPROVAL_RATE,
        }
        for name, value in thresholds.items():
            if not 0.0 < value <= 1.0:
                raise ValueError(f"{name} must be within (0, 1], got {value}")

        if not (
            self.TRAINING_WHEELS_THRESHOLD
            > self.BUILDING_CONFIDENCE_THRESHOLD
            > self.EARNED_AUTONOMY_THRESHOLD
        ):
            raise ValueError("Trust stage thresholds must strictly decrease with autonomy")

        if not 0.0 <= self.AGREEMENT_BOOST <= 1.0:
            raise ValueError("AGREEMENT_BOOST must be within [0, 1]")

        positives = {
            "MIN_EMAILS_FOR_CONFIDENCE": self.MIN_EMAILS_FOR_CONFIDENCE,
            "SENDER_DECAY_HALF_LIFE_DAYS": self.SENDER_DECAY_HALF_LIFE_DAYS,
            "MAX_CONCURRENT_LLM": self.MAX_CONCURRENT_LLM,
            "OPENAI_MAX_RETRIES": self.OPENAI_MAX_RETRIES,
            "SEMANTIC_CLASSIFIER_TIMEOUT_SECONDS": self.SEMANTIC_CLASSIFIER_TIMEOUT_SECONDS,
            "PREDICTION_CACHE_SIZE": self.PREDICTION_CACHE_SIZE,
            "TRUST_WINDOW_SIZE": self.TRUST_WINDOW_SIZE,
            "ACTION_QUEUE_CAPACITY": self.ACTION_QUEUE_CAPACITY,
            "UNDO_RETENTION_DAYS": self.UNDO_RETENTION_DAYS,
            "UNDO_MAX_ACTIONS": self.UNDO_MAX_ACTIONS,
        }
        for name, value in positives.items():
            if value <= 0:
                raise ValueError(f"{name} must be positive, got {value}")

        return self

    def default_weights(self) -> dict[str, float]:
        """Configured ensemble weights keyed by tier."""
        return {
            "tier1": self.ENSEMBLE_WEIGHT_TIER1,
            "tier2": self.ENSEMBLE_WEIGHT_TIER2,
            "tier3": self.ENSEMBLE_WEIGHT_TIER3,
        }

    def get_stage_policies(self) -> dict[str, dict]:
        """
        Trust stage table keyed by stage name.

        Each entry carries the auto-approve threshold, the per-batch
        auto-execution cap and the promotion requirements out of the stage.
        """
        return {
            "training_wheels": {
                "auto_approve_threshold": self.TRAINING_WHEELS_THRESHOLD,
                "auto_exec_cap": self.TRAINING_WHEELS_AUTO_EXEC_CAP,
                "required_interactions": self.TRAINING_WHEELS_REQUIRED_INTERACTIONS,
                "min_approval_rate": self.TRAINING_WHEELS_MIN_APPROVAL_RATE,
                "next": "building_confidence",
                "previous": None,
            },
            "building_confidence": {
                "auto_approve_threshold": self.BUILDING_CONFIDENCE_THRESHOLD,
                "auto_exec_cap": self.BUILDING_CONFIDENCE_AUTO_EXEC_CAP,
                "required_interactions": self.BUILDING_CONFIDENCE_REQUIRED_INTERACTIONS,
                "min_approval_rate": self.BUILDING_CONFIDENCE_MIN_APPROVAL_RATE,
                "next": "earned_autonomy",
                "previous": "training_wheels",
            },
            "earned_autonomy": {
                "auto_approve_threshold": self.EARNED_AUTONOMY_THRESHOLD,
                "auto_exec_cap": self.EARNED_AUTONOMY_AUTO_EXEC_CAP,
                "required_interactions": None,
                "min_approval_rate": None,
                "next": None,
                "previous": "building_confidence",
            },
        }


settings = Settings()
