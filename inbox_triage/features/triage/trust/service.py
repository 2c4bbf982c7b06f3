"""
Trust profile / autonomy controller.

Sole writer of the user's trust stage. Stages are ordered
training_wheels -> building_confidence -> earned_autonomy and each one
fixes the auto-approve threshold and the per-batch auto-execution cap.

Promotion needs volume (interaction count) and accuracy over a full
trailing window. Demotion looks only at the trailing window, so an early
string of mistakes stops counting once it scrolls out.
"""

from __future__ import annotations

import threading
from dataclasses import replace

from inbox_triage.config import Settings, settings
from inbox_triage.features.triage.domain.models import (
    DispositionOutcome,
    TrustProfile,
    TrustStage,
    utcnow,
)
from inbox_triage.infrastructure.audit import AuditLogger, audit_logger
from inbox_triage.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

# Credit each outcome earns toward window accuracy.
OUTCOME_CREDIT = {
    DispositionOutcome.APPROVED: 1.0,
    DispositionOutcome.MODIFIED: 0.5,
    DispositionOutcome.REJECTED: 0.0,
}


class TrustController:
    """Tracks approve/reject/modify history for one user and derives autonomy."""

    def __init__(
        self,
        user_id: str,
        *,
        config: Settings = settings,
        profile: TrustProfile | None = None,
        audit: AuditLogger = audit_logger,
    ):
        self.user_id = user_id
        self.config = config
        self.audit = audit
        self._policies = config.get_stage_policies()
        self._profile = profile or TrustProfile(user_id=user_id)
        self._lock = threading.Lock()

    @property
    def profile(self) -> TrustProfile:
        """Detached copy; mutate only through this controller."""
        with self._lock:
            return replace(self._profile, recent_outcomes=list(self._profile.recent_outcomes))

    @property
    def stage(self) -> TrustStage:
        return self._profile.trust_stage

    def threshold_for(self, stage: TrustStage) -> float:
        return self._policies[stage.value]["auto_approve_threshold"]

    @property
    def auto_approve_threshold(self) -> float:
        return self.threshold_for(self._profile.trust_stage)

    @property
    def auto_execute_cap(self) -> int:
        return self._policies[self._profile.trust_stage.value]["auto_exec_cap"]

    def window_accuracy(self) -> float | None:
        """Credit-weighted accuracy over the trailing window, None when empty."""
        outcomes = self._profile.recent_outcomes
        if not outcomes:
            return None
        return sum(OUTCOME_CREDIT[o] for o in outcomes) / len(outcomes)

    def update_trust_from_action(self, outcome: DispositionOutcome | str) -> TrustProfile:
        """
        Apply one human disposition.

        Args:
            outcome: approved, rejected or modified

        Returns:
            Detached copy of the updated profile
        """
        outcome = DispositionOutcome(outcome)
        with self._lock:
            profile = self._profile
            profile.total_interactions += 1
            if outcome is DispositionOutcome.APPROVED:
                profile.approved_actions += 1
            elif outcome is DispositionOutcome.REJECTED:
                profile.rejected_actions += 1
            else:
                profile.modified_actions += 1

            profile.trust_score = profile.approved_actions / profile.total_interactions

            profile.recent_outcomes.append(outcome)
            window = self.config.TRUST_WINDOW_SIZE
            if len(profile.recent_outcomes) > window:
                del profile.recent_outcomes[: len(profile.recent_outcomes) - window]

            profile.last_updated = utcnow()
            previous_stage = profile.trust_stage
            new_stage = self._evaluate_stage(profile)
            if new_stage is not previous_stage:
                profile.trust_stage = new_stage
                # Fresh window per stage so the same evidence cannot promote and demote.
                profile.recent_outcomes.clear()

        if new_stage is not previous_stage:
            logger.info(
                "Trust stage changed",
                user_id=self.user_id,
                from_stage=previous_stage.value,
                to_stage=new_stage.value,
                total_interactions=profile.total_interactions,
                auto_approve_threshold=self.threshold_for(new_stage),
            )
            self.audit.log(
                user_id=self.user_id,
                action="trust_stage_changed",
                resource_type="trust_profile",
                metadata={"from": previous_stage.value, "to": new_stage.value},
            )
        return self.profile

    def record_auto_execution(self, count: int = 1) -> TrustProfile:
        """Count actions the engine executed without asking."""
        with self._lock:
            self._profile.auto_executed_actions += count
            self._profile.last_updated = utcnow()
        return self.profile

    def _evaluate_stage(self, profile: TrustProfile) -> TrustStage:
        policy = self._policies[profile.trust_stage.value]
        window_full = len(profile.recent_outcomes) >= self.config.TRUST_WINDOW_SIZE
        accuracy = self.window_accuracy()

        if not window_full or accuracy is None:
            return profile.trust_stage

        if policy["next"] and profile.total_interactions >= policy["required_interactions"]:
            if accuracy >= policy["min_approval_rate"]:
                return TrustStage(policy["next"])

        if policy["previous"]:
            entry_rate = self._policies[policy["previous"]]["min_approval_rate"]
            if accuracy < entry_rate:
                return TrustStage(policy["previous"])

        return profile.trust_stage
