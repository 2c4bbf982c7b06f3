"""
Ensemble predictor.

Combines the tiers into one recommendation:
- Tier 1: statistical (sender history), always computed first
- Tier 2: reserved weight slot, no signal yet
- Tier 3: semantic classifier, consulted only when Tier 1 is unsure

Final action is a confidence-weighted vote; ``requires_approval`` compares
the final confidence with the user's current auto-approve threshold.
"""

from __future__ import annotations

import asyncio
import threading
import uuid
from collections import OrderedDict
from collections.abc import Iterable, Mapping
from dataclasses import replace
from datetime import datetime
from typing import Any

from pydantic import ValidationError

from inbox_triage.config import Settings, settings
from inbox_triage.features.triage.classifier import SemanticClassifier
from inbox_triage.features.triage.domain.models import (
    ActionQueueItem,
    AIActionType,
    EmailMessage,
    EnsembleWeights,
    FinalPrediction,
    PredictionResult,
    QueueStatus,
    SenderModel,
    TierPrediction,
    utcnow,
)
from inbox_triage.features.triage.predictors.statistical import StatisticalPredictor
from inbox_triage.features.triage.trust.service import TrustController
from inbox_triage.infrastructure.observability.logging import get_logger, log_prediction
from inbox_triage.models.api.classifier import ClassificationRequest, ClassificationResponse
from inbox_triage.security.hashing import sender_id

logger = get_logger(__name__)

SEMANTIC_SOURCE = "semantic"


def combine_predictions(
    tier1: TierPrediction,
    tier3: TierPrediction | None,
    *,
    default_weights: Mapping[str, float],
    auto_approve_threshold: float,
    agreement_boost: float = 0.0,
) -> tuple[FinalPrediction, EnsembleWeights]:
    """
    Weighted vote over the tiers that actually produced a prediction.

    Weights are renormalized over the present tiers. A tier contributes
    ``weight * confidence`` to the action it proposes and nothing to any
    other action. Ties go to the Tier-1 action.
    """
    present = {"tier1": default_weights["tier1"]}
    if tier3 is not None:
        present["tier3"] = default_weights["tier3"]

    total = sum(present.values())
    if total <= 0:
        # Every present tier has zero configured weight; split evenly.
        normalized = {tier: 1.0 / len(present) for tier in present}
    else:
        normalized = {tier: weight / total for tier, weight in present.items()}

    weights = EnsembleWeights(
        tier1=normalized["tier1"],
        tier2=0.0,
        tier3=normalized.get("tier3", 0.0),
    )

    scores: dict[AIActionType, float] = {}
    scores[tier1.predicted_action] = tier1.confidence * weights.tier1
    if tier3 is not None:
        scores[tier3.predicted_action] = (
            scores.get(tier3.predicted_action, 0.0) + tier3.confidence * weights.tier3
        )

    best_action = tier1.predicted_action
    best_score = scores[best_action]
    for action, score in scores.items():
        if score > best_score:
            best_action, best_score = action, score

    confidence = best_score
    tiers = [tier1] if tier3 is None else [tier1, tier3]
    all_agree = len(tiers) > 1 and all(t.predicted_action is best_action for t in tiers)
    if all_agree:
        confidence += agreement_boost
    confidence = max(0.0, min(1.0, confidence))

    reasoning = [f"Statistical: {tier1.predicted_action.value} ({round(tier1.confidence * 100)}%)"]
    if tier3 is not None:
        reasoning.append(f"Semantic: {tier3.predicted_action.value} ({round(tier3.confidence * 100)}%)")
    if all_agree:
        reasoning.append("All tiers agree.")

    final = FinalPrediction(
        action=best_action,
        confidence=confidence,
        reasoning=" | ".join(reasoning),
        requires_approval=confidence < auto_approve_threshold,
    )
    return final, weights


class EnsemblePredictor:
    """
    Produces PredictionResults and caches them per (user, email).

    Tier-3 calls are bounded by ``MAX_CONCURRENT_LLM`` and
    ``SEMANTIC_CLASSIFIER_TIMEOUT_SECONDS``; any Tier-3 failure degrades to
    a Tier-1-only result.
    """

    def __init__(
        self,
        *,
        trust: TrustController,
        statistical: StatisticalPredictor | None = None,
        classifier: SemanticClassifier | None = None,
        config: Settings = settings,
    ):
        self.config = config
        self.trust = trust
        self.statistical = statistical or StatisticalPredictor(config)
        self.classifier = classifier
        self._llm_semaphore = asyncio.Semaphore(config.MAX_CONCURRENT_LLM)
        self._cache: OrderedDict[tuple[str, str], PredictionResult] = OrderedDict()
        self._cache_lock = threading.Lock()
        self._pending_llm_calls = 0
        self._llm_calls = 0
        self._llm_failures = 0

    # ------------------------------------------------------------------
    # Prediction
    # ------------------------------------------------------------------

    async def predict(
        self,
        email: EmailMessage,
        user_id: str,
        sender_model: SenderModel | None = None,
        *,
        force_refresh: bool = False,
        now: datetime | None = None,
    ) -> PredictionResult:
        """
        Generate the ensemble prediction for one email.

        Args:
            email: Email to triage
            user_id: Owner of the mailbox (part of the cache key)
            sender_model: Sender history, if any
            force_refresh: Ignore a cached result
            now: Reference time for the Tier-1 recency decay

        Returns:
            PredictionResult (cached until invalidated)
        """
        if not force_refresh:
            cached = self._cache_get(user_id, email.id)
            if cached is not None:
                return cached

        tier1 = self.statistical.predict(email, sender_model, now=now)
        return await self._complete(email, user_id, tier1)

    async def predict_batch(
        self,
        emails: Iterable[EmailMessage],
        user_id: str,
        sender_models: Mapping[str, SenderModel],
        *,
        force_refresh: bool = False,
        now: datetime | None = None,
    ) -> dict[str, PredictionResult]:
        """
        Predict many emails; results keyed by email id.

        Tier-1 runs for every email up front. Each email then completes in
        its own task; at most ``MAX_CONCURRENT_LLM`` Tier-3 calls are in
        flight. Finished results are cached as they complete, so cancelling
        the batch keeps whatever already finished.
        """
        emails = list(emails)
        results: dict[str, PredictionResult] = {}
        todo: list[EmailMessage] = []
        seen: set[str] = set()
        for email in emails:
            if email.id in seen:
                continue
            seen.add(email.id)
            cached = None if force_refresh else self._cache_get(user_id, email.id)
            if cached is not None:
                results[email.id] = cached
            else:
                todo.append(email)

        tier1_predictions = self.statistical.predict_batch(todo, sender_models, now=now)
        completed = await asyncio.gather(
            *(self._complete(email, user_id, tier1_predictions[email.id]) for email in todo)
        )
        for result in completed:
            results[result.email_id] = result

        logger.info(
            "Batch prediction completed",
            user_id=user_id,
            emails=len(emails),
            predicted=len(todo),
            cached=len(results) - len(todo),
        )
        return results

    async def _complete(
        self, email: EmailMessage, user_id: str, tier1: TierPrediction
    ) -> PredictionResult:
        tier3 = None
        if tier1.confidence < self.config.LLM_FALLBACK_THRESHOLD and self.classifier is not None:
            tier3 = await self._semantic_prediction(email)

        final, weights = combine_predictions(
            tier1,
            tier3,
            default_weights=self.config.default_weights(),
            auto_approve_threshold=self.trust.auto_approve_threshold,
            agreement_boost=self.config.AGREEMENT_BOOST,
        )

        result = PredictionResult(
            prediction_id=f"pred_{uuid.uuid4().hex}",
            email_id=email.id,
            user_id=user_id,
            sender_id=sender_id(email.sender),
            thread_id=email.thread_id,
            tier1_prediction=tier1,
            tier3_prediction=tier3,
            ensemble_weights=weights,
            final_prediction=final,
        )
        self._cache_put(user_id, email.id, result)
        log_prediction(
            email_id=email.id,
            action=final.action.value,
            confidence=final.confidence,
            requires_approval=final.requires_approval,
            tier3_used=tier3 is not None,
            user_id=user_id,
        )
        return result

    async def _semantic_prediction(self, email: EmailMessage) -> TierPrediction | None:
        """
        Ask the semantic classifier, bounded by the semaphore and timeout.

        Returns None on timeout, classifier error or malformed payload.
        Cancellation propagates; the semaphore is released either way.
        """
        request = ClassificationRequest(
            sender=email.sender or "",
            subject=email.subject or "",
            body=email.body or "",
        )
        async with self._llm_semaphore:
            self._pending_llm_calls += 1
            self._llm_calls += 1
            try:
                response = await asyncio.wait_for(
                    self.classifier.classify(request),
                    timeout=self.config.SEMANTIC_CLASSIFIER_TIMEOUT_SECONDS,
                )
                if not isinstance(response, ClassificationResponse):
                    response = ClassificationResponse.model_validate(response)
            except asyncio.TimeoutError:
                self._llm_failures += 1
                logger.warning(
                    "Semantic classifier timed out, using statistical tier only",
                    email_id=email.id,
                    timeout=self.config.SEMANTIC_CLASSIFIER_TIMEOUT_SECONDS,
                )
                return None
            except ValidationError as e:
                self._llm_failures += 1
                logger.warning(
                    "Semantic classifier returned a malformed payload",
                    email_id=email.id,
                    error=str(e),
                )
                return None
            except Exception as e:
                self._llm_failures += 1
                logger.warning(
                    "Semantic classifier failed, using statistical tier only",
                    email_id=email.id,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                return None
            finally:
                self._pending_llm_calls -= 1

        return TierPrediction(
            source=SEMANTIC_SOURCE,
            predicted_action=response.predicted_action,
            confidence=response.confidence,
            reasoning=response.reasoning,
            intent=response.classification.intent,
        )

    # ------------------------------------------------------------------
    # Queue items
    # ------------------------------------------------------------------

    def create_action_queue_item(
        self, prediction: PredictionResult, email: EmailMessage, account_id: str
    ) -> ActionQueueItem:
        """Build a pending queue item. Touches no store."""
        return ActionQueueItem(
            id=f"aq_{uuid.uuid4().hex}",
            email_id=prediction.email_id,
            email_subject=email.subject or "(no subject)",
            sender_email=email.sender or "unknown",
            account_id=account_id,
            user_id=prediction.user_id,
            prediction=prediction,
            status=QueueStatus.PENDING,
            thread_id=prediction.thread_id,
            created_at=utcnow(),
        )

    # ------------------------------------------------------------------
    # Cache
    # ------------------------------------------------------------------

    def _cache_get(self, user_id: str, email_id: str) -> PredictionResult | None:
        with self._cache_lock:
            key = (user_id, email_id)
            result = self._cache.get(key)
            if result is None:
                return None
            self._cache.move_to_end(key)
            # The trust stage may have moved since this result was cached.
            regated = self._regate(result)
            if regated is not result:
                self._cache[key] = regated
            return regated

    def _regate(self, result: PredictionResult) -> PredictionResult:
        final = result.final_prediction
        requires_approval = final.confidence < self.trust.auto_approve_threshold
        if requires_approval == final.requires_approval:
            return result
        return replace(
            result,
            final_prediction=replace(final, requires_approval=requires_approval),
        )

    def _cache_put(self, user_id: str, email_id: str, result: PredictionResult) -> None:
        with self._cache_lock:
            key = (user_id, email_id)
            self._cache[key] = result
            self._cache.move_to_end(key)
            while len(self._cache) > self.config.PREDICTION_CACHE_SIZE:
                self._cache.popitem(last=False)

    def invalidate(self, email_id: str) -> int:
        """Drop cached results for one email (every user)."""
        with self._cache_lock:
            keys = [key for key in self._cache if key[1] == email_id]
            for key in keys:
                del self._cache[key]
        return len(keys)

    def invalidate_sender(self, key: str) -> int:
        """Drop cached results for every email from one sender id."""
        with self._cache_lock:
            keys = [k for k, result in self._cache.items() if result.sender_id == key]
            for k in keys:
                del self._cache[k]
        return len(keys)

    def clear_cache(self) -> None:
        with self._cache_lock:
            self._cache.clear()

    def get_stats(self) -> dict[str, Any]:
        return {
            "cache_size": len(self._cache),
            "pending_llm_calls": self._pending_llm_calls,
            "llm_calls": self._llm_calls,
            "llm_failures": self._llm_failures,
            "auto_approve_threshold": self.trust.auto_approve_threshold,
        }
