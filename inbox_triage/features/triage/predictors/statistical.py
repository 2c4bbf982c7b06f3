"""
Tier-1 statistical predictor.

Predicts the user's action from sender history and a few content rules.
Synchronous, no external calls, never mutates a SenderModel. Identical
inputs (including ``now``) always produce an identical prediction.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from datetime import datetime

from inbox_triage.config import Settings, settings
from inbox_triage.features.triage.domain.models import (
    AIActionType,
    EmailMessage,
    SenderModel,
    TierPrediction,
    utcnow,
)
from inbox_triage.features.triage.senders.service import time_decay
from inbox_triage.security.hashing import normalize_address, sender_id

SOURCE = "statistical"

BULK_SENDER_PATTERNS = (
    "noreply",
    "no-reply",
    "donotreply",
    "do-not-reply",
    "newsletter",
    "marketing",
    "notifications",
    "updates",
    "info@",
    "news@",
    "digest@",
    "mailer",
)

URGENT_KEYWORDS = (
    "urgent",
    "asap",
    "immediately",
    "deadline",
    "critical",
    "important",
    "action required",
    "time sensitive",
)

MEETING_KEYWORDS = (
    "meeting",
    "calendar",
    "schedule",
    "invite",
    "appointment",
    "call",
    "zoom",
    "teams",
    "google meet",
)

NEWSLETTER_SUBJECT_KEYWORDS = (
    "newsletter",
    "digest",
    "weekly",
    "unsubscribe",
    "% off",
    "sale",
    "promo",
)

RULE_BULK_CONFIDENCE = 0.55
RULE_URGENT_CONFIDENCE = 0.5
VOLUME_PRIOR = 2.0
SMALL_SAMPLE_LIMIT = 10

VIP_KEEP_BONUS = 0.3
VIP_STAR_SCORE = 0.4
URGENT_KEEP_BONUS = 0.2
URGENT_ARCHIVE_PENALTY = 0.1
MEETING_KEEP_BONUS = 0.15
NEWSLETTER_ARCHIVE_BONUS = 0.2
NEWSLETTER_UNSUBSCRIBE_SCORE = 0.3

# Candidate order doubles as tie-break order.
_SCORED_ACTIONS = (
    AIActionType.KEEP,
    AIActionType.ARCHIVE,
    AIActionType.DELETE,
    AIActionType.REPLY,
    AIActionType.STAR,
    AIActionType.UNSUBSCRIBE,
)


def _contains_any(text: str, keywords: Iterable[str]) -> bool:
    return any(keyword in text for keyword in keywords)


def is_bulk_sender(address: str | None) -> bool:
    return _contains_any(normalize_address(address), BULK_SENDER_PATTERNS)


class StatisticalPredictor:
    """Tier-1: sender statistics plus content heuristics."""

    def __init__(self, config: Settings = settings):
        self.config = config

    def smoothed_rate(self, successes: int, total: int, prior: float) -> float:
        """
        Laplace smoothing toward a prior: (k + 2p) / (n + 4p).

        Falls back to the prior itself when there is no data.
        """
        alpha = prior * 2
        denominator = total + 2 * alpha
        if denominator <= 0:
            return prior
        return (successes + alpha) / denominator

    def predict(
        self,
        email: EmailMessage,
        sender_model: SenderModel | None,
        *,
        now: datetime | None = None,
    ) -> TierPrediction:
        """
        Predict an action for ``email``.

        Args:
            email: The message to triage
            sender_model: History for the sender, if any
            now: Reference time for the recency decay (defaults to now)

        Returns:
            TierPrediction with source "statistical"
        """
        if (
            sender_model is None
            or sender_model.total_emails < self.config.MIN_EMAILS_FOR_CONFIDENCE
            or not normalize_address(email.sender)
        ):
            return self._rule_based_prediction(email, sender_model)

        now = now or utcnow()
        decay = time_decay(
            sender_model.last_interaction, now, self.config.SENDER_DECAY_HALF_LIFE_DAYS
        )
        rates = self._decayed_rates(sender_model, decay)
        scores = self._action_scores(email, sender_model, rates)
        best_action, best_score = self._best_action(scores)
        confidence = self._confidence(sender_model.total_emails, best_score, decay)

        return TierPrediction(
            source=SOURCE,
            predicted_action=best_action,
            confidence=confidence,
            reasoning=self._reasoning(sender_model, rates, best_action),
            factors={
                "response_rate": round(rates["response"], 4),
                "archive_rate": round(rates["archive"], 4),
                "delete_rate": round(rates["delete"], 4),
                "importance_score": round(sender_model.importance_score, 4),
                "time_decay": round(decay, 4),
            },
        )

    def predict_batch(
        self,
        emails: Iterable[EmailMessage],
        models: Mapping[str, SenderModel],
        *,
        now: datetime | None = None,
    ) -> dict[str, TierPrediction]:
        """
        One prediction per email, keyed by email id.

        ``models`` is keyed by sender id. Read-only over the models.
        """
        now = now or utcnow()
        results: dict[str, TierPrediction] = {}
        for email in emails:
            model = models.get(sender_id(email.sender)) if email.sender else None
            results[email.id] = self.predict(email, model, now=now)
        return results

    def _rule_based_prediction(
        self, email: EmailMessage, sender_model: SenderModel | None
    ) -> TierPrediction:
        subject = (email.subject or "").lower()
        floor = self.config.LOW_CONFIDENCE_FLOOR
        history = sender_model.total_emails if sender_model else 0
        factors = {"sender_history": float(history)}

        if not normalize_address(email.sender):
            return TierPrediction(
                source=SOURCE,
                predicted_action=AIActionType.KEEP,
                confidence=floor,
                reasoning="rule-based: missing sender, keeping by default.",
                factors=factors,
            )

        if is_bulk_sender(email.sender) or _contains_any(subject, NEWSLETTER_SUBJECT_KEYWORDS):
            return TierPrediction(
                source=SOURCE,
                predicted_action=AIActionType.ARCHIVE,
                confidence=RULE_BULK_CONFIDENCE,
                reasoning="rule-based: sender looks like a bulk or newsletter sender.",
                factors=factors,
            )

        if _contains_any(subject, URGENT_KEYWORDS):
            return TierPrediction(
                source=SOURCE,
                predicted_action=AIActionType.KEEP,
                confidence=RULE_URGENT_CONFIDENCE,
                reasoning="rule-based: urgent subject, keeping in inbox.",
                factors=factors,
            )

        return TierPrediction(
            source=SOURCE,
            predicted_action=AIActionType.KEEP,
            confidence=floor,
            reasoning=f"rule-based: new sender ({history} emails of history).",
            factors=factors,
        )

    def _decayed_rates(self, model: SenderModel, decay: float) -> dict[str, float]:
        """Smoothed rates blended toward their priors as history goes stale."""
        cfg = self.config

        def blend(rate: float, prior: float) -> float:
            return rate * decay + prior * (1 - decay)

        total = model.total_emails
        return {
            "response": blend(self.smoothed_rate(model.responded_emails, total, cfg.PRIOR_RESPONSE), cfg.PRIOR_RESPONSE),
            "archive": blend(self.smoothed_rate(model.archived_emails, total, cfg.PRIOR_ARCHIVE), cfg.PRIOR_ARCHIVE),
            "delete": blend(self.smoothed_rate(model.deleted_emails, total, cfg.PRIOR_DELETE), cfg.PRIOR_DELETE),
            "star": model.star_rate * decay,
        }

    def _action_scores(
        self, email: EmailMessage, model: SenderModel, rates: dict[str, float]
    ) -> dict[AIActionType, float]:
        scores = {
            AIActionType.ARCHIVE: rates["archive"],
            AIActionType.DELETE: rates["delete"],
            AIActionType.KEEP: max(0.0, 1 - rates["archive"] - rates["delete"]),
            AIActionType.REPLY: rates["response"],
            AIActionType.STAR: rates["star"],
        }

        if model.is_vip:
            scores[AIActionType.KEEP] += VIP_KEEP_BONUS
            scores[AIActionType.STAR] = max(scores[AIActionType.STAR], VIP_STAR_SCORE)

        subject = (email.subject or "").lower()
        if _contains_any(subject, URGENT_KEYWORDS):
            scores[AIActionType.KEEP] += URGENT_KEEP_BONUS
            scores[AIActionType.ARCHIVE] = max(0.0, scores[AIActionType.ARCHIVE] - URGENT_ARCHIVE_PENALTY)

        if _contains_any(subject, MEETING_KEYWORDS):
            scores[AIActionType.KEEP] += MEETING_KEEP_BONUS

        if is_bulk_sender(model.sender_email) or _contains_any(subject, NEWSLETTER_SUBJECT_KEYWORDS):
            scores[AIActionType.ARCHIVE] += NEWSLETTER_ARCHIVE_BONUS
            scores[AIActionType.UNSUBSCRIBE] = NEWSLETTER_UNSUBSCRIBE_SCORE

        return scores

    def _best_action(self, scores: dict[AIActionType, float]) -> tuple[AIActionType, float]:
        best_action = AIActionType.KEEP
        best_score = 0.0
        for action in _SCORED_ACTIONS:
            score = scores.get(action, 0.0)
            if score > best_score:
                best_action, best_score = action, score
        return best_action, best_score

    def _confidence(self, total_emails: int, action_score: float, decay: float) -> float:
        """
        Monotonic in the winning score, the observation count and the decay.

        More observations raise the ceiling: total / (total + 2).
        """
        confidence = min(action_score, 1.0)
        confidence *= total_emails / (total_emails + VOLUME_PRIOR)
        if total_emails < SMALL_SAMPLE_LIMIT:
            confidence *= 1 - self.config.SAMPLE_SIZE_PENALTY * 0.5
        confidence *= 0.8 + 0.2 * decay
        return max(0.0, min(1.0, confidence))

    def _reasoning(
        self, model: SenderModel, rates: dict[str, float], action: AIActionType
    ) -> str:
        name = model.sender_name or model.sender_email
        parts = [f"Based on {model.total_emails} emails from {name}."]

        if action is AIActionType.ARCHIVE:
            parts.append(f"You archive {round(rates['archive'] * 100)}% of emails from this sender.")
        elif action is AIActionType.DELETE:
            parts.append(f"You delete {round(rates['delete'] * 100)}% of emails from this sender.")
        elif action is AIActionType.REPLY:
            parts.append(f"You reply to {round(rates['response'] * 100)}% of emails from this sender.")
        elif action is AIActionType.STAR:
            parts.append("You often star emails from this sender.")
        elif action is AIActionType.UNSUBSCRIBE:
            parts.append("This looks like a mailing list you rarely engage with.")
        elif action is AIActionType.KEEP:
            parts.append("You usually keep emails from this sender.")
        else:
            raise ValueError(f"Unscored action {action}")

        if model.is_vip:
            parts.append("Sender is a VIP.")
        return " ".join(parts)
