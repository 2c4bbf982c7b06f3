"""
Sender behavior service - rolling per-sender statistics with time decay.

The data substrate for Tier-1 prediction. Models are created lazily on the
first observed email from a sender, mutated only by ``update``/``mark_vip``
and removed only by the audited ``reset``.
"""

from __future__ import annotations

import math
import sys
import threading
from collections.abc import Iterable
from dataclasses import replace
from datetime import datetime
from types import MappingProxyType
from typing import Mapping

from inbox_triage.config import Settings, settings
from inbox_triage.features.triage.domain.models import (
    BehaviorEventType,
    SenderModel,
    utcnow,
)
from inbox_triage.infrastructure.audit import AuditLogger, audit_logger
from inbox_triage.infrastructure.observability.logging import get_logger
from inbox_triage.security.hashing import extract_domain, normalize_address, sender_id

logger = get_logger(__name__)

SECONDS_PER_DAY = 86400.0
QUICK_RESPONSE_SECONDS = 3600.0

RESPONSE_WEIGHT = 0.4
STAR_WEIGHT = 0.3
RECENCY_WEIGHT = 0.2
VOLUME_WEIGHT = 0.1
VOLUME_SATURATION = 100

_COUNTERS = {
    BehaviorEventType.RESPOND: "responded_emails",
    BehaviorEventType.ARCHIVE: "archived_emails",
    BehaviorEventType.DELETE: "deleted_emails",
    BehaviorEventType.STAR: "starred_emails",
    BehaviorEventType.IGNORE: "ignored_emails",
}


def time_decay(since: datetime, now: datetime, half_life_days: float) -> float:
    """
    exp(-elapsed_days / half_life); 1.0 when ``now`` is not after ``since``.

    Never reaches 0.0, even across gaps long enough to underflow.
    """
    elapsed_days = (now - since).total_seconds() / SECONDS_PER_DAY
    if elapsed_days <= 0:
        return 1.0
    return max(math.exp(-elapsed_days / half_life_days), sys.float_info.min)


def calculate_importance(model: SenderModel) -> float:
    """Weighted combination of response, star, recency and volume signals."""
    volume_score = min(model.total_emails / VOLUME_SATURATION, 1.0)
    score = (
        model.response_rate * RESPONSE_WEIGHT
        + model.star_rate * STAR_WEIGHT
        + model.decayed_weight * RECENCY_WEIGHT
        + volume_score * VOLUME_WEIGHT
    )
    return max(0.0, min(1.0, score))


def _blend(average: float, sample: float, history: int, decay: float) -> float:
    weight = history * decay
    return (average * weight + sample) / (weight + 1.0)


class SenderBehaviorService:
    """
    Owns the sender models of one user.

    Updates to the same sender are serialized by a per-sender lock; updates
    to different senders proceed independently.
    """

    def __init__(
        self,
        user_id: str,
        *,
        config: Settings = settings,
        audit: AuditLogger = audit_logger,
    ):
        self.user_id = user_id
        self.config = config
        self.audit = audit
        self._models: dict[str, SenderModel] = {}
        self._locks: dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()

    def _lock_for(self, key: str) -> threading.Lock:
        with self._registry_lock:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            return lock

    def get(self, sender_email: str | None) -> SenderModel | None:
        """Look up the model for an address (any casing or display-name form)."""
        if not normalize_address(sender_email):
            return None
        return self._models.get(sender_id(sender_email))

    def get_by_id(self, key: str) -> SenderModel | None:
        return self._models.get(key)

    def models(self) -> Mapping[str, SenderModel]:
        """Read-only view keyed by sender id."""
        return MappingProxyType(self._models)

    def update(
        self,
        sender_email: str,
        observed_action: BehaviorEventType | str,
        *,
        observed_at: datetime | None = None,
        read_time_seconds: float | None = None,
        response_time_seconds: float | None = None,
        sender_name: str | None = None,
    ) -> SenderModel:
        """
        Record one terminal user action on an email from ``sender_email``.

        Args:
            sender_email: Sender address, bare or with a display name
            observed_action: The action the user took
            observed_at: When it happened (defaults to now)
            read_time_seconds: Optional reading time sample
            response_time_seconds: Optional time-to-reply sample
            sender_name: Optional display name to remember

        Returns:
            The updated SenderModel

        Raises:
            ValueError: If no address can be recovered or the action is unknown
        """
        normalized = normalize_address(sender_email)
        if not normalized:
            raise ValueError("A sender address is required to update a sender model")
        action = BehaviorEventType(observed_action)
        now = observed_at or utcnow()
        key = sender_id(normalized)

        with self._lock_for(key):
            model = self._models.get(key)
            created = model is None
            if model is None:
                model = SenderModel(
                    sender_id=key,
                    sender_email=normalized,
                    sender_domain=extract_domain(normalized),
                    user_id=self.user_id,
                    sender_name=sender_name,
                    first_seen=now,
                    last_interaction=now,
                    last_updated=now,
                )
                self._models[key] = model
            elif sender_name:
                model.sender_name = sender_name

            decay = time_decay(
                model.last_updated, now, self.config.SENDER_DECAY_HALF_LIFE_DAYS
            )
            model.decayed_weight = decay

            model.total_emails += 1
            counter = _COUNTERS[action]
            setattr(model, counter, getattr(model, counter) + 1)

            if read_time_seconds is not None and read_time_seconds >= 0:
                model.avg_read_time_seconds = _blend(
                    model.avg_read_time_seconds, read_time_seconds, model.read_samples, decay
                )
                model.read_samples += 1

            if response_time_seconds is not None and response_time_seconds >= 0:
                model.avg_response_time_seconds = _blend(
                    model.avg_response_time_seconds,
                    response_time_seconds,
                    model.response_samples,
                    decay,
                )
                quick = 1.0 if response_time_seconds <= QUICK_RESPONSE_SECONDS else 0.0
                model.urgency_score = _blend(
                    model.urgency_score, quick, model.response_samples, decay
                )
                model.response_samples += 1

            if now > model.last_interaction:
                model.last_interaction = now
            model.last_updated = max(model.last_updated, now)
            model.importance_score = calculate_importance(model)

            if (
                not model.is_vip
                and model.vip_source is None
                and model.total_emails >= self.config.MIN_EMAILS_FOR_CONFIDENCE
                and model.importance_score >= self.config.VIP_IMPORTANCE_THRESHOLD
            ):
                model.is_vip = True
                model.vip_source = "importance"
                logger.info(
                    "Sender promoted to VIP by importance",
                    user_id=self.user_id,
                    sender_id=key,
                    importance_score=round(model.importance_score, 4),
                )

        logger.debug(
            "Sender model updated",
            user_id=self.user_id,
            sender_id=key,
            action=action.value,
            total_emails=model.total_emails,
            created=created,
        )
        return model

    def mark_vip(self, sender_email: str, is_vip: bool = True) -> SenderModel | None:
        """Explicit user VIP flag. Returns None when the sender is unknown."""
        model = self.get(sender_email)
        if model is None:
            logger.warning("VIP flag requested for unknown sender", user_id=self.user_id)
            return None

        with self._lock_for(model.sender_id):
            model.is_vip = is_vip
            model.vip_source = "user"
            model.last_updated = utcnow()

        self.audit.log(
            user_id=self.user_id,
            action="sender_vip_flagged" if is_vip else "sender_vip_cleared",
            resource_type="sender_model",
            resource_id=model.sender_id,
        )
        return model

    def senders_by_importance(
        self, limit: int = 10, now: datetime | None = None
    ) -> list[SenderModel]:
        """
        Rank senders, VIPs first, then by importance recomputed with current decay.

        Returns detached copies; stored models are not touched.
        """
        now = now or utcnow()
        ranked: list[tuple[bool, float, SenderModel]] = []
        for model in list(self._models.values()):
            snapshot = replace(model)
            snapshot.decayed_weight = time_decay(
                model.last_interaction, now, self.config.SENDER_DECAY_HALF_LIFE_DAYS
            )
            snapshot.importance_score = calculate_importance(snapshot)
            ranked.append((snapshot.is_vip, snapshot.importance_score, snapshot))

        ranked.sort(key=lambda entry: (not entry[0], -entry[1], entry[2].sender_email))
        return [entry[2] for entry in ranked[:limit]]

    def reset(self, sender_email: str | None = None, *, reason: str = "user_request") -> int:
        """
        Explicit, audited data reset.

        Args:
            sender_email: Reset a single sender, or every sender when None
            reason: Free-form reason kept in the audit trail

        Returns:
            Number of models removed
        """
        with self._registry_lock:
            if sender_email is None:
                removed = len(self._models)
                self._models.clear()
                self._locks.clear()
                resource_id = None
            else:
                key = sender_id(sender_email)
                removed = 1 if self._models.pop(key, None) is not None else 0
                self._locks.pop(key, None)
                resource_id = key

        self.audit.log(
            user_id=self.user_id,
            action="sender_model_reset",
            resource_type="sender_model",
            resource_id=resource_id,
            metadata={"reason": reason, "removed": removed, "scope": "all" if resource_id is None else "sender"},
        )
        return removed

    def load(self, models: Iterable[SenderModel]) -> None:
        """Replace state with restored models (used when restoring a snapshot)."""
        with self._registry_lock:
            self._models = {model.sender_id: model for model in models}
            self._locks.clear()
