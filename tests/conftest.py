import asyncio

import pytest

from inbox_triage.config import Settings
from inbox_triage.features.triage.domain import (
    ActionQueueItem,
    AIActionType,
    EnsembleWeights,
    FinalPrediction,
    PredictionResult,
    TierPrediction,
)
from inbox_triage.infrastructure.audit import AuditLogger
from inbox_triage.models.api.classifier import ClassificationDetail, ClassificationResponse



class FakeRedis:
    def __init__(self):
        self.store: dict[str, str] = {}
        self.ttls: dict[str, int | None] = {}

    async def set_with_ttl(self, key: str, value: str, ttl_s: int | None = None) -> bool:
        self.store[key] = value
        self.ttls[key] = ttl_s
        return True

    async def get(self, key: str) -> str | None:
        return self.store.get(key)

    async def delete(self, key: str) -> bool:
        return self.store.pop(key, None) is not None


class FakeMailbox:
    """Records every mutation; methods listed in ``failing`` raise."""

    def __init__(self):
        self.calls: list[tuple] = []
        self.failing: set[str] = set()

    async def _record(self, name: str, *args):
        if name in self.failing:
            raise ConnectionError(f"{name} unavailable")
        self.calls.append((name, *args))

    async def archive(self, email_id):
        await self._record("archive", email_id)

    async def delete(self, email_id):
        await self._record("delete", email_id)

    async def star(self, email_id, starred):
        await self._record("star", email_id, starred)

    async def mark_read(self, email_id):
        await self._record("mark_read", email_id)

    async def mark_unread(self, email_id):
        await self._record("mark_unread", email_id)

    async def unsubscribe(self, email_id):
        await self._record("unsubscribe", email_id)

    async def snooze(self, email_id, until):
        await self._record("snooze", email_id, until)

    async def restore(self, email_id, folder):
        await self._record("restore", email_id, folder)


class ScriptedClassifier:
    """Semantic classifier double with a fixed answer, delay or error."""

    def __init__(self, response=None, *, delay: float = 0.0, error: Exception | None = None):
        self.response = response
        self.delay = delay
        self.error = error
        self.calls = 0
        self.in_flight = 0
        self.max_in_flight = 0

    async def classify(self, request):
        self.calls += 1
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if self.error is not None:
                raise self.error
            return self.response
        finally:
            self.in_flight -= 1


def classification(action: AIActionType, confidence: float, intent: str = "fyi") -> ClassificationResponse:
    return ClassificationResponse(
        predicted_action=action,
        confidence=confidence,
        reasoning="scripted",
        classification=ClassificationDetail(intent=intent),
    )


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def fake_mailbox():
    return FakeMailbox()


@pytest.fixture
def scripted_classifier():
    return ScriptedClassifier


@pytest.fixture
def make_classification():
    return classification


@pytest.fixture
def test_settings():
    def _build(**overrides) -> Settings:
        return Settings(_env_file=None, **overrides)

    return _build


@pytest.fixture
def audit():
    return AuditLogger()


@pytest.fixture
def make_prediction():
    def _build(
        email_id: str = "m1",
        action: AIActionType = AIActionType.ARCHIVE,
        confidence: float = 0.7,
        user_id: str = "user-123",
        requires_approval: bool = True,
    ) -> PredictionResult:
        tier1 = TierPrediction(
            source="statistical",
            predicted_action=action,
            confidence=confidence,
            reasoning="test",
        )
        return PredictionResult(
            prediction_id=f"pred_{email_id}",
            email_id=email_id,
            user_id=user_id,
            sender_id="snd_test",
            tier1_prediction=tier1,
            ensemble_weights=EnsembleWeights(tier1=1.0, tier2=0.0, tier3=0.0),
            final_prediction=FinalPrediction(
                action=action,
                confidence=confidence,
                reasoning="test",
                requires_approval=requires_approval,
            ),
        )

    return _build


@pytest.fixture
def make_queue_item(make_prediction):
    def _build(item_id: str, confidence: float = 0.7, action: AIActionType = AIActionType.ARCHIVE):
        prediction = make_prediction(email_id=f"email-{item_id}", action=action, confidence=confidence)
        return ActionQueueItem(
            id=item_id,
            email_id=prediction.email_id,
            email_subject=f"Subject {item_id}",
            sender_email="sender@example.com",
            account_id="acct-1",
            user_id=prediction.user_id,
            prediction=prediction,
        )

    return _build
