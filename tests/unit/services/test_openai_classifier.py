import json
from types import SimpleNamespace

import pytest

from inbox_triage.features.triage.classifier import SemanticClassifier, SemanticClassifierError
from inbox_triage.features.triage.domain import AIActionType
from inbox_triage.models.api.classifier import ClassificationRequest
from inbox_triage.services.openai_service import OpenAISemanticClassifier, map_classification


class FakeCompletions:
    def __init__(self, content=None, error: Exception | None = None):
        self.content = content
        self.error = error
        self.calls: list[dict] = []

    async def create(self, **kwargs):
        self.calls.append(kwargs)
        if self.error is not None:
            raise self.error
        message = SimpleNamespace(content=self.content)
        return SimpleNamespace(choices=[SimpleNamespace(message=message)], usage=None)


def _client(completions: FakeCompletions):
    return SimpleNamespace(chat=SimpleNamespace(completions=completions))


@pytest.mark.parametrize(
    ("payload", "action", "confidence"),
    [
        ({"category": "spam", "confidence": 0.4}, AIActionType.DELETE, 0.9),
        ({"category": "newsletter"}, AIActionType.ARCHIVE, 0.7),
        ({"category": "promotional"}, AIActionType.ARCHIVE, 0.7),
        ({"category": "routine", "urgency": "high"}, AIActionType.KEEP, 0.8),
        ({"category": "routine", "requiresResponse": True}, AIActionType.KEEP, 0.8),
        ({"category": "automated"}, AIActionType.ARCHIVE, 0.6),
        ({"category": "social", "confidence": 0.65}, AIActionType.KEEP, 0.65),
        ({"category": "routine", "confidence": "n/a"}, AIActionType.KEEP, 0.5),
    ],
)
def test_map_classification(payload, action, confidence):
    mapped_action, mapped_confidence, reasoning = map_classification(payload)
    assert mapped_action is action
    assert mapped_confidence == pytest.approx(confidence)
    assert reasoning


@pytest.mark.asyncio
async def test_classify_builds_response(test_settings):
    completions = FakeCompletions(json.dumps({"category": "spam", "intent": "marketing"}))
    classifier = OpenAISemanticClassifier(test_settings(), client=_client(completions))

    response = await classifier.classify(
        ClassificationRequest(sender="x@spam.example", subject="You won", body="Click")
    )

    assert isinstance(classifier, SemanticClassifier)
    assert response.predicted_action is AIActionType.DELETE
    assert response.classification.intent == "marketing"
    call = completions.calls[0]
    assert call["response_format"] == {"type": "json_object"}
    assert "You won" in call["messages"][1]["content"]


@pytest.mark.asyncio
async def test_request_accepts_from_alias(test_settings):
    completions = FakeCompletions(json.dumps({"category": "routine"}))
    classifier = OpenAISemanticClassifier(test_settings(), client=_client(completions))

    request = ClassificationRequest.model_validate({"from": "a@example.com", "subject": "Hi"})
    await classifier.classify(request)

    assert "From: a@example.com" in completions.calls[0]["messages"][1]["content"]


@pytest.mark.asyncio
async def test_invalid_json_raises(test_settings):
    classifier = OpenAISemanticClassifier(test_settings(), client=_client(FakeCompletions("not json")))

    with pytest.raises(SemanticClassifierError):
        await classifier.classify(ClassificationRequest(subject="Hi"))


@pytest.mark.asyncio
async def test_api_failure_raises_after_retries(test_settings):
    completions = FakeCompletions(error=RuntimeError("network down"))
    classifier = OpenAISemanticClassifier(test_settings(OPENAI_MAX_RETRIES=2), client=_client(completions))

    with pytest.raises(SemanticClassifierError) as exc:
        await classifier.classify(ClassificationRequest(subject="Hi"))

    assert len(completions.calls) == 2
    assert exc.value.recoverable is True
    assert "network down" in exc.value.api_error


def test_missing_api_key(test_settings):
    with pytest.raises(SemanticClassifierError):
        OpenAISemanticClassifier(test_settings(OPENAI_API_KEY=None))
