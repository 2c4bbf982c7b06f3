"""
Tier-3 semantic classifier boundary.

The engine only depends on this protocol; the OpenAI-backed implementation
lives in ``inbox_triage.services.openai_service``.
"""

from typing import Protocol, runtime_checkable

from inbox_triage.models.api.classifier import ClassificationRequest, ClassificationResponse


class SemanticClassifierError(Exception):
    """Raised when the semantic classifier cannot produce a usable answer."""

    def __init__(self, message: str, api_error: str | None = None, recoverable: bool = True):
        super().__init__(message)
        self.api_error = api_error
        self.recoverable = recoverable


@runtime_checkable
class SemanticClassifier(Protocol):
    async def classify(self, request: ClassificationRequest) -> ClassificationResponse: ...
