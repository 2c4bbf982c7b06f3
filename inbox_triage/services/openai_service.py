"""
OpenAI-backed semantic classifier (Tier 3).

Asks a chat model to classify an email (category, intent, urgency) in JSON
mode and maps the classification onto an action recommendation.
"""

import asyncio
import json
from typing import Any

import openai
from openai import AsyncOpenAI

from inbox_triage.config import Settings, settings
from inbox_triage.features.triage.classifier import SemanticClassifierError
from inbox_triage.features.triage.domain.models import AIActionType
from inbox_triage.infrastructure.observability.logging import get_logger
from inbox_triage.models.api.classifier import (
    ClassificationDetail,
    ClassificationRequest,
    ClassificationResponse,
)

logger = get_logger(__name__)

MAX_BODY_CHARS = 2000

SYSTEM_MESSAGE = """You are an email classification assistant. Analyze the email and return ONLY valid JSON (no backticks, no prose):
{
  "category": "urgent" | "important" | "routine" | "promotional" | "newsletter" | "automated" | "social" | "spam",
  "intent": "request" | "action_required" | "information" | "fyi" | "social" | "transactional" | "marketing",
  "urgency": "high" | "medium" | "low" | "none",
  "requiresResponse": true | false,
  "confidence": 0.0-1.0
}"""


def map_classification(payload: dict[str, Any]) -> tuple[AIActionType, float, str]:
    """
    Turn a raw classification into (action, confidence, reasoning).

    spam -> delete (0.9), promotional/newsletter -> archive (0.7),
    high urgency or a response needed -> keep (0.8), automated -> archive
    (0.6). Anything else keeps the email at the model's own confidence.
    """
    category = str(payload.get("category") or "routine").lower()
    urgency = str(payload.get("urgency") or "none").lower()
    requires_response = bool(payload.get("requiresResponse"))

    try:
        confidence = float(payload.get("confidence", 0.5))
    except (TypeError, ValueError):
        confidence = 0.5
    confidence = max(0.0, min(1.0, confidence))

    if category == "spam":
        return AIActionType.DELETE, 0.9, "Classified as spam."
    if category in ("promotional", "newsletter"):
        return AIActionType.ARCHIVE, 0.7, f"Classified as {category} content."
    if urgency == "high" or category == "urgent" or requires_response:
        reason = "Needs a response." if requires_response else "High urgency."
        return AIActionType.KEEP, 0.8, reason
    if category == "automated":
        return AIActionType.ARCHIVE, 0.6, "Automated notification."
    return AIActionType.KEEP, confidence, f"Classified as {category}."


class OpenAISemanticClassifier:
    """SemanticClassifier implementation over the OpenAI chat completions API."""

    def __init__(self, config: Settings = settings, client: AsyncOpenAI | None = None):
        self.config = config
        if client is not None:
            self.client = client
        else:
            if not config.OPENAI_API_KEY:
                raise SemanticClassifierError("OPENAI_API_KEY not configured", recoverable=False)
            self.client = AsyncOpenAI(
                api_key=config.OPENAI_API_KEY,
                timeout=config.SEMANTIC_CLASSIFIER_TIMEOUT_SECONDS,
            )
        logger.info("OpenAI semantic classifier initialized", model=config.OPENAI_MODEL)

    def _build_user_message(self, request: ClassificationRequest) -> str:
        message = f"""From: {request.sender}
Subject: {request.subject}
Body: {request.body[:MAX_BODY_CHARS]}"""
        if request.instructions:
            message += f"\n\nUser instructions: {request.instructions}"
        return message

    async def classify(self, request: ClassificationRequest) -> ClassificationResponse:
        """
        Classify one email.

        Raises:
            SemanticClassifierError: API failure after retries, or an
                unusable response
        """
        raw = await self._call_openai_with_retry(self._build_user_message(request))

        try:
            payload = json.loads(raw)
        except json.JSONDecodeError as e:
            logger.error("Classifier returned invalid JSON", error=str(e), raw_result=raw[:200])
            raise SemanticClassifierError("OpenAI returned invalid JSON") from e
        if not isinstance(payload, dict):
            raise SemanticClassifierError("OpenAI returned a non-object JSON payload")

        action, confidence, reasoning = map_classification(payload)
        intent = str(payload.get("intent") or "information")
        return ClassificationResponse(
            predicted_action=action,
            confidence=confidence,
            reasoning=reasoning,
            classification=ClassificationDetail(intent=intent),
        )

    async def _call_openai_with_retry(self, user_message: str) -> str:
        """Call OpenAI with retry on rate limits and transient errors."""
        last_error = None
        max_retries = self.config.OPENAI_MAX_RETRIES

        for attempt in range(max_retries):
            try:
                response = await self.client.chat.completions.create(
                    model=self.config.OPENAI_MODEL,
                    messages=[
                        {"role": "system", "content": SYSTEM_MESSAGE},
                        {"role": "user", "content": user_message},
                    ],
                    max_tokens=self.config.OPENAI_MAX_TOKENS,
                    temperature=self.config.OPENAI_TEMPERATURE,
                    response_format={"type": "json_object"},
                )

                if not response.choices or not response.choices[0].message.content:
                    raise SemanticClassifierError("Empty response from OpenAI API")

                return response.choices[0].message.content.strip()

            except openai.RateLimitError as e:
                last_error = e
                wait_time = min(2**attempt, 5)
                logger.warning("OpenAI rate limit hit, retrying", attempt=attempt + 1, wait_time=wait_time)
                if attempt < max_retries - 1:
                    await asyncio.sleep(wait_time)

            except openai.APITimeoutError as e:
                last_error = e
                logger.warning("OpenAI API timeout, retrying", attempt=attempt + 1, error=str(e))

            except openai.APIError as e:
                last_error = e
                status_code = getattr(e, "status_code", None)
                if status_code is not None and 400 <= status_code < 500:
                    logger.error("OpenAI client error (not retrying)", error=str(e))
                    break
                logger.warning("OpenAI API error, retrying", attempt=attempt + 1, error=str(e))

            except SemanticClassifierError as e:
                last_error = e
                logger.warning("Empty classifier response, retrying", attempt=attempt + 1)

            except Exception as e:
                last_error = e
                logger.warning(
                    "Unexpected error calling OpenAI, retrying",
                    attempt=attempt + 1,
                    error=str(e),
                    error_type=type(e).__name__,
                )

        logger.error(
            "OpenAI classification failed after all retries",
            max_retries=max_retries,
            final_error=str(last_error),
        )
        raise SemanticClassifierError(
            f"OpenAI API failed after {max_retries} attempts",
            api_error=str(last_error),
            recoverable=True,
        ) from last_error
