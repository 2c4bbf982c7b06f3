"""
Semantic classifier contract models.
Input and output payloads exchanged with the Tier-3 classifier; validation
here is what turns a malformed payload into a rejected prediction.
"""

from pydantic import BaseModel, Field

from inbox_triage.features.triage.domain.models import AIActionType


class ClassificationRequest(BaseModel):
    """What the semantic classifier is given."""

    sender: str = Field(default="", alias="from", description="From header of the email")
    subject: str = Field(default="", description="Email subject")
    body: str = Field(default="", description="Plain-text body")
    instructions: str | None = Field(default=None, description="Optional user instructions")

    model_config = {"populate_by_name": True}


class ClassificationDetail(BaseModel):
    intent: str = Field(..., min_length=1, description="e.g. request, fyi, marketing")


class ClassificationResponse(BaseModel):
    """What the semantic classifier must return."""

    predicted_action: AIActionType = Field(..., alias="predictedAction")
    confidence: float = Field(..., ge=0.0, le=1.0)
    reasoning: str = Field(default="")
    classification: ClassificationDetail

    model_config = {"populate_by_name": True}
