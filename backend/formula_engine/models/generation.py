"""
Pydantic models for formula generation requests and outcomes.

Defines the health profile consumed by prompt construction, the generation
request accepted by the API, and the tagged outcome returned to callers.
"""

from pydantic import BaseModel, Field, field_validator
from typing import Any, Dict, List, Literal, Optional

from formula_engine.models.formula import Formula, FormulaLine
from formula_engine.models.provider import ChatMessage
from formula_engine.models.validation import ValidationFailure


class HealthProfile(BaseModel):
    """
    Read-only snapshot of the user's health context.

    The engine uses it to build prompts only; it does not judge its
    medical accuracy.
    """
    age: Optional[int] = Field(None, ge=0, le=130, description="Age in years")
    sex: Optional[str] = Field(None, description="Biological sex")
    conditions: List[str] = Field(default_factory=list, description="Known health conditions")
    medications: List[str] = Field(default_factory=list, description="Current medications")
    allergies: List[str] = Field(default_factory=list, description="Known allergies")
    goals: List[str] = Field(default_factory=list, description="Health goals")
    lab_notes: Optional[str] = Field(None, description="Free-text summary of lab results")

    model_config = {
        "json_schema_extra": {
            "example": {
                "age": 42,
                "sex": "female",
                "conditions": ["hypothyroidism"],
                "medications": ["levothyroxine"],
                "allergies": ["soy"],
                "goals": ["more energy", "better sleep"],
                "lab_notes": "TSH 4.8, vitamin D 22 ng/mL"
            }
        }
    }


class GenerateFormulaRequest(BaseModel):
    """
    Request to synthesize a new formula for a user.

    Attributes:
        user_id: Owner of the resulting formula
        health_profile: Health context used for prompting
        messages: Conversation so far, oldest first
        capsule_count: Daily capsule count (6, 9, 12 or 15)
        model: Requested model; aliases are accepted
        temperature: Sampling temperature override
        max_tokens: Response token cap override
        name: Optional label for the saved formula
    """
    user_id: str = Field(..., min_length=1, max_length=128)
    health_profile: HealthProfile = Field(default_factory=HealthProfile)
    messages: List[ChatMessage] = Field(default_factory=list)
    capsule_count: Optional[int] = Field(None, description="Capsules per day")
    model: Optional[str] = None
    temperature: Optional[float] = Field(None, ge=0.0, le=2.0)
    max_tokens: Optional[int] = Field(None, ge=256, le=32768)
    name: Optional[str] = Field(None, max_length=100)

    @field_validator('messages')
    @classmethod
    def require_non_empty_content(cls, v):
        for message in v:
            if not message.content.strip():
                raise ValueError("Conversation messages cannot be empty")
        return v


class CustomizeFormulaRequest(BaseModel):
    """Ingredients the user wants added to an existing formula."""
    added_bases: List[FormulaLine] = Field(default_factory=list)
    added_individuals: List[FormulaLine] = Field(default_factory=list)


class RenameFormulaRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)


class GenerationOutcome(BaseModel):
    """
    Tagged result of a generation attempt.

    ``status`` is "accepted" with ``formula`` set, or "rejected" with
    ``failure`` set and a generic ``message`` suitable for end users.
    """
    status: Literal["accepted", "rejected"]
    formula: Optional[Formula] = None
    failure: Optional[ValidationFailure] = None
    message: Optional[str] = None
    adjustments: List[str] = Field(default_factory=list)
    attempts: int = Field(1, description="Generation rounds used, including repair")
    provider: Optional[str] = None
    model: Optional[str] = None


class GenerationEvent(BaseModel):
    """One event of a streamed generation: text, formula, or rejected."""
    type: Literal["text", "formula", "rejected", "status"]
    text: Optional[str] = None
    outcome: Optional[GenerationOutcome] = None

    def to_payload(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)
