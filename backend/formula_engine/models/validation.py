"""
Pydantic models for formula validation results.

Validation never raises for bad generator output. It returns either an
``AcceptedFormula`` wrapping a ``FormulaDraft`` or a ``ValidationFailure``
listing every violated rule, so callers can branch on ``status``.
"""

from enum import Enum
from pydantic import BaseModel, Field
from typing import List, Literal, Optional, Union

from formula_engine.models.formula import FormulaDraft


class ViolationCode(str, Enum):
    """Machine-readable rule identifiers."""

    TOOL_NOT_USED = "TOOL_NOT_USED"
    MALFORMED_TOOL_PAYLOAD = "MALFORMED_TOOL_PAYLOAD"
    MALFORMED_ITEM = "MALFORMED_ITEM"
    INVALID_UNIT = "INVALID_UNIT"
    UNRESOLVED_INGREDIENT = "UNRESOLVED_INGREDIENT"
    BELOW_MINIMUM_DOSE = "BELOW_MINIMUM_DOSE"
    DOSE_OUT_OF_RANGE = "DOSE_OUT_OF_RANGE"
    INGREDIENT_COUNT_TOO_LOW = "INGREDIENT_COUNT_TOO_LOW"
    INGREDIENT_COUNT_TOO_HIGH = "INGREDIENT_COUNT_TOO_HIGH"
    CAPACITY_EXCEEDED = "CAPACITY_EXCEEDED"
    INVALID_CAPSULE_COUNT = "INVALID_CAPSULE_COUNT"
    DUPLICATE_INGREDIENT = "DUPLICATE_INGREDIENT"


class Violation(BaseModel):
    """
    One violated rule.

    Attributes:
        code: Rule identifier
        message: Human-readable explanation (also fed back into repair prompts)
        section: "bases" or "additions" for item-level violations
        index: Position of the offending item within its section
        raw_name: Ingredient name as the model emitted it
        normalized_name: Cleaned form the normalizer attempted
        amount: Offending amount, when relevant
    """
    code: ViolationCode
    message: str
    section: Optional[str] = None
    index: Optional[int] = None
    raw_name: Optional[str] = None
    normalized_name: Optional[str] = None
    amount: Optional[float] = None


class ValidationFailure(BaseModel):
    """Rejected candidate with the full list of violations."""
    status: Literal["rejected"] = "rejected"
    violations: List[Violation] = Field(default_factory=list)
    capsule_count: int = 9

    @property
    def codes(self) -> List[ViolationCode]:
        return [v.code for v in self.violations]

    def has(self, code: ViolationCode) -> bool:
        return code in self.codes

    def to_feedback(self) -> str:
        """
        Render the violations as corrective instructions for a re-prompt.

        Returns:
            str: Numbered list of problems followed by a reminder to call
            the create_formula tool again
        """
        lines = ["Your previous formula was rejected for these reasons:"]
        for i, violation in enumerate(self.violations, 1):
            lines.append(f"{i}. [{violation.code.value}] {violation.message}")
        lines.append(
            "Fix every problem above and call the create_formula tool again. "
            "Use only exact catalog ingredient names."
        )
        return "\n".join(lines)


class AcceptedFormula(BaseModel):
    status: Literal["accepted"] = "accepted"
    draft: FormulaDraft


ValidationResult = Union[AcceptedFormula, ValidationFailure]
