"""
Pydantic models for formulas and their audit trail.

This module defines the validated formula draft produced by the validator,
the persisted ``Formula`` entity owned by the lifecycle store, and the
append-only ``FormulaVersionChange`` records.
"""

from datetime import datetime
from pydantic import BaseModel, Field
from typing import List, Optional


class FormulaLine(BaseModel):
    """
    A single validated line item.

    Attributes:
        ingredient: Canonical catalog name
        amount: Dose in mg (whole milligrams)
        unit: Always "mg"
        purpose: Optional reason the ingredient was chosen
    """
    ingredient: str = Field(..., description="Canonical catalog name")
    amount: int = Field(..., gt=0, description="Dose in mg")
    unit: str = Field("mg", description="Dose unit")
    purpose: Optional[str] = Field(None, description="Why this ingredient is included")


class UserCustomizations(BaseModel):
    """Ingredients a user added on top of a generated formula."""
    added_bases: List[FormulaLine] = Field(default_factory=list)
    added_individuals: List[FormulaLine] = Field(default_factory=list)


class FormulaDraft(BaseModel):
    """
    A formula accepted by the validator but not yet persisted.

    ``total_mg`` is always computed from the line items; the AI-declared
    total is discarded.
    """
    bases: List[FormulaLine] = Field(default_factory=list)
    additions: List[FormulaLine] = Field(default_factory=list)
    total_mg: int = Field(..., ge=0)
    rationale: str = Field("", description="Why this formula fits the user")
    warnings: List[str] = Field(default_factory=list)
    disclaimers: List[str] = Field(default_factory=list)
    capsule_count: int = Field(9, description="Capsules per daily serving")
    adjustments: List[str] = Field(
        default_factory=list,
        description="Corrections applied during validation (name fixes, dose coercions)"
    )

    @property
    def lines(self) -> List[FormulaLine]:
        return list(self.bases) + list(self.additions)


class Formula(BaseModel):
    """
    A persisted, versioned formula.

    Invariants: ``total_mg`` equals the sum of all line amounts, every line
    names a catalog entry, and ``version`` is unique and increasing per user.
    A formula with ``archived_at`` unset is a candidate for the user's
    current formula; the most recent such version is current.
    """
    id: str
    user_id: str
    version: int = Field(..., ge=1)
    name: Optional[str] = None
    bases: List[FormulaLine] = Field(default_factory=list)
    additions: List[FormulaLine] = Field(default_factory=list)
    total_mg: int
    rationale: str = ""
    warnings: List[str] = Field(default_factory=list)
    disclaimers: List[str] = Field(default_factory=list)
    capsule_count: int = 9
    user_customizations: Optional[UserCustomizations] = None
    created_at: datetime
    archived_at: Optional[datetime] = None

    model_config = {
        "json_schema_extra": {
            "example": {
                "id": "3f5d0c1e-8a53-4a8e-9d54-6f3e0a1b2c3d",
                "user_id": "user-42",
                "version": 2,
                "name": "Stress & Sleep",
                "bases": [{"ingredient": "Adrenal Support", "amount": 420, "unit": "mg"}],
                "additions": [{"ingredient": "Ashwagandha", "amount": 600, "unit": "mg"}],
                "total_mg": 1020,
                "rationale": "Targets cortisol balance",
                "warnings": [],
                "disclaimers": ["Not evaluated by the FDA"],
                "capsule_count": 9,
                "user_customizations": None,
                "created_at": "2025-01-01T12:00:00Z",
                "archived_at": None
            }
        }
    }

    @property
    def is_archived(self) -> bool:
        return self.archived_at is not None

    @property
    def lines(self) -> List[FormulaLine]:
        return list(self.bases) + list(self.additions)


class FormulaVersionChange(BaseModel):
    """Append-only audit record for a formula transition."""
    id: int
    formula_id: str
    description: str
    created_at: datetime


class FormulaInsights(BaseModel):
    """Read-only aggregate over all stored formulas."""
    total_formulas: int = 0
    active_formulas: int = 0
    avg_mg_per_formula: int = 0


class IngredientPopularity(BaseModel):
    ingredient: str
    formula_count: int
