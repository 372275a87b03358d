"""
Pydantic models for the ingredient catalog.

Defines catalog entries (System Supports and Individual Ingredients) and
the result of normalizing a free-form ingredient name against the catalog.
"""

from enum import Enum
from pydantic import BaseModel, Field, model_validator
from typing import Optional


class IngredientClass(str, Enum):
    """The two disjoint ingredient classes in the catalog."""

    SYSTEM_SUPPORT = "system_support"
    INDIVIDUAL = "individual"


class CatalogEntry(BaseModel):
    """
    An approved ingredient.

    Exactly one of ``dose_mg`` or the ``dose_range_min_mg``/``dose_range_max_mg``
    pair is set. System Supports are always fixed-dose.

    Attributes:
        name: Canonical, unique ingredient name
        ingredient_class: System Support or Individual Ingredient
        dose_mg: Fixed dose in mg (fixed-dose entries only)
        dose_range_min_mg: Lower bound of the dose range (ranged entries only)
        dose_range_max_mg: Upper bound of the dose range (ranged entries only)
        description: Short description for users and prompts
    """
    name: str = Field(..., min_length=1, description="Canonical ingredient name")
    ingredient_class: IngredientClass = Field(..., description="Ingredient class")
    dose_mg: Optional[int] = Field(None, gt=0, description="Fixed dose in mg")
    dose_range_min_mg: Optional[int] = Field(None, gt=0, description="Minimum dose in mg")
    dose_range_max_mg: Optional[int] = Field(None, gt=0, description="Maximum dose in mg")
    description: str = Field("", description="Ingredient description")

    model_config = {
        "frozen": True,
        "json_schema_extra": {
            "example": {
                "name": "Hawthorn Berry",
                "ingredient_class": "individual",
                "dose_mg": None,
                "dose_range_min_mg": 50,
                "dose_range_max_mg": 100,
                "description": "Cardiovascular support"
            }
        }
    }

    @model_validator(mode="after")
    def check_dose_shape(self):
        """Enforce fixed-dose XOR dose-range."""
        has_fixed = self.dose_mg is not None
        has_min = self.dose_range_min_mg is not None
        has_max = self.dose_range_max_mg is not None

        if has_min != has_max:
            raise ValueError(f"{self.name}: dose range needs both bounds")
        if has_fixed == has_min:
            raise ValueError(f"{self.name}: exactly one of dose_mg or dose range must be set")
        if has_min and self.dose_range_min_mg > self.dose_range_max_mg:
            raise ValueError(f"{self.name}: dose range minimum exceeds maximum")
        if self.ingredient_class == IngredientClass.SYSTEM_SUPPORT and not has_fixed:
            raise ValueError(f"{self.name}: System Supports must have a fixed dose")
        return self

    @property
    def is_fixed_dose(self) -> bool:
        return self.dose_mg is not None

    @property
    def is_system_support(self) -> bool:
        return self.ingredient_class == IngredientClass.SYSTEM_SUPPORT

    def dose_label(self) -> str:
        """Human-readable dose, e.g. '420mg' or '50-100mg'."""
        if self.is_fixed_dose:
            return f"{self.dose_mg}mg"
        return f"{self.dose_range_min_mg}-{self.dose_range_max_mg}mg"


class NormalizationResult(BaseModel):
    """
    Outcome of normalizing a raw ingredient name.

    Attributes:
        raw_name: The input as received
        attempted: The cleaned form that was looked up (for diagnostics)
        canonical_name: Resolved catalog name, or None when unresolved
        matched: Whether the name resolved
    """
    raw_name: str
    attempted: str
    canonical_name: Optional[str] = None
    matched: bool = False

    model_config = {"frozen": True}


class NormalizeRequest(BaseModel):
    """Request body for the normalization endpoint."""
    name: str = Field(..., min_length=1, max_length=200, description="Ingredient name to normalize")
