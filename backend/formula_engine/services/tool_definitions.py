"""
Tool definitions for tool-constrained formula generation.

Declares the single ``create_formula`` tool. Its ingredient fields are
constrained to an enum of current catalog names, which keeps the model from
inventing ingredients (qualifiers still slip through and are normalized by
the validator). The same JSON schema is rendered in the Anthropic
``input_schema`` shape and the OpenAI ``function.parameters`` shape.
"""

from typing import Any, Dict, List, Optional

from formula_engine.services.ingredient_catalog import IngredientCatalog, get_catalog
from formula_engine.utils.constants import FORMULA_LIMITS

CREATE_FORMULA_TOOL = "create_formula"

CREATE_FORMULA_DESCRIPTION = (
    "Create the user's personalized supplement formula. "
    "Call this exactly once when you are ready to recommend a formula. "
    "Use only ingredient names from the approved catalog, spelled exactly as listed. "
    "System Supports must use their fixed catalog dose; Individual Ingredients "
    "must use their fixed dose or an amount within their dose range."
)


# ─── Schema ────────────────────────────────────────────────────────────────────

def _line_item_schema(ingredient_names: List[str], description: str) -> Dict[str, Any]:
    return {
        "type": "array",
        "description": description,
        "items": {
            "type": "object",
            "properties": {
                "ingredient": {
                    "type": "string",
                    "enum": ingredient_names,
                    "description": "Exact catalog ingredient name",
                },
                "amount": {
                    "type": "number",
                    "minimum": FORMULA_LIMITS["min_ingredient_dose_mg"],
                    "description": "Dose in milligrams",
                },
                "unit": {
                    "type": "string",
                    "enum": ["mg"],
                },
                "purpose": {
                    "type": "string",
                    "description": "Why this ingredient is included for this user",
                },
            },
            "required": ["ingredient", "amount", "unit"],
        },
    }


def create_formula_schema(catalog: Optional[IngredientCatalog] = None) -> Dict[str, Any]:
    """
    JSON schema for the create_formula tool arguments.

    Args:
        catalog: Catalog supplying the ingredient enums (active catalog if None)

    Returns:
        Dict: JSON schema object shared by both providers
    """
    catalog = catalog or get_catalog()
    return {
        "type": "object",
        "properties": {
            "bases": _line_item_schema(
                catalog.system_support_names(),
                "System Supports (fixed-dose blends) included in the formula",
            ),
            "additions": _line_item_schema(
                catalog.individual_names(),
                "Individual Ingredients included in the formula",
            ),
            "totalMg": {
                "type": "number",
                "description": "Sum of all amounts in mg",
            },
            "rationale": {
                "type": "string",
                "description": "Explanation of why this formula fits the user's health profile",
            },
            "warnings": {
                "type": "array",
                "items": {"type": "string"},
                "description": "Interactions or cautions relevant to the user",
            },
            "disclaimers": {
                "type": "array",
                "items": {"type": "string"},
                "description": "Standard supplement disclaimers",
            },
        },
        "required": ["bases", "additions", "totalMg", "rationale"],
    }


# ─── Provider wire shapes ──────────────────────────────────────────────────────

def anthropic_tools(catalog: Optional[IngredientCatalog] = None) -> List[Dict[str, Any]]:
    """Tool list for the Anthropic messages API."""
    return [{
        "name": CREATE_FORMULA_TOOL,
        "description": CREATE_FORMULA_DESCRIPTION,
        "input_schema": create_formula_schema(catalog),
    }]


def openai_tools(catalog: Optional[IngredientCatalog] = None) -> List[Dict[str, Any]]:
    """Tool list for the OpenAI chat completions API."""
    return [{
        "type": "function",
        "function": {
            "name": CREATE_FORMULA_TOOL,
            "description": CREATE_FORMULA_DESCRIPTION,
            "parameters": create_formula_schema(catalog),
        },
    }]
