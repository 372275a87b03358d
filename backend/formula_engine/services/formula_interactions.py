"""
Deterministic interaction warnings for validated formulas.

Model-written warnings are advisory and may be missing. Before a formula is
stored, its ingredient names are matched against three keyword tables:
cautions for single high-risk ingredients, ingredient/medication pairs taken
from the user's health profile, and ingredient/ingredient pairs. Matches are
merged into the formula's warnings along with a consult-your-provider notice.
"""

import logging
import re
from typing import Iterable, List, Optional

from formula_engine.models.formula import FormulaDraft
from formula_engine.utils.constants import (
    INTERACTION_DISCLAIMER,
    INTERACTION_PREFIX,
    MEDICATION_INTERACTIONS,
    SUPPLEMENT_PAIR_INTERACTIONS,
    SUPPLEMENT_WARNINGS,
)

logger = logging.getLogger(__name__)


def _mentions(text: str, keyword: str) -> bool:
    """Whole-word, case-insensitive keyword match."""
    return re.search(r'\b' + re.escape(keyword) + r'\b', text.lower()) is not None


def ingredient_warnings(ingredient: str) -> List[str]:
    """Cautions that apply to an ingredient regardless of medications."""
    return [warning for keyword, warning in SUPPLEMENT_WARNINGS.items() if _mentions(ingredient, keyword)]


def medication_interaction(ingredient: str, medication: str) -> Optional[str]:
    """
    Look up a known ingredient/medication interaction.

    A medication matches when it mentions the table's medication keyword,
    or when the user's shorter entry is itself part of the keyword
    ("beta blocker" vs "blocker").

    Returns:
        str: First matching warning, prefixed with ``INTERACTION:``; None when
        the pair is not in the table
    """
    medication = medication.strip().lower()
    if not medication:
        return None

    for ingredient_key, interactions in MEDICATION_INTERACTIONS.items():
        if not _mentions(ingredient, ingredient_key):
            continue
        for medication_key, warning in interactions.items():
            if medication_key in medication or medication in medication_key:
                return f"{INTERACTION_PREFIX}{warning}"
    return None


def pair_warnings(ingredients: Iterable[str]) -> List[str]:
    """Warnings for ingredient combinations present in the same formula."""
    names = list(ingredients)
    warnings = []
    for keywords, warning in SUPPLEMENT_PAIR_INTERACTIONS:
        if all(any(_mentions(name, keyword) for name in names) for keyword in keywords):
            warnings.append(warning)
    return warnings


def interaction_warnings(ingredients: Iterable[str], medications: Optional[Iterable[str]] = None) -> List[str]:
    """
    Collect every interaction warning for a set of ingredients.

    Args:
        ingredients: Canonical ingredient names in the formula
        medications: Free-text medication names from the health profile

    Returns:
        List[str]: Deduplicated warnings in discovery order, ending with the
        consult disclaimer; empty when nothing matched
    """
    names = list(ingredients)
    medications = [m for m in (medications or []) if m and m.strip()]
    warnings: List[str] = []

    for name in names:
        warnings.extend(ingredient_warnings(name))

    for name in names:
        for medication in medications:
            interaction = medication_interaction(name, medication)
            if interaction:
                warnings.append(interaction)

    warnings.extend(pair_warnings(names))

    if warnings:
        warnings.append(INTERACTION_DISCLAIMER)
    return list(dict.fromkeys(warnings))


def apply_interaction_warnings(draft: FormulaDraft, medications: Optional[Iterable[str]] = None) -> FormulaDraft:
    """Return a copy of ``draft`` whose warnings include every interaction found."""
    found = interaction_warnings((line.ingredient for line in draft.lines), medications)
    if not found:
        return draft

    merged = list(dict.fromkeys(list(draft.warnings) + found))
    added = len(merged) - len(draft.warnings)
    if added:
        logger.info(f"Added {added} interaction warning(s) to formula draft")
    return draft.model_copy(update={"warnings": merged})
