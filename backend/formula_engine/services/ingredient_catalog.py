"""
Ingredient catalog and name normalizer.

The catalog is an immutable snapshot of approved ingredients. Name
normalization maps whatever the model (or a user) typed onto an exact
canonical catalog name, or reports it as unresolved. It never guesses:
there is no fuzzy or edit-distance matching, so an ambiguous name stays
unresolved and is surfaced to the validator.

The process-wide snapshot is read by every request without locking. A hot
reload builds a complete new snapshot and swaps the module reference in one
assignment, so readers see either the old catalog or the new one.
"""

import logging
import threading
from typing import Dict, Iterable, List, Mapping, Optional

from formula_engine.models.catalog import CatalogEntry, IngredientClass, NormalizationResult
from formula_engine.utils.constants import (
    CATALOG_VERSION,
    INDIVIDUAL_INGREDIENTS,
    INGREDIENT_ALIASES,
    QUALIFIER_WORDS,
    SYSTEM_SUPPORTS,
)
from formula_engine.utils.helpers import (
    collapse_whitespace,
    round_half_up_mg,
    strip_parentheticals,
    strip_potency_qualifiers,
)

logger = logging.getLogger(__name__)


class IngredientCatalog:
    """
    Read-only registry of System Supports and Individual Ingredients.

    All lookups are case-insensitive. Instances are never mutated after
    construction; build a new one to change the catalog.
    """

    def __init__(
        self,
        entries: Iterable[CatalogEntry],
        aliases: Optional[Mapping[str, str]] = None,
        version: str = CATALOG_VERSION,
        qualifier_words: Iterable[str] = QUALIFIER_WORDS,
    ):
        self.version = version
        self._qualifier_words = tuple(qualifier_words)
        self._entries: Dict[str, CatalogEntry] = {}

        for entry in entries:
            key = entry.name.lower()
            if key in self._entries:
                raise ValueError(f"Duplicate catalog entry: {entry.name}")
            self._entries[key] = entry

        self._aliases: Dict[str, str] = {}
        for alias, target in (aliases or {}).items():
            if target.lower() not in self._entries:
                raise ValueError(f"Alias '{alias}' points to unknown ingredient '{target}'")
            self._aliases[collapse_whitespace(alias).lower()] = self._entries[target.lower()].name

        self._stripped_index = self._build_stripped_index()

        logger.info(
            f"Ingredient catalog {self.version} loaded: "
            f"{len(self.system_support_names())} system supports, "
            f"{len(self.individual_names())} individual ingredients, "
            f"{len(self._aliases)} aliases"
        )

    def _build_stripped_index(self) -> Dict[str, str]:
        """
        Index canonical names by their own qualifier-stripped form.

        Only forms that differ from the canonical name and are shared by no
        other entry are kept; colliding forms are dropped so they can never
        resolve to an arbitrary choice.
        """
        index: Dict[str, str] = {}
        collisions = set()
        for entry in self._entries.values():
            stripped = self._clean(entry.name).lower()
            if not stripped or stripped == entry.name.lower():
                continue
            if stripped in index or stripped in self._entries:
                collisions.add(stripped)
                continue
            index[stripped] = entry.name

        for key in collisions:
            index.pop(key, None)
            logger.warning(f"Ambiguous stripped ingredient form '{key}' left unresolved")
        return index

    # ─── Lookup ────────────────────────────────────────────────────────────────

    def lookup(self, name: str) -> Optional[CatalogEntry]:
        """Case-insensitive exact match against canonical names."""
        if not isinstance(name, str):
            return None
        return self._entries.get(collapse_whitespace(name).lower())

    def entries(self) -> List[CatalogEntry]:
        return list(self._entries.values())

    def names(self) -> List[str]:
        """All canonical names, System Supports first."""
        return self.system_support_names() + self.individual_names()

    def system_support_names(self) -> List[str]:
        return [e.name for e in self._entries.values() if e.ingredient_class == IngredientClass.SYSTEM_SUPPORT]

    def individual_names(self) -> List[str]:
        return [e.name for e in self._entries.values() if e.ingredient_class == IngredientClass.INDIVIDUAL]

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, name: str) -> bool:
        return self.lookup(name) is not None

    # ─── Normalization ─────────────────────────────────────────────────────────

    def _clean(self, text: str) -> str:
        without_parens = collapse_whitespace(strip_parentheticals(text))
        return collapse_whitespace(strip_potency_qualifiers(without_parens, self._qualifier_words))

    def _resolve(self, candidate: str) -> Optional[str]:
        key = candidate.lower()
        entry = self._entries.get(key)
        if entry is not None:
            return entry.name
        return self._aliases.get(key)

    def normalize(self, raw_name: str) -> NormalizationResult:
        """
        Map a raw ingredient name onto a canonical catalog name.

        Steps, stopping at the first that resolves:
        1. Trim and collapse whitespace, then try an exact or alias match
        2. Strip parenthetical source descriptors ("(soy)") and retry
        3. Strip potency/extraction qualifiers ("4:1", "PE 1/8% Flavones",
           "40%", "Extract", "Root"), re-collapse whitespace, and retry
           against names, aliases and the qualifier-stripped name index

        Args:
            raw_name: Ingredient name as emitted by the model or a user

        Returns:
            NormalizationResult: canonical_name is None when unresolved;
            ``attempted`` holds the last cleaned form that was looked up

        Example:
            >>> catalog.normalize("Phosphatidylcholine 40% (soy)").canonical_name
            'Phosphatidylcholine'
        """
        if not isinstance(raw_name, str):
            return NormalizationResult(raw_name=str(raw_name), attempted="")

        trimmed = collapse_whitespace(raw_name)
        if not trimmed:
            return NormalizationResult(raw_name=raw_name, attempted="")

        canonical = self._resolve(trimmed)
        if canonical:
            return self._matched(raw_name, trimmed, canonical)

        without_parens = collapse_whitespace(strip_parentheticals(trimmed))
        if without_parens:
            canonical = self._resolve(without_parens)
            if canonical:
                return self._matched(raw_name, without_parens, canonical)

        cleaned = collapse_whitespace(strip_potency_qualifiers(without_parens, self._qualifier_words))
        if cleaned:
            canonical = self._resolve(cleaned) or self._stripped_index.get(cleaned.lower())
            if canonical:
                return self._matched(raw_name, cleaned, canonical)

        logger.debug(f"Unresolved ingredient '{raw_name}' (cleaned: '{cleaned}')")
        return NormalizationResult(raw_name=raw_name, attempted=cleaned or without_parens or trimmed)

    @staticmethod
    def _matched(raw_name: str, attempted: str, canonical: str) -> NormalizationResult:
        if raw_name != canonical:
            logger.debug(f"Normalized '{raw_name}' -> '{canonical}'")
        return NormalizationResult(
            raw_name=raw_name,
            attempted=attempted,
            canonical_name=canonical,
            matched=True,
        )

    def is_valid(self, name: str) -> bool:
        return self.normalize(name).matched

    def dose(self, name: str, override: Optional[float] = None) -> Optional[int]:
        """
        Resolve the dose to use for an ingredient.

        Args:
            name: Any spelling the normalizer accepts
            override: Requested amount for range-based entries

        Returns:
            int: The fixed dose for fixed entries (override ignored); for
            ranged entries the override when given, otherwise the range
            minimum. None when the name does not resolve.

        Raises:
            ValueError: If an override falls outside a ranged entry's bounds
        """
        result = self.normalize(name)
        if not result.matched:
            return None
        entry = self._entries[result.canonical_name.lower()]

        if entry.is_fixed_dose:
            return entry.dose_mg

        if override is None:
            return entry.dose_range_min_mg

        if not entry.dose_range_min_mg <= override <= entry.dose_range_max_mg:
            raise ValueError(
                f"{entry.name} dose must be between {entry.dose_range_min_mg} "
                f"and {entry.dose_range_max_mg}mg, got {override}"
            )
        return round_half_up_mg(override)

    # ─── Prompt rendering ──────────────────────────────────────────────────────

    def describe_for_prompt(self) -> str:
        """Render the catalog as the ingredient list shown to the model."""
        lines = ["SYSTEM SUPPORTS (fixed dose, use exactly this amount):"]
        for name in self.system_support_names():
            entry = self._entries[name.lower()]
            lines.append(f"- {entry.name}: {entry.dose_label()} - {entry.description}")

        lines.append("")
        lines.append("INDIVIDUAL INGREDIENTS (fixed dose, or any amount within the range):")
        for name in self.individual_names():
            entry = self._entries[name.lower()]
            lines.append(f"- {entry.name}: {entry.dose_label()} - {entry.description}")
        return "\n".join(lines)


def build_default_catalog() -> IngredientCatalog:
    """Build the catalog from the bundled constant tables."""
    entries: List[CatalogEntry] = []

    for name, dose_mg, description in SYSTEM_SUPPORTS:
        entries.append(CatalogEntry(
            name=name,
            ingredient_class=IngredientClass.SYSTEM_SUPPORT,
            dose_mg=dose_mg,
            description=description,
        ))

    for name, dose_mg, range_min, range_max, description in INDIVIDUAL_INGREDIENTS:
        # A collapsed range is a fixed dose
        if dose_mg is None and range_min is not None and range_min == range_max:
            dose_mg, range_min, range_max = range_min, None, None
        entries.append(CatalogEntry(
            name=name,
            ingredient_class=IngredientClass.INDIVIDUAL,
            dose_mg=dose_mg,
            dose_range_min_mg=range_min,
            dose_range_max_mg=range_max,
            description=description,
        ))

    return IngredientCatalog(entries, aliases=INGREDIENT_ALIASES)


# ─── Process-wide snapshot ─────────────────────────────────────────────────────

_active_catalog: IngredientCatalog = build_default_catalog()
_swap_lock = threading.Lock()


def get_catalog() -> IngredientCatalog:
    """Current process-wide catalog snapshot."""
    return _active_catalog


def swap_catalog(new_catalog: IngredientCatalog) -> IngredientCatalog:
    """
    Atomically replace the process-wide catalog.

    In-flight requests that already hold the previous snapshot keep using
    it; new requests see the replacement.

    Returns:
        IngredientCatalog: The snapshot that was replaced
    """
    global _active_catalog
    with _swap_lock:
        previous = _active_catalog
        _active_catalog = new_catalog
    logger.info(f"Ingredient catalog swapped: {previous.version} -> {new_catalog.version}")
    return previous


def lookup(name: str) -> Optional[CatalogEntry]:
    return get_catalog().lookup(name)


def normalize(raw_name: str) -> Optional[str]:
    """Canonical name for ``raw_name`` against the active catalog, or None."""
    return get_catalog().normalize(raw_name).canonical_name


def is_valid(name: str) -> bool:
    return get_catalog().is_valid(name)


def dose(name: str, override: Optional[float] = None) -> Optional[int]:
    return get_catalog().dose(name, override)
