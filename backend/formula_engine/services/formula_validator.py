"""
Formula validator.

Treats the model's create_formula payload as untrusted input and runs it
through a parse -> normalize -> check -> coerce pipeline. Every rule is
evaluated for every item; the result is either an accepted FormulaDraft or
a ValidationFailure listing all violations, never an exception.

Rules:
1. Units must be "mg"
2. Ingredient names must normalize to a catalog entry
3. Amounts must meet the minimum dose; ranged entries must fall within
   their range; fixed-dose entries are coerced to the catalog dose
4. Total ingredient count must lie within the configured bounds, and no
   catalog ingredient may appear more than once
5. The summed amounts must not exceed capsule capacity plus tolerance
"""

import logging
import math
from typing import Any, Dict, List, Optional, Tuple

from formula_engine.models.catalog import IngredientClass
from formula_engine.models.formula import FormulaDraft, FormulaLine
from formula_engine.models.provider import ToolCall
from formula_engine.models.validation import (
    AcceptedFormula,
    ValidationFailure,
    ValidationResult,
    Violation,
    ViolationCode,
)
from formula_engine.services.ingredient_catalog import IngredientCatalog, get_catalog
from formula_engine.utils.constants import FORMULA_LIMITS
from formula_engine.utils.helpers import format_mg, round_half_up_mg

logger = logging.getLogger(__name__)

SECTIONS = ("bases", "additions")


def capacity_bounds(capsule_count: int, capsule_capacity_mg: int = FORMULA_LIMITS["capsule_capacity_mg"]) -> Tuple[int, float]:
    """
    Target mg and tolerance for a capsule count.

    Returns:
        Tuple: (target_mg, tolerance_mg) where tolerance is the larger of
        the percentage band and the absolute floor
    """
    target = capsule_capacity_mg * capsule_count
    tolerance = max(target * FORMULA_LIMITS["tolerance_fraction"], FORMULA_LIMITS["tolerance_min_mg"])
    return target, tolerance


def _parse_amount(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value) if math.isfinite(value) else None
    if isinstance(value, str):
        try:
            parsed = float(value.strip())
        except ValueError:
            return None
        return parsed if math.isfinite(parsed) else None
    return None


class FormulaValidator:
    """
    Validates candidate formulas against the catalog and dosage limits.

    The validator holds no per-request state; one instance can serve all
    requests concurrently.
    """

    def __init__(
        self,
        catalog: Optional[IngredientCatalog] = None,
        capsule_capacity_mg: int = FORMULA_LIMITS["capsule_capacity_mg"],
        default_capsule_count: int = FORMULA_LIMITS["default_capsule_count"],
    ):
        self._catalog = catalog
        self.capsule_capacity_mg = capsule_capacity_mg
        self.default_capsule_count = default_capsule_count
        self.min_dose_mg = FORMULA_LIMITS["min_ingredient_dose_mg"]
        self.min_count = FORMULA_LIMITS["min_ingredient_count"]
        self.max_count = FORMULA_LIMITS["max_ingredient_count"]

    @property
    def catalog(self) -> IngredientCatalog:
        return self._catalog or get_catalog()

    # ─── Entry points ──────────────────────────────────────────────────────────

    def validate_tool_call(
        self,
        tool_call: Optional[ToolCall],
        capsule_count: Optional[int] = None,
    ) -> ValidationResult:
        """
        Validate the model's create_formula call.

        A missing call or unparseable arguments produce a failure, so a
        model that ignored the tool is handled like any other bad output.
        """
        count = capsule_count or self.default_capsule_count
        if tool_call is None:
            logger.warning("Model response did not use the create_formula tool")
            return ValidationFailure(
                capsule_count=count,
                violations=[Violation(
                    code=ViolationCode.TOOL_NOT_USED,
                    message="No formula was produced. You must call the create_formula tool.",
                )],
            )
        if tool_call.error or tool_call.input is None:
            logger.warning(f"create_formula arguments unusable: {tool_call.error}")
            return ValidationFailure(
                capsule_count=count,
                violations=[Violation(
                    code=ViolationCode.MALFORMED_TOOL_PAYLOAD,
                    message=f"The create_formula arguments could not be read: {tool_call.error or 'missing input'}",
                )],
            )
        return self.validate(tool_call.input, capsule_count)

    def validate_lines(
        self,
        bases: List[FormulaLine],
        additions: List[FormulaLine],
        capsule_count: Optional[int] = None,
        rationale: str = "",
        warnings: Optional[List[str]] = None,
        disclaimers: Optional[List[str]] = None,
    ) -> ValidationResult:
        """Re-validate existing line items, e.g. a formula plus user customizations."""
        payload = {
            "bases": [line.model_dump() for line in bases],
            "additions": [line.model_dump() for line in additions],
            "rationale": rationale,
            "warnings": list(warnings or []),
            "disclaimers": list(disclaimers or []),
        }
        return self.validate(payload, capsule_count)

    def validate(self, payload: Any, capsule_count: Optional[int] = None) -> ValidationResult:
        """
        Validate a raw create_formula payload.

        Args:
            payload: Tool arguments with ``bases``/``additions`` item lists and
                an advisory ``totalMg``
            capsule_count: Daily capsule count chosen by the caller

        Returns:
            AcceptedFormula with a FormulaDraft whose total is recomputed from
            the (possibly coerced) lines, or ValidationFailure with every
            violation found
        """
        catalog = self.catalog
        violations: List[Violation] = []
        adjustments: List[str] = []

        count = self.default_capsule_count if capsule_count is None else capsule_count
        if count not in FORMULA_LIMITS["allowed_capsule_counts"]:
            violations.append(Violation(
                code=ViolationCode.INVALID_CAPSULE_COUNT,
                message=(
                    f"Capsule count {count} is not allowed; choose one of "
                    f"{', '.join(str(c) for c in FORMULA_LIMITS['allowed_capsule_counts'])}"
                ),
            ))
            count = self.default_capsule_count

        if not isinstance(payload, dict):
            violations.append(Violation(
                code=ViolationCode.MALFORMED_TOOL_PAYLOAD,
                message="Formula payload must be an object with bases and additions",
            ))
            return self._reject(violations, count)

        lines: Dict[str, List[Dict[str, Any]]] = {"bases": [], "additions": []}
        item_count = 0
        total = 0
        occurrences: Dict[str, List[Tuple[str, int]]] = {}

        for section in SECTIONS:
            items = payload.get(section)
            if items is None:
                items = []
            if not isinstance(items, list):
                violations.append(Violation(
                    code=ViolationCode.MALFORMED_TOOL_PAYLOAD,
                    message=f"'{section}' must be a list of ingredients",
                    section=section,
                ))
                continue

            for index, item in enumerate(items):
                item_count += 1
                line, effective = self._check_item(catalog, section, index, item, violations, adjustments)
                if effective is not None:
                    total += effective
                if line is not None:
                    occurrences.setdefault(line["ingredient"], []).append((section, index))
                    lines[line.pop("_section")].append(line)

        # Rule 4: one line per catalog ingredient, judged after normalization
        for name, seen_at in occurrences.items():
            if len(seen_at) > 1:
                section, index = seen_at[1]
                violations.append(Violation(
                    code=ViolationCode.DUPLICATE_INGREDIENT,
                    message=f"{name} appears {len(seen_at)} times; list each ingredient once",
                    section=section,
                    index=index,
                    normalized_name=name,
                ))

        # Rule 4: ingredient count
        if item_count < self.min_count:
            violations.append(Violation(
                code=ViolationCode.INGREDIENT_COUNT_TOO_LOW,
                message=f"Formula has {item_count} ingredients; at least {self.min_count} are required",
            ))
        elif item_count > self.max_count:
            violations.append(Violation(
                code=ViolationCode.INGREDIENT_COUNT_TOO_HIGH,
                message=f"Formula has {item_count} ingredients; at most {self.max_count} are allowed",
            ))

        # Rule 5: capsule capacity
        target, tolerance = capacity_bounds(count, self.capsule_capacity_mg)
        if total > target + tolerance:
            violations.append(Violation(
                code=ViolationCode.CAPACITY_EXCEEDED,
                message=(
                    f"Total of {format_mg(total)} exceeds the {count}-capsule capacity of "
                    f"{format_mg(target)} (tolerance {format_mg(round(tolerance))}); remove or reduce ingredients"
                ),
                amount=total,
            ))

        if violations:
            return self._reject(violations, count)

        if total < target - tolerance:
            adjustments.append(
                f"Formula totals {format_mg(total)}, below the {count}-capsule target of {format_mg(target)}"
            )

        computed_total = sum(line["amount"] for section in SECTIONS for line in lines[section])
        declared = _parse_amount(payload.get("totalMg"))
        if declared is None or declared != computed_total:
            adjustments.append(
                f"Declared total {payload.get('totalMg')!r} replaced by computed total {format_mg(computed_total)}"
            )

        draft = FormulaDraft(
            bases=[FormulaLine(**line) for line in lines["bases"]],
            additions=[FormulaLine(**line) for line in lines["additions"]],
            total_mg=computed_total,
            rationale=str(payload.get("rationale") or ""),
            warnings=self._string_list(payload.get("warnings")),
            disclaimers=self._string_list(payload.get("disclaimers")),
            capsule_count=count,
            adjustments=adjustments,
        )
        logger.info(
            f"Formula accepted: {len(draft.lines)} ingredients, {draft.total_mg}mg, "
            f"{len(adjustments)} adjustment(s)"
        )
        return AcceptedFormula(draft=draft)

    # ─── Item rules ────────────────────────────────────────────────────────────

    def _check_item(
        self,
        catalog: IngredientCatalog,
        section: str,
        index: int,
        item: Any,
        violations: List[Violation],
        adjustments: List[str],
    ) -> Tuple[Optional[Dict[str, Any]], Optional[int]]:
        """
        Apply rules 1-3 to one item.

        Returns:
            Tuple: (line dict for an item that passed, effective amount used
            for the capacity sum or None when the amount is unusable)
        """
        if not isinstance(item, dict):
            violations.append(Violation(
                code=ViolationCode.MALFORMED_ITEM,
                message=f"{section}[{index}] is not an ingredient object",
                section=section,
                index=index,
            ))
            return None, None

        raw_name = item.get("ingredient")
        amount = _parse_amount(item.get("amount"))
        unit = item.get("unit")
        passed = True

        if not isinstance(raw_name, str) or not raw_name.strip():
            violations.append(Violation(
                code=ViolationCode.MALFORMED_ITEM,
                message=f"{section}[{index}] has no ingredient name",
                section=section,
                index=index,
            ))
            raw_name = None
            passed = False

        if amount is None:
            violations.append(Violation(
                code=ViolationCode.MALFORMED_ITEM,
                message=f"{section}[{index}] ({raw_name}) has no numeric amount",
                section=section,
                index=index,
                raw_name=raw_name,
            ))
            passed = False

        # Rule 1: unit
        if unit != "mg":
            violations.append(Violation(
                code=ViolationCode.INVALID_UNIT,
                message=f"{raw_name or f'{section}[{index}]'} uses unit {unit!r}; only 'mg' is allowed",
                section=section,
                index=index,
                raw_name=raw_name,
            ))
            passed = False

        # Rule 2: name resolution
        entry = None
        if raw_name is not None:
            result = catalog.normalize(raw_name)
            if result.matched:
                entry = catalog.lookup(result.canonical_name)
                if result.canonical_name != raw_name:
                    adjustments.append(f"Auto-corrected '{raw_name}' to '{result.canonical_name}'")
                    logger.warning(f"Auto-corrected ingredient '{raw_name}' -> '{result.canonical_name}'")
            else:
                violations.append(Violation(
                    code=ViolationCode.UNRESOLVED_INGREDIENT,
                    message=f"'{raw_name}' is not an approved catalog ingredient (looked up as '{result.attempted}')",
                    section=section,
                    index=index,
                    raw_name=raw_name,
                    normalized_name=result.attempted,
                ))
                passed = False

        if amount is None:
            return None, None

        # Rule 3: dose
        if entry is not None and entry.is_fixed_dose:
            effective = entry.dose_mg
            if amount != entry.dose_mg:
                adjustments.append(
                    f"{entry.name} set to catalog dose {format_mg(entry.dose_mg)} (was {format_mg(amount)})"
                )
                logger.warning(f"Coerced {entry.name} from {amount}mg to {entry.dose_mg}mg")
        else:
            effective = round_half_up_mg(amount)
            if entry is not None and effective != amount:
                adjustments.append(f"{entry.name} rounded to {format_mg(effective)} (was {format_mg(amount)})")

        # Ranged entries are checked on the requested amount, before rounding
        checked = effective if entry is not None and entry.is_fixed_dose else amount

        if checked < self.min_dose_mg:
            violations.append(Violation(
                code=ViolationCode.BELOW_MINIMUM_DOSE,
                message=f"{raw_name} amount {format_mg(amount)} is below the {self.min_dose_mg}mg minimum",
                section=section,
                index=index,
                raw_name=raw_name,
                amount=amount,
            ))
            passed = False

        if entry is not None and not entry.is_fixed_dose:
            if not entry.dose_range_min_mg <= checked <= entry.dose_range_max_mg:
                violations.append(Violation(
                    code=ViolationCode.DOSE_OUT_OF_RANGE,
                    message=(
                        f"{entry.name} amount {format_mg(amount)} is outside its allowed range "
                        f"{entry.dose_label()}"
                    ),
                    section=section,
                    index=index,
                    raw_name=raw_name,
                    normalized_name=entry.name,
                    amount=amount,
                ))
                passed = False

        if not passed or entry is None:
            return None, effective

        target_section = "bases" if entry.ingredient_class == IngredientClass.SYSTEM_SUPPORT else "additions"
        if target_section != section:
            adjustments.append(f"{entry.name} moved from {section} to {target_section}")

        purpose = item.get("purpose")
        return {
            "_section": target_section,
            "ingredient": entry.name,
            "amount": effective,
            "unit": "mg",
            "purpose": purpose if isinstance(purpose, str) and purpose.strip() else None,
        }, effective

    @staticmethod
    def _string_list(value: Any) -> List[str]:
        if not isinstance(value, list):
            return []
        return [str(v).strip() for v in value if isinstance(v, (str, int, float)) and str(v).strip()]

    @staticmethod
    def _reject(violations: List[Violation], capsule_count: int) -> ValidationFailure:
        logger.warning(
            f"Formula rejected with {len(violations)} violation(s): "
            f"{', '.join(sorted({v.code.value for v in violations}))}"
        )
        return ValidationFailure(violations=violations, capsule_count=capsule_count)
