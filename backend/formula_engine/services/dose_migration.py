"""
One-off correction of stored System Support doses.

Older formulas were allowed to dose a System Support at any amount. The
corrected rule only accepts 1x, 2x or 3x the catalog dose; this utility
resets anything else to 1x and stores the result as a new superseding
version so the history keeps the original.

Usage:
    python -m formula_engine.services.dose_migration [--dry-run] [--db PATH]

Never called while serving requests.
"""

import argparse
import logging
from typing import Any, Dict, List, Optional, Tuple

from formula_engine.models.formula import FormulaDraft, FormulaLine
from formula_engine.services.formula_store import FormulaStore
from formula_engine.services.ingredient_catalog import IngredientCatalog, get_catalog
from formula_engine.utils.constants import VALID_DOSE_MULTIPLIERS

logger = logging.getLogger(__name__)


def correct_base_doses(
    lines: List[FormulaLine],
    catalog: Optional[IngredientCatalog] = None,
) -> Tuple[List[FormulaLine], List[str]]:
    """
    Reset System Support amounts that are not a valid dose multiple.

    Args:
        lines: Formula line items (any section)
        catalog: Catalog to read doses from (active catalog by default)

    Returns:
        Tuple: (corrected lines, one description per changed line).
        Individual ingredients and unknown names are returned unchanged.
    """
    catalog = catalog or get_catalog()
    corrected: List[FormulaLine] = []
    changes: List[str] = []

    for line in lines:
        entry = catalog.lookup(line.ingredient)
        if entry is None or not entry.is_system_support:
            corrected.append(line)
            continue

        valid_amounts = {entry.dose_mg * m for m in VALID_DOSE_MULTIPLIERS}
        if line.amount in valid_amounts:
            corrected.append(line)
            continue

        corrected.append(line.model_copy(update={"amount": entry.dose_mg}))
        changes.append(f"{entry.name}: {line.amount}mg -> {entry.dose_mg}mg (1x)")

    return corrected, changes


def migrate_store(
    store: FormulaStore,
    catalog: Optional[IngredientCatalog] = None,
    dry_run: bool = False,
) -> Dict[str, Any]:
    """
    Apply ``correct_base_doses`` to every user's current formula.

    Each formula that needs a correction is written as a new version that
    supersedes it, with a recomputed total and a change-log entry listing
    what was reset.

    Returns:
        dict: Summary with ``updated`` (per-formula details), ``skipped``
        count and the ``dry_run`` flag
    """
    catalog = catalog or get_catalog()
    updated: List[Dict[str, Any]] = []
    skipped = 0

    for formula in store.current_formulas():
        bases, changes = correct_base_doses(formula.bases, catalog)
        if not changes:
            skipped += 1
            continue

        new_total = sum(line.amount for line in bases + formula.additions)
        record: Dict[str, Any] = {
            "formula_id": formula.id,
            "user_id": formula.user_id,
            "from_version": formula.version,
            "changes": changes,
            "old_total_mg": formula.total_mg,
            "new_total_mg": new_total,
        }

        if not dry_run:
            draft = FormulaDraft(
                bases=bases,
                additions=formula.additions,
                total_mg=new_total,
                rationale=formula.rationale,
                warnings=formula.warnings,
                disclaimers=formula.disclaimers,
                capsule_count=formula.capsule_count,
            )
            new_formula = store.create(
                formula.user_id,
                draft,
                name=formula.name,
                user_customizations=formula.user_customizations,
                supersede=True,
                change_description=f"Dose correction from v{formula.version}: {'; '.join(changes)}",
            )
            record["new_formula_id"] = new_formula.id
            record["new_version"] = new_formula.version
            logger.info(
                f"Corrected formula {formula.id} for user {formula.user_id} "
                f"into v{new_formula.version} ({len(changes)} change(s))"
            )

        updated.append(record)

    logger.info(
        f"Dose migration {'dry run ' if dry_run else ''}complete: "
        f"{len(updated)} updated, {skipped} skipped"
    )
    return {"updated": updated, "skipped": skipped, "dry_run": dry_run}


def main(argv: Optional[List[str]] = None) -> Dict[str, Any]:
    from formula_engine.config import settings

    parser = argparse.ArgumentParser(description="Correct System Support doses in stored formulas")
    parser.add_argument("--dry-run", action="store_true", help="Report changes without writing them")
    parser.add_argument("--db", default=settings.FORMULA_DB_PATH, help="Path to the formula database")
    args = parser.parse_args(argv)

    summary = migrate_store(FormulaStore(args.db), dry_run=args.dry_run)
    for record in summary["updated"]:
        print(f"{record['user_id']} v{record['from_version']}: {'; '.join(record['changes'])}")
    print(f"Updated: {len(summary['updated'])}  Skipped: {summary['skipped']}")
    return summary


if __name__ == "__main__":
    main()
