"""
Tests for deterministic interaction warnings.

Tests verify:
1. Single-ingredient cautions match whole words only
2. Medication interactions match either spelling direction
3. Ingredient pairs fire only when both are present
4. Merged warnings are deduplicated and end with the consult notice
"""

from formula_engine.models.formula import FormulaDraft, FormulaLine
from formula_engine.services.formula_interactions import (
    apply_interaction_warnings,
    ingredient_warnings,
    interaction_warnings,
    medication_interaction,
    pair_warnings,
)
from formula_engine.utils.constants import INTERACTION_DISCLAIMER


class TestIngredientWarnings:

    def test_high_risk_ingredient(self):
        assert ingredient_warnings("Turmeric Root Extract 4:1") == [
            "Turmeric/Curcumin increases bleeding risk and can affect blood sugar."
        ]

    def test_keyword_inside_another_word_ignored(self):
        assert ingredient_warnings("Sesame Seed") == []
        assert ingredient_warnings("Ashwagandha") == []

    def test_catalog_ginseng(self):
        assert ingredient_warnings("Red Ginseng")[0].startswith("Ginseng can affect blood pressure")


class TestMedicationInteractions:

    def test_medication_containing_keyword(self):
        assert medication_interaction("Garlic", "Aspirin 81mg") == "INTERACTION: Garlic + aspirin increases bleeding risk."

    def test_partial_medication_name(self):
        warning = medication_interaction("Hawthorn Berry", "beta blocker")
        assert warning == "INTERACTION: Hawthorn may enhance beta blocker effects."

    def test_unrelated_pair(self):
        assert medication_interaction("Ashwagandha", "warfarin") is None

    def test_blank_medication(self):
        assert medication_interaction("Garlic", "   ") is None


class TestPairWarnings:

    def test_both_present(self):
        assert pair_warnings(["Vitamin C", "Iron Bisglycinate"]) == [
            "Vitamin C enhances Iron absorption - monitor for iron overload if taking both."
        ]

    def test_one_present(self):
        assert pair_warnings(["Vitamin C", "Garlic"]) == []


class TestMergedWarnings:

    def test_nothing_found(self):
        assert interaction_warnings(["Ashwagandha", "GABA"], ["metformin"]) == []

    def test_deduplicated_with_disclaimer_last(self):
        warnings = interaction_warnings(["Garlic", "Garlic", "Vitamin C"], ["warfarin", "Warfarin"])

        assert warnings == [
            "High-dose garlic increases bleeding risk. Avoid before surgery.",
            "INTERACTION: Garlic may increase bleeding risk with warfarin.",
            INTERACTION_DISCLAIMER,
        ]

    def test_draft_keeps_model_warnings_first(self):
        draft = FormulaDraft(
            bases=[FormulaLine(ingredient="Adrenal Support", amount=420)],
            additions=[FormulaLine(ingredient="Garlic", amount=200)],
            total_mg=620,
            warnings=["Take with food", INTERACTION_DISCLAIMER],
        )

        updated = apply_interaction_warnings(draft, ["clopidogrel"])

        assert updated.warnings == [
            "Take with food",
            INTERACTION_DISCLAIMER,
            "High-dose garlic increases bleeding risk. Avoid before surgery.",
            "INTERACTION: Garlic may increase bleeding risk with clopidogrel.",
        ]
        assert draft.warnings == ["Take with food", INTERACTION_DISCLAIMER]

    def test_draft_without_matches_unchanged(self):
        draft = FormulaDraft(additions=[FormulaLine(ingredient="GABA", amount=150)], total_mg=150)
        assert apply_interaction_warnings(draft) is draft
