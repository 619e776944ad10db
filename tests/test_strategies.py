"""
Tests for the strategy recommendation engine.
"""

import pytest

from rxcare.models.intervention import InterventionCategory, InterventionPriority, StrategyType
from rxcare.services import strategies
from rxcare.services.strategies import PatientFactors


def types(templates):
    return [t.type.value for t in templates]


class TestLookups:

    def test_recommended_primary_first(self):
        assert types(strategies.recommended_for("drug_therapy_problem")) == [
            "medication_review",
            "dose_adjustment",
            "alternative_therapy",
            "additional_monitoring",
        ]

    def test_unknown_category_gets_custom_template(self):
        result = strategies.recommended_for("not_a_category")
        assert types(result) == ["custom"]

    def test_all_strategies_one_per_type(self):
        result = strategies.all_strategies()
        assert len(result) == len(set(types(result)))
        assert set(types(result)) == {t.value for t in StrategyType}

    def test_for_categories_union(self):
        result = strategies.for_categories(["adverse_drug_reaction", "contraindication", "bogus"])
        assert "discontinuation" in types(result)
        assert "physician_consultation" in types(result)
        assert len(result) == len(set(types(result)))

    def test_by_type(self):
        assert strategies.by_type("discontinuation").type == StrategyType.DISCONTINUATION
        assert strategies.by_type("no_such_type") is None

    def test_template_converts_to_strategy(self):
        strategy = strategies.recommended_for(InterventionCategory.DOSING_ISSUE)[0].to_strategy()
        assert strategy.type == StrategyType.DOSE_ADJUSTMENT
        assert strategy.id


class TestValidateCustom:

    def test_valid_custom_strategy(self):
        result = strategies.validate_custom({
            "type": "custom",
            "description": "Pill organiser with weekly refill",
            "rationale": "Patient misses evening doses",
            "expected_outcome": "Fewer missed doses at the next review",
        })
        assert result.is_valid
        assert result.errors == []

    def test_every_violation_reported(self):
        result = strategies.validate_custom({
            "type": "dose_adjustment",
            "description": "short",
            "rationale": "short",
            "expected_outcome": "short",
        })
        assert not result.is_valid
        assert len(result.errors) == 4
        assert 'Custom strategy must have type "custom"' in result.errors


class TestGenerate:

    def test_high_priority_only_primary(self):
        result = strategies.generate("drug_therapy_problem", InterventionPriority.HIGH)
        assert types(result) == ["medication_review", "dose_adjustment"]

    def test_at_most_four(self):
        assert len(strategies.generate("dosing_issue", "low")) <= strategies.MAX_RECOMMENDATIONS

    def test_many_medications_lift_review(self):
        factors = PatientFactors(current_medications=[f"drug-{n}" for n in range(6)])
        result = strategies.generate("dosing_issue", "low", patient_factors=factors)
        assert result[0].type == StrategyType.MEDICATION_REVIEW

    def test_older_patient_gets_pk_note_without_mutating_table(self):
        result = strategies.generate("dosing_issue", "low", patient_factors=PatientFactors(age=72))
        dose = next(t for t in result if t.type == StrategyType.DOSE_ADJUSTMENT)
        assert dose.rationale.endswith(strategies.AGE_PK_NOTE)

        original = strategies.recommended_for("dosing_issue")[0]
        assert not original.rationale.endswith(strategies.AGE_PK_NOTE)

    def test_adherence_wording_lifts_counselling(self):
        result = strategies.generate(
            "drug_therapy_problem", "low", "Poor adherence to evening doses",
        )
        assert result[0].type == StrategyType.MEDICATION_REVIEW
        assert types(result)[:2] == ["medication_review", "dose_adjustment"]

    def test_nonadherence_always_includes_counselling(self):
        result = strategies.generate("medication_nonadherence", InterventionPriority.CRITICAL)
        assert StrategyType.PATIENT_COUNSELING in [t.type for t in result]


class TestDrugTherapyProblemBridge:

    @pytest.mark.parametrize("dtp,expected", [
        ("overdosage", InterventionCategory.DOSING_ISSUE),
        ("drug_interaction", InterventionCategory.DRUG_INTERACTION),
        ("failure_to_receive_drug", InterventionCategory.MEDICATION_NONADHERENCE),
        ("something_else", InterventionCategory.OTHER),
    ])
    def test_category_mapping(self, dtp, expected):
        assert strategies.map_dtp_category(dtp) == expected

    def test_priority_from_problem(self):
        assert strategies.priority_from_problem("minor", "adverse_drug_reaction") == InterventionPriority.CRITICAL
        assert strategies.priority_from_problem("major", None) == InterventionPriority.HIGH
        assert strategies.priority_from_problem("moderate", None) == InterventionPriority.MEDIUM
        assert strategies.priority_from_problem(None, None) == InterventionPriority.LOW

    def test_starter_strategy(self):
        [strategy] = strategies.strategies_for_dtp("adverse_drug_reaction")
        assert strategy.type == StrategyType.DISCONTINUATION
        assert strategy.priority.value == "primary"
