"""
Tests for outcome recording and follow-up scheduling.
"""

from datetime import datetime, timezone

import pytest

from rxcare.errors import BusinessRuleError, ValidationError
from rxcare.models.intervention import (
    ClinicalParameter,
    InterventionOutcome,
    InterventionStatus,
    PatientResponse,
)
from rxcare.services.outcomes import OutcomeInput, merge_outcome

from conftest import PHARMACIST_ID, WORKPLACE


class TestMergeOutcome:

    def test_parameters_merge_by_name(self):
        current = InterventionOutcome(
            patient_response="no_change",
            clinical_parameters=[
                ClinicalParameter(parameter="HbA1c", before_value="8.9", unit="%"),
                ClinicalParameter(parameter="eGFR", before_value="42"),
            ],
            adverse_effects="Mild nausea",
        )
        update = OutcomeInput(
            patient_response="improved",
            clinical_parameters=[ClinicalParameter(parameter="HbA1c", before_value="8.9", after_value="7.4")],
            success_metrics={"problem_resolved": True},
        )

        merged = merge_outcome(current, update)
        assert merged.patient_response == PatientResponse.IMPROVED
        assert {p.parameter: p.after_value for p in merged.clinical_parameters} == {"HbA1c": "7.4", "eGFR": None}
        assert merged.adverse_effects == "Mild nausea"
        assert merged.success_metrics.problem_resolved is True

    def test_metrics_merge_field_by_field(self):
        current = InterventionOutcome(
            patient_response="improved",
            success_metrics={"medication_optimized": True, "satisfaction_score": 4},
        )
        merged = merge_outcome(current, OutcomeInput(
            patient_response="improved", success_metrics={"problem_resolved": True},
        ))
        assert merged.success_metrics.medication_optimized is True
        assert merged.success_metrics.satisfaction_score == 4
        assert merged.success_metrics.problem_resolved is True


class TestRecordOutcome:

    @pytest.mark.asyncio
    async def test_in_progress_becomes_implemented(self, container, make_intervention):
        item = await make_intervention()
        await container.interventions.update(item.id, {"status": "in_progress"}, PHARMACIST_ID, WORKPLACE)
        item = await container.outcomes.record_outcome(
            item.id, {"patient_response": "improved"}, PHARMACIST_ID, WORKPLACE,
        )
        assert item.status == InterventionStatus.IMPLEMENTED
        assert item.outcomes.success_metrics.problem_resolved is False

    @pytest.mark.asyncio
    async def test_planning_keeps_status(self, container, make_intervention):
        item = await make_intervention()
        item = await container.outcomes.record_outcome(
            item.id, {"patient_response": "worsened"}, PHARMACIST_ID, WORKPLACE,
        )
        assert item.status == InterventionStatus.PLANNING
        assert item.outcomes.patient_response == PatientResponse.WORSENED

    @pytest.mark.asyncio
    async def test_patient_response_required(self, container, make_intervention):
        item = await make_intervention()
        with pytest.raises(ValidationError) as exc:
            await container.outcomes.record_outcome(item.id, {"adverse_effects": "None"}, PHARMACIST_ID, WORKPLACE)
        assert exc.value.field == "patient_response"

    @pytest.mark.asyncio
    async def test_unnamed_parameter_rejected(self, container, make_intervention):
        item = await make_intervention()
        with pytest.raises(ValidationError) as exc:
            await container.outcomes.record_outcome(
                item.id,
                {"patient_response": "improved", "clinical_parameters": [{"parameter": "BP"}, {"parameter": " "}]},
                PHARMACIST_ID,
                WORKPLACE,
            )
        assert exc.value.field == "clinical_parameters.1.parameter"

    @pytest.mark.asyncio
    async def test_satisfaction_out_of_range(self, container, make_intervention):
        item = await make_intervention()
        with pytest.raises(ValidationError):
            await container.outcomes.record_outcome(
                item.id,
                {"patient_response": "improved", "success_metrics": {"satisfaction_score": 6}},
                PHARMACIST_ID,
                WORKPLACE,
            )

    @pytest.mark.asyncio
    async def test_cancelled_intervention_rejected(self, container, make_intervention):
        item = await make_intervention()
        await container.interventions.update(item.id, {"status": "cancelled"}, PHARMACIST_ID, WORKPLACE)
        with pytest.raises(BusinessRuleError, match="cancelled"):
            await container.outcomes.record_outcome(
                item.id, {"patient_response": "improved"}, PHARMACIST_ID, WORKPLACE,
            )


class TestFollowUp:

    @pytest.mark.asyncio
    async def test_schedule_and_complete(self, container, clock, make_intervention):
        item = await make_intervention()
        item = await container.outcomes.schedule_follow_up(
            item.id,
            {"required": True, "scheduled_date": "2024-03-29T10:00:00Z", "notes": "Repeat renal panel"},
            PHARMACIST_ID,
            WORKPLACE,
        )
        assert item.follow_up.scheduled_date == datetime(2024, 3, 29, 10, 0, tzinfo=timezone.utc)

        clock.advance(days=14)
        item = await container.outcomes.complete_follow_up(
            item.id, PHARMACIST_ID, WORKPLACE, next_review_date="2024-06-01",
        )
        assert item.follow_up.completed_date == clock.now
        assert item.follow_up.notes == "Repeat renal panel"
        assert item.follow_up.next_review_date == datetime(2024, 6, 1, tzinfo=timezone.utc)

    @pytest.mark.asyncio
    async def test_required_flag_must_be_boolean(self, container, make_intervention):
        item = await make_intervention()
        with pytest.raises(ValidationError, match="boolean"):
            await container.outcomes.schedule_follow_up(item.id, {"required": "yes"}, PHARMACIST_ID, WORKPLACE)

    @pytest.mark.asyncio
    async def test_required_needs_a_date(self, container, make_intervention):
        item = await make_intervention()
        with pytest.raises(ValidationError, match="scheduled date"):
            await container.outcomes.schedule_follow_up(item.id, {"required": True}, PHARMACIST_ID, WORKPLACE)

    @pytest.mark.asyncio
    async def test_unparseable_date(self, container, make_intervention):
        item = await make_intervention()
        with pytest.raises(ValidationError):
            await container.outcomes.schedule_follow_up(
                item.id, {"required": True, "scheduled_date": "next tuesday"}, PHARMACIST_ID, WORKPLACE,
            )

    @pytest.mark.asyncio
    async def test_not_required_without_date(self, container, make_intervention):
        item = await make_intervention()
        item = await container.outcomes.schedule_follow_up(item.id, {"required": False}, PHARMACIST_ID, WORKPLACE)
        assert item.follow_up.required is False

        with pytest.raises(BusinessRuleError, match="No follow-up"):
            await container.outcomes.complete_follow_up(item.id, PHARMACIST_ID, WORKPLACE)

    @pytest.mark.asyncio
    async def test_complete_twice_rejected(self, container, make_intervention):
        item = await make_intervention()
        await container.outcomes.schedule_follow_up(
            item.id, {"required": True, "scheduled_date": "2024-03-20"}, PHARMACIST_ID, WORKPLACE,
        )
        await container.outcomes.complete_follow_up(item.id, PHARMACIST_ID, WORKPLACE)
        with pytest.raises(BusinessRuleError, match="already completed"):
            await container.outcomes.complete_follow_up(item.id, PHARMACIST_ID, WORKPLACE)
