"""
Tests for listing, dashboards, trends, patient search, reports and export.
"""

import csv
import io
import json
from datetime import datetime, timezone

import pytest

from rxcare.db.store import AuditQuery
from rxcare.errors import ValidationError
from rxcare.models.audit import SYSTEM_TARGET
from rxcare.models.intervention import ClinicalIntervention, InterventionOutcome, InterventionStrategy
from rxcare.services.reporting import CostParameters, cost_savings, period_key

from conftest import (
    FOREIGN_PATIENT_ID,
    OTHER_WORKPLACE,
    OUTSIDER_ID,
    PATIENT_ID,
    PHARMACIST_ID,
    SECOND_PATIENT_ID,
    WORKPLACE,
)


async def complete(container, item, clock, response="improved", resolved=True, hours=2):
    await container.interventions.update(item.id, {"status": "in_progress"}, PHARMACIST_ID, WORKPLACE)
    await container.outcomes.record_outcome(
        item.id,
        {"patient_response": response, "success_metrics": {"problem_resolved": resolved, "cost_savings": 120.0}},
        PHARMACIST_ID,
        WORKPLACE,
    )
    clock.advance(hours=hours)
    return await container.interventions.update(item.id, {"status": "completed"}, PHARMACIST_ID, WORKPLACE)


async def seed(clock, make_intervention):
    low = await make_intervention(priority="low", category="dosing_issue")
    clock.advance(minutes=1)
    high = await make_intervention(
        priority="high", category="drug_interaction", patient_id=SECOND_PATIENT_ID,
        issue_description="Clarithromycin raises simvastatin exposure",
    )
    clock.advance(minutes=1)
    medium = await make_intervention()
    await make_intervention(tenant_id=OTHER_WORKPLACE, user_id=OUTSIDER_ID, patient_id=FOREIGN_PATIENT_ID)
    return {"low": low, "high": high, "medium": medium}


class TestListing:

    @pytest.mark.asyncio
    async def test_pagination(self, container, clock, make_intervention):
        seeded = await seed(clock, make_intervention)
        first = await container.reporting.list_interventions(WORKPLACE, page=1, limit=2)
        second = await container.reporting.list_interventions(WORKPLACE, page=2, limit=2)

        assert first["pagination"] == {
            "page": 1, "limit": 2, "total": 3, "pages": 2, "has_next": True, "has_prev": False,
        }
        assert len(first["data"]) == 2
        assert len(second["data"]) == 1
        assert second["pagination"]["has_prev"] is True
        assert second["pagination"]["has_next"] is False
        # Newest identified first by default
        assert first["data"][0].id == seeded["medium"].id

    @pytest.mark.asyncio
    async def test_limit_is_clamped(self, container, clock, make_intervention):
        await seed(clock, make_intervention)
        result = await container.reporting.list_interventions(WORKPLACE, limit=500)
        assert result["pagination"]["limit"] == 50

    @pytest.mark.asyncio
    async def test_priority_sorts_by_rank(self, container, clock, make_intervention):
        await seed(clock, make_intervention)
        result = await container.reporting.list_interventions(WORKPLACE, sort_by="priority", sort_order="asc")
        assert [i.priority.value for i in result["data"]] == ["low", "medium", "high"]

    @pytest.mark.asyncio
    async def test_filters(self, container, clock, make_intervention):
        seeded = await seed(clock, make_intervention)
        by_patient = await container.reporting.list_interventions(WORKPLACE, {"patient_id": SECOND_PATIENT_ID})
        assert [i.id for i in by_patient["data"]] == [seeded["high"].id]

        by_search = await container.reporting.list_interventions(WORKPLACE, {"search": "SIMVASTATIN"})
        assert [i.id for i in by_search["data"]] == [seeded["high"].id]

        by_status = await container.reporting.list_interventions(WORKPLACE, {"status": "planning,cancelled"})
        assert by_status["pagination"]["total"] == 3

    @pytest.mark.asyncio
    async def test_bad_inputs(self, container):
        with pytest.raises(ValidationError):
            await container.reporting.list_interventions(WORKPLACE, sort_by="patient_name")
        with pytest.raises(ValidationError):
            await container.reporting.list_interventions(WORKPLACE, sort_order="sideways")
        with pytest.raises(ValidationError):
            await container.reporting.list_interventions(WORKPLACE, {"category": "made_up"})

    @pytest.mark.asyncio
    async def test_unknown_tenant_gets_empty_page(self, container, clock, make_intervention):
        await seed(clock, make_intervention)
        result = await container.reporting.list_interventions("workplace-z")
        assert result["data"] == []
        assert result["pagination"]["pages"] == 0


class TestPatientSummary:

    @pytest.mark.asyncio
    async def test_summary(self, container, clock, make_intervention):
        seeded = await seed(clock, make_intervention)
        await complete(container, seeded["low"], clock)
        summary = await container.reporting.patient_summary(PATIENT_ID, WORKPLACE)

        assert summary["total_interventions"] == 2
        assert summary["active_interventions"] == 1
        assert summary["completed_interventions"] == 1
        assert summary["successful_interventions"] == 1
        assert summary["category_breakdown"] == {"dosing_issue": 1, "drug_therapy_problem": 1}
        assert len(summary["recent_interventions"]) == 2


class TestDashboard:

    @pytest.mark.asyncio
    async def test_metrics(self, container, clock, make_intervention):
        seeded = await seed(clock, make_intervention)
        await complete(container, seeded["high"], clock)
        await container.outcomes.schedule_follow_up(
            seeded["low"].id, {"required": True, "scheduled_date": "2024-03-10"}, PHARMACIST_ID, WORKPLACE,
        )

        metrics = await container.reporting.dashboard_metrics(WORKPLACE)
        assert metrics["total_interventions"] == 3
        assert metrics["active_interventions"] == 2
        assert metrics["completed_interventions"] == 1
        assert metrics["overdue_interventions"] == 1
        assert metrics["success_rate"] == 100.0
        assert metrics["average_resolution_time"] == 0.1
        assert metrics["total_cost_savings"] == 120.0
        assert metrics["priority_distribution"] == {"low": 1, "high": 1, "medium": 1}
        assert metrics["monthly_trends"] == [
            {"month": "2024-03", "total": 3, "completed": 1, "success_rate": 100.0},
        ]

    @pytest.mark.asyncio
    async def test_empty_dashboard(self, container):
        metrics = await container.reporting.dashboard_metrics(WORKPLACE)
        assert metrics["total_interventions"] == 0
        assert metrics["success_rate"] == 0
        assert metrics["monthly_trends"] == []

    @pytest.mark.asyncio
    async def test_naive_follow_up_date_is_stored_as_utc(self, container, make_intervention):
        item = await make_intervention()
        updated = await container.interventions.update(
            item.id,
            {"follow_up": {"required": True, "scheduled_date": "2024-03-01T10:00:00"}},
            PHARMACIST_ID,
            WORKPLACE,
        )
        assert updated.follow_up.scheduled_date == datetime(2024, 3, 1, 10, tzinfo=timezone.utc)

        metrics = await container.reporting.dashboard_metrics(WORKPLACE)
        assert metrics["overdue_interventions"] == 1

    @pytest.mark.asyncio
    async def test_delayed_uses_priority_thresholds(self, container, clock, make_intervention):
        await make_intervention(priority="critical")
        await make_intervention(priority="medium")
        await make_intervention(priority="low")
        clock.advance(days=4)

        metrics = await container.reporting.dashboard_metrics(WORKPLACE)
        assert metrics["delayed_interventions"] == 2


class TestTrends:

    def test_period_keys(self, clock):
        assert period_key(clock.now, "day") == "2024-03-15"
        assert period_key(clock.now, "week") == "2024-W11"
        assert period_key(clock.now, "month") == "2024-03"
        assert period_key(clock.now, "quarter") == "2024-Q1"

    @pytest.mark.asyncio
    async def test_grouped_by_priority(self, container, clock, make_intervention):
        seeded = await seed(clock, make_intervention)
        await complete(container, seeded["high"], clock)
        rows = await container.reporting.trend_analysis(WORKPLACE, period="quarter", group_by="priority")
        assert rows == [
            {"period": "2024-Q1", "group": "high", "count": 1, "completed": 1, "successful": 1},
            {"period": "2024-Q1", "group": "low", "count": 1, "completed": 0, "successful": 0},
            {"period": "2024-Q1", "group": "medium", "count": 1, "completed": 0, "successful": 0},
        ]

    @pytest.mark.asyncio
    async def test_total_collapses_groups(self, container, clock, make_intervention):
        await seed(clock, make_intervention)
        rows = await container.reporting.trend_analysis(WORKPLACE, period="month", group_by="total")
        assert rows == [{"period": "2024-03", "group": None, "count": 3, "completed": 0, "successful": 0}]

    @pytest.mark.asyncio
    async def test_invalid_period(self, container):
        with pytest.raises(ValidationError):
            await container.reporting.trend_analysis(WORKPLACE, period="fortnight")


class TestPatientSearch:

    @pytest.mark.asyncio
    async def test_search_is_tenant_scoped_and_annotated(self, container, clock, make_intervention):
        seeded = await seed(clock, make_intervention)
        results = await container.reporting.search_patients("grace", WORKPLACE)
        assert len(results) == 1
        [row] = results
        assert row["mrn"] == "MRN-1001"
        assert row["age"] == 73
        assert row["intervention_count"] == 2
        assert row["active_intervention_count"] == 2
        assert row["last_intervention_date"] == seeded["medium"].identified_date

    @pytest.mark.asyncio
    async def test_search_by_mrn(self, container):
        results = await container.reporting.search_patients("mrn-1002", WORKPLACE)
        assert [r["last_name"] for r in results] == ["Bello"]
        assert results[0]["last_intervention_date"] is None

    @pytest.mark.asyncio
    async def test_empty_query_rejected(self, container):
        with pytest.raises(ValidationError, match="Search query is required"):
            await container.reporting.search_patients("  ", WORKPLACE)

    @pytest.mark.asyncio
    async def test_non_numeric_limit_rejected(self, container):
        with pytest.raises(ValidationError) as exc:
            await container.reporting.search_patients("grace", WORKPLACE, limit="ten")
        assert exc.value.field == "limit"


class TestReports:

    @pytest.mark.asyncio
    async def test_outcome_report(self, container, clock, make_intervention):
        seeded = await seed(clock, make_intervention)
        await complete(container, seeded["high"], clock)
        await complete(container, seeded["low"], clock, response="no_change", resolved=False)

        report = await container.reporting.outcome_report(WORKPLACE)
        assert report["summary"] == {
            "total_interventions": 3,
            "completed_interventions": 2,
            "successful_interventions": 1,
            "success_rate": 50.0,
        }
        by_category = {row["category"]: row for row in report["category_breakdown"]}
        assert by_category["drug_interaction"]["success_rate"] == 100.0
        assert by_category["dosing_issue"]["success_rate"] == 0

    @pytest.mark.asyncio
    async def test_cost_savings_report(self, container, clock, make_intervention):
        seeded = await seed(clock, make_intervention)
        await complete(container, seeded["high"], clock, hours=1)
        report = await container.reporting.cost_savings_report(WORKPLACE)
        assert report["completed_interventions"] == 1
        assert report["adverse_events_avoided"] == 1
        assert report["hospital_admissions_avoided"] == 1


class TestCostModel:

    def build(self, **overrides):
        data = {
            "tenant_id": WORKPLACE,
            "intervention_number": "CI-202403-0001",
            "patient_id": PATIENT_ID,
            "identified_by": PHARMACIST_ID,
            "category": "adverse_drug_reaction",
            "priority": "high",
            "issue_description": "Rash after starting co-trimoxazole",
            "status": "completed",
        }
        data.update(overrides)
        return ClinicalIntervention(**data)

    def test_full_savings(self):
        item = self.build(
            strategies=[InterventionStrategy(
                type="discontinuation",
                description="Stop co-trimoxazole",
                rationale="Likely hypersensitivity reaction",
                expected_outcome="Rash resolves within a week",
                priority="primary",
            )],
            outcomes=InterventionOutcome(patient_response="improved", success_metrics={"problem_resolved": True}),
            actual_duration=60,
        )
        result = cost_savings([item, self.build(status="planning")])
        assert result == {
            "completed_interventions": 1,
            "adverse_events_avoided": 1,
            "hospital_admissions_avoided": 1,
            "medication_waste_reduced": 1,
            "gross_savings": 20200.0,
            "pharmacist_cost": 50.0,
            "net_savings": 20150.0,
        }

    def test_net_is_floored_at_zero(self):
        item = self.build(priority="low", outcomes=InterventionOutcome(patient_response="no_change"),
                          actual_duration=600)
        result = cost_savings([item], CostParameters(pharmacist_hourly_cost=60))
        assert result["gross_savings"] == 0
        assert result["pharmacist_cost"] == 600.0
        assert result["net_savings"] == 0


class TestExport:

    @pytest.mark.asyncio
    async def test_csv_export_is_audited(self, container, clock, make_intervention):
        await seed(clock, make_intervention)
        result = await container.exports.export(WORKPLACE, format="csv", user_id=PHARMACIST_ID)

        assert result.media_type == "text/csv"
        assert result.filename == "clinical-interventions-20240315.csv"
        lines = result.content.decode().strip().split("\n")
        assert lines[0].startswith("Intervention Number,Patient Name,Category")
        assert len(lines) == 4
        assert "Grace Okafor" in lines[1]
        assert lines[1].endswith("N/A,1,0")

        [entry] = await container.audit_store.query(AuditQuery(
            tenant_id=WORKPLACE, actions=("ACCESS_INTERVENTION_EXPORT",),
        ))
        assert entry.intervention_id == SYSTEM_TARGET
        assert entry.details["rows"] == 3

    @pytest.mark.asyncio
    async def test_csv_quotes_commas(self, container, make_intervention):
        await make_intervention(issue_description='Takes "extra" doses, twice weekly')
        result = await container.exports.export(WORKPLACE)
        assert '"Takes ""extra"" doses, twice weekly"' in result.content.decode()

    @pytest.mark.asyncio
    async def test_csv_keeps_multiline_text_in_one_cell(self, container, make_intervention):
        description = "Missed doses reported\nby caregiver, twice"
        await make_intervention(issue_description=description)
        result = await container.exports.export(WORKPLACE)

        rows = list(csv.reader(io.StringIO(result.content.decode())))
        assert len(rows) == 2
        assert rows[1][5] == description

    @pytest.mark.asyncio
    async def test_json_export_filtered(self, container, clock, make_intervention):
        seeded = await seed(clock, make_intervention)
        result = await container.exports.export(WORKPLACE, {"priority": "high"}, format="json")
        rows = json.loads(result.content)
        assert [r["intervention_number"] for r in rows] == [seeded["high"].intervention_number]
        assert rows[0]["identified_by"] == "Ada Obi"

    @pytest.mark.asyncio
    async def test_excel_and_pdf(self, container, clock, make_intervention):
        await seed(clock, make_intervention)
        excel = await container.exports.export(WORKPLACE, format="excel")
        assert excel.media_type == "application/vnd.ms-excel"
        assert excel.filename.endswith(".xls")
        assert b"<Workbook" in excel.content

        pdf = await container.exports.export(WORKPLACE, format="pdf")
        assert pdf.media_type == "application/pdf"
        assert pdf.content.startswith(b"%PDF-1.4")
        assert pdf.content.rstrip().endswith(b"%%EOF")

    @pytest.mark.asyncio
    async def test_unsupported_format(self, container):
        with pytest.raises(ValidationError, match="Unsupported export format"):
            await container.exports.export(WORKPLACE, format="docx")
