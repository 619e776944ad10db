"""
Tests for the HTTP API.
"""

import uuid

import pytest
from fastapi.testclient import TestClient

from rxcare.api import create_app
from rxcare.collaborators import RoleAccessGate

from conftest import MTR_ID, NURSE_ID, PATIENT_ID, PHARMACIST_ID, STRATEGY, WORKPLACE

HEADERS = {"X-User-Id": PHARMACIST_ID, "X-Workplace-Id": WORKPLACE, "X-Request-Id": "req-42"}

NEW_INTERVENTION = {
    "patient_id": PATIENT_ID,
    "category": "drug_interaction",
    "priority": "high",
    "issue_description": "Warfarin started alongside clarithromycin",
    "strategies": [STRATEGY],
}


@pytest.fixture
def client(container):
    with TestClient(create_app(container)) as test_client:
        yield test_client


@pytest.fixture
def gated_client(container, users):
    container.gate = RoleAccessGate(users)
    with TestClient(create_app(container)) as test_client:
        yield test_client


def create(client, **overrides):
    response = client.post("/v1/interventions", json={**NEW_INTERVENTION, **overrides}, headers=HEADERS)
    assert response.status_code == 201, response.text
    return response.json()["data"]


class TestHealth:

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"


class TestInterventionRoutes:

    def test_create_and_get(self, client):
        created = create(client)
        assert created["intervention_number"] == "CI-202403-0001"
        assert created["status"] == "planning"

        response = client.get(f"/v1/interventions/{created['id']}", headers=HEADERS)
        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["data"]["id"] == created["id"]

    def test_create_reports_duplicates(self, client):
        first = create(client)
        response = client.post("/v1/interventions", json=NEW_INTERVENTION, headers=HEADERS)
        assert [d["id"] for d in response.json()["duplicates"]] == [first["id"]]

    def test_list_with_pagination(self, client):
        for _ in range(3):
            create(client)
        response = client.get("/v1/interventions", params={"limit": 2, "status": "planning"}, headers=HEADERS)
        body = response.json()
        assert len(body["data"]) == 2
        assert body["pagination"]["total"] == 3
        assert body["pagination"]["has_next"] is True

    def test_lifecycle_over_http(self, client):
        created = create(client)
        url = f"/v1/interventions/{created['id']}"

        response = client.post(
            f"{url}/assignments",
            json={"user_id": NURSE_ID, "role": "nurse", "task": "Check INR in three days"},
            headers=HEADERS,
        )
        assert response.json()["data"]["status"] == "in_progress"

        response = client.put(f"{url}/outcome", json={"patient_response": "improved"}, headers=HEADERS)
        assert response.json()["data"]["status"] == "implemented"

        response = client.patch(url, json={"status": "completed"}, headers=HEADERS)
        assert response.status_code == 200
        assert response.json()["data"]["status"] == "completed"

        response = client.get(f"{url}/audit-trail", headers=HEADERS)
        assert response.json()["data"]["total"] == 4

    def test_link_mtr_and_lookup(self, client):
        created = create(client)
        response = client.post(
            f"/v1/interventions/{created['id']}/link-mtr", json={"mtr_id": MTR_ID}, headers=HEADERS,
        )
        assert response.json()["data"]["related_mtr_id"] == MTR_ID

        response = client.get(f"/v1/interventions/mtr/{MTR_ID}", headers=HEADERS)
        assert [i["id"] for i in response.json()["data"]] == [created["id"]]

    def test_delete(self, client):
        created = create(client)
        response = client.delete(f"/v1/interventions/{created['id']}", headers=HEADERS)
        assert response.json() == {"success": True, "data": {"deleted": True}}
        assert client.get(f"/v1/interventions/{created['id']}", headers=HEADERS).status_code == 404

    def test_get_includes_progress(self, client):
        created = create(client)
        response = client.get(f"/v1/interventions/{created['id']}", headers=HEADERS)
        progress = response.json()["progress"]
        assert progress["completion_percentage"] == 40
        assert progress["next_step"] == "in_progress"
        assert progress["can_complete"] is False
        assert progress["is_overdue"] is False

    def test_create_from_drug_therapy_problem(self, client):
        response = client.post(
            "/v1/interventions/from-dtp",
            json={
                "dtp_id": str(uuid.uuid4()),
                "patient_id": PATIENT_ID,
                "category": "drug_interaction",
                "description": "Simvastatin with clarithromycin raises myopathy risk",
            },
            headers=HEADERS,
        )
        assert response.status_code == 201, response.text
        data = response.json()["data"]
        assert data["category"] == "drug_interaction"
        assert data["priority"] == "high"
        assert data["strategies"][0]["type"] == "medication_review"


class TestErrorMapping:

    def test_not_found_body(self, client):
        response = client.get(f"/v1/interventions/{PATIENT_ID}", headers=HEADERS)
        assert response.status_code == 404
        assert response.json() == {
            "success": False,
            "error": {"code": "NOT_FOUND", "message": "Clinical intervention not found"},
        }

    def test_malformed_id_is_400(self, client):
        response = client.get("/v1/interventions/not-an-id", headers=HEADERS)
        assert response.status_code == 400
        assert response.json()["error"]["details"]["field"] == "intervention_id"

    def test_body_validation_is_400(self, client):
        response = client.post(
            "/v1/interventions", json={**NEW_INTERVENTION, "priority": "urgent"}, headers=HEADERS,
        )
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "VALIDATION_ERROR"

    def test_rule_violation_is_409(self, client):
        created = create(client, strategies=[])
        response = client.patch(
            f"/v1/interventions/{created['id']}", json={"status": "completed"}, headers=HEADERS,
        )
        assert response.status_code == 409
        body = response.json()["error"]
        assert body["code"] == "BUSINESS_RULE_VIOLATION"
        assert body["details"]["allowed"] == ["planning", "cancelled"]

    def test_missing_identity_is_401(self, client):
        response = client.get("/v1/interventions", headers={"X-User-Id": PHARMACIST_ID})
        assert response.status_code == 401


class TestAccessControl:

    def test_pharmacist_can_create(self, gated_client):
        assert create(gated_client)["status"] == "planning"

    def test_nurse_cannot_create(self, gated_client):
        response = gated_client.post(
            "/v1/interventions",
            json=NEW_INTERVENTION,
            headers={**HEADERS, "X-User-Id": NURSE_ID},
        )
        assert response.status_code == 403

    def test_export_needs_owner_role(self, gated_client):
        response = gated_client.get("/v1/interventions/export", headers=HEADERS)
        assert response.status_code == 403


class TestReportRoutes:

    def test_export_csv(self, client):
        create(client)
        response = client.get("/v1/interventions/export", params={"format": "csv"}, headers=HEADERS)
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/csv")
        assert "clinical-interventions-20240315.csv" in response.headers["content-disposition"]
        assert response.text.startswith("Intervention Number,")

    def test_export_bad_format(self, client):
        response = client.get("/v1/interventions/export", params={"format": "docx"}, headers=HEADERS)
        assert response.status_code == 400

    def test_dashboard_and_search(self, client):
        create(client)
        dashboard = client.get("/v1/interventions/dashboard", headers=HEADERS).json()["data"]
        assert dashboard["total_interventions"] == 1

        search = client.get("/v1/interventions/search/patients", params={"q": "okafor"}, headers=HEADERS)
        assert search.json()["data"][0]["intervention_count"] == 1

    def test_compliance_requires_dates(self, client):
        response = client.get("/v1/interventions/reports/compliance", headers=HEADERS)
        assert response.status_code == 400

    def test_strategy_recommendations(self, client):
        response = client.post(
            "/v1/interventions/strategies/recommendations",
            json={"category": "drug_therapy_problem", "priority": "critical"},
            headers=HEADERS,
        )
        assert [s["type"] for s in response.json()["data"]] == ["medication_review", "dose_adjustment"]

    def test_my_assignments(self, client):
        created = create(client)
        client.post(
            f"/v1/interventions/{created['id']}/assignments",
            json={"user_id": NURSE_ID, "role": "nurse", "task": "Check INR"},
            headers=HEADERS,
        )
        response = client.get("/v1/interventions/assignments/me", headers={**HEADERS, "X-User-Id": NURSE_ID})
        assert [i["id"] for i in response.json()["data"]] == [created["id"]]
