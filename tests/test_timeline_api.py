import sys
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from meditrack import database
from meditrack.app import create_app


@pytest.fixture()
def client(tmp_path, monkeypatch):
    """Provide an authenticated TestClient backed by an isolated database."""
    db_path = tmp_path / "test.db"
    monkeypatch.setattr(database, "DB_PATH", db_path)
    app = create_app()
    with TestClient(app) as test_client:
        login = test_client.post(
            "/auth/login", json={"username": "admin", "password": "changeme"}
        )
        assert login.status_code == 200
        yield test_client


@pytest.fixture()
def patient_id(client: TestClient) -> int:
    created = client.post("/patients", json={"first_name": "Maria", "last_name": "Lopez", "phone": "+440000"})
    assert created.status_code == 201
    patient = created.json()["id"]

    appointment = client.post(
        f"/patients/{patient}/appointments",
        json={"appointment_date": "2025-03-01", "status": "confirmed", "reason": "Cardiology review"},
    )
    assert appointment.status_code == 201
    history = client.post(
        f"/patients/{patient}/history",
        json={
            "visit_date": "2025-02-01",
            "visit_reason": "Blood pressure check",
            "vitals": {"bloodPressure": "150/95", "heartRate": 80},
            "medications": [{"name": "Amlodipine", "dosage": "5mg"}, {"name": "Aspirin"}],
            "lab_results": "{not json",
            "documents": [{"title": "ECG trace", "type": "report", "date": "2025-02-03"}],
        },
    )
    assert history.status_code == 201
    return patient


def test_timeline_lists_every_category_newest_first(client: TestClient, patient_id: int):
    response = client.get(f"/patients/{patient_id}/timeline")

    assert response.status_code == 200
    body = response.json()
    assert body["patient_id"] == patient_id
    assert body["types"] == ["appointment", "history", "medication", "vitals", "labs", "document"]
    assert body["total"] == 6
    assert [event["ref"] for event in body["events"]] == [
        "appointment-1",
        "document-1-0",
        "history-1",
        "vitals-1",
        "medication-1-0",
        "medication-1-1",
    ]
    vitals = body["events"][3]
    assert vitals["status"] == "abnormal"
    assert vitals["metadata"]["blood_pressure"] == "150/95"


def test_timeline_type_filter(client: TestClient, patient_id: int):
    filtered = client.get(f"/patients/{patient_id}/timeline", params={"types": "medication,vitals"})
    assert filtered.status_code == 200
    body = filtered.json()
    assert body["total"] == 6
    assert {event["type"] for event in body["events"]} == {"medication", "vitals"}
    assert len(body["events"]) == 3

    repeated = client.get(f"/patients/{patient_id}/timeline?types=appointment&types=document")
    assert {event["type"] for event in repeated.json()["events"]} == {"appointment", "document"}


def test_blank_type_filter_hides_everything(client: TestClient, patient_id: int):
    response = client.get(f"/patients/{patient_id}/timeline?types=")

    assert response.status_code == 200
    assert response.json()["events"] == []
    assert response.json()["types"] == []


def test_unknown_type_is_rejected(client: TestClient, patient_id: int):
    response = client.get(f"/patients/{patient_id}/timeline", params={"types": "vitals,xray"})

    assert response.status_code == 422
    assert "xray" in response.json()["detail"]


def test_timeline_for_unknown_patient(client: TestClient):
    assert client.get("/patients/404/timeline").status_code == 404


def test_timeline_for_patient_without_records(client: TestClient):
    created = client.post("/patients", json={"first_name": "Empty", "last_name": "Chart"})
    response = client.get(f"/patients/{created.json()['id']}/timeline")

    assert response.status_code == 200
    assert response.json()["events"] == []
    assert response.json()["total"] == 0


def test_event_detail_lookup(client: TestClient, patient_id: int):
    appointment = client.get(f"/patients/{patient_id}/timeline/appointment/1")
    assert appointment.status_code == 200
    assert appointment.json()["success"] is True
    assert appointment.json()["event"]["title"] == "Cardiology review"
    assert appointment.json()["event"]["metadata"]["location"] == "Main Office"

    medication = client.get(f"/patients/{patient_id}/timeline/medication/1", params={"index": 1})
    assert medication.json()["event"]["title"] == "Aspirin"
    assert medication.json()["event"]["metadata"]["dosage"] == "Not specified"


def test_event_detail_not_found_is_not_an_error(client: TestClient, patient_id: int):
    labs = client.get(f"/patients/{patient_id}/timeline/labs/1")
    assert labs.status_code == 200
    assert labs.json()["success"] is False
    assert labs.json()["event"] is None
    assert labs.json()["message"].startswith("No event selected")

    filtered_out = client.get(
        f"/patients/{patient_id}/timeline/appointment/1",
        params={"types": "vitals"},
    )
    assert filtered_out.json()["success"] is False

    unknown_type = client.get(f"/patients/{patient_id}/timeline/surgery/1")
    assert unknown_type.status_code == 422


def test_timeline_refreshes_after_writes(client: TestClient, patient_id: int):
    client.post(
        f"/patients/{patient_id}/appointments",
        json={"appointment_date": "2025-05-10T08:00:00Z", "reason": "Follow-up"},
    )

    events = client.get(f"/patients/{patient_id}/timeline").json()["events"]
    assert events[0]["title"] == "Follow-up"

    client.delete("/history/1")
    remaining = client.get(f"/patients/{patient_id}/timeline").json()["events"]
    assert {event["type"] for event in remaining} == {"appointment"}
