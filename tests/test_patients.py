import sys
from contextlib import closing
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from meditrack import database
from meditrack.app import create_app
from meditrack.auth import hash_password
from meditrack.timezone import clinic_now


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


def _create_patient(client: TestClient, **overrides) -> int:
    payload = {
        "first_name": "Alice",
        "last_name": "Example",
        "email": "alice@example.com",
        "phone": "+4400000000",
        "address": "London",
        **overrides,
    }
    response = client.post("/patients", json=payload)
    assert response.status_code == 201
    return response.json()["id"]


def test_partial_patient_update_preserves_existing_fields(client: TestClient):
    patient_id = _create_patient(client)

    updated = client.put(f"/patients/{patient_id}", json={"phone": "+4411111111", "address": "Bristol"})
    assert updated.status_code == 200

    fetched = client.get(f"/patients/{patient_id}")
    assert fetched.status_code == 200
    body = fetched.json()
    assert body["first_name"] == "Alice"
    assert body["last_name"] == "Example"
    assert body["email"] == "alice@example.com"
    assert body["phone"] == "+4411111111"
    assert body["address"] == "Bristol"


def test_patient_creation_requires_names(client: TestClient):
    base_payload = {"email": "missing@example.com", "phone": "+4400000000"}

    missing_first = client.post("/patients", json={**base_payload, "first_name": "", "last_name": "Example"})
    assert missing_first.status_code == 422
    assert missing_first.json()["detail"] == "Name or surname required"

    missing_last = client.post("/patients", json={**base_payload, "first_name": "Alice", "last_name": "  "})
    assert missing_last.status_code == 422
    assert missing_last.json()["detail"] == "Name or surname required"


def test_soft_deleted_patient_is_hidden_until_recovered(client: TestClient):
    patient_id = _create_patient(client)

    deleted = client.delete(f"/patients/{patient_id}")
    assert deleted.status_code == 200
    assert deleted.json() == {"detail": "Deleted", "id": patient_id}
    assert client.get(f"/patients/{patient_id}").status_code == 404
    assert patient_id not in {patient["id"] for patient in client.get("/patients").json()}

    recovered = client.post(f"/patients/{patient_id}/recover")
    assert recovered.status_code == 200
    assert recovered.json()["deleted"] is False
    assert client.get(f"/patients/{patient_id}").status_code == 200


def test_unknown_records_return_404(client: TestClient):
    assert client.get("/patients/999").json() == {"detail": "Patient not found"}
    assert client.get("/patients/999/appointments").status_code == 404
    assert client.get("/appointments/999").json() == {"detail": "Appointment not found"}
    assert client.get("/history/999").json() == {"detail": "History record not found"}
    assert client.delete("/history/999").status_code == 404


def test_appointments_are_listed_newest_first(client: TestClient):
    patient_id = _create_patient(client)
    for when in ("2024-12-01T10:00:00Z", "2025-03-01T09:00:00Z", "2025-01-20"):
        response = client.post(
            f"/patients/{patient_id}/appointments",
            json={"appointmentDate": when, "type": "Consultation"},
        )
        assert response.status_code == 201

    listed = client.get(f"/patients/{patient_id}/appointments")
    assert listed.status_code == 200
    body = listed.json()
    assert [item["appointment_date"][:10] for item in body] == ["2025-03-01", "2025-01-20", "2024-12-01"]
    assert all(item["reason"] == "Consultation" for item in body)
    assert all(item["status"] == "scheduled" for item in body)


def test_appointment_update_and_delete(client: TestClient):
    patient_id = _create_patient(client)
    created = client.post(
        f"/patients/{patient_id}/appointments",
        json={"appointment_date": "2025-03-01T09:00:00Z", "doctor_name": "Dr. Lee", "location": "Room 4"},
    )
    appointment_id = created.json()["id"]

    updated = client.put(f"/appointments/{appointment_id}", json={"status": "completed", "notes": "All good"})
    assert updated.status_code == 200

    fetched = client.get(f"/appointments/{appointment_id}").json()
    assert fetched["status"] == "completed"
    assert fetched["notes"] == "All good"
    assert fetched["doctor_name"] == "Dr. Lee"
    assert fetched["appointment_date"].startswith("2025-03-01T09:00:00")

    assert client.delete(f"/appointments/{appointment_id}").json()["success"] is True
    assert client.get(f"/appointments/{appointment_id}").status_code == 404


def test_appointment_requires_a_valid_date(client: TestClient):
    patient_id = _create_patient(client)

    missing = client.post(f"/patients/{patient_id}/appointments", json={"status": "scheduled"})
    invalid = client.post(f"/patients/{patient_id}/appointments", json={"appointment_date": "next week"})

    assert missing.status_code == 422
    assert invalid.status_code == 422


def test_history_payloads_are_decoded_on_read(client: TestClient):
    patient_id = _create_patient(client)
    created = client.post(
        f"/patients/{patient_id}/history",
        json={
            "visitDate": "2025-02-01",
            "visitReason": "Annual physical",
            "recordedBy": "Dr. Lee",
            "vitals": {"bloodPressure": "150/95", "heartRate": 80},
            "medications": '[{"name": "Atorvastatin", "dosage": "10mg"}]',
            "labResults": "{broken",
        },
    )
    assert created.status_code == 201
    history_id = created.json()["id"]

    stored = database.fetch_history(history_id)
    assert stored["medications"] == '[{"name": "Atorvastatin", "dosage": "10mg"}]'
    assert stored["lab_results"] == "{broken"

    record = client.get(f"/history/{history_id}").json()
    assert record["visit_reason"] == "Annual physical"
    assert record["vitals"]["blood_pressure"] == "150/95"
    assert record["medications"][0]["name"] == "Atorvastatin"
    assert record["lab_results"] is None
    assert record["documents"] is None

    listed = client.get(f"/patients/{patient_id}/history").json()
    assert [item["id"] for item in listed] == [history_id]


def test_history_update_keeps_untouched_fields(client: TestClient):
    patient_id = _create_patient(client)
    created = client.post(
        f"/patients/{patient_id}/history",
        json={"visit_date": "2025-02-01", "diagnosis": "Hypertension", "vitals": {"bloodPressure": "150/95"}},
    )
    history_id = created.json()["id"]

    updated = client.put(f"/history/{history_id}", json={"treatment": "Lifestyle changes", "visit_date": None})
    assert updated.status_code == 200

    record = client.get(f"/history/{history_id}").json()
    assert record["diagnosis"] == "Hypertension"
    assert record["treatment"] == "Lifestyle changes"
    assert record["vitals"]["blood_pressure"] == "150/95"
    assert record["visit_date"].startswith("2025-02-01")

    assert client.delete(f"/history/{history_id}").status_code == 200
    assert client.get(f"/patients/{patient_id}/history").json() == []


def test_writes_are_audited(client: TestClient):
    patient_id = _create_patient(client)
    client.post(f"/patients/{patient_id}/appointments", json={"appointment_date": "2025-03-01"})

    response = client.get("/api-requests/", params={"limit": 2})
    assert response.status_code == 200
    requests = response.json()
    assert [(entry["method"], entry["path"]) for entry in requests] == [
        ("POST", f"/patients/{patient_id}/appointments"),
        ("POST", "/patients"),
    ]


def test_routes_require_a_session(tmp_path, monkeypatch):
    monkeypatch.setattr(database, "DB_PATH", tmp_path / "anon.db")
    app = create_app()
    with TestClient(app) as anonymous:
        assert anonymous.get("/patients").status_code == 401
        assert anonymous.get("/patients/1/timeline").status_code == 401
        assert anonymous.get("/auth/me").status_code == 401
        bad_login = anonymous.post("/auth/login", json={"username": "admin", "password": "wrong"})
        assert bad_login.status_code == 401
        config = anonymous.get("/app-config")
        assert config.status_code == 200
        assert config.json()["defaultTheme"] == "light"
        assert "version" in config.json()


def test_logout_clears_the_session(client: TestClient):
    me = client.get("/auth/me")
    assert me.status_code == 200
    assert me.json() == {"id": 1, "username": "admin", "is_admin": True}

    assert client.post("/auth/logout").status_code == 200
    client.cookies.clear()
    assert client.get("/auth/me").status_code == 401


def test_only_admins_can_delete_patients(client: TestClient):
    patient_id = _create_patient(client)
    database.create_user("reception", hash_password("front-desk"))

    client.cookies.clear()
    login = client.post("/auth/login", json={"username": "reception", "password": "front-desk"})
    assert login.json()["is_admin"] is False

    response = client.delete(f"/patients/{patient_id}")
    assert response.status_code == 403
    assert client.get(f"/patients/{patient_id}").status_code == 200


def test_audit_log_is_admin_only(client: TestClient):
    _create_patient(client)
    database.create_user("reception", hash_password("front-desk"))

    assert client.get("/api-requests/", params={"limit": 0}).status_code == 422

    client.cookies.clear()
    client.post("/auth/login", json={"username": "reception", "password": "front-desk"})
    response = client.get("/api-requests/")
    assert response.status_code == 403
    assert response.json() == {"detail": "Admin access required"}


def test_patient_search_matches_names_email_and_phone(client: TestClient):
    alice_id = _create_patient(client)
    bob_id = _create_patient(
        client, first_name="Bob", last_name="Smith", email="bob@clinic.org", phone="+447700900123"
    )
    removed_id = _create_patient(client, first_name="Bobby", last_name="Removed", email="gone@clinic.org")
    client.delete(f"/patients/{removed_id}")

    def search(term: str):
        response = client.get("/patients", params={"search": term})
        assert response.status_code == 200
        return [patient["id"] for patient in response.json()]

    assert search("smi") == [bob_id]
    assert search("ALICE example") == [alice_id]
    assert search("clinic.org") == [bob_id]
    assert search("7700900") == [bob_id]
    assert search("%") == []
    assert sorted(search("  ")) == sorted([alice_id, bob_id])


def test_clinic_wide_appointment_lists(client: TestClient):
    patient_id = _create_patient(client)
    removed_id = _create_patient(client, first_name="Carl", last_name="Removed")
    now = datetime.now(timezone.utc)
    planned = [
        ("past", "2020-05-01T09:00:00Z", "completed"),
        ("today", clinic_now().isoformat(), "scheduled"),
        ("soon", (now + timedelta(days=2)).isoformat(), "scheduled"),
        ("cancelled", (now + timedelta(days=3)).isoformat(), "Cancelled"),
    ]
    for notes, when, state in planned:
        created = client.post(
            f"/patients/{patient_id}/appointments",
            json={"appointment_date": when, "status": state, "notes": notes},
        )
        assert created.status_code == 201
    client.post(
        f"/patients/{removed_id}/appointments",
        json={"appointment_date": (now + timedelta(days=1)).isoformat(), "notes": "removed"},
    )
    client.delete(f"/patients/{removed_id}")

    def notes_for(path: str):
        response = client.get(path)
        assert response.status_code == 200
        return [item["notes"] for item in response.json()]

    assert notes_for("/appointments") == ["past", "today", "soon", "cancelled"]
    assert notes_for("/appointments/today") == ["today"]
    assert notes_for("/appointments/upcoming") == ["soon"]


def test_dashboard_stats(client: TestClient):
    assert client.get("/dashboard/stats").json() == {
        "total_patients": 0,
        "today_appointments": 0,
        "new_patients": 0,
    }

    recent_id = _create_patient(client)
    older_id = _create_patient(client, first_name="Olga", last_name="Older")
    removed_id = _create_patient(client, first_name="Rita", last_name="Removed")
    with closing(database.get_connection()) as conn:
        conn.execute(
            "UPDATE patients SET created_at = ? WHERE id = ?",
            ((datetime.now(timezone.utc) - timedelta(days=45)).isoformat(), older_id),
        )
        conn.commit()
    client.post(f"/patients/{recent_id}/appointments", json={"appointment_date": clinic_now().isoformat()})
    client.post(f"/patients/{older_id}/appointments", json={"appointment_date": "2020-05-01T09:00:00Z"})
    client.delete(f"/patients/{removed_id}")

    stats = client.get("/dashboard/stats")
    assert stats.status_code == 200
    assert stats.json() == {"total_patients": 2, "today_appointments": 1, "new_patients": 1}
