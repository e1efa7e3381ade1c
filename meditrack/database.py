"""SQLite helpers for the MediTrack backend."""
from __future__ import annotations

import json
import sqlite3
from contextlib import closing
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

from .models import parse_timestamp
from .timezone import clinic_now_iso

DB_PATH = Path(__file__).resolve().parent / "meditrack.db"

HISTORY_EMBEDDED_FIELDS: Tuple[str, ...] = ("vitals", "medications", "lab_results", "documents")


def get_connection() -> sqlite3.Connection:
    """Return a connection with row results as dictionaries."""
    conn = sqlite3.connect(DB_PATH)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


def _create_patients(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS patients (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            first_name TEXT NOT NULL,
            last_name TEXT NOT NULL,
            email TEXT,
            phone TEXT NOT NULL DEFAULT '',
            date_of_birth TEXT,
            gender TEXT,
            address TEXT,
            status TEXT NOT NULL DEFAULT 'active',
            deleted INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )


def _create_appointments(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS appointments (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            patient_id INTEGER NOT NULL,
            appointment_date TEXT NOT NULL,
            status TEXT NOT NULL DEFAULT 'scheduled',
            reason TEXT,
            doctor_name TEXT,
            location TEXT,
            notes TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            FOREIGN KEY(patient_id) REFERENCES patients(id) ON DELETE CASCADE
        )
        """
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_appointments_patient ON appointments(patient_id, appointment_date DESC)"
    )


def _create_patient_history(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS patient_history (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            patient_id INTEGER NOT NULL,
            visit_date TEXT NOT NULL,
            visit_reason TEXT,
            diagnosis TEXT,
            treatment TEXT,
            prescriptions TEXT,
            notes TEXT,
            recorded_by TEXT,
            vitals TEXT,
            medications TEXT,
            lab_results TEXT,
            documents TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            FOREIGN KEY(patient_id) REFERENCES patients(id) ON DELETE CASCADE
        )
        """
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_patient_history_patient ON patient_history(patient_id, visit_date DESC)"
    )


def _create_users(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS users (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            username TEXT NOT NULL UNIQUE,
            password_hash TEXT NOT NULL,
            is_admin INTEGER NOT NULL DEFAULT 0
        )
        """
    )


def _create_user_preferences(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS user_preferences (
            user_id INTEGER NOT NULL,
            key TEXT NOT NULL,
            value TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            PRIMARY KEY (user_id, key),
            FOREIGN KEY(user_id) REFERENCES users(id) ON DELETE CASCADE
        )
        """
    )


def _create_api_requests(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS api_requests (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            path TEXT NOT NULL,
            method TEXT NOT NULL,
            payload TEXT,
            response TEXT,
            created_at TEXT NOT NULL
        )
        """
    )


def init_db() -> None:
    """Create the tables for patients, appointments, history and ancillary data."""
    with closing(sqlite3.connect(DB_PATH)) as conn:
        _create_patients(conn)
        _create_appointments(conn)
        _create_patient_history(conn)
        _create_users(conn)
        _create_user_preferences(conn)
        _create_api_requests(conn)
        conn.commit()


# ---------------------------------------------------------------------------
# Users and preferences
# ---------------------------------------------------------------------------


def seed_default_admin_user(password_hash: str, username: str = "admin") -> None:
    """Ensure the default admin user exists."""
    with closing(get_connection()) as conn:
        cursor = conn.execute("SELECT id FROM users WHERE username = ?", (username,))
        if cursor.fetchone():
            return
        conn.execute(
            "INSERT INTO users (username, password_hash, is_admin) VALUES (?, ?, 1)",
            (username, password_hash),
        )
        conn.commit()


def get_user_by_username(username: str) -> Optional[Dict[str, Any]]:
    with closing(get_connection()) as conn:
        cursor = conn.execute("SELECT id, username, password_hash, is_admin FROM users WHERE username = ?", (username,))
        row = cursor.fetchone()
        return dict(row) if row else None


def get_user(user_id: int) -> Optional[Dict[str, Any]]:
    with closing(get_connection()) as conn:
        cursor = conn.execute("SELECT id, username, password_hash, is_admin FROM users WHERE id = ?", (user_id,))
        row = cursor.fetchone()
        return dict(row) if row else None


def create_user(username: str, password_hash: str, is_admin: bool = False) -> Dict[str, Any]:
    with closing(get_connection()) as conn:
        cursor = conn.execute(
            "INSERT INTO users (username, password_hash, is_admin) VALUES (?, ?, ?)",
            (username, password_hash, 1 if is_admin else 0),
        )
        conn.commit()
        return get_user(cursor.lastrowid)


def get_preference(user_id: int, key: str) -> Optional[str]:
    with closing(get_connection()) as conn:
        cursor = conn.execute(
            "SELECT value FROM user_preferences WHERE user_id = ? AND key = ?",
            (user_id, key),
        )
        row = cursor.fetchone()
        return row["value"] if row else None


def set_preference(user_id: int, key: str, value: str) -> None:
    with closing(get_connection()) as conn:
        conn.execute(
            """
            INSERT INTO user_preferences (user_id, key, value, updated_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(user_id, key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
            """,
            (user_id, key, value, clinic_now_iso()),
        )
        conn.commit()


def log_api_request(path: str, method: str, payload: Any, response_payload: Any | None = None) -> None:
    timestamp = clinic_now_iso()
    try:
        payload_text = json.dumps(payload, default=str)
    except (TypeError, ValueError):
        payload_text = str(payload)
    response_text = None
    if response_payload is not None:
        try:
            response_text = json.dumps(response_payload, default=str)
        except (TypeError, ValueError):
            response_text = str(response_payload)
    with closing(get_connection()) as conn:
        conn.execute(
            "INSERT INTO api_requests (path, method, payload, response, created_at) VALUES (?, ?, ?, ?, ?)",
            (path, method, payload_text, response_text, timestamp),
        )
        conn.commit()


def fetch_api_requests(limit: int = 100) -> List[Dict[str, Any]]:
    safe_limit = max(1, min(limit, 500))
    with closing(get_connection()) as conn:
        cursor = conn.execute(
            "SELECT id, path, method, payload, response, created_at FROM api_requests ORDER BY id DESC LIMIT ?",
            (safe_limit,),
        )
        return [dict(row) for row in cursor.fetchall()]


# ---------------------------------------------------------------------------
# Row conversion and payload serialization
# ---------------------------------------------------------------------------


def _timestamp_text(value: Any, field_name: str) -> str:
    parsed = parse_timestamp(value)
    if parsed is None:
        raise ValueError(f"{field_name} must be a valid date")
    return parsed.isoformat()


def _serialize_embedded(value: Any) -> Optional[str]:
    """Store structures as JSON; text from legacy clients is kept verbatim."""
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return json.dumps(value, default=str)


def _row_to_patient(row: sqlite3.Row) -> Dict[str, Any]:
    return {
        "id": row["id"],
        "first_name": (row["first_name"] or "").strip(),
        "last_name": (row["last_name"] or "").strip(),
        "email": row["email"],
        "phone": row["phone"] or "",
        "date_of_birth": row["date_of_birth"],
        "gender": row["gender"],
        "address": row["address"],
        "status": row["status"] or "active",
        "deleted": bool(row["deleted"]),
        "created_at": row["created_at"],
        "updated_at": row["updated_at"],
    }


def _row_to_appointment(row: sqlite3.Row) -> Dict[str, Any]:
    return {
        "id": row["id"],
        "patient_id": row["patient_id"],
        "appointment_date": row["appointment_date"],
        "status": row["status"],
        "reason": row["reason"],
        "doctor_name": row["doctor_name"],
        "location": row["location"],
        "notes": row["notes"],
        "created_at": row["created_at"],
        "updated_at": row["updated_at"],
    }


def _row_to_history(row: sqlite3.Row) -> Dict[str, Any]:
    """Convert a history row; embedded collections stay as stored text."""
    return {
        "id": row["id"],
        "patient_id": row["patient_id"],
        "visit_date": row["visit_date"],
        "visit_reason": row["visit_reason"],
        "diagnosis": row["diagnosis"],
        "treatment": row["treatment"],
        "prescriptions": row["prescriptions"],
        "notes": row["notes"],
        "recorded_by": row["recorded_by"],
        "vitals": row["vitals"],
        "medications": row["medications"],
        "lab_results": row["lab_results"],
        "documents": row["documents"],
        "created_at": row["created_at"],
        "updated_at": row["updated_at"],
    }


def _serialize_patient_payload(data: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "first_name": (data.get("first_name") or "").strip(),
        "last_name": (data.get("last_name") or "").strip(),
        "email": data.get("email"),
        "phone": (data.get("phone") or "").strip(),
        "date_of_birth": data.get("date_of_birth"),
        "gender": data.get("gender"),
        "address": data.get("address"),
        "status": data.get("status") or "active",
    }


def _serialize_appointment_payload(data: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "appointment_date": _timestamp_text(data.get("appointment_date"), "appointment_date"),
        "status": data.get("status") or "scheduled",
        "reason": data.get("reason"),
        "doctor_name": data.get("doctor_name"),
        "location": data.get("location"),
        "notes": data.get("notes"),
    }


def _serialize_history_payload(data: Dict[str, Any]) -> Dict[str, Any]:
    payload = {
        "visit_date": _timestamp_text(data.get("visit_date"), "visit_date"),
        "visit_reason": data.get("visit_reason"),
        "diagnosis": data.get("diagnosis"),
        "treatment": data.get("treatment"),
        "prescriptions": data.get("prescriptions"),
        "notes": data.get("notes"),
        "recorded_by": data.get("recorded_by"),
    }
    for field_name in HISTORY_EMBEDDED_FIELDS:
        payload[field_name] = _serialize_embedded(data.get(field_name))
    return payload


# ---------------------------------------------------------------------------
# Patients
# ---------------------------------------------------------------------------


def fetch_patients(include_deleted: bool = False) -> List[Dict[str, Any]]:
    where_clause = "" if include_deleted else "WHERE deleted = 0"
    with closing(get_connection()) as conn:
        cursor = conn.execute(
            f"""
            SELECT *
            FROM patients
            {where_clause}
            ORDER BY last_name ASC, first_name ASC
            """
        )
        return [_row_to_patient(row) for row in cursor.fetchall()]


def _like_pattern(term: str) -> str:
    escaped = term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


def search_patients(term: str) -> List[Dict[str, Any]]:
    """Case-insensitive substring match on name, full name, email and phone."""
    pattern = _like_pattern(term.strip())
    with closing(get_connection()) as conn:
        cursor = conn.execute(
            """
            SELECT *
            FROM patients
            WHERE deleted = 0 AND (
                first_name LIKE :pattern ESCAPE '\\'
                OR last_name LIKE :pattern ESCAPE '\\'
                OR (first_name || ' ' || last_name) LIKE :pattern ESCAPE '\\'
                OR email LIKE :pattern ESCAPE '\\'
                OR phone LIKE :pattern ESCAPE '\\'
            )
            ORDER BY last_name ASC, first_name ASC
            """,
            {"pattern": pattern},
        )
        return [_row_to_patient(row) for row in cursor.fetchall()]


def count_patients() -> int:
    with closing(get_connection()) as conn:
        cursor = conn.execute("SELECT COUNT(*) FROM patients WHERE deleted = 0")
        return int(cursor.fetchone()[0])


def count_patients_created_since(cutoff: datetime) -> int:
    """Count active patients created at or after ``cutoff``.

    ``created_at`` carries the clinic offset, so the comparison is done on
    parsed timestamps rather than on the stored text.
    """
    with closing(get_connection()) as conn:
        cursor = conn.execute("SELECT created_at FROM patients WHERE deleted = 0")
        rows = cursor.fetchall()
    total = 0
    for row in rows:
        created = parse_timestamp(row["created_at"])
        if created is not None and created >= cutoff:
            total += 1
    return total


def fetch_patient(patient_id: int, *, include_deleted: bool = False) -> Optional[Dict[str, Any]]:
    with closing(get_connection()) as conn:
        query = "SELECT * FROM patients WHERE id = ?"
        if not include_deleted:
            query += " AND deleted = 0"
        cursor = conn.execute(query, (patient_id,))
        row = cursor.fetchone()
        return _row_to_patient(row) if row else None


def create_patient(data: Dict[str, Any]) -> Dict[str, Any]:
    payload = _serialize_patient_payload(data)
    timestamp = clinic_now_iso()
    with closing(get_connection()) as conn:
        cursor = conn.execute(
            """
            INSERT INTO patients (
                first_name, last_name, email, phone, date_of_birth, gender, address, status,
                created_at, updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                payload["first_name"],
                payload["last_name"],
                payload["email"],
                payload["phone"],
                payload["date_of_birth"],
                payload["gender"],
                payload["address"],
                payload["status"],
                timestamp,
                timestamp,
            ),
        )
        conn.commit()
        new_id = cursor.lastrowid
    created = fetch_patient(new_id)
    if not created:
        raise RuntimeError("Failed to fetch patient after creation")
    return created


def update_patient(patient_id: int, data: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    payload = _serialize_patient_payload(data)
    with closing(get_connection()) as conn:
        cursor = conn.execute(
            """
            UPDATE patients
            SET
                first_name = ?,
                last_name = ?,
                email = ?,
                phone = ?,
                date_of_birth = ?,
                gender = ?,
                address = ?,
                status = ?,
                updated_at = ?
            WHERE id = ? AND deleted = 0
            """,
            (
                payload["first_name"],
                payload["last_name"],
                payload["email"],
                payload["phone"],
                payload["date_of_birth"],
                payload["gender"],
                payload["address"],
                payload["status"],
                clinic_now_iso(),
                patient_id,
            ),
        )
        conn.commit()
        if cursor.rowcount == 0:
            return None
    return fetch_patient(patient_id)


def delete_patient(patient_id: int) -> bool:
    """Soft delete a patient; appointments and history stay for auditing."""
    with closing(get_connection()) as conn:
        cursor = conn.execute(
            "UPDATE patients SET deleted = 1, updated_at = ? WHERE id = ? AND deleted = 0",
            (clinic_now_iso(), patient_id),
        )
        conn.commit()
        return cursor.rowcount > 0


def restore_patient(patient_id: int) -> Optional[Dict[str, Any]]:
    with closing(get_connection()) as conn:
        cursor = conn.execute(
            "UPDATE patients SET deleted = 0, updated_at = ? WHERE id = ? AND deleted = 1",
            (clinic_now_iso(), patient_id),
        )
        conn.commit()
        if cursor.rowcount == 0:
            return None
    return fetch_patient(patient_id)


# ---------------------------------------------------------------------------
# Appointments
# ---------------------------------------------------------------------------


def list_appointments_for_patient(patient_id: int) -> List[Dict[str, Any]]:
    """Return a patient's appointments, newest first."""
    with closing(get_connection()) as conn:
        cursor = conn.execute(
            """
            SELECT *
            FROM appointments
            WHERE patient_id = ?
            ORDER BY appointment_date DESC, id DESC
            """,
            (patient_id,),
        )
        return [_row_to_appointment(row) for row in cursor.fetchall()]


def fetch_appointments(
    *,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    exclude_statuses: Iterable[str] = (),
) -> List[Dict[str, Any]]:
    """Return appointments of active patients in date order, oldest first.

    ``start`` is inclusive and ``end`` exclusive. Stored dates are UTC ISO
    strings, so bounds are compared as UTC text.
    """
    clauses = ["p.deleted = 0"]
    params: List[Any] = []
    if start is not None:
        clauses.append("a.appointment_date >= ?")
        params.append(_timestamp_text(start, "start"))
    if end is not None:
        clauses.append("a.appointment_date < ?")
        params.append(_timestamp_text(end, "end"))
    statuses = [status.strip().lower() for status in exclude_statuses]
    if statuses:
        clauses.append(f"LOWER(a.status) NOT IN ({', '.join('?' for _ in statuses)})")
        params.extend(statuses)
    with closing(get_connection()) as conn:
        cursor = conn.execute(
            f"""
            SELECT a.*
            FROM appointments a
            JOIN patients p ON p.id = a.patient_id
            WHERE {' AND '.join(clauses)}
            ORDER BY a.appointment_date ASC, a.id ASC
            """,
            params,
        )
        return [_row_to_appointment(row) for row in cursor.fetchall()]


def fetch_appointment(appointment_id: int) -> Optional[Dict[str, Any]]:
    with closing(get_connection()) as conn:
        cursor = conn.execute("SELECT * FROM appointments WHERE id = ?", (appointment_id,))
        row = cursor.fetchone()
        return _row_to_appointment(row) if row else None


def create_appointment(patient_id: int, data: Dict[str, Any]) -> Dict[str, Any]:
    payload = _serialize_appointment_payload(data)
    timestamp = clinic_now_iso()
    with closing(get_connection()) as conn:
        cursor = conn.execute(
            """
            INSERT INTO appointments (
                patient_id, appointment_date, status, reason, doctor_name, location, notes,
                created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                patient_id,
                payload["appointment_date"],
                payload["status"],
                payload["reason"],
                payload["doctor_name"],
                payload["location"],
                payload["notes"],
                timestamp,
                timestamp,
            ),
        )
        conn.commit()
        new_id = cursor.lastrowid
    created = fetch_appointment(new_id)
    if not created:
        raise RuntimeError("Failed to fetch appointment after creation")
    return created


def update_appointment(appointment_id: int, data: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    payload = _serialize_appointment_payload(data)
    with closing(get_connection()) as conn:
        cursor = conn.execute(
            """
            UPDATE appointments
            SET
                appointment_date = ?,
                status = ?,
                reason = ?,
                doctor_name = ?,
                location = ?,
                notes = ?,
                updated_at = ?
            WHERE id = ?
            """,
            (
                payload["appointment_date"],
                payload["status"],
                payload["reason"],
                payload["doctor_name"],
                payload["location"],
                payload["notes"],
                clinic_now_iso(),
                appointment_id,
            ),
        )
        conn.commit()
        if cursor.rowcount == 0:
            return None
    return fetch_appointment(appointment_id)


def delete_appointment(appointment_id: int) -> bool:
    with closing(get_connection()) as conn:
        cursor = conn.execute("DELETE FROM appointments WHERE id = ?", (appointment_id,))
        conn.commit()
        return cursor.rowcount > 0


# ---------------------------------------------------------------------------
# Medical history
# ---------------------------------------------------------------------------


def list_history_for_patient(patient_id: int) -> List[Dict[str, Any]]:
    """Return a patient's history records, most recent visit first."""
    with closing(get_connection()) as conn:
        cursor = conn.execute(
            """
            SELECT *
            FROM patient_history
            WHERE patient_id = ?
            ORDER BY visit_date DESC, id DESC
            """,
            (patient_id,),
        )
        return [_row_to_history(row) for row in cursor.fetchall()]


def fetch_history(history_id: int) -> Optional[Dict[str, Any]]:
    with closing(get_connection()) as conn:
        cursor = conn.execute("SELECT * FROM patient_history WHERE id = ?", (history_id,))
        row = cursor.fetchone()
        return _row_to_history(row) if row else None


def create_history(patient_id: int, data: Dict[str, Any]) -> Dict[str, Any]:
    payload = _serialize_history_payload(data)
    timestamp = clinic_now_iso()
    with closing(get_connection()) as conn:
        cursor = conn.execute(
            """
            INSERT INTO patient_history (
                patient_id, visit_date, visit_reason, diagnosis, treatment, prescriptions, notes,
                recorded_by, vitals, medications, lab_results, documents, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                patient_id,
                payload["visit_date"],
                payload["visit_reason"],
                payload["diagnosis"],
                payload["treatment"],
                payload["prescriptions"],
                payload["notes"],
                payload["recorded_by"],
                payload["vitals"],
                payload["medications"],
                payload["lab_results"],
                payload["documents"],
                timestamp,
                timestamp,
            ),
        )
        conn.commit()
        new_id = cursor.lastrowid
    created = fetch_history(new_id)
    if not created:
        raise RuntimeError("Failed to fetch history record after creation")
    return created


def update_history(history_id: int, data: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    payload = _serialize_history_payload(data)
    with closing(get_connection()) as conn:
        cursor = conn.execute(
            """
            UPDATE patient_history
            SET
                visit_date = ?,
                visit_reason = ?,
                diagnosis = ?,
                treatment = ?,
                prescriptions = ?,
                notes = ?,
                recorded_by = ?,
                vitals = ?,
                medications = ?,
                lab_results = ?,
                documents = ?,
                updated_at = ?
            WHERE id = ?
            """,
            (
                payload["visit_date"],
                payload["visit_reason"],
                payload["diagnosis"],
                payload["treatment"],
                payload["prescriptions"],
                payload["notes"],
                payload["recorded_by"],
                payload["vitals"],
                payload["medications"],
                payload["lab_results"],
                payload["documents"],
                clinic_now_iso(),
                history_id,
            ),
        )
        conn.commit()
        if cursor.rowcount == 0:
            return None
    return fetch_history(history_id)


def delete_history(history_id: int) -> bool:
    with closing(get_connection()) as conn:
        cursor = conn.execute("DELETE FROM patient_history WHERE id = ?", (history_id,))
        conn.commit()
        return cursor.rowcount > 0
