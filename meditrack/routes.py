"""API routes for patients, their appointments and history, and the health timeline."""
from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Type, TypeVar

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ValidationError

from . import database
from .auth import (
    authenticate,
    clear_login_cookie,
    require_admin_user,
    require_current_user,
    sanitize_user,
    set_login_cookie,
)
from .models import (
    ALL_EVENT_TYPES,
    Appointment,
    AppointmentCreate,
    AppointmentUpdate,
    DashboardStats,
    EventKey,
    HealthEvent,
    HealthEventType,
    LoginRequest,
    OperationResult,
    Patient,
    PatientCreate,
    PatientHistoryCreate,
    PatientHistoryRecord,
    PatientHistoryUpdate,
    PatientUpdate,
    ThemePreference,
    ThemeState,
    TimelineResponse,
    TimelineSelection,
    User,
)
from .settings import get_settings
from .theme import ThemeContext, get_theme_context
from .timezone import clinic_day_bounds
from .timeline import build_timeline, coerce_event_types, filter_by_type, select_event
from .version import get_app_version

logger = logging.getLogger(__name__)

patients_router = APIRouter(prefix="/patients", tags=["patients"])
appointments_router = APIRouter(prefix="/appointments", tags=["appointments"])
history_router = APIRouter(prefix="/history", tags=["history"])
preferences_router = APIRouter(prefix="/preferences", tags=["preferences"])
auth_router = APIRouter(prefix="/auth", tags=["auth"])
config_router = APIRouter(tags=["config"])
dashboard_router = APIRouter(prefix="/dashboard", tags=["dashboard"])
audit_router = APIRouter(prefix="/api-requests", tags=["api requests"])

NO_SELECTION_MESSAGE = "No event selected. Click on a timeline event to view detailed information."

ModelT = TypeVar("ModelT", bound=BaseModel)


def _validate_or_422(model: Type[ModelT], data: Dict[str, Any]) -> ModelT:
    try:
        return model.model_validate(data)
    except ValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=json.loads(exc.json()),
        ) from exc


def _coerce_patient_payload(data: dict) -> PatientCreate:
    """Validate and normalize patient payloads."""
    payload = _validate_or_422(PatientCreate, data)
    first = (payload.first_name or "").strip()
    last = (payload.last_name or "").strip()
    if not first or not last:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="Name or surname required",
        )
    return payload.model_copy(update={"first_name": first, "last_name": last})


def _require_patient(patient_id: int) -> dict:
    record = database.fetch_patient(patient_id)
    if not record:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Patient not found")
    return record


def _require_appointment(appointment_id: int) -> dict:
    record = database.fetch_appointment(appointment_id)
    if not record:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Appointment not found")
    return record


def _require_history(history_id: int) -> dict:
    record = database.fetch_history(history_id)
    if not record:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="History record not found")
    return record


def _without_nulls(data: Dict[str, Any], keys: frozenset[str]) -> Dict[str, Any]:
    """Drop explicit nulls for required fields so updates keep the stored value."""
    return {key: value for key, value in data.items() if value is not None or key not in keys}


def _parse_types_query(raw: Optional[List[str]]) -> List[HealthEventType]:
    """Absent means every category; a blank value means none."""
    if raw is None:
        return list(ALL_EVENT_TYPES)
    tags = [part.strip() for value in raw for part in value.split(",") if part.strip()]
    try:
        return coerce_event_types(tags)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc


def _patient_timeline(patient_id: int) -> List[HealthEvent]:
    _require_patient(patient_id)
    appointments = database.list_appointments_for_patient(patient_id)
    history = database.list_history_for_patient(patient_id)
    return build_timeline(appointments, history)


# ---------------------------------------------------------------------------
# Patients
# ---------------------------------------------------------------------------


@patients_router.get("/", response_model=List[Patient])
def list_patients(search: Optional[str] = Query(None, max_length=100)) -> List[Patient]:
    """Return active patients ordered by surname, optionally narrowed by a search term."""
    if search and search.strip():
        records = database.search_patients(search)
    else:
        records = database.fetch_patients()
    return [Patient(**record) for record in records]


@patients_router.get("/{patient_id}", response_model=Patient)
def get_patient(patient_id: int) -> Patient:
    return Patient(**_require_patient(patient_id))


@patients_router.post("/", response_model=OperationResult, status_code=status.HTTP_201_CREATED)
def create_patient(payload: PatientCreate) -> OperationResult:
    patient_payload = _coerce_patient_payload(payload.model_dump())
    record = database.create_patient(patient_payload.model_dump())
    result = OperationResult(success=True, id=record["id"], message="Patient created")
    database.log_api_request("/patients", "POST", patient_payload.model_dump(), result.model_dump())
    return result


@patients_router.put("/{patient_id}", response_model=OperationResult)
def update_patient(patient_id: int, payload: PatientUpdate) -> OperationResult:
    existing = _require_patient(patient_id)
    incoming = payload.model_dump(exclude_unset=True)
    patient_payload = _coerce_patient_payload({**existing, **incoming})
    updated = database.update_patient(patient_id, patient_payload.model_dump())
    if not updated:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Patient not found")
    result = OperationResult(success=True, id=patient_id, message="Patient updated")
    database.log_api_request(f"/patients/{patient_id}", "PUT", incoming, result.model_dump())
    return result


@patients_router.delete("/{patient_id}", status_code=status.HTTP_200_OK)
def delete_patient(
    patient_id: int,
    _: dict = Depends(require_admin_user),
) -> JSONResponse:
    """Soft delete the patient record (admin only)."""
    _require_patient(patient_id)
    if not database.delete_patient(patient_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Patient not found")
    response_payload = {"detail": "Deleted", "id": patient_id}
    database.log_api_request(f"/patients/{patient_id}", "DELETE", {"id": patient_id}, response_payload)
    logger.info("Soft deleted patient %s", patient_id)
    return JSONResponse(response_payload)


@patients_router.post("/{patient_id}/recover", response_model=Patient)
def recover_patient(patient_id: int, _: dict = Depends(require_admin_user)) -> Patient:
    """Restore a soft-deleted patient record (admin only)."""
    restored = database.restore_patient(patient_id)
    if not restored:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Patient not found")
    database.log_api_request(f"/patients/{patient_id}/recover", "POST", {"id": patient_id})
    return Patient(**restored)


# ---------------------------------------------------------------------------
# Appointments
# ---------------------------------------------------------------------------


@patients_router.get("/{patient_id}/appointments", response_model=List[Appointment])
def list_patient_appointments(patient_id: int) -> List[Appointment]:
    """Return the patient's appointments, newest first."""
    _require_patient(patient_id)
    return [Appointment(**record) for record in database.list_appointments_for_patient(patient_id)]


@patients_router.post(
    "/{patient_id}/appointments",
    response_model=OperationResult,
    status_code=status.HTTP_201_CREATED,
)
def create_appointment(patient_id: int, payload: AppointmentCreate) -> OperationResult:
    _require_patient(patient_id)
    record = database.create_appointment(patient_id, payload.model_dump())
    result = OperationResult(success=True, id=record["id"], message="Appointment created")
    database.log_api_request(
        f"/patients/{patient_id}/appointments", "POST", payload.model_dump(mode="json"), result.model_dump()
    )
    return result


@appointments_router.get("/", response_model=List[Appointment])
def list_appointments() -> List[Appointment]:
    """Return every appointment of an active patient, oldest first."""
    return [Appointment(**record) for record in database.fetch_appointments()]


@appointments_router.get("/today", response_model=List[Appointment])
def list_todays_appointments() -> List[Appointment]:
    start, end = clinic_day_bounds()
    return [Appointment(**record) for record in database.fetch_appointments(start=start, end=end)]


@appointments_router.get("/upcoming", response_model=List[Appointment])
def list_upcoming_appointments() -> List[Appointment]:
    """Return appointments from now on, skipping cancelled ones."""
    records = database.fetch_appointments(start=datetime.now(timezone.utc), exclude_statuses=("cancelled",))
    return [Appointment(**record) for record in records]


@appointments_router.get("/{appointment_id}", response_model=Appointment)
def get_appointment(appointment_id: int) -> Appointment:
    return Appointment(**_require_appointment(appointment_id))


@appointments_router.put("/{appointment_id}", response_model=OperationResult)
def update_appointment(appointment_id: int, payload: AppointmentUpdate) -> OperationResult:
    existing = _require_appointment(appointment_id)
    incoming = _without_nulls(payload.model_dump(exclude_unset=True), frozenset({"appointment_date", "status"}))
    merged = _validate_or_422(AppointmentCreate, {**existing, **incoming})
    updated = database.update_appointment(appointment_id, merged.model_dump())
    if not updated:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Appointment not found")
    result = OperationResult(success=True, id=appointment_id, message="Appointment updated")
    database.log_api_request(
        f"/appointments/{appointment_id}", "PUT", payload.model_dump(mode="json", exclude_unset=True), result.model_dump()
    )
    return result


@appointments_router.delete("/{appointment_id}", response_model=OperationResult)
def delete_appointment(appointment_id: int) -> OperationResult:
    _require_appointment(appointment_id)
    if not database.delete_appointment(appointment_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Appointment not found")
    result = OperationResult(success=True, id=appointment_id, message="Appointment deleted")
    database.log_api_request(f"/appointments/{appointment_id}", "DELETE", {"id": appointment_id}, result.model_dump())
    return result


# ---------------------------------------------------------------------------
# Medical history
# ---------------------------------------------------------------------------


@patients_router.get("/{patient_id}/history", response_model=List[PatientHistoryRecord])
def list_patient_history(patient_id: int) -> List[PatientHistoryRecord]:
    """Return the patient's history records with embedded collections decoded."""
    _require_patient(patient_id)
    return [PatientHistoryRecord.model_validate(record) for record in database.list_history_for_patient(patient_id)]


@patients_router.post(
    "/{patient_id}/history",
    response_model=OperationResult,
    status_code=status.HTTP_201_CREATED,
)
def create_history(patient_id: int, payload: PatientHistoryCreate) -> OperationResult:
    _require_patient(patient_id)
    record = database.create_history(patient_id, payload.model_dump())
    result = OperationResult(success=True, id=record["id"], message="History record created")
    database.log_api_request(
        f"/patients/{patient_id}/history", "POST", payload.model_dump(mode="json"), result.model_dump()
    )
    return result


@history_router.get("/{history_id}", response_model=PatientHistoryRecord)
def get_history(history_id: int) -> PatientHistoryRecord:
    return PatientHistoryRecord.model_validate(_require_history(history_id))


@history_router.put("/{history_id}", response_model=OperationResult)
def update_history(history_id: int, payload: PatientHistoryUpdate) -> OperationResult:
    existing = _require_history(history_id)
    incoming = _without_nulls(payload.model_dump(exclude_unset=True), frozenset({"visit_date"}))
    merged = _validate_or_422(PatientHistoryCreate, {**existing, **incoming})
    updated = database.update_history(history_id, merged.model_dump())
    if not updated:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="History record not found")
    result = OperationResult(success=True, id=history_id, message="History record updated")
    database.log_api_request(
        f"/history/{history_id}", "PUT", payload.model_dump(mode="json", exclude_unset=True), result.model_dump()
    )
    return result


@history_router.delete("/{history_id}", response_model=OperationResult)
def delete_history(history_id: int) -> OperationResult:
    _require_history(history_id)
    if not database.delete_history(history_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="History record not found")
    result = OperationResult(success=True, id=history_id, message="History record deleted")
    database.log_api_request(f"/history/{history_id}", "DELETE", {"id": history_id}, result.model_dump())
    return result


# ---------------------------------------------------------------------------
# Timeline
# ---------------------------------------------------------------------------


@patients_router.get("/{patient_id}/timeline", response_model=TimelineResponse)
def get_patient_timeline(
    patient_id: int,
    types: Optional[List[str]] = Query(None, description="Comma separated event categories to include"),
) -> TimelineResponse:
    """Return the patient's health events, newest first, limited to the selected categories."""
    selected = _parse_types_query(types)
    events = _patient_timeline(patient_id)
    return TimelineResponse(
        patient_id=patient_id,
        types=selected,
        total=len(events),
        events=filter_by_type(events, selected),
    )


@patients_router.get("/{patient_id}/timeline/{event_type}/{event_id}", response_model=TimelineSelection)
def get_timeline_event(
    patient_id: int,
    event_type: HealthEventType,
    event_id: int,
    index: Optional[int] = Query(None, ge=0),
    types: Optional[List[str]] = Query(None),
) -> TimelineSelection:
    """Look up one event; an event that is missing or filtered out is not an error."""
    selected = _parse_types_query(types)
    events = filter_by_type(_patient_timeline(patient_id), selected)
    event = select_event(events, EventKey(event_type, event_id, index))
    if event is None:
        return TimelineSelection(success=False, message=NO_SELECTION_MESSAGE)
    return TimelineSelection(success=True, event=event)


# ---------------------------------------------------------------------------
# Preferences
# ---------------------------------------------------------------------------


@preferences_router.get("/theme", response_model=ThemeState)
def get_theme(
    current_user: dict = Depends(require_current_user),
    themes: ThemeContext = Depends(get_theme_context),
) -> ThemeState:
    return themes.state(themes.init(current_user["id"]))


@preferences_router.put("/theme", response_model=ThemeState)
def update_theme(
    payload: ThemePreference,
    current_user: dict = Depends(require_current_user),
    themes: ThemeContext = Depends(get_theme_context),
) -> ThemeState:
    try:
        theme = themes.persist(current_user["id"], payload.theme)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    return themes.state(theme)


# ---------------------------------------------------------------------------
# Dashboard and audit log
# ---------------------------------------------------------------------------


@dashboard_router.get("/stats", response_model=DashboardStats)
def dashboard_stats() -> DashboardStats:
    """Summarise the patient list and the current clinic day."""
    start, end = clinic_day_bounds()
    return DashboardStats(
        total_patients=database.count_patients(),
        today_appointments=len(database.fetch_appointments(start=start, end=end)),
        new_patients=database.count_patients_created_since(datetime.now(timezone.utc) - timedelta(days=30)),
    )


@audit_router.get("/", response_model=List[dict])
def list_api_requests(
    limit: int = Query(100, ge=1, le=500),
    _: dict = Depends(require_admin_user),
) -> List[dict]:
    """Return recent API requests (admin only)."""
    return database.fetch_api_requests(limit)


# ---------------------------------------------------------------------------
# Config and auth
# ---------------------------------------------------------------------------


def _request_origin(request: Request) -> str:
    return str(request.base_url).rstrip("/")


def _resolve_backend_url(request: Request) -> str:
    return get_settings().backend_url or _request_origin(request)


def _resolve_frontend_url(request: Request) -> str:
    settings = get_settings()
    return settings.frontend_url or settings.backend_url or _request_origin(request)


@config_router.get("/app-config", response_class=JSONResponse)
def app_config(request: Request) -> dict[str, str]:
    """Expose backend/frontend URLs, build metadata and theme defaults for the UI."""
    settings = get_settings()
    return {
        "backendUrl": _resolve_backend_url(request),
        "frontendUrl": _resolve_frontend_url(request),
        "version": get_app_version(),
        "defaultTheme": settings.default_theme,
        "themeStorageKey": settings.theme_storage_key,
    }


@auth_router.post("/login", response_model=User)
def login(payload: LoginRequest, response: Response) -> User:
    record = authenticate(payload.username, payload.password)
    if not record:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid credentials")
    set_login_cookie(response, record["id"])
    return User(**sanitize_user(record))


@auth_router.post("/logout")
def logout(response: Response, _: dict = Depends(require_current_user)) -> dict[str, str]:
    clear_login_cookie(response)
    return {"detail": "Logged out"}


@auth_router.get("/me", response_model=User)
def current_user_route(current_user: dict = Depends(require_current_user)) -> User:
    return User(**sanitize_user(current_user))
