"""Pydantic models for MediTrack patients, appointments, history records and timeline events."""
from __future__ import annotations

import json
import logging
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, NamedTuple, Optional, Union

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    RootModel,
    ValidationError,
    ValidationInfo,
    computed_field,
    field_validator,
    model_validator,
)

logger = logging.getLogger(__name__)

Theme = Literal["light", "dark"]


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Coerce ISO strings, dates and datetimes into an aware UTC datetime.

    Naive values are read as UTC. Returns ``None`` for blank or unparseable input.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    else:
        text = str(value).strip()
        if not text:
            return None
        if text[-1] in ("Z", "z"):
            text = f"{text[:-1]}+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            date_part = text.split("T", 1)[0].split(" ", 1)[0]
            try:
                parsed = datetime.strptime(date_part, "%Y-%m-%d")
            except ValueError:
                return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _required_timestamp(value: Any, field_name: str) -> datetime:
    parsed = parse_timestamp(value)
    if parsed is None:
        raise ValueError(f"{field_name} must be a valid date")
    return parsed


class HealthEventType(str, Enum):
    APPOINTMENT = "appointment"
    HISTORY = "history"
    MEDICATION = "medication"
    VITALS = "vitals"
    LABS = "labs"
    DOCUMENT = "document"


ALL_EVENT_TYPES: tuple[HealthEventType, ...] = tuple(HealthEventType)


class EventKey(NamedTuple):
    """Compound identity of a timeline event; ``id`` alone repeats across types."""

    type: HealthEventType
    id: int
    index: Optional[int] = None


# ---------------------------------------------------------------------------
# Embedded history payloads
# ---------------------------------------------------------------------------


class VitalsPayload(BaseModel):
    """Vital signs captured during a visit. Unknown readings are kept as extras."""

    model_config = ConfigDict(extra="allow", populate_by_name=True, coerce_numbers_to_str=True)

    blood_pressure: Optional[str] = Field(
        None,
        description="Reading in 'systolic/diastolic' form, e.g. 120/80",
        validation_alias=AliasChoices("blood_pressure", "bloodPressure"),
    )
    heart_rate: Optional[Union[int, float, str]] = Field(
        None, validation_alias=AliasChoices("heart_rate", "heartRate")
    )
    temperature: Optional[Union[int, float, str]] = None
    respiratory_rate: Optional[Union[int, float, str]] = Field(
        None, validation_alias=AliasChoices("respiratory_rate", "respiratoryRate")
    )
    oxygen_saturation: Optional[Union[int, float, str]] = Field(
        None, validation_alias=AliasChoices("oxygen_saturation", "oxygenSaturation")
    )
    weight: Optional[Union[int, float, str]] = None
    height: Optional[Union[int, float, str]] = None


class MedicationEntry(BaseModel):
    """A single prescribed medication."""

    model_config = ConfigDict(extra="allow", populate_by_name=True, coerce_numbers_to_str=True)

    name: Optional[str] = None
    dosage: Optional[str] = None
    frequency: Optional[str] = None
    instructions: Optional[str] = None
    start_date: Optional[datetime] = Field(None, validation_alias=AliasChoices("start_date", "startDate"))
    end_date: Optional[datetime] = Field(None, validation_alias=AliasChoices("end_date", "endDate"))

    @model_validator(mode="before")
    @classmethod
    def coerce_entry(cls, value: Any) -> Any:
        if isinstance(value, str):
            return {"name": value.strip() or None}
        if isinstance(value, dict) or isinstance(value, cls):
            return value
        return {}

    @field_validator("start_date", "end_date", mode="before")
    @classmethod
    def _lenient_dates(cls, value: Any) -> Optional[datetime]:
        return parse_timestamp(value)


class LabResultsPayload(RootModel[Union[Dict[str, Any], List[Any]]]):
    """Lab results keyed by test name, or a list of result entries."""

    def result_values(self) -> List[Any]:
        if isinstance(self.root, dict):
            return list(self.root.values())
        flattened: List[Any] = []
        for item in self.root:
            if isinstance(item, dict):
                flattened.extend(item.values())
            else:
                flattened.append(item)
        return flattened

    def is_abnormal(self) -> bool:
        return any(isinstance(value, str) and "abnormal" in value.lower() for value in self.result_values())

    def as_metadata(self) -> Dict[str, Any]:
        if isinstance(self.root, dict):
            return dict(self.root)
        return {"results": list(self.root)}


class DocumentEntry(BaseModel):
    """A document attached to a visit (scan, referral letter, report...)."""

    model_config = ConfigDict(extra="allow", populate_by_name=True, coerce_numbers_to_str=True)

    title: Optional[str] = None
    description: Optional[str] = None
    document_type: Optional[str] = Field(None, validation_alias=AliasChoices("document_type", "type"))
    url: Optional[str] = None
    uploaded_by: Optional[str] = Field(None, validation_alias=AliasChoices("uploaded_by", "uploadedBy"))
    date: Optional[datetime] = None

    @model_validator(mode="before")
    @classmethod
    def coerce_entry(cls, value: Any) -> Any:
        if isinstance(value, str):
            return {"title": value.strip() or None}
        if isinstance(value, dict) or isinstance(value, cls):
            return value
        return {}

    @field_validator("date", mode="before")
    @classmethod
    def _lenient_date(cls, value: Any) -> Optional[datetime]:
        return parse_timestamp(value)


def _decode_embedded(value: Any) -> Any:
    """Decode JSON text stored by legacy clients; structures pass through."""
    if value is None:
        return None
    if isinstance(value, (bytes, bytearray)):
        value = value.decode("utf-8")
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        return json.loads(text)
    return value


def _log_skipped(field_name: str, info: ValidationInfo, exc: Exception) -> None:
    record_id = info.data.get("id") if info.data else None
    logger.warning("Skipping malformed %s payload on history record %s: %s", field_name, record_id, exc)


# ---------------------------------------------------------------------------
# Patients
# ---------------------------------------------------------------------------


class PatientBase(BaseModel):
    """Patient personal details."""

    first_name: str = Field(..., description="Patient first name")
    last_name: str = Field(..., description="Patient last name")
    email: Optional[str] = Field(None, description="Preferred contact email")
    phone: str = Field("", description="Preferred phone number")
    date_of_birth: Optional[str] = Field(None, description="ISO date of birth")
    gender: Optional[str] = Field(None, description="Self-reported gender")
    address: Optional[str] = Field(None, description="Postal address")
    status: str = Field("active", description="Patient workflow status")


class PatientCreate(PatientBase):
    pass


class PatientUpdate(BaseModel):
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    date_of_birth: Optional[str] = None
    gender: Optional[str] = None
    address: Optional[str] = None
    status: Optional[str] = None


class Patient(PatientBase):
    id: int = Field(..., description="Database identifier for the patient")
    deleted: bool = Field(False, description="Whether the record is hidden (soft deleted)")
    created_at: str = Field(..., description="Timestamp when the patient was created")
    updated_at: str = Field(..., description="Timestamp when the patient was last updated")

    model_config = ConfigDict(from_attributes=True)


# ---------------------------------------------------------------------------
# Appointments
# ---------------------------------------------------------------------------


class AppointmentBase(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    appointment_date: datetime = Field(
        ...,
        description="Scheduled start of the appointment",
        validation_alias=AliasChoices("appointment_date", "appointmentDate"),
    )
    status: str = Field("scheduled", description="Free-text workflow status")
    reason: Optional[str] = Field(
        None,
        description="Appointment type or reason for the visit",
        validation_alias=AliasChoices("reason", "type"),
    )
    doctor_name: Optional[str] = Field(None, validation_alias=AliasChoices("doctor_name", "doctorName"))
    location: Optional[str] = None
    notes: Optional[str] = None

    @field_validator("appointment_date", mode="before")
    @classmethod
    def _parse_appointment_date(cls, value: Any) -> datetime:
        return _required_timestamp(value, "appointment_date")


class AppointmentCreate(AppointmentBase):
    pass


class AppointmentUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    appointment_date: Optional[datetime] = Field(
        None, validation_alias=AliasChoices("appointment_date", "appointmentDate")
    )
    status: Optional[str] = None
    reason: Optional[str] = Field(None, validation_alias=AliasChoices("reason", "type"))
    doctor_name: Optional[str] = Field(None, validation_alias=AliasChoices("doctor_name", "doctorName"))
    location: Optional[str] = None
    notes: Optional[str] = None

    @field_validator("appointment_date", mode="before")
    @classmethod
    def _parse_appointment_date(cls, value: Any) -> Optional[datetime]:
        if value is None:
            return None
        return _required_timestamp(value, "appointment_date")


class Appointment(AppointmentBase):
    id: int = Field(..., description="Database identifier for the appointment")
    patient_id: int = Field(..., validation_alias=AliasChoices("patient_id", "patientId"))
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


# ---------------------------------------------------------------------------
# Medical history
# ---------------------------------------------------------------------------


class HistoryFields(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    visit_date: datetime = Field(..., validation_alias=AliasChoices("visit_date", "visitDate"))
    visit_reason: Optional[str] = Field(None, validation_alias=AliasChoices("visit_reason", "visitReason"))
    diagnosis: Optional[str] = None
    treatment: Optional[str] = None
    prescriptions: Optional[str] = None
    notes: Optional[str] = None
    recorded_by: Optional[str] = Field(None, validation_alias=AliasChoices("recorded_by", "recordedBy"))

    @field_validator("visit_date", mode="before")
    @classmethod
    def _parse_visit_date(cls, value: Any) -> datetime:
        return _required_timestamp(value, "visit_date")


class PatientHistoryCreate(HistoryFields):
    """Incoming history record; embedded collections may be structures or JSON text."""

    vitals: Optional[Union[Dict[str, Any], str]] = None
    medications: Optional[Union[List[Any], str]] = None
    lab_results: Optional[Union[Dict[str, Any], List[Any], str]] = Field(
        None, validation_alias=AliasChoices("lab_results", "labResults")
    )
    documents: Optional[Union[List[Any], str]] = None


class PatientHistoryUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    visit_date: Optional[datetime] = Field(None, validation_alias=AliasChoices("visit_date", "visitDate"))
    visit_reason: Optional[str] = Field(None, validation_alias=AliasChoices("visit_reason", "visitReason"))
    diagnosis: Optional[str] = None
    treatment: Optional[str] = None
    prescriptions: Optional[str] = None
    notes: Optional[str] = None
    recorded_by: Optional[str] = Field(None, validation_alias=AliasChoices("recorded_by", "recordedBy"))
    vitals: Optional[Union[Dict[str, Any], str]] = None
    medications: Optional[Union[List[Any], str]] = None
    lab_results: Optional[Union[Dict[str, Any], List[Any], str]] = Field(
        None, validation_alias=AliasChoices("lab_results", "labResults")
    )
    documents: Optional[Union[List[Any], str]] = None

    @field_validator("visit_date", mode="before")
    @classmethod
    def _parse_visit_date(cls, value: Any) -> Optional[datetime]:
        if value is None:
            return None
        return _required_timestamp(value, "visit_date")


class PatientHistoryRecord(HistoryFields):
    """A stored history record with its embedded collections decoded once.

    A payload that cannot be decoded is logged and left as ``None`` so the
    rest of the record (and its other payloads) stays usable.
    """

    id: int = Field(..., description="Database identifier for the history record")
    patient_id: Optional[int] = Field(None, validation_alias=AliasChoices("patient_id", "patientId"))
    vitals: Optional[VitalsPayload] = None
    medications: Optional[List[MedicationEntry]] = None
    lab_results: Optional[LabResultsPayload] = Field(
        None, validation_alias=AliasChoices("lab_results", "labResults")
    )
    documents: Optional[List[DocumentEntry]] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @field_validator("vitals", mode="before")
    @classmethod
    def _parse_vitals(cls, value: Any, info: ValidationInfo) -> Optional[VitalsPayload]:
        try:
            payload = _decode_embedded(value)
            if payload is None or isinstance(payload, VitalsPayload):
                return payload
            if not isinstance(payload, dict):
                raise ValueError("expected an object")
            return VitalsPayload.model_validate(payload)
        except (ValidationError, ValueError, TypeError) as exc:
            _log_skipped("vitals", info, exc)
            return None

    @field_validator("medications", mode="before")
    @classmethod
    def _parse_medications(cls, value: Any, info: ValidationInfo) -> Optional[List[MedicationEntry]]:
        try:
            payload = _decode_embedded(value)
            if payload is None:
                return None
            if not isinstance(payload, list):
                raise ValueError("expected an array")
            return [MedicationEntry.model_validate(entry) for entry in payload]
        except (ValidationError, ValueError, TypeError) as exc:
            _log_skipped("medications", info, exc)
            return None

    @field_validator("lab_results", mode="before")
    @classmethod
    def _parse_lab_results(cls, value: Any, info: ValidationInfo) -> Optional[LabResultsPayload]:
        try:
            payload = _decode_embedded(value)
            if payload is None or isinstance(payload, LabResultsPayload):
                return payload
            if not isinstance(payload, (dict, list)):
                # a bare scalar is a single result
                payload = [payload]
            return LabResultsPayload.model_validate(payload)
        except (ValidationError, ValueError, TypeError) as exc:
            _log_skipped("lab_results", info, exc)
            return None

    @field_validator("documents", mode="before")
    @classmethod
    def _parse_documents(cls, value: Any, info: ValidationInfo) -> Optional[List[DocumentEntry]]:
        try:
            payload = _decode_embedded(value)
            if payload is None:
                return None
            if not isinstance(payload, list):
                raise ValueError("expected an array")
            return [DocumentEntry.model_validate(entry) for entry in payload]
        except (ValidationError, ValueError, TypeError) as exc:
            _log_skipped("documents", info, exc)
            return None


# ---------------------------------------------------------------------------
# Timeline
# ---------------------------------------------------------------------------


class HealthEvent(BaseModel):
    """Uniform representation of anything that appears on a patient's timeline."""

    id: int = Field(..., description="Source record id (the parent history id for sub-records)")
    index: Optional[int] = Field(None, description="Position inside the parent's medication/document list")
    date: datetime = Field(..., description="When the event happened; the timeline sort key")
    title: str
    description: Optional[str] = None
    type: HealthEventType
    status: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @property
    def key(self) -> EventKey:
        return EventKey(self.type, self.id, self.index)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def ref(self) -> str:
        """Stable string key for list rendering, e.g. ``medication-12-0``."""
        parts = [self.type.value, str(self.id)]
        if self.index is not None:
            parts.append(str(self.index))
        return "-".join(parts)


class TimelineResponse(BaseModel):
    patient_id: int
    types: List[HealthEventType] = Field(default_factory=list, description="Categories included in the result")
    total: int = Field(..., ge=0, description="Number of events before filtering")
    events: List[HealthEvent] = Field(default_factory=list)


class TimelineSelection(BaseModel):
    success: bool = Field(..., description="Whether the requested event is on the timeline")
    message: Optional[str] = Field(None, description="Placeholder text when nothing is selected")
    event: Optional[HealthEvent] = None


# ---------------------------------------------------------------------------
# Auth, preferences and generic results
# ---------------------------------------------------------------------------


class ThemePreference(BaseModel):
    theme: Theme


class ThemeState(BaseModel):
    theme: Theme
    storage_key: str = Field(..., description="Key the UI mirrors the preference under")
    attributes: Dict[str, str] = Field(default_factory=dict, description="Attributes applied to the document root")


class LoginRequest(BaseModel):
    username: str
    password: str


class User(BaseModel):
    id: int
    username: str
    is_admin: bool


class OperationResult(BaseModel):
    success: bool = Field(..., description="Whether the operation succeeded")
    id: int = Field(..., description="Identifier of the affected record")
    message: Optional[str] = Field(None, description="Short human readable outcome")


class DashboardStats(BaseModel):
    total_patients: int = Field(..., description="Active patients on record")
    today_appointments: int = Field(..., description="Appointments on the current clinic day")
    new_patients: int = Field(..., description="Patients added in the last 30 days")
