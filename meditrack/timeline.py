"""Health-event timeline: normalize appointments and history records into one ordered list.

Every function here is a pure transformation over in-memory collections; the
timeline is rebuilt from scratch whenever either input changes.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Set, Tuple, Union

from pydantic import ValidationError

from .models import (
    ALL_EVENT_TYPES,
    Appointment,
    EventKey,
    HealthEvent,
    HealthEventType,
    PatientHistoryRecord,
)

logger = logging.getLogger(__name__)

NOT_SPECIFIED = "Not specified"
DEFAULT_LOCATION = "Main Office"
NO_NOTES = "No additional notes"

SYSTOLIC_LIMIT = 140
DIASTOLIC_LIMIT = 90

STATUS_TONES: Dict[str, str] = {
    "completed": "success",
    "normal": "success",
    "active": "info",
    "scheduled": "info",
    "rescheduled": "warning",
    "abnormal": "danger",
    "cancelled": "danger",
    "critical": "danger",
}

_LEADING_INT = re.compile(r"^\s*([+-]?\d+)")

AppointmentInput = Union[Appointment, Mapping[str, Any]]
HistoryInput = Union[PatientHistoryRecord, Mapping[str, Any]]
SelectionKey = Union[EventKey, Tuple[Any, ...]]


def _leading_int(text: str) -> Optional[int]:
    match = _LEADING_INT.match(text)
    return int(match.group(1)) if match else None


def blood_pressure_status(reading: Optional[str]) -> str:
    """Return ``abnormal`` when systolic > 140 or diastolic > 90, else ``normal``.

    Only the leading digits of each side of the ``systolic/diastolic`` reading
    are considered; a side that carries no number never flags the reading.
    """
    if not reading:
        return "normal"
    systolic_text, _, diastolic_text = str(reading).partition("/")
    systolic = _leading_int(systolic_text)
    diastolic = _leading_int(diastolic_text)
    if systolic is not None and systolic > SYSTOLIC_LIMIT:
        return "abnormal"
    if diastolic is not None and diastolic > DIASTOLIC_LIMIT:
        return "abnormal"
    return "normal"


def status_tone(status: Optional[str]) -> str:
    """Map a free-text status onto the colour tone the UI renders for it."""
    return STATUS_TONES.get((status or "").strip().lower(), "neutral")


def coerce_event_types(selected: Optional[Iterable[Any]]) -> List[HealthEventType]:
    """Validate a selection of category tags, keeping order and dropping repeats."""
    if selected is None:
        return []
    if isinstance(selected, (str, HealthEventType)):
        selected = [selected]
    chosen: List[HealthEventType] = []
    for value in selected:
        try:
            event_type = HealthEventType(value)
        except ValueError as exc:
            raise ValueError(f"Unknown timeline event type: {value!r}") from exc
        if event_type not in chosen:
            chosen.append(event_type)
    return chosen


def _as_appointment(item: AppointmentInput) -> Appointment:
    if isinstance(item, Appointment):
        return item
    return Appointment.model_validate(item)


def _as_history(item: HistoryInput) -> PatientHistoryRecord:
    if isinstance(item, PatientHistoryRecord):
        return item
    return PatientHistoryRecord.model_validate(item)


def appointment_event(appointment: Appointment) -> HealthEvent:
    return HealthEvent(
        id=appointment.id,
        date=appointment.appointment_date,
        title=appointment.reason or "Medical Appointment",
        description=appointment.notes or NO_NOTES,
        type=HealthEventType.APPOINTMENT,
        status=appointment.status,
        metadata={
            "doctor": appointment.doctor_name or NOT_SPECIFIED,
            "location": appointment.location or DEFAULT_LOCATION,
        },
    )


def history_events(record: PatientHistoryRecord) -> List[HealthEvent]:
    """Expand a history record into its visit event plus one event per embedded payload."""
    recorded_by = record.recorded_by or NOT_SPECIFIED
    events = [
        HealthEvent(
            id=record.id,
            date=record.visit_date,
            title=record.visit_reason or "Medical Visit",
            description=record.notes or NO_NOTES,
            type=HealthEventType.HISTORY,
            metadata={
                "recorded_by": recorded_by,
                "diagnosis": record.diagnosis or NOT_SPECIFIED,
                "treatment": record.treatment or NOT_SPECIFIED,
            },
        )
    ]

    if record.vitals is not None:
        vitals = record.vitals
        events.append(
            HealthEvent(
                id=record.id,
                date=record.visit_date,
                title="Vital Signs Record",
                description="Patient vital signs recorded during visit",
                type=HealthEventType.VITALS,
                status=blood_pressure_status(vitals.blood_pressure),
                metadata={**vitals.model_dump(exclude_none=True), "recorded_by": recorded_by},
            )
        )

    for index, medication in enumerate(record.medications or []):
        events.append(
            HealthEvent(
                id=record.id,
                index=index,
                date=record.visit_date,
                title=medication.name or "Medication Prescribed",
                description=medication.instructions or "No specific instructions",
                type=HealthEventType.MEDICATION,
                status="active",
                metadata={
                    "dosage": medication.dosage or NOT_SPECIFIED,
                    "frequency": medication.frequency or NOT_SPECIFIED,
                    "start_date": medication.start_date or record.visit_date,
                    "end_date": medication.end_date,
                    "prescribed_by": recorded_by,
                },
            )
        )

    if record.lab_results is not None:
        labs = record.lab_results
        events.append(
            HealthEvent(
                id=record.id,
                date=record.visit_date,
                title="Laboratory Results",
                description="Results from laboratory tests",
                type=HealthEventType.LABS,
                status="abnormal" if labs.is_abnormal() else "normal",
                metadata={**labs.as_metadata(), "recorded_by": recorded_by},
            )
        )

    for index, document in enumerate(record.documents or []):
        events.append(
            HealthEvent(
                id=record.id,
                index=index,
                date=document.date or record.visit_date,
                title=document.title or "Medical Document",
                description=document.description or "No description provided",
                type=HealthEventType.DOCUMENT,
                metadata={
                    "document_type": document.document_type or "Unknown",
                    "url": document.url,
                    "uploaded_by": document.uploaded_by or record.recorded_by or NOT_SPECIFIED,
                },
            )
        )

    return events


def build_timeline(
    appointments: Optional[Iterable[AppointmentInput]] = None,
    history_records: Optional[Iterable[HistoryInput]] = None,
) -> List[HealthEvent]:
    """Combine both collections into events ordered newest first.

    Either collection may be missing while its fetch is still in flight. The
    sort is stable, so events sharing a date keep their emission order.
    """
    events: List[HealthEvent] = []
    for item in appointments or []:
        try:
            appointment = _as_appointment(item)
        except ValidationError as exc:
            logger.warning("Skipping appointment that failed validation: %s", exc)
            continue
        events.append(appointment_event(appointment))
    for item in history_records or []:
        try:
            record = _as_history(item)
        except ValidationError as exc:
            logger.warning("Skipping history record that failed validation: %s", exc)
            continue
        events.extend(history_events(record))
    return sorted(events, key=lambda event: event.date, reverse=True)


def filter_by_type(events: Sequence[HealthEvent], selected_types: Iterable[Any]) -> List[HealthEvent]:
    """Keep only events whose category is selected; an empty selection keeps nothing."""
    allowed = set(coerce_event_types(selected_types))
    return [event for event in events if event.type in allowed]


def _normalize_key(key: SelectionKey) -> EventKey:
    if isinstance(key, EventKey):
        return key
    if len(key) not in (2, 3):
        raise ValueError("Event key must be (type, id) or (type, id, index)")
    event_type = HealthEventType(key[0])
    index = key[2] if len(key) == 3 else None
    return EventKey(event_type, int(key[1]), None if index is None else int(index))


def select_event(events: Sequence[HealthEvent], key: SelectionKey) -> Optional[HealthEvent]:
    """Return the event matching the compound key, or ``None`` when it is not listed.

    A key naming an unknown category or a non-numeric id matches nothing.
    """
    try:
        wanted = _normalize_key(key)
    except (TypeError, ValueError):
        logger.debug("Ignoring unusable timeline key %r", key)
        return None
    for event in events:
        if event.key == wanted:
            return event
    return None


@dataclass
class TimelineView:
    """Selection state for one patient's timeline.

    Holds the two latest input snapshots, the category filter and the selected
    event key. Events are recomputed whenever a snapshot is replaced.
    """

    selected_types: Set[HealthEventType] = field(default_factory=lambda: set(ALL_EVENT_TYPES))
    selected_key: Optional[EventKey] = None
    appointments: Optional[List[AppointmentInput]] = None
    history_records: Optional[List[HistoryInput]] = None
    events: List[HealthEvent] = field(default_factory=list)

    def update(
        self,
        *,
        appointments: Optional[Iterable[AppointmentInput]] = None,
        history: Optional[Iterable[HistoryInput]] = None,
    ) -> List[HealthEvent]:
        """Replace whichever snapshots were supplied and rebuild the timeline."""
        if appointments is not None:
            self.appointments = list(appointments)
        if history is not None:
            self.history_records = list(history)
        self.events = build_timeline(self.appointments, self.history_records)
        return self.events

    def set_types(self, selected: Iterable[Any]) -> None:
        self.selected_types = set(coerce_event_types(selected))

    def toggle_type(self, event_type: Any) -> None:
        chosen = HealthEventType(event_type)
        if chosen in self.selected_types:
            self.selected_types.discard(chosen)
        else:
            self.selected_types.add(chosen)

    def select(self, key: SelectionKey) -> Optional[HealthEvent]:
        try:
            self.selected_key = _normalize_key(key)
        except (TypeError, ValueError):
            self.selected_key = None
        return self.selected_event

    def clear_selection(self) -> None:
        self.selected_key = None

    @property
    def visible_events(self) -> List[HealthEvent]:
        return filter_by_type(self.events, self.selected_types)

    @property
    def selected_event(self) -> Optional[HealthEvent]:
        if self.selected_key is None:
            return None
        return select_event(self.visible_events, self.selected_key)
