from datetime import date
from decimal import Decimal

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, field_validator
from sqlalchemy.orm import Session

from clinic_engine.core import config
from clinic_engine.core.errors import SchedulingError
from clinic_engine.database import get_db
from clinic_engine.models.appointment import Appointment
from clinic_engine.routes.http_errors import ensure_database_ready, serialize_conflict, to_http_exception
from clinic_engine.scheduling.availability import format_clock
from clinic_engine.scheduling.conflicts import BookingCandidate, check_duration_minutes, normalize_start_minute
from clinic_engine.scheduling.recurrence import RECURRENCE_STEPS
from clinic_engine.services.orchestrator import SchedulingOrchestrator

router = APIRouter(tags=['scheduling'])

MAX_RECURRING_OCCURRENCES = 52


class BookingRequest(BookingCandidate):
    patient_id: int
    override_conflict: bool = False
    override_availability: bool = False


class RecurringBookingRequest(BookingRequest):
    frequency: str
    count: int

    @field_validator('frequency')
    @classmethod
    def validate_frequency(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in RECURRENCE_STEPS:
            raise ValueError(f'Frequency must be one of: {", ".join(sorted(RECURRENCE_STEPS))}.')
        return normalized

    @field_validator('count')
    @classmethod
    def validate_count(cls, value: int) -> int:
        if not 1 <= value <= MAX_RECURRING_OCCURRENCES:
            raise ValueError(f'Count must be between 1 and {MAX_RECURRING_OCCURRENCES}.')
        return value


class RescheduleRequest(BaseModel):
    date: date
    start_minute: int
    duration_minutes: int | None = None
    override_conflict: bool = False
    override_availability: bool = False

    @field_validator('start_minute', mode='before')
    @classmethod
    def validate_start_minute(cls, value):
        return normalize_start_minute(value)

    @field_validator('duration_minutes')
    @classmethod
    def validate_duration_minutes(cls, value: int | None) -> int | None:
        if value is None:
            return None
        return check_duration_minutes(value)


class AppointmentResponse(BaseModel):
    id: int
    patient_id: int
    clinician_id: str
    date: date
    start_minute: int
    start_time: str
    end_time: str
    duration_minutes: int
    status: str


class EligibilityResponse(BaseModel):
    eligible: bool
    reason: str | None = None
    detail: str | None = None
    cycle_state: str | None = None
    conflicts: list[dict] = []


class SessionUsageResponse(BaseModel):
    was_free: bool
    charge_amount: Decimal
    free_sessions_remaining: int
    pending_paid_sessions: int
    pending_charge_amount: Decimal
    replayed: bool


class CompletionResponse(BaseModel):
    appointment: AppointmentResponse
    session_usage: SessionUsageResponse | None = None


class SlotsResponse(BaseModel):
    clinician_id: str
    date: date
    granularity_minutes: int
    slots: list[str]


def serialize_appointment(appointment: Appointment) -> AppointmentResponse:
    return AppointmentResponse(
        id=appointment.id,
        patient_id=appointment.patient_id,
        clinician_id=appointment.clinician_id,
        date=appointment.date,
        start_minute=appointment.start_minute,
        start_time=format_clock(appointment.start_minute),
        end_time=format_clock(appointment.end_minute),
        duration_minutes=appointment.duration_minutes,
        status=appointment.status,
    )


@router.get('/slots', response_model=SlotsResponse)
def list_open_slots(
    clinician_id: str = Query(...),
    slot_date: date = Query(..., alias='date'),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        slots = SchedulingOrchestrator(db).get_slots(clinician_id.strip(), slot_date)
    except SchedulingError as exc:
        raise to_http_exception(exc) from exc

    return SlotsResponse(
        clinician_id=clinician_id.strip(),
        date=slot_date,
        granularity_minutes=config.SLOT_GRANULARITY_MINUTES,
        slots=[format_clock(slot_start) for slot_start in slots],
    )


@router.post('/eligibility', response_model=EligibilityResponse)
def check_eligibility(data: BookingRequest, db: Session = Depends(get_db)):
    ensure_database_ready()

    try:
        eligibility = SchedulingOrchestrator(db).check_booking_eligibility(
            data.patient_id,
            data,
            override_conflict=data.override_conflict,
            override_availability=data.override_availability,
        )
    except SchedulingError as exc:
        raise to_http_exception(exc) from exc

    return EligibilityResponse(
        eligible=eligibility.eligible,
        reason=eligibility.reason,
        detail=eligibility.detail,
        cycle_state=eligibility.cycle_state.value if eligibility.cycle_state else None,
        conflicts=[serialize_conflict(appointment) for appointment in eligibility.conflicting_appointments],
    )


@router.post('/appointments', response_model=AppointmentResponse, status_code=status.HTTP_201_CREATED)
def book_appointment(data: BookingRequest, db: Session = Depends(get_db)):
    ensure_database_ready()

    try:
        appointment = SchedulingOrchestrator(db).confirm_booking(
            data.patient_id,
            data,
            override_conflict=data.override_conflict,
            override_availability=data.override_availability,
        )
    except SchedulingError as exc:
        raise to_http_exception(exc) from exc

    return serialize_appointment(appointment)


@router.post(
    '/appointments/recurring',
    response_model=list[AppointmentResponse],
    status_code=status.HTTP_201_CREATED,
)
def book_recurring_appointments(data: RecurringBookingRequest, db: Session = Depends(get_db)):
    ensure_database_ready()

    try:
        appointments = SchedulingOrchestrator(db).confirm_recurring_booking(
            data.patient_id,
            data,
            data.frequency,
            data.count,
            override_conflict=data.override_conflict,
            override_availability=data.override_availability,
        )
    except SchedulingError as exc:
        raise to_http_exception(exc) from exc

    return [serialize_appointment(appointment) for appointment in appointments]


@router.post('/appointments/{appointment_id}/start', response_model=AppointmentResponse)
def start_appointment(appointment_id: int, db: Session = Depends(get_db)):
    ensure_database_ready()

    try:
        appointment = SchedulingOrchestrator(db).start_appointment(appointment_id)
    except SchedulingError as exc:
        raise to_http_exception(exc) from exc

    return serialize_appointment(appointment)


@router.post('/appointments/{appointment_id}/complete', response_model=CompletionResponse)
def complete_appointment(appointment_id: int, db: Session = Depends(get_db)):
    ensure_database_ready()

    try:
        result = SchedulingOrchestrator(db).complete_appointment(appointment_id)
    except SchedulingError as exc:
        raise to_http_exception(exc) from exc

    return CompletionResponse(
        appointment=serialize_appointment(result.appointment),
        session_usage=SessionUsageResponse(**result.session_usage._asdict()) if result.session_usage else None,
    )


@router.post('/appointments/{appointment_id}/cancel', response_model=AppointmentResponse)
def cancel_appointment(appointment_id: int, db: Session = Depends(get_db)):
    ensure_database_ready()

    try:
        appointment = SchedulingOrchestrator(db).cancel_appointment(appointment_id)
    except SchedulingError as exc:
        raise to_http_exception(exc) from exc

    return serialize_appointment(appointment)


@router.post('/appointments/{appointment_id}/reschedule', response_model=AppointmentResponse)
def reschedule_appointment(appointment_id: int, data: RescheduleRequest, db: Session = Depends(get_db)):
    ensure_database_ready()

    try:
        appointment = SchedulingOrchestrator(db).reschedule_appointment(
            appointment_id,
            data.date,
            data.start_minute,
            duration_minutes=data.duration_minutes,
            override_conflict=data.override_conflict,
            override_availability=data.override_availability,
        )
    except SchedulingError as exc:
        raise to_http_exception(exc) from exc

    return serialize_appointment(appointment)

