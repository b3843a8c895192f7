"""Double-booking detection for variable-duration appointments."""

from collections.abc import Iterable
from datetime import date
from typing import Any, NamedTuple

from pydantic import BaseModel, field_validator

from clinic_engine.core import config
from clinic_engine.models.appointment import AppointmentStatus
from clinic_engine.scheduling.availability import MINUTES_PER_DAY, parse_clock


def normalize_start_minute(value) -> int:
    """Accept a minute of the day or an 'HH:MM' string."""
    if isinstance(value, str):
        return parse_clock(value)
    if isinstance(value, bool) or not isinstance(value, int) or not 0 <= value < MINUTES_PER_DAY:
        raise ValueError('Start time must be a minute of the day.')
    return value


def check_duration_minutes(value: int) -> int:
    granularity = config.SLOT_GRANULARITY_MINUTES
    if value <= 0 or value % granularity != 0:
        raise ValueError(f'Duration must be a positive multiple of {granularity} minutes.')
    if value > config.MAX_APPOINTMENT_DURATION_MINUTES:
        raise ValueError(f'Duration cannot exceed {config.MAX_APPOINTMENT_DURATION_MINUTES} minutes.')
    return value


class BookingCandidate(BaseModel):
    clinician_id: str
    date: date
    start_minute: int
    duration_minutes: int = config.DEFAULT_APPOINTMENT_DURATION_MINUTES

    @field_validator('clinician_id')
    @classmethod
    def validate_clinician_id(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError('Clinician is required.')
        return normalized

    @field_validator('start_minute', mode='before')
    @classmethod
    def validate_start_minute(cls, value):
        return normalize_start_minute(value)

    @field_validator('duration_minutes')
    @classmethod
    def validate_duration_minutes(cls, value: int) -> int:
        return check_duration_minutes(value)


class ConflictCheck(NamedTuple):
    has_conflict: bool
    conflicting_appointment: Any | None
    conflicting_appointments: list


def spans_overlap(start_one: int, duration_one: int, start_two: int, duration_two: int) -> bool:
    return start_one < start_two + duration_two and start_two < start_one + duration_one


def has_conflict(
    existing_appointments: Iterable,
    candidate: BookingCandidate,
    exclude_appointment_id: int | None = None,
) -> ConflictCheck:
    """Report every non-cancelled booking the candidate overlaps. Never rejects.

    Appointments on neighbouring dates are compared on one timeline, so a late
    booking that runs past midnight conflicts with an early one the next day.
    """
    conflicting = [
        appointment
        for appointment in existing_appointments
        if appointment.status != AppointmentStatus.CANCELLED.value
        and appointment.clinician_id == candidate.clinician_id
        and abs((appointment.date - candidate.date).days) <= 1
        and (exclude_appointment_id is None or appointment.id != exclude_appointment_id)
        and spans_overlap(
            candidate.start_minute,
            candidate.duration_minutes,
            appointment.start_minute + (appointment.date - candidate.date).days * MINUTES_PER_DAY,
            appointment.duration_minutes,
        )
    ]
    conflicting.sort(key=lambda appointment: (appointment.date, appointment.start_minute))

    return ConflictCheck(
        has_conflict=bool(conflicting),
        conflicting_appointment=conflicting[0] if conflicting else None,
        conflicting_appointments=conflicting,
    )
