import os
from datetime import date
from itertools import permutations

import pytest
from pydantic import ValidationError

os.environ.setdefault('DATABASE_URL', 'sqlite:///./test.db')

from clinic_engine.models.appointment import Appointment  # noqa: E402
from clinic_engine.scheduling.conflicts import BookingCandidate, has_conflict, spans_overlap  # noqa: E402

DAY = date(2026, 3, 2)


def make_appointment(appointment_id, start_minute, duration=30, status='pending', clinician_id='dr-ade', day=DAY):
    return Appointment(
        id=appointment_id,
        patient_id=1,
        clinician_id=clinician_id,
        date=day,
        start_minute=start_minute,
        duration_minutes=duration,
        status=status,
    )


def make_candidate(start_minute, duration=30, clinician_id='dr-ade', day=DAY) -> BookingCandidate:
    return BookingCandidate(clinician_id=clinician_id, date=day, start_minute=start_minute, duration_minutes=duration)


def test_booking_candidate_accepts_clock_strings() -> None:
    candidate = BookingCandidate(clinician_id=' dr-ade ', date=DAY, start_minute='09:30')

    assert candidate.clinician_id == 'dr-ade'
    assert candidate.start_minute == 570
    assert candidate.duration_minutes == 30


@pytest.mark.parametrize(
    'overrides',
    [
        {'clinician_id': '   '},
        {'start_minute': 1440},
        {'start_minute': -30},
        {'start_minute': '25:00'},
        {'duration_minutes': 45},
        {'duration_minutes': 0},
        {'duration_minutes': 150},
    ],
)
def test_booking_candidate_rejects_invalid_values(overrides: dict) -> None:
    values = {'clinician_id': 'dr-ade', 'date': DAY, 'start_minute': 540, 'duration_minutes': 30}
    values.update(overrides)

    with pytest.raises(ValidationError):
        BookingCandidate(**values)


def test_exact_duplicate_start_is_a_conflict() -> None:
    existing = make_appointment(1, 540)

    result = has_conflict([existing], make_candidate(540))

    assert result.has_conflict is True
    assert result.conflicting_appointment is existing


def test_back_to_back_bookings_do_not_conflict() -> None:
    existing = [make_appointment(1, 540), make_appointment(2, 600)]

    assert has_conflict(existing, make_candidate(570)).has_conflict is False


def test_partial_overlap_with_longer_appointment() -> None:
    existing = [make_appointment(1, 540, duration=90)]

    assert has_conflict(existing, make_candidate(600)).has_conflict is True
    assert has_conflict(existing, make_candidate(630)).has_conflict is False


def test_cancelled_other_clinician_and_other_date_are_ignored() -> None:
    existing = [
        make_appointment(1, 540, status='cancelled'),
        make_appointment(2, 540, clinician_id='dr-bello'),
        make_appointment(3, 540, day=date(2026, 3, 3)),
    ]

    result = has_conflict(existing, make_candidate(540))

    assert result.has_conflict is False
    assert result.conflicting_appointment is None
    assert result.conflicting_appointments == []


def test_booking_running_past_midnight_conflicts_with_next_day_start() -> None:
    next_day = date(2026, 3, 3)
    late = make_appointment(1, 1410, duration=60)
    early = make_appointment(2, 0, day=next_day)

    assert has_conflict([late], make_candidate(0, day=next_day)).conflicting_appointments == [late]
    assert has_conflict([late], make_candidate(30, day=next_day)).has_conflict is False
    assert has_conflict([early], make_candidate(1410, duration=60)).conflicting_appointments == [early]
    assert has_conflict([early], make_candidate(1380)).has_conflict is False


def test_excluded_appointment_does_not_conflict_with_itself() -> None:
    existing = [make_appointment(7, 540)]

    assert has_conflict(existing, make_candidate(540), exclude_appointment_id=7).has_conflict is False
    assert has_conflict(existing, make_candidate(540), exclude_appointment_id=8).has_conflict is True


def test_every_overlapping_appointment_is_reported_in_start_order() -> None:
    existing = [make_appointment(1, 600), make_appointment(2, 540, duration=60), make_appointment(3, 690)]

    result = has_conflict(existing, make_candidate(570, duration=60))

    assert [appointment.id for appointment in result.conflicting_appointments] == [2, 1]
    assert result.conflicting_appointment.id == 2


def test_conflict_result_does_not_depend_on_appointment_order() -> None:
    existing = [make_appointment(1, 555), make_appointment(2, 585, duration=60), make_appointment(3, 700)]
    candidate = make_candidate(570, duration=60)

    outcomes = {
        tuple(appointment.id for appointment in has_conflict(list(ordering), candidate).conflicting_appointments)
        for ordering in permutations(existing)
    }

    assert outcomes == {(1, 2)}


@pytest.mark.parametrize(
    ('first', 'second', 'expected'),
    [
        ((540, 30), (540, 30), True),
        ((540, 30), (570, 30), False),
        ((540, 60), (570, 30), True),
        ((540, 120), (570, 30), True),
        ((600, 30), (540, 30), False),
    ],
)
def test_spans_overlap_is_symmetric(first, second, expected) -> None:
    assert spans_overlap(*first, *second) is expected
    assert spans_overlap(*second, *first) is expected
