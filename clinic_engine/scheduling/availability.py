"""
Availability resolution.

Turns a clinician's availability windows for one date into the ordered list of
slot start-times that are still bookable, given the appointments already on the
books. Minutes are counted from midnight of the requested date; a window that
closes after midnight yields starts of 1440 and above.
"""

from collections.abc import Iterable
from datetime import date, datetime, timedelta

from clinic_engine.core import config
from clinic_engine.models.appointment import AppointmentStatus

MINUTES_PER_DAY = 24 * 60


def parse_clock(value: str) -> int:
    """'09:30' -> 570."""
    try:
        hours_text, minutes_text = value.strip().split(':')
        hours, minutes = int(hours_text), int(minutes_text)
    except (AttributeError, ValueError) as exc:
        raise ValueError(f'Invalid time of day: {value!r}. Expected HH:MM.') from exc

    if not (0 <= hours < 24 and 0 <= minutes < 60):
        raise ValueError(f'Invalid time of day: {value!r}. Expected HH:MM.')

    return hours * 60 + minutes


def format_clock(minute: int) -> str:
    minute %= MINUTES_PER_DAY
    return f'{minute // 60:02d}:{minute % 60:02d}'


def minute_of_day(moment: datetime) -> int:
    return moment.hour * 60 + moment.minute


def window_bounds(start_minute: int, end_minute: int) -> tuple[int, int]:
    if end_minute <= start_minute:
        return start_minute, end_minute + MINUTES_PER_DAY
    return start_minute, end_minute


def iterate_slot_starts(window_start: int, window_end: int, granularity: int) -> list[int]:
    starts: list[int] = []
    current = window_start
    if current % granularity != 0:
        current += granularity - (current % granularity)

    while current + granularity <= window_end:
        starts.append(current)
        current += granularity

    return starts


def occupied_span(start_minute: int, duration_minutes: int, granularity: int) -> tuple[int, int]:
    """Span of an appointment widened to whole granularity blocks."""
    span_start = (start_minute // granularity) * granularity
    end = start_minute + duration_minutes
    span_end = -(-end // granularity) * granularity
    return span_start, span_end


def get_occupied_spans(
    appointments: Iterable,
    clinician_id: str,
    target_date: date,
    granularity: int,
) -> list[tuple[int, int]]:
    previous_day = target_date - timedelta(days=1)
    next_day = target_date + timedelta(days=1)
    spans: list[tuple[int, int]] = []

    for appointment in appointments:
        if appointment.clinician_id != clinician_id:
            continue
        if appointment.status == AppointmentStatus.CANCELLED.value:
            continue

        if appointment.date == target_date:
            offset = 0
        elif appointment.date == next_day:
            offset = MINUTES_PER_DAY
        elif appointment.date == previous_day:
            # Late bookings may run past midnight into the target date.
            offset = -MINUTES_PER_DAY
        else:
            continue

        span_start, span_end = occupied_span(appointment.start_minute, appointment.duration_minutes, granularity)
        spans.append((span_start + offset, span_end + offset))

    return spans


def resolve_slots(
    availability,
    target_date: date,
    existing_appointments: Iterable,
    now: datetime,
    granularity: int | None = None,
) -> list[int]:
    """Return the sorted, de-duplicated bookable slot starts for ``target_date``."""
    granularity = granularity or config.SLOT_GRANULARITY_MINUTES

    if availability is None or not availability.enabled or not availability.windows:
        return []

    spans = get_occupied_spans(existing_appointments, availability.clinician_id, target_date, granularity)

    candidates: set[int] = set()
    for window in availability.windows:
        window_start, window_end = window_bounds(window.start_minute, window.end_minute)
        for slot_start in iterate_slot_starts(window_start, window_end, granularity):
            slot_end = slot_start + granularity
            if any(slot_start < span_end and span_start < slot_end for span_start, span_end in spans):
                continue
            candidates.add(slot_start)

    # Minutes elapsed since midnight of the target date; past starts are not bookable.
    elapsed = (now.date() - target_date).days * MINUTES_PER_DAY + minute_of_day(now)
    if elapsed > 0:
        candidates = {slot_start for slot_start in candidates if slot_start >= elapsed}

    return sorted(candidates)


def fits_open_slots(open_slots: Iterable[int], start_minute: int, duration_minutes: int, granularity: int | None = None) -> bool:
    """True when every block an appointment would occupy is an open slot."""
    granularity = granularity or config.SLOT_GRANULARITY_MINUTES
    open_set = set(open_slots)
    span_start, span_end = occupied_span(start_minute, duration_minutes, granularity)
    return all(block in open_set for block in range(span_start, span_end, granularity))
