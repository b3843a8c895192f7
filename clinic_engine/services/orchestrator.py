"""
Scheduling orchestrator.

The single entry point the outside world calls. It composes the availability
resolver, the conflict detector, the billing cycle tracker and the session
allowance ledger, and wraps every mutation in one atomic unit of work.
Notifications go out only after the unit of work has committed.
"""

import logging
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Callable, NamedTuple

from sqlalchemy.orm import Session

from clinic_engine.billing import cycle
from clinic_engine.billing.allowance import (
    UsageResult,
    create_allowance,
    get_allowance,
    record_usage,
    remaining_free_sessions,
)
from clinic_engine.billing.cycle import NEW_CYCLE_STATES, BookingCycleState
from clinic_engine.core.errors import (
    ConflictWarning,
    CycleBlocked,
    InvalidState,
    NotFound,
    SlotUnavailable,
)
from clinic_engine.database import run_in_batches, unit_of_work
from clinic_engine.models.appointment import Appointment, AppointmentStatus
from clinic_engine.models.availability import ClinicianAvailability
from clinic_engine.models.billing import BillingKind, BillingRecord
from clinic_engine.models.patient import Patient
from clinic_engine.models.session_allowance import SessionAllowance, SessionUsage
from clinic_engine.scheduling.availability import MINUTES_PER_DAY, fits_open_slots, format_clock, resolve_slots
from clinic_engine.scheduling.conflicts import BookingCandidate, has_conflict
from clinic_engine.scheduling.recurrence import generate_recurring_dates
from clinic_engine.services.notifications import Notifier
from clinic_engine.tasks import reconcile_booking_cycles

logger = logging.getLogger(__name__)


class BookingEligibility(NamedTuple):
    eligible: bool
    reason: str | None = None
    detail: str | None = None
    cycle_state: BookingCycleState | None = None
    conflicting_appointments: tuple = ()


class CompletionResult(NamedTuple):
    appointment: Appointment
    session_usage: UsageResult | None


class BillingSummary(NamedTuple):
    cycle_state: BookingCycleState
    can_book_new_consultation: bool
    consultation: BillingRecord | None
    package: BillingRecord | None
    package_status: str
    free_sessions_remaining: int | None
    pending_paid_sessions: int | None
    pending_charge_amount: Decimal | None
    remaining_sessions: int | None


class SchedulingOrchestrator:
    def __init__(
        self,
        db: Session,
        notifier: Notifier | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.db = db
        self.notifier = notifier or Notifier()
        self.clock = clock or datetime.now

    # -- lookups -----------------------------------------------------------

    def _get_patient(self, patient_id: int, lock: bool = False) -> Patient:
        query = self.db.query(Patient).filter(Patient.id == patient_id)
        if lock:
            query = query.populate_existing().with_for_update()
        patient = query.first()
        if patient is None:
            raise NotFound(f'Patient {patient_id} not found.')
        return patient

    def _get_appointment(self, appointment_id: int, lock: bool = False) -> Appointment:
        query = self.db.query(Appointment).filter(Appointment.id == appointment_id)
        if lock:
            query = query.populate_existing().with_for_update()
        appointment = query.first()
        if appointment is None:
            raise NotFound(f'Appointment {appointment_id} not found.')
        return appointment

    def _get_availability(self, clinician_id: str, day: date, lock: bool = False) -> ClinicianAvailability | None:
        query = self.db.query(ClinicianAvailability).filter(
            ClinicianAvailability.clinician_id == clinician_id,
            ClinicianAvailability.date == day,
        )
        if lock:
            query = query.with_for_update()
        return query.first()

    def _get_clinician_appointments(self, clinician_id: str, first_day: date, last_day: date) -> list[Appointment]:
        return self.db.query(Appointment).filter(
            Appointment.clinician_id == clinician_id,
            Appointment.date >= first_day,
            Appointment.date <= last_day,
            Appointment.status != AppointmentStatus.CANCELLED.value,
        ).order_by(Appointment.date.asc(), Appointment.start_minute.asc()).all()

    # -- validation --------------------------------------------------------

    def _check_cycle(self, patient: Patient, now: datetime) -> BookingCycleState:
        return cycle.ensure_booking_allowed(
            patient,
            cycle.get_active_record(self.db, patient.id, BillingKind.CONSULTATION),
            cycle.get_active_record(self.db, patient.id, BillingKind.PACKAGE),
            now,
        )

    def _fits_availability(
        self,
        candidate: BookingCandidate,
        availability: ClinicianAvailability | None,
        now: datetime,
        booked: list[Appointment],
    ) -> bool:
        open_slots = resolve_slots(availability, candidate.date, booked, now)
        if fits_open_slots(open_slots, candidate.start_minute, candidate.duration_minutes):
            return True

        # Windows that close after midnight belong to the previous day's availability.
        previous_day = candidate.date - timedelta(days=1)
        overnight_slots = resolve_slots(
            self._get_availability(candidate.clinician_id, previous_day),
            previous_day,
            booked,
            now,
        )
        return fits_open_slots(overnight_slots, candidate.start_minute + MINUTES_PER_DAY, candidate.duration_minutes)

    def _check_slot(
        self,
        candidate: BookingCandidate,
        availability: ClinicianAvailability | None,
        now: datetime,
        override_conflict: bool = False,
        override_availability: bool = False,
        exclude_appointment_id: int | None = None,
    ) -> None:
        existing = [
            appointment
            for appointment in self._get_clinician_appointments(
                candidate.clinician_id,
                candidate.date - timedelta(days=1),
                candidate.date + timedelta(days=1),
            )
            if exclude_appointment_id is None or appointment.id != exclude_appointment_id
        ]
        slot_label = f'{candidate.date.isoformat()} {format_clock(candidate.start_minute)}'

        if not override_availability and not self._fits_availability(candidate, availability, now, []):
            raise SlotUnavailable(f'{slot_label} is outside the clinician\'s availability.')

        conflict = has_conflict(existing, candidate)
        if conflict.has_conflict and not override_conflict:
            raise ConflictWarning(
                f'{slot_label} overlaps {len(conflict.conflicting_appointments)} existing appointment(s).',
                conflict.conflicting_appointments,
            )

        if (
            not conflict.has_conflict
            and not override_availability
            and not self._fits_availability(candidate, availability, now, existing)
        ):
            raise SlotUnavailable(f'{slot_label} is no longer free.')

    def _project_remaining_sessions(self, patient: Patient) -> None:
        """Display-only counter; the appointments themselves are authoritative.

        The counter starts one below the package size, counting the first
        session of the cycle, and drops with every completed appointment.
        """
        if not patient.total_sessions_required:
            return

        self.db.flush()
        completed = self.db.query(Appointment).filter(
            Appointment.patient_id == patient.id,
            Appointment.status == AppointmentStatus.COMPLETED.value,
        ).count()
        remaining = max(0, patient.total_sessions_required - 1 - completed)
        if patient.remaining_sessions != remaining:
            patient.remaining_sessions = remaining

    def _notify(self, patient: Patient, template: str, data: dict) -> None:
        try:
            self.notifier.notify_patient(patient, template, data)
        except Exception:
            logger.exception('Notification %s for patient %s failed.', template, patient.id)

    @staticmethod
    def _appointment_data(appointment: Appointment) -> dict:
        return {
            'clinician_id': appointment.clinician_id,
            'date': appointment.date.isoformat(),
            'time': format_clock(appointment.start_minute),
        }

    # -- patients ----------------------------------------------------------

    def register_patient(
        self,
        name: str,
        patient_type: str,
        email: str | None = None,
        phone: str | None = None,
        payment_type: str | None = None,
        now: datetime | None = None,
    ) -> Patient:
        now = now or self.clock()
        with unit_of_work(self.db):
            patient = Patient(
                name=name,
                email=email,
                phone=phone,
                patient_type=patient_type.strip().upper(),
                payment_type=payment_type,
                ready_for_new_appointment=False,
                registered_at=now,
            )
            self.db.add(patient)
            self.db.flush()
            if patient.is_allowance_eligible:
                self.db.add(create_allowance(patient, now))

        logger.info('Registered patient %s (%s).', patient.id, patient.patient_type)
        return patient

    # -- availability ------------------------------------------------------

    def get_slots(self, clinician_id: str, day: date, now: datetime | None = None) -> list[int]:
        now = now or self.clock()
        return resolve_slots(
            self._get_availability(clinician_id, day),
            day,
            # Neighbouring days are included for bookings that cross midnight.
            self._get_clinician_appointments(clinician_id, day - timedelta(days=1), day + timedelta(days=1)),
            now,
        )

    # -- booking -----------------------------------------------------------

    def check_booking_eligibility(
        self,
        patient_id: int,
        candidate: BookingCandidate,
        override_conflict: bool = False,
        override_availability: bool = False,
        now: datetime | None = None,
    ) -> BookingEligibility:
        now = now or self.clock()
        patient = self._get_patient(patient_id)

        try:
            state = self._check_cycle(patient, now)
            self._check_slot(
                candidate,
                self._get_availability(candidate.clinician_id, candidate.date),
                now,
                override_conflict=override_conflict,
                override_availability=override_availability,
            )
        except ConflictWarning as exc:
            # A conflict is a warning: the booking may still go ahead with an override.
            return BookingEligibility(
                eligible=True,
                reason=exc.kind,
                detail=exc.detail,
                cycle_state=state,
                conflicting_appointments=tuple(exc.conflicting_appointments),
            )
        except (CycleBlocked, SlotUnavailable) as exc:
            return BookingEligibility(eligible=False, reason=exc.kind, detail=exc.detail)

        return BookingEligibility(eligible=True, cycle_state=state)

    def _add_appointment(self, patient: Patient, candidate: BookingCandidate, now: datetime) -> Appointment:
        appointment = Appointment(
            patient_id=patient.id,
            clinician_id=candidate.clinician_id,
            date=candidate.date,
            start_minute=candidate.start_minute,
            duration_minutes=candidate.duration_minutes,
            status=AppointmentStatus.PENDING.value,
            created_at=now,
        )
        self.db.add(appointment)
        self.db.flush()
        return appointment

    def confirm_booking(
        self,
        patient_id: int,
        candidate: BookingCandidate,
        override_conflict: bool = False,
        override_availability: bool = False,
        now: datetime | None = None,
    ) -> Appointment:
        now = now or self.clock()

        with unit_of_work(self.db):
            # Lock order: clinician day first, then patient.
            availability = self._get_availability(candidate.clinician_id, candidate.date, lock=True)
            patient = self._get_patient(patient_id, lock=True)

            state = self._check_cycle(patient, now)
            self._check_slot(
                candidate,
                availability,
                now,
                override_conflict=override_conflict,
                override_availability=override_availability,
            )

            if state in NEW_CYCLE_STATES:
                cycle.create_consultation_record(self.db, patient, now)

            appointment = self._add_appointment(patient, candidate, now)
            self._project_remaining_sessions(patient)

        logger.info(
            'Booked appointment %s for patient %s with %s on %s at %s.',
            appointment.id,
            patient.id,
            appointment.clinician_id,
            appointment.date,
            format_clock(appointment.start_minute),
        )
        self._notify(patient, 'booking_confirmed', self._appointment_data(appointment))
        return appointment

    def confirm_recurring_booking(
        self,
        patient_id: int,
        candidate: BookingCandidate,
        frequency: str,
        count: int,
        override_conflict: bool = False,
        override_availability: bool = False,
        now: datetime | None = None,
    ) -> list[Appointment]:
        """Book a series at the same time of day. Either every occurrence is booked or none is.

        The series counts as one booking for the billing cycle, so a first-time
        patient gets a single consultation record for the whole series.
        """
        now = now or self.clock()
        try:
            dates = generate_recurring_dates(candidate.date, frequency, count)
        except ValueError as exc:
            raise InvalidState(str(exc)) from exc
        if not dates:
            raise InvalidState('A recurring booking needs at least one occurrence.')

        occurrences = [candidate.model_copy(update={'date': day}) for day in dates]

        with unit_of_work(self.db):
            availabilities = [
                self._get_availability(occurrence.clinician_id, occurrence.date, lock=True)
                for occurrence in occurrences
            ]
            patient = self._get_patient(patient_id, lock=True)

            state = self._check_cycle(patient, now)
            appointments = []
            for occurrence, availability in zip(occurrences, availabilities):
                self._check_slot(
                    occurrence,
                    availability,
                    now,
                    override_conflict=override_conflict,
                    override_availability=override_availability,
                )
                appointments.append(self._add_appointment(patient, occurrence, now))

            if state in NEW_CYCLE_STATES:
                cycle.create_consultation_record(self.db, patient, now)
            self._project_remaining_sessions(patient)

        logger.info(
            'Booked %s %s appointment(s) for patient %s starting %s.',
            len(appointments),
            frequency.strip().lower(),
            patient.id,
            candidate.date,
        )
        for appointment in appointments:
            self._notify(patient, 'booking_confirmed', self._appointment_data(appointment))
        return appointments

    def reschedule_appointment(
        self,
        appointment_id: int,
        new_date: date,
        new_start_minute: int,
        duration_minutes: int | None = None,
        override_conflict: bool = False,
        override_availability: bool = False,
        now: datetime | None = None,
    ) -> Appointment:
        now = now or self.clock()

        with unit_of_work(self.db):
            appointment = self._get_appointment(appointment_id, lock=True)
            if appointment.status != AppointmentStatus.PENDING.value:
                raise InvalidState(f'Only pending appointments can be rescheduled (status: {appointment.status}).')

            candidate = BookingCandidate(
                clinician_id=appointment.clinician_id,
                date=new_date,
                start_minute=new_start_minute,
                duration_minutes=duration_minutes or appointment.duration_minutes,
            )
            availability = self._get_availability(candidate.clinician_id, candidate.date, lock=True)
            self._check_slot(
                candidate,
                availability,
                now,
                override_conflict=override_conflict,
                override_availability=override_availability,
                exclude_appointment_id=appointment.id,
            )

            appointment.date = candidate.date
            appointment.start_minute = candidate.start_minute
            appointment.duration_minutes = candidate.duration_minutes

        logger.info('Rescheduled appointment %s to %s %s.', appointment.id, appointment.date,
                    format_clock(appointment.start_minute))
        return appointment

    # -- status transitions ------------------------------------------------

    def start_appointment(self, appointment_id: int) -> Appointment:
        with unit_of_work(self.db):
            appointment = self._get_appointment(appointment_id, lock=True)
            if appointment.status == AppointmentStatus.ONGOING.value:
                return appointment
            if appointment.status != AppointmentStatus.PENDING.value:
                raise InvalidState(f'Appointment {appointment.id} cannot start from status {appointment.status}.')
            appointment.status = AppointmentStatus.ONGOING.value
        return appointment

    def complete_appointment(self, appointment_id: int, now: datetime | None = None) -> CompletionResult:
        """Mark the appointment completed and consume one session of allowance, once.

        Replaying the call for an already completed appointment returns the
        stored usage and changes nothing.
        """
        now = now or self.clock()

        with unit_of_work(self.db):
            appointment = self._get_appointment(appointment_id, lock=True)
            if appointment.status == AppointmentStatus.CANCELLED.value:
                raise InvalidState(f'Appointment {appointment.id} was cancelled and cannot be completed.')

            newly_completed = appointment.status != AppointmentStatus.COMPLETED.value
            if newly_completed:
                appointment.status = AppointmentStatus.COMPLETED.value
                appointment.completed_at = now

            patient = self._get_patient(appointment.patient_id, lock=True)
            allowance = get_allowance(self.db, patient.id)
            usage = record_usage(self.db, allowance, appointment.id, now) if allowance is not None else None
            self._project_remaining_sessions(patient)

        if newly_completed:
            logger.info('Completed appointment %s for patient %s.', appointment.id, patient.id)
            self._notify(patient, 'appointment_completed', self._appointment_data(appointment))
        return CompletionResult(appointment=appointment, session_usage=usage)

    def cancel_appointment(self, appointment_id: int, now: datetime | None = None) -> Appointment:
        now = now or self.clock()

        with unit_of_work(self.db):
            appointment = self._get_appointment(appointment_id, lock=True)
            if appointment.status == AppointmentStatus.CANCELLED.value:
                return appointment
            if appointment.status == AppointmentStatus.COMPLETED.value:
                raise InvalidState(f'Appointment {appointment.id} is already completed.')

            appointment.status = AppointmentStatus.CANCELLED.value
            appointment.cancelled_at = now
            patient = self._get_patient(appointment.patient_id, lock=True)
            self._project_remaining_sessions(patient)

        logger.info('Cancelled appointment %s.', appointment.id)
        self._notify(patient, 'appointment_cancelled', self._appointment_data(appointment))
        return appointment

    # -- billing -----------------------------------------------------------

    def setup_package(
        self,
        patient_id: int,
        package_amount,
        concession_percent=None,
        total_sessions: int | None = None,
        now: datetime | None = None,
    ) -> BillingRecord:
        now = now or self.clock()
        with unit_of_work(self.db):
            patient = self._get_patient(patient_id, lock=True)
            record = cycle.create_package_record(
                self.db,
                patient,
                package_amount,
                now,
                concession_percent=concession_percent,
                total_sessions=total_sessions,
            )
            self._project_remaining_sessions(patient)
        return record

    def record_payment(self, billing_id: int, amount=None, now: datetime | None = None) -> BillingRecord:
        now = now or self.clock()
        with unit_of_work(self.db):
            record = self.db.query(BillingRecord).filter(
                BillingRecord.id == billing_id,
            ).populate_existing().with_for_update().first()
            if record is None:
                raise NotFound(f'Billing record {billing_id} not found.')
            paid_before = cycle.to_money(record.amount_paid or 0)
            cycle.record_payment(record, now, amount)
            paid_now = cycle.to_money(record.amount_paid) - paid_before
            patient = self._get_patient(record.patient_id)

        logger.info('Recorded payment of %s against billing record %s (%s).', paid_now, record.id, record.status)
        self._notify(patient, 'payment_received', {'amount': f'{paid_now:.2f}', 'kind': record.kind})
        return record

    def billing_summary(self, patient_id: int, now: datetime | None = None) -> BillingSummary:
        now = now or self.clock()
        patient = self._get_patient(patient_id)
        consultation = cycle.get_active_record(self.db, patient.id, BillingKind.CONSULTATION)
        package = cycle.get_active_record(self.db, patient.id, BillingKind.PACKAGE)
        allowance = get_allowance(self.db, patient.id)

        if package is None:
            package_status = 'none'
        elif package.is_completed:
            package_status = 'paid'
        else:
            package_status = 'pay_package'

        return BillingSummary(
            cycle_state=cycle.derive_cycle_state(patient, consultation, now),
            can_book_new_consultation=cycle.can_book_new_consultation(patient, consultation, now),
            consultation=consultation,
            package=package,
            package_status=package_status,
            free_sessions_remaining=remaining_free_sessions(allowance) if allowance is not None else None,
            pending_paid_sessions=allowance.pending_paid_sessions if allowance is not None else None,
            pending_charge_amount=cycle.to_money(allowance.pending_charge_amount) if allowance is not None else None,
            remaining_sessions=patient.remaining_sessions,
        )

    def reconcile_cycles(self, now: datetime | None = None) -> int:
        return reconcile_booking_cycles(self.db, now or self.clock())

    # -- records -----------------------------------------------------------

    def purge_patient(self, patient_id: int) -> int:
        """Hard-delete a patient and every record that hangs off it, in chunked batches."""
        patient = self._get_patient(patient_id)

        doomed = []
        doomed.extend(self.db.query(SessionUsage).filter(SessionUsage.patient_id == patient.id).all())
        doomed.extend(self.db.query(Appointment).filter(Appointment.patient_id == patient.id).all())
        doomed.extend(self.db.query(BillingRecord).filter(BillingRecord.patient_id == patient.id).all())
        doomed.extend(self.db.query(SessionAllowance).filter(SessionAllowance.patient_id == patient.id).all())
        doomed.append(patient)

        run_in_batches(self.db, doomed, lambda session, record: session.delete(record))
        logger.info('Purged patient %s and %s related record(s).', patient_id, len(doomed) - 1)
        return len(doomed)
