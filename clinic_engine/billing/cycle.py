"""
Billing cycle tracking.

The booking cycle of a patient is never stored. It is derived on every query
from the patient's plan type, the ``ready_for_new_appointment`` flag and the
active consultation record, so the state can never drift from the facts.

    NO_CYCLE -> AWAITING_CONSULTATION_PAYMENT -> ACTIVE_CYCLE -> CYCLE_EXPIRED_ELIGIBLE_FOR_RESET

Functions here flush but never commit; callers own the unit of work.
"""

import enum
import logging
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal

from dateutil.relativedelta import relativedelta
from sqlalchemy.orm import Session

from clinic_engine.core import config
from clinic_engine.core.errors import CycleBlocked, DuplicateBillingRecord, InvalidState
from clinic_engine.models.billing import BillingKind, BillingRecord, BillingStatus
from clinic_engine.models.patient import Patient

logger = logging.getLogger(__name__)

CENTS = Decimal('0.01')
HUNDRED = Decimal('100')


class BookingCycleState(str, enum.Enum):
    NO_CYCLE = 'no_cycle'
    AWAITING_CONSULTATION_PAYMENT = 'awaiting_consultation_payment'
    ACTIVE_CYCLE = 'active_cycle'
    CYCLE_EXPIRED_ELIGIBLE_FOR_RESET = 'cycle_expired_eligible_for_reset'


NEW_CYCLE_STATES = frozenset({BookingCycleState.NO_CYCLE, BookingCycleState.CYCLE_EXPIRED_ELIGIBLE_FOR_RESET})


def to_money(value) -> Decimal:
    return Decimal(str(value)).quantize(CENTS, rounding=ROUND_HALF_UP)


def compute_payable_amount(total_amount, concession_percent=None) -> Decimal:
    total = to_money(total_amount)
    if total < 0:
        raise ValueError('Amount cannot be negative.')
    if concession_percent is None:
        return total

    concession = Decimal(str(concession_percent))
    if not 0 <= concession <= 100:
        raise ValueError('Concession must be between 0 and 100 percent.')

    return (total * (HUNDRED - concession) / HUNDRED).quantize(CENTS, rounding=ROUND_HALF_UP)


def waiting_period_elapsed(record: BillingRecord, now: datetime, months: int | None = None) -> bool:
    months = config.CYCLE_WAITING_PERIOD_MONTHS if months is None else months
    return now >= record.created_at + relativedelta(months=months)


def get_active_record(db: Session, patient_id: int, kind: BillingKind) -> BillingRecord | None:
    return db.query(BillingRecord).filter(
        BillingRecord.patient_id == patient_id,
        BillingRecord.kind == kind.value,
    ).order_by(BillingRecord.created_at.desc(), BillingRecord.id.desc()).first()


def derive_cycle_state(patient: Patient, consultation: BillingRecord | None, now: datetime) -> BookingCycleState:
    if consultation is None:
        return BookingCycleState.NO_CYCLE

    if patient.ready_for_new_appointment:
        return BookingCycleState.CYCLE_EXPIRED_ELIGIBLE_FOR_RESET

    elapsed = waiting_period_elapsed(consultation, now)

    if patient.is_payment_exempt:
        if elapsed:
            return BookingCycleState.CYCLE_EXPIRED_ELIGIBLE_FOR_RESET
        return BookingCycleState.ACTIVE_CYCLE

    if not consultation.is_completed:
        return BookingCycleState.AWAITING_CONSULTATION_PAYMENT

    if elapsed:
        return BookingCycleState.CYCLE_EXPIRED_ELIGIBLE_FOR_RESET
    return BookingCycleState.ACTIVE_CYCLE


def can_book_new_consultation(patient: Patient, consultation: BillingRecord | None, now: datetime) -> bool:
    if consultation is None or patient.ready_for_new_appointment:
        return True
    return consultation.is_completed and waiting_period_elapsed(consultation, now)


def package_payment_pending(package: BillingRecord | None) -> bool:
    return package is not None and not package.is_completed


def ensure_booking_allowed(
    patient: Patient,
    consultation: BillingRecord | None,
    package: BillingRecord | None,
    now: datetime,
) -> BookingCycleState:
    """Return the cycle state a booking would proceed from, or raise ``CycleBlocked``."""
    state = derive_cycle_state(patient, consultation, now)

    if state == BookingCycleState.AWAITING_CONSULTATION_PAYMENT:
        raise CycleBlocked('Consultation payment is pending. Record the payment before booking again.')

    if (
        state == BookingCycleState.CYCLE_EXPIRED_ELIGIBLE_FOR_RESET
        and not patient.is_payment_exempt
        and package_payment_pending(package)
    ):
        raise CycleBlocked('Package payment is pending. Settle the package before starting a new cycle.')

    return state


def create_consultation_record(
    db: Session,
    patient: Patient,
    now: datetime,
    amount=None,
) -> BillingRecord:
    active = get_active_record(db, patient.id, BillingKind.CONSULTATION)
    state = derive_cycle_state(patient, active, now)
    if state not in NEW_CYCLE_STATES:
        raise DuplicateBillingRecord(f'Patient {patient.id} already has an active consultation record.')

    total = to_money(config.CONSULTATION_CHARGE if amount is None else amount)
    record = BillingRecord(
        patient_id=patient.id,
        kind=BillingKind.CONSULTATION.value,
        total_amount=total,
        concession_percent=None,
        payable_amount=compute_payable_amount(total),
        amount_paid=Decimal('0.00'),
        status=BillingStatus.PENDING.value,
        created_at=now,
    )
    db.add(record)
    patient.ready_for_new_appointment = False
    db.flush()

    logger.info('Consultation record %s opened for patient %s (%s).', record.id, patient.id, state.value)
    return record


def create_package_record(
    db: Session,
    patient: Patient,
    package_amount,
    now: datetime,
    concession_percent=None,
    total_sessions: int | None = None,
) -> BillingRecord:
    consultation = get_active_record(db, patient.id, BillingKind.CONSULTATION)
    if consultation is None:
        raise CycleBlocked('A consultation must be booked and settled before a package can be set up.')
    if not consultation.is_completed and not patient.is_payment_exempt:
        raise CycleBlocked('Consultation payment is pending. Settle it before setting up a package.')

    package = get_active_record(db, patient.id, BillingKind.PACKAGE)
    if package is not None and package.created_at >= consultation.created_at:
        raise DuplicateBillingRecord(f'Patient {patient.id} already has a package for the current cycle.')

    if total_sessions is not None and total_sessions <= 0:
        raise InvalidState('Package session count must be positive.')

    total = to_money(package_amount)
    # Stored with two decimals, so the payable amount is computed from the stored value.
    concession = None if concession_percent is None else to_money(concession_percent)
    record = BillingRecord(
        patient_id=patient.id,
        kind=BillingKind.PACKAGE.value,
        total_amount=total,
        concession_percent=concession,
        payable_amount=compute_payable_amount(total, concession),
        amount_paid=Decimal('0.00'),
        status=BillingStatus.PENDING.value,
        created_at=now,
    )
    db.add(record)

    patient.package_amount = total
    patient.concession_percent = record.concession_percent
    patient.payment_type = 'with' if concession else 'without'
    if total_sessions is not None:
        patient.total_sessions_required = total_sessions
    db.flush()

    logger.info('Package record %s opened for patient %s, payable %s.', record.id, patient.id, record.payable_amount)
    return record


def record_payment(record: BillingRecord, now: datetime, amount=None) -> BillingRecord:
    if record.is_completed:
        raise InvalidState(f'Billing record {record.id} is already settled.')

    outstanding = to_money(record.payable_amount) - to_money(record.amount_paid or 0)
    payment = outstanding if amount is None else to_money(amount)
    if payment <= 0:
        raise InvalidState('Payment amount must be positive.')
    if payment > outstanding:
        raise InvalidState(f'Payment of {payment} exceeds the outstanding balance of {outstanding}.')

    record.amount_paid = to_money(record.amount_paid or 0) + payment
    if record.amount_paid >= to_money(record.payable_amount):
        record.status = BillingStatus.COMPLETED.value
        record.paid_at = now

    return record


def is_reset_due(
    patient: Patient,
    consultation: BillingRecord | None,
    package: BillingRecord | None,
    now: datetime,
) -> bool:
    if consultation is None or patient.ready_for_new_appointment:
        return False

    if not waiting_period_elapsed(consultation, now):
        return False

    if patient.is_payment_exempt:
        return True
    return consultation.is_completed and not package_payment_pending(package)


def reconcile_patient(
    patient: Patient,
    consultation: BillingRecord | None,
    package: BillingRecord | None,
    now: datetime,
) -> bool:
    """Flip the patient to ready-for-new-appointment once the waiting period is over.

    Returns False, and changes nothing, when the patient is not eligible or was
    already reset.
    """
    if not is_reset_due(patient, consultation, package, now):
        return False

    patient.payment_type = None
    patient.package_amount = None
    patient.concession_percent = None
    patient.ready_for_new_appointment = True
    return True
