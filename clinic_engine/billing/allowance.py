import logging
from datetime import datetime
from decimal import Decimal
from typing import NamedTuple

from sqlalchemy.orm import Session

from clinic_engine.billing.cycle import to_money
from clinic_engine.core import config
from clinic_engine.models.patient import Patient
from clinic_engine.models.session_allowance import SessionAllowance, SessionUsage

logger = logging.getLogger(__name__)


class UsageResult(NamedTuple):
    was_free: bool
    charge_amount: Decimal
    free_sessions_remaining: int
    pending_paid_sessions: int
    pending_charge_amount: Decimal
    replayed: bool = False


def create_allowance(patient: Patient, now: datetime, free_sessions: int | None = None) -> SessionAllowance:
    free_sessions = config.FREE_SESSION_ALLOWANCE if free_sessions is None else free_sessions
    return SessionAllowance(
        patient_id=patient.id,
        free_sessions_remaining=max(0, free_sessions),
        pending_paid_sessions=0,
        pending_charge_amount=Decimal('0.00'),
        updated_at=now,
    )


def normalize_allowance(allowance: SessionAllowance) -> SessionAllowance:
    allowance.free_sessions_remaining = max(0, allowance.free_sessions_remaining or 0)
    allowance.pending_paid_sessions = max(0, allowance.pending_paid_sessions or 0)
    allowance.pending_charge_amount = max(Decimal('0.00'), to_money(allowance.pending_charge_amount or 0))
    return allowance


def remaining_free_sessions(allowance: SessionAllowance | None) -> int:
    if allowance is None:
        return 0
    return max(0, allowance.free_sessions_remaining or 0)


def get_allowance(db: Session, patient_id: int) -> SessionAllowance | None:
    return db.query(SessionAllowance).filter(SessionAllowance.patient_id == patient_id).first()


def get_usage(db: Session, appointment_id: int) -> SessionUsage | None:
    return db.query(SessionUsage).filter(SessionUsage.appointment_id == appointment_id).first()


def apply_usage(allowance: SessionAllowance, unit_charge) -> tuple[bool, Decimal]:
    """Consume one session: a free one while any remain, otherwise a billable one."""
    normalize_allowance(allowance)

    if allowance.free_sessions_remaining > 0:
        allowance.free_sessions_remaining -= 1
        return True, Decimal('0.00')

    charge = to_money(unit_charge)
    allowance.pending_paid_sessions += 1
    if charge > 0:
        allowance.pending_charge_amount = to_money(allowance.pending_charge_amount) + charge
    return False, charge


def _result_from_usage(usage: SessionUsage, replayed: bool) -> UsageResult:
    return UsageResult(
        was_free=usage.was_free,
        charge_amount=to_money(usage.charge_amount),
        free_sessions_remaining=usage.free_sessions_remaining,
        pending_paid_sessions=usage.pending_paid_sessions,
        pending_charge_amount=to_money(usage.pending_charge_amount),
        replayed=replayed,
    )


def record_usage(
    db: Session,
    allowance: SessionAllowance,
    appointment_id: int,
    now: datetime,
    unit_charge=None,
) -> UsageResult:
    """Apply one session of usage for ``appointment_id`` exactly once.

    A repeated call for the same appointment returns the stored result and leaves
    the allowance untouched. Concurrent first calls race on the unique
    ``session_usages.appointment_id`` key; the loser's flush fails and its unit of
    work rolls back.
    """
    existing = get_usage(db, appointment_id)
    if existing is not None:
        return _result_from_usage(existing, replayed=True)

    unit_charge = config.SESSION_UNIT_CHARGE if unit_charge is None else unit_charge
    was_free, charge = apply_usage(allowance, unit_charge)
    allowance.updated_at = now

    usage = SessionUsage(
        appointment_id=appointment_id,
        patient_id=allowance.patient_id,
        was_free=was_free,
        charge_amount=charge,
        free_sessions_remaining=allowance.free_sessions_remaining,
        pending_paid_sessions=allowance.pending_paid_sessions,
        pending_charge_amount=to_money(allowance.pending_charge_amount),
        recorded_at=now,
    )
    db.add(usage)
    db.flush()

    logger.info(
        'Session usage for appointment %s recorded (free=%s, free left=%s, pending paid=%s).',
        appointment_id,
        was_free,
        allowance.free_sessions_remaining,
        allowance.pending_paid_sessions,
    )
    return _result_from_usage(usage, replayed=False)
