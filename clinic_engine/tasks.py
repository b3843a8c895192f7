"""Periodic sweeps over persisted billing state.

Usage:
    python -m clinic_engine.tasks
"""
import logging
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import Session

from clinic_engine.billing.cycle import get_active_record, is_reset_due, reconcile_patient
from clinic_engine.core import config
from clinic_engine.database import SessionLocal, run_in_batches
from clinic_engine.models.billing import BillingKind, BillingRecord
from clinic_engine.models.patient import Patient

logger = logging.getLogger(__name__)


def find_patients_due_for_reset(db: Session, now: datetime) -> list[int]:
    patients = db.query(Patient).filter(
        Patient.ready_for_new_appointment.is_(False),
        Patient.id.in_(
            select(BillingRecord.patient_id).where(BillingRecord.kind == BillingKind.CONSULTATION.value)
        ),
    ).order_by(Patient.id.asc()).all()

    return [
        patient.id
        for patient in patients
        if is_reset_due(
            patient,
            get_active_record(db, patient.id, BillingKind.CONSULTATION),
            get_active_record(db, patient.id, BillingKind.PACKAGE),
            now,
        )
    ]


def reconcile_booking_cycles(db: Session, now: datetime | None = None, limit: int | None = None) -> int:
    """Mark every patient whose waiting period is over as ready for a new cycle.

    Idempotent: patients already reset are skipped. Each patient is re-checked
    under a row lock inside its batch, so a booking that lands between the scan
    and the write wins.
    """
    now = now or datetime.now()
    due = find_patients_due_for_reset(db, now)
    reset_ids: list[int] = []

    def reset(session: Session, patient_id: int) -> None:
        patient = session.query(Patient).filter(Patient.id == patient_id).populate_existing().with_for_update().first()
        if patient is None:
            return
        if reconcile_patient(
            patient,
            get_active_record(session, patient_id, BillingKind.CONSULTATION),
            get_active_record(session, patient_id, BillingKind.PACKAGE),
            now,
        ):
            reset_ids.append(patient_id)

    run_in_batches(db, due, reset, limit or config.WRITE_BATCH_LIMIT)

    if reset_ids:
        logger.info('Booking cycle reconciliation reset %s patient(s): %s', len(reset_ids), reset_ids)
    return len(reset_ids)


def main() -> None:
    logging.basicConfig(level=config.LOG_LEVEL)
    config.validate_runtime_config()

    db = SessionLocal()
    try:
        reset_count = reconcile_booking_cycles(db)
    finally:
        db.close()

    logger.info('Reconciliation finished, %s patient(s) ready for a new cycle.', reset_count)


if __name__ == "__main__":
    main()
