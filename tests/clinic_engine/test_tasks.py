import os
from datetime import datetime
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

os.environ.setdefault('DATABASE_URL', 'sqlite:///./test.db')

from clinic_engine.billing.cycle import can_book_new_consultation, get_active_record  # noqa: E402
from clinic_engine.database import Base  # noqa: E402
from clinic_engine.models.billing import BillingKind, BillingRecord  # noqa: E402
from clinic_engine.models.patient import Patient  # noqa: E402
from clinic_engine.tasks import find_patients_due_for_reset, reconcile_booking_cycles  # noqa: E402

NOW = datetime(2026, 10, 1, 9, 0)
SEVEN_MONTHS_AGO = datetime(2026, 3, 1, 9, 0)
TWO_MONTHS_AGO = datetime(2026, 8, 1, 9, 0)


@pytest.fixture
def sweep_db():
    engine = create_engine('sqlite:///:memory:')
    testing_session_local = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    Base.metadata.create_all(bind=engine, tables=[Patient.__table__, BillingRecord.__table__])

    db = testing_session_local()
    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=engine, tables=[BillingRecord.__table__, Patient.__table__])


def add_patient(db, patient_type='REGULAR', consultation_status=None, consultation_at=SEVEN_MONTHS_AGO,
                package_status=None) -> Patient:
    patient = Patient(
        name='Ada Obi',
        patient_type=patient_type,
        payment_type='with',
        package_amount=Decimal('3000.00'),
        concession_percent=Decimal('10.00'),
        ready_for_new_appointment=False,
    )
    db.add(patient)
    db.flush()

    for kind, status in ((BillingKind.CONSULTATION, consultation_status), (BillingKind.PACKAGE, package_status)):
        if status is None:
            continue
        db.add(BillingRecord(
            patient_id=patient.id,
            kind=kind.value,
            total_amount=Decimal('500.00'),
            payable_amount=Decimal('500.00'),
            amount_paid=Decimal('0.00'),
            status=status,
            created_at=consultation_at,
        ))

    db.commit()
    return patient


def test_completed_consultation_past_waiting_period_is_reset(sweep_db) -> None:
    patient = add_patient(sweep_db, consultation_status='completed')

    assert reconcile_booking_cycles(sweep_db, NOW) == 1

    sweep_db.refresh(patient)
    assert patient.ready_for_new_appointment is True
    assert patient.payment_type is None
    assert patient.package_amount is None
    assert patient.concession_percent is None
    consultation = get_active_record(sweep_db, patient.id, BillingKind.CONSULTATION)
    assert can_book_new_consultation(patient, consultation, NOW) is True


def test_sweep_is_idempotent(sweep_db) -> None:
    add_patient(sweep_db, consultation_status='completed')

    assert reconcile_booking_cycles(sweep_db, NOW) == 1
    assert reconcile_booking_cycles(sweep_db, NOW) == 0


def test_only_eligible_patients_are_selected(sweep_db) -> None:
    due = add_patient(sweep_db, consultation_status='completed')
    exempt_unpaid = add_patient(sweep_db, patient_type='VIP', consultation_status='pending')
    add_patient(sweep_db, consultation_status='pending')
    add_patient(sweep_db, consultation_status='completed', consultation_at=TWO_MONTHS_AGO)
    add_patient(sweep_db, consultation_status='completed', package_status='pending')
    add_patient(sweep_db)

    assert find_patients_due_for_reset(sweep_db, NOW) == [due.id, exempt_unpaid.id]


def test_sweep_commits_in_small_batches(sweep_db) -> None:
    patients = [add_patient(sweep_db, consultation_status='completed') for _ in range(5)]

    assert reconcile_booking_cycles(sweep_db, NOW, limit=2) == 5

    for patient in patients:
        sweep_db.refresh(patient)
        assert patient.ready_for_new_appointment is True
