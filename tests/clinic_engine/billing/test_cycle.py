import os
from datetime import datetime
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

os.environ.setdefault('DATABASE_URL', 'sqlite:///./test.db')

from clinic_engine.billing.cycle import (  # noqa: E402
    BookingCycleState,
    can_book_new_consultation,
    compute_payable_amount,
    create_consultation_record,
    create_package_record,
    derive_cycle_state,
    ensure_booking_allowed,
    get_active_record,
    is_reset_due,
    reconcile_patient,
    record_payment,
)
from clinic_engine.core.errors import CycleBlocked, DuplicateBillingRecord, InvalidState  # noqa: E402
from clinic_engine.database import Base  # noqa: E402
from clinic_engine.models.billing import BillingKind, BillingRecord  # noqa: E402
from clinic_engine.models.patient import Patient  # noqa: E402

NOW = datetime(2026, 10, 1, 9, 0)
SEVEN_MONTHS_AGO = datetime(2026, 3, 1, 9, 0)
TWO_MONTHS_AGO = datetime(2026, 8, 1, 9, 0)


def make_patient(patient_type='REGULAR', ready=False) -> Patient:
    return Patient(id=1, name='Ada Obi', patient_type=patient_type, ready_for_new_appointment=ready)


def make_record(status='pending', created_at=TWO_MONTHS_AGO, kind='consultation') -> BillingRecord:
    return BillingRecord(
        patient_id=1,
        kind=kind,
        total_amount=Decimal('500.00'),
        payable_amount=Decimal('500.00'),
        amount_paid=Decimal('0.00'),
        status=status,
        created_at=created_at,
    )


@pytest.fixture
def billing_db():
    engine = create_engine('sqlite:///:memory:')
    testing_session_local = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    Base.metadata.create_all(bind=engine, tables=[Patient.__table__, BillingRecord.__table__])

    db = testing_session_local()
    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=engine, tables=[BillingRecord.__table__, Patient.__table__])


def add_patient(db, patient_type='REGULAR') -> Patient:
    patient = Patient(name='Ada Obi', patient_type=patient_type, ready_for_new_appointment=False)
    db.add(patient)
    db.commit()
    db.refresh(patient)
    return patient


@pytest.mark.parametrize(
    ('total', 'concession', 'expected'),
    [
        ('1000', None, Decimal('1000.00')),
        ('1000', '15', Decimal('850.00')),
        ('999.99', '12.5', Decimal('874.99')),
        ('0.05', '50', Decimal('0.03')),
        ('1200', '100', Decimal('0.00')),
    ],
)
def test_compute_payable_amount(total, concession, expected) -> None:
    assert compute_payable_amount(total, concession) == expected


@pytest.mark.parametrize(('total', 'concession'), [('-1', None), ('100', '101'), ('100', '-5')])
def test_compute_payable_amount_rejects_invalid_inputs(total, concession) -> None:
    with pytest.raises(ValueError):
        compute_payable_amount(total, concession)


def test_cycle_states_for_non_exempt_patient() -> None:
    patient = make_patient()

    assert derive_cycle_state(patient, None, NOW) == BookingCycleState.NO_CYCLE
    assert derive_cycle_state(patient, make_record('pending'), NOW) == BookingCycleState.AWAITING_CONSULTATION_PAYMENT
    assert derive_cycle_state(patient, make_record('completed'), NOW) == BookingCycleState.ACTIVE_CYCLE
    assert (
        derive_cycle_state(patient, make_record('completed', SEVEN_MONTHS_AGO), NOW)
        == BookingCycleState.CYCLE_EXPIRED_ELIGIBLE_FOR_RESET
    )
    # An old but unpaid consultation still waits for payment.
    assert (
        derive_cycle_state(patient, make_record('pending', SEVEN_MONTHS_AGO), NOW)
        == BookingCycleState.AWAITING_CONSULTATION_PAYMENT
    )


def test_cycle_states_for_exempt_patient_ignore_payment() -> None:
    patient = make_patient('vip')

    assert derive_cycle_state(patient, make_record('pending'), NOW) == BookingCycleState.ACTIVE_CYCLE
    assert (
        derive_cycle_state(patient, make_record('pending', SEVEN_MONTHS_AGO), NOW)
        == BookingCycleState.CYCLE_EXPIRED_ELIGIBLE_FOR_RESET
    )


def test_ready_flag_means_expired_cycle() -> None:
    patient = make_patient(ready=True)

    assert derive_cycle_state(patient, make_record('completed'), NOW) == BookingCycleState.CYCLE_EXPIRED_ELIGIBLE_FOR_RESET
    assert can_book_new_consultation(patient, make_record('completed'), NOW) is True


def test_can_book_new_consultation_rule() -> None:
    patient = make_patient()

    assert can_book_new_consultation(patient, None, NOW) is True
    assert can_book_new_consultation(patient, make_record('pending'), NOW) is False
    assert can_book_new_consultation(patient, make_record('completed'), NOW) is False
    assert can_book_new_consultation(patient, make_record('completed', SEVEN_MONTHS_AGO), NOW) is True


def test_pending_consultation_blocks_non_exempt_booking() -> None:
    with pytest.raises(CycleBlocked) as exception_info:
        ensure_booking_allowed(make_patient(), make_record('pending'), None, NOW)

    assert exception_info.value.kind == 'needs_payment'
    assert ensure_booking_allowed(make_patient('GETHHMA'), make_record('pending'), None, NOW) == BookingCycleState.ACTIVE_CYCLE


def test_pending_package_blocks_a_new_cycle() -> None:
    consultation = make_record('completed', SEVEN_MONTHS_AGO)
    package = make_record('pending', datetime(2026, 3, 15, 9, 0), kind='package')

    with pytest.raises(CycleBlocked):
        ensure_booking_allowed(make_patient(), consultation, package, NOW)

    # The package never blocks visits inside the active cycle.
    assert ensure_booking_allowed(make_patient(), make_record('completed'), package, NOW) == BookingCycleState.ACTIVE_CYCLE


def test_first_booking_opens_a_pending_consultation(billing_db) -> None:
    patient = add_patient(billing_db)

    record = create_consultation_record(billing_db, patient, NOW)
    billing_db.commit()

    assert record.kind == BillingKind.CONSULTATION.value
    assert record.status == 'pending'
    assert record.payable_amount == Decimal('500.00')
    assert get_active_record(billing_db, patient.id, BillingKind.CONSULTATION).id == record.id


def test_active_consultation_is_never_duplicated(billing_db) -> None:
    patient = add_patient(billing_db)
    create_consultation_record(billing_db, patient, TWO_MONTHS_AGO)
    billing_db.commit()

    with pytest.raises(DuplicateBillingRecord):
        create_consultation_record(billing_db, patient, NOW)


def test_expired_cycle_opens_a_new_consultation_and_clears_ready_flag(billing_db) -> None:
    patient = add_patient(billing_db)
    first = create_consultation_record(billing_db, patient, SEVEN_MONTHS_AGO)
    record_payment(first, SEVEN_MONTHS_AGO)
    patient.ready_for_new_appointment = True
    billing_db.commit()

    second = create_consultation_record(billing_db, patient, NOW)
    billing_db.commit()

    assert second.id != first.id
    assert patient.ready_for_new_appointment is False
    assert get_active_record(billing_db, patient.id, BillingKind.CONSULTATION).id == second.id


def test_package_requires_settled_consultation(billing_db) -> None:
    patient = add_patient(billing_db)

    with pytest.raises(CycleBlocked):
        create_package_record(billing_db, patient, '3000', NOW)

    create_consultation_record(billing_db, patient, TWO_MONTHS_AGO)
    billing_db.commit()

    with pytest.raises(CycleBlocked):
        create_package_record(billing_db, patient, '3000', NOW)


def test_exempt_patient_can_set_up_package_before_paying(billing_db) -> None:
    patient = add_patient(billing_db, 'VIP')
    create_consultation_record(billing_db, patient, TWO_MONTHS_AGO)

    package = create_package_record(billing_db, patient, '3000', NOW, concession_percent='10', total_sessions=12)
    billing_db.commit()

    assert package.payable_amount == Decimal('2700.00')
    assert patient.payment_type == 'with'
    assert patient.total_sessions_required == 12


def test_package_is_created_once_per_cycle(billing_db) -> None:
    patient = add_patient(billing_db)
    consultation = create_consultation_record(billing_db, patient, TWO_MONTHS_AGO)
    record_payment(consultation, TWO_MONTHS_AGO)
    create_package_record(billing_db, patient, '3000', NOW)
    billing_db.commit()

    with pytest.raises(DuplicateBillingRecord):
        create_package_record(billing_db, patient, '3000', NOW)


def test_package_rejects_non_positive_session_count(billing_db) -> None:
    patient = add_patient(billing_db)
    consultation = create_consultation_record(billing_db, patient, TWO_MONTHS_AGO)
    record_payment(consultation, TWO_MONTHS_AGO)

    with pytest.raises(InvalidState):
        create_package_record(billing_db, patient, '3000', NOW, total_sessions=0)


def test_stored_payable_amount_matches_recomputation(billing_db) -> None:
    patient = add_patient(billing_db)
    consultation = create_consultation_record(billing_db, patient, TWO_MONTHS_AGO)
    record_payment(consultation, TWO_MONTHS_AGO)
    package = create_package_record(billing_db, patient, '1234.57', NOW, concession_percent='33.33')
    billing_db.commit()
    package_id = package.id
    billing_db.expire_all()

    stored = billing_db.query(BillingRecord).filter(BillingRecord.id == package_id).one()

    assert compute_payable_amount(stored.total_amount, stored.concession_percent) == stored.payable_amount


def test_partial_payments_accumulate_until_settled() -> None:
    record = make_record('pending')

    record_payment(record, NOW, '200')
    assert record.status == 'pending'
    assert record.amount_paid == Decimal('200.00')

    record_payment(record, NOW, '300')
    assert record.status == 'completed'
    assert record.paid_at == NOW

    with pytest.raises(InvalidState):
        record_payment(record, NOW, '10')


def test_payment_defaults_to_outstanding_balance() -> None:
    record = make_record('pending')
    record.amount_paid = Decimal('120.00')

    record_payment(record, NOW)

    assert record.amount_paid == Decimal('500.00')
    assert record.status == 'completed'


def test_payment_larger_than_outstanding_balance_is_rejected() -> None:
    record = make_record('pending')
    record_payment(record, NOW, '450')

    with pytest.raises(InvalidState):
        record_payment(record, NOW, '51')

    assert record.amount_paid == Decimal('450.00')
    assert record.status == 'pending'


def test_payment_must_be_positive() -> None:
    with pytest.raises(InvalidState):
        record_payment(make_record('pending'), NOW, '0')


def test_reset_rules() -> None:
    completed_old = make_record('completed', SEVEN_MONTHS_AGO)
    pending_old = make_record('pending', SEVEN_MONTHS_AGO)
    pending_package = make_record('pending', datetime(2026, 3, 15), kind='package')

    assert is_reset_due(make_patient(), completed_old, None, NOW) is True
    assert is_reset_due(make_patient(), pending_old, None, NOW) is False
    assert is_reset_due(make_patient(), completed_old, pending_package, NOW) is False
    assert is_reset_due(make_patient(), make_record('completed'), None, NOW) is False
    assert is_reset_due(make_patient('VIP'), pending_old, pending_package, NOW) is True
    assert is_reset_due(make_patient(ready=True), completed_old, None, NOW) is False
    assert is_reset_due(make_patient(), None, None, NOW) is False


def test_reconcile_patient_clears_plan_and_is_idempotent() -> None:
    patient = make_patient()
    patient.payment_type = 'with'
    patient.package_amount = Decimal('3000.00')
    patient.concession_percent = Decimal('10.00')
    consultation = make_record('completed', SEVEN_MONTHS_AGO)

    assert reconcile_patient(patient, consultation, None, NOW) is True
    assert patient.ready_for_new_appointment is True
    assert patient.payment_type is None
    assert patient.package_amount is None
    assert patient.concession_percent is None
    assert reconcile_patient(patient, consultation, None, NOW) is False
