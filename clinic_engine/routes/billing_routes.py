from decimal import Decimal

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, field_validator
from sqlalchemy.orm import Session

from clinic_engine.core.errors import SchedulingError
from clinic_engine.database import get_db
from clinic_engine.routes.http_errors import ensure_database_ready, to_http_exception
from clinic_engine.routes.patient_routes import BillingRecordResponse
from clinic_engine.services.orchestrator import SchedulingOrchestrator

router = APIRouter(tags=['billing'])


class PackageRequest(BaseModel):
    package_amount: Decimal
    concession_percent: Decimal | None = None
    total_sessions: int | None = None

    @field_validator('package_amount')
    @classmethod
    def validate_package_amount(cls, value: Decimal) -> Decimal:
        if value < 0:
            raise ValueError('Package amount cannot be negative.')
        return value

    @field_validator('concession_percent')
    @classmethod
    def validate_concession_percent(cls, value: Decimal | None) -> Decimal | None:
        if value is not None and not 0 <= value <= 100:
            raise ValueError('Concession must be between 0 and 100 percent.')
        return value


class PaymentRequest(BaseModel):
    amount: Decimal | None = None

    @field_validator('amount')
    @classmethod
    def validate_amount(cls, value: Decimal | None) -> Decimal | None:
        if value is not None and value <= 0:
            raise ValueError('Payment amount must be positive.')
        return value


class ReconcileResponse(BaseModel):
    reset_patients: int


@router.post(
    '/patients/{patient_id}/package',
    response_model=BillingRecordResponse,
    status_code=status.HTTP_201_CREATED,
)
def set_up_package(patient_id: int, data: PackageRequest, db: Session = Depends(get_db)):
    ensure_database_ready()

    try:
        return SchedulingOrchestrator(db).setup_package(
            patient_id,
            data.package_amount,
            concession_percent=data.concession_percent,
            total_sessions=data.total_sessions,
        )
    except SchedulingError as exc:
        raise to_http_exception(exc) from exc


@router.post('/{billing_id}/payments', response_model=BillingRecordResponse)
def record_payment(billing_id: int, data: PaymentRequest, db: Session = Depends(get_db)):
    ensure_database_ready()

    try:
        return SchedulingOrchestrator(db).record_payment(billing_id, data.amount)
    except SchedulingError as exc:
        raise to_http_exception(exc) from exc


@router.post('/reconcile', response_model=ReconcileResponse)
def reconcile_booking_cycles(db: Session = Depends(get_db)):
    ensure_database_ready()

    try:
        reset_patients = SchedulingOrchestrator(db).reconcile_cycles()
    except SchedulingError as exc:
        raise to_http_exception(exc) from exc

    return ReconcileResponse(reset_patients=reset_patients)
