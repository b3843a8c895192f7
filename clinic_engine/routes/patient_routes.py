from datetime import datetime
from decimal import Decimal

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, field_validator
from sqlalchemy.orm import Session

from clinic_engine.core.errors import SchedulingError
from clinic_engine.database import get_db
from clinic_engine.routes.http_errors import ensure_database_ready, to_http_exception
from clinic_engine.services.orchestrator import SchedulingOrchestrator

router = APIRouter(tags=['patients'])


class RegisterPatientRequest(BaseModel):
    name: str
    patient_type: str
    email: str | None = None
    phone: str | None = None
    payment_type: str | None = None

    @field_validator('name', 'patient_type')
    @classmethod
    def validate_required_text(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError('Value is required.')
        return normalized

    @field_validator('email')
    @classmethod
    def validate_email(cls, value: str | None) -> str | None:
        if value is None:
            return None
        normalized = value.strip().lower()
        if not normalized:
            return None
        if '@' not in normalized:
            raise ValueError('Invalid email address.')
        return normalized

    @field_validator('phone')
    @classmethod
    def validate_phone(cls, value: str | None) -> str | None:
        if value is None:
            return None
        normalized = value.replace(' ', '').replace('-', '')
        return normalized or None


class PatientResponse(BaseModel):
    id: int
    name: str
    email: str | None = None
    phone: str | None = None
    patient_type: str
    payment_type: str | None = None
    ready_for_new_appointment: bool
    total_sessions_required: int | None = None
    remaining_sessions: int | None = None
    registered_at: datetime | None = None

    class Config:
        from_attributes = True


class BillingRecordResponse(BaseModel):
    id: int
    kind: str
    total_amount: Decimal
    concession_percent: Decimal | None = None
    payable_amount: Decimal
    amount_paid: Decimal
    status: str
    created_at: datetime
    paid_at: datetime | None = None

    class Config:
        from_attributes = True


class BillingSummaryResponse(BaseModel):
    patient_id: int
    cycle_state: str
    can_book_new_consultation: bool
    consultation: BillingRecordResponse | None = None
    package: BillingRecordResponse | None = None
    package_status: str
    free_sessions_remaining: int | None = None
    pending_paid_sessions: int | None = None
    pending_charge_amount: Decimal | None = None
    remaining_sessions: int | None = None


@router.post('', response_model=PatientResponse, status_code=status.HTTP_201_CREATED)
def register_patient(data: RegisterPatientRequest, db: Session = Depends(get_db)):
    ensure_database_ready()

    try:
        return SchedulingOrchestrator(db).register_patient(**data.model_dump())
    except SchedulingError as exc:
        raise to_http_exception(exc) from exc


@router.get('/{patient_id}/billing', response_model=BillingSummaryResponse)
def get_billing_summary(patient_id: int, db: Session = Depends(get_db)):
    ensure_database_ready()

    try:
        summary = SchedulingOrchestrator(db).billing_summary(patient_id)
    except SchedulingError as exc:
        raise to_http_exception(exc) from exc

    return BillingSummaryResponse(
        patient_id=patient_id,
        cycle_state=summary.cycle_state.value,
        can_book_new_consultation=summary.can_book_new_consultation,
        consultation=BillingRecordResponse.model_validate(summary.consultation) if summary.consultation else None,
        package=BillingRecordResponse.model_validate(summary.package) if summary.package else None,
        package_status=summary.package_status,
        free_sessions_remaining=summary.free_sessions_remaining,
        pending_paid_sessions=summary.pending_paid_sessions,
        pending_charge_amount=summary.pending_charge_amount,
        remaining_sessions=summary.remaining_sessions,
    )
