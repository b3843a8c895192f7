from fastapi import HTTPException, status
from sqlalchemy.exc import SQLAlchemyError

from clinic_engine.core.errors import (
    ConflictWarning,
    CycleBlocked,
    DuplicateBillingRecord,
    NotFound,
    PersistenceFailure,
    SchedulingError,
    SlotUnavailable,
)
from clinic_engine.database import ensure_engine_schema

DATABASE_UNAVAILABLE_DETAIL = 'Database unavailable. Verify DATABASE_URL and database credentials.'

STATUS_BY_ERROR = {
    NotFound: status.HTTP_404_NOT_FOUND,
    CycleBlocked: status.HTTP_402_PAYMENT_REQUIRED,
    SlotUnavailable: status.HTTP_409_CONFLICT,
    DuplicateBillingRecord: status.HTTP_409_CONFLICT,
    ConflictWarning: status.HTTP_409_CONFLICT,
    PersistenceFailure: status.HTTP_503_SERVICE_UNAVAILABLE,
}


def ensure_database_ready() -> None:
    try:
        ensure_engine_schema()
    except SQLAlchemyError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=DATABASE_UNAVAILABLE_DETAIL,
        ) from exc


def serialize_conflict(appointment) -> dict:
    return {
        'id': appointment.id,
        'patient_id': appointment.patient_id,
        'date': appointment.date.isoformat(),
        'start_minute': appointment.start_minute,
        'duration_minutes': appointment.duration_minutes,
    }


def to_http_exception(exc: SchedulingError) -> HTTPException:
    """Translate a typed rejection so clients can tell "pay first", "confirm anyway" and "try again" apart."""
    status_code = STATUS_BY_ERROR.get(type(exc), status.HTTP_400_BAD_REQUEST)
    detail = {'kind': exc.kind, 'message': exc.detail, 'retryable': exc.retryable}

    if isinstance(exc, ConflictWarning):
        detail['requires_override'] = True
        detail['conflicts'] = [serialize_conflict(appointment) for appointment in exc.conflicting_appointments]

    return HTTPException(status_code=status_code, detail=detail)
