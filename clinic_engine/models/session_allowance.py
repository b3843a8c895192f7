"""Session allowance model definitions."""

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, Numeric

from clinic_engine.database import Base


class SessionAllowance(Base):
    """Free-session quota of one patient, plus what accrued once it ran out."""
    __tablename__ = "session_allowances"

    id = Column(Integer, primary_key=True)
    patient_id = Column(Integer, ForeignKey("patients.id"), unique=True, nullable=False)
    free_sessions_remaining = Column(Integer, nullable=False, default=0)
    pending_paid_sessions = Column(Integer, nullable=False, default=0)
    pending_charge_amount = Column(Numeric(10, 2), nullable=False, default=0)
    updated_at = Column(DateTime)
    version = Column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}


class SessionUsage(Base):
    """One applied usage. ``appointment_id`` is the idempotency key."""
    __tablename__ = "session_usages"

    id = Column(Integer, primary_key=True)
    appointment_id = Column(Integer, ForeignKey("appointments.id"), unique=True, nullable=False)
    patient_id = Column(Integer, ForeignKey("patients.id"), index=True, nullable=False)
    was_free = Column(Boolean, nullable=False)
    charge_amount = Column(Numeric(10, 2), nullable=False, default=0)
    free_sessions_remaining = Column(Integer, nullable=False)
    pending_paid_sessions = Column(Integer, nullable=False)
    pending_charge_amount = Column(Numeric(10, 2), nullable=False)
    recorded_at = Column(DateTime)
