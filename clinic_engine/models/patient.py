"""Patient model definitions."""

from sqlalchemy import Boolean, Column, DateTime, Integer, Numeric, String

from clinic_engine.core import config
from clinic_engine.database import Base


class Patient(Base):
    """A registered patient and the eligibility facts the billing cycle is derived from."""
    __tablename__ = "patients"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False)
    email = Column(String)
    phone = Column(String)
    patient_type = Column(String, nullable=False)
    payment_type = Column(String)  # with/without concession
    package_amount = Column(Numeric(10, 2))
    concession_percent = Column(Numeric(5, 2))
    total_sessions_required = Column(Integer)
    remaining_sessions = Column(Integer)
    ready_for_new_appointment = Column(Boolean, nullable=False, default=False)
    registered_at = Column(DateTime)
    version = Column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    @property
    def normalized_type(self) -> str:
        return (self.patient_type or '').strip().upper()

    @property
    def is_payment_exempt(self) -> bool:
        return self.normalized_type in config.EXEMPT_PATIENT_TYPES

    @property
    def is_allowance_eligible(self) -> bool:
        return self.normalized_type in config.ALLOWANCE_PATIENT_TYPES
