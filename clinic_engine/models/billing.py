"""Billing record model definitions."""

import enum

from sqlalchemy import Column, DateTime, ForeignKey, Integer, Numeric, String

from clinic_engine.database import Base


class BillingKind(str, enum.Enum):
    CONSULTATION = 'consultation'
    PACKAGE = 'package'


class BillingStatus(str, enum.Enum):
    PENDING = 'pending'
    COMPLETED = 'completed'


class BillingRecord(Base):
    """A consultation or package charge. The newest record of a kind is the active one."""
    __tablename__ = "billing_records"

    id = Column(Integer, primary_key=True)
    patient_id = Column(Integer, ForeignKey("patients.id"), index=True, nullable=False)
    kind = Column(String, nullable=False)
    total_amount = Column(Numeric(10, 2), nullable=False)
    concession_percent = Column(Numeric(5, 2))
    payable_amount = Column(Numeric(10, 2), nullable=False)
    amount_paid = Column(Numeric(10, 2), nullable=False, default=0)
    status = Column(String, nullable=False, default=BillingStatus.PENDING.value)
    created_at = Column(DateTime, nullable=False)
    paid_at = Column(DateTime)

    @property
    def is_completed(self) -> bool:
        return self.status == BillingStatus.COMPLETED.value
