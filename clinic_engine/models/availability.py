"""Clinician availability model definitions."""

from sqlalchemy import Boolean, Column, Date, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import relationship

from clinic_engine.database import Base


class ClinicianAvailability(Base):
    """Availability of one clinician on one calendar date."""
    __tablename__ = "clinician_availability"
    __table_args__ = (UniqueConstraint("clinician_id", "date", name="uq_clinician_availability_date"),)

    id = Column(Integer, primary_key=True)
    clinician_id = Column(String, nullable=False, index=True)
    date = Column(Date, nullable=False)
    enabled = Column(Boolean, nullable=False, default=True)

    windows = relationship(
        "AvailabilityWindow",
        order_by="AvailabilityWindow.start_minute",
        cascade="all, delete-orphan",
        lazy="selectin",
    )


class AvailabilityWindow(Base):
    """A bookable window; an end at or before the start closes after midnight."""
    __tablename__ = "availability_windows"

    id = Column(Integer, primary_key=True)
    availability_id = Column(Integer, ForeignKey("clinician_availability.id"), nullable=False)
    start_minute = Column(Integer, nullable=False)
    end_minute = Column(Integer, nullable=False)
