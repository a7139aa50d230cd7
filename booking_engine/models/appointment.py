"""Appointment model definitions."""

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Index, Integer, String, text
from booking_engine.database import Base

_ACTIVE_ONLY = text("status NOT IN ('cancelled', 'rejected')")


class Appointment(Base):
    """A regular (ad-hoc) booking, or a legacy row carrying a recurrence tag."""
    __tablename__ = "appointments"
    __table_args__ = (
        Index(
            "uq_appointments_provider_start_active",
            "provider_id",
            "start_time",
            unique=True,
            sqlite_where=_ACTIVE_ONLY,
            postgresql_where=_ACTIVE_ONLY,
        ),
    )

    id = Column(Integer, primary_key=True)
    provider_id = Column(Integer, index=True, nullable=False)
    client_id = Column(Integer, index=True)
    listing_id = Column(Integer, ForeignKey("listings.id"))
    residencia_id = Column(Integer, index=True)
    recurring_rule_id = Column(Integer, ForeignKey("recurring_rules.id"))
    start_time = Column(DateTime, nullable=False)
    end_time = Column(DateTime, nullable=False)
    status = Column(String, default="pending")
    recurrence = Column(String, default="none")  # legacy tag on pre-migration rows
    external_booking = Column(Boolean, default=False)
    notes = Column(String)
