"""Provider slot and weekly availability window models."""

from sqlalchemy import Boolean, Column, Date, DateTime, Integer, String, Time
from booking_engine.database import Base


class ProviderTimeSlot(Base):
    """A bookable unit of provider time.

    Older rows only carry ``slot_date`` + ``start_time``/``end_time``; newer
    rows also carry the full ``slot_datetime_start``/``slot_datetime_end``.
    """
    __tablename__ = "provider_time_slots"

    id = Column(Integer, primary_key=True)
    provider_id = Column(Integer, index=True, nullable=False)
    listing_id = Column(Integer, index=True, nullable=False)
    slot_date = Column(Date)
    start_time = Column(Time)
    end_time = Column(Time)
    slot_datetime_start = Column(DateTime)
    slot_datetime_end = Column(DateTime)
    is_available = Column(Boolean, default=True)
    slot_type = Column(String, default="generated")  # generated/manual/reserved/blocked


class ProviderAvailability(Base):
    """A weekly window in which a provider accepts work."""
    __tablename__ = "provider_availability"

    id = Column(Integer, primary_key=True)
    provider_id = Column(Integer, index=True, nullable=False)
    day_of_week = Column(Integer, nullable=False)  # 0 = Sunday ... 6 = Saturday
    start_time = Column(Time, nullable=False)
    end_time = Column(Time, nullable=False)
    is_active = Column(Boolean, default=True)
