"""Recurring rule, materialized instance and per-date exception models."""

from sqlalchemy import Boolean, Column, Date, DateTime, ForeignKey, Integer, String, Time
from booking_engine.database import Base


class RecurringRule(Base):
    """A provider/client pair's repeating booking pattern."""
    __tablename__ = "recurring_rules"

    id = Column(Integer, primary_key=True)
    client_id = Column(Integer, index=True)
    provider_id = Column(Integer, index=True, nullable=False)
    listing_id = Column(Integer, ForeignKey("listings.id"))
    recurrence_type = Column(String, nullable=False)  # weekly/biweekly/triweekly/monthly
    start_date = Column(Date, nullable=False)
    start_time = Column(Time, nullable=False)
    end_time = Column(Time, nullable=False)
    day_of_week = Column(Integer)  # 0 = Sunday ... 6 = Saturday
    day_of_month = Column(Integer)
    is_active = Column(Boolean, default=True)
    client_name = Column(String)
    notes = Column(String)


class RecurringInstance(Base):
    """One materialized occurrence of a recurring rule."""
    __tablename__ = "recurring_instances"

    id = Column(Integer, primary_key=True)
    recurring_rule_id = Column(Integer, ForeignKey("recurring_rules.id"), nullable=False)
    start_time = Column(DateTime, nullable=False)
    end_time = Column(DateTime, nullable=False)
    status = Column(String, default="scheduled")  # scheduled/confirmed/cancelled/skipped
    notes = Column(String)


class RecurringException(Base):
    """Cancels or moves a single date of a rule that has not been materialized."""
    __tablename__ = "recurring_exceptions"

    id = Column(Integer, primary_key=True)
    recurring_rule_id = Column(Integer, ForeignKey("recurring_rules.id"), nullable=False, index=True)
    exception_date = Column(Date, nullable=False)
    action_type = Column(String, nullable=False)  # cancelled/rescheduled
    new_start_time = Column(DateTime)
    new_end_time = Column(DateTime)
    notes = Column(String)
