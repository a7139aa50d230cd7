"""Listing and client residence lookups."""

from sqlalchemy import JSON, Column, Integer, String
from booking_engine.database import Base


class Listing(Base):
    """A provider's service offering."""
    __tablename__ = "listings"

    id = Column(Integer, primary_key=True)
    provider_id = Column(Integer, index=True)
    title = Column(String)
    duration_minutes = Column(Integer)
    base_price = Column(Integer)
    slot_preferences = Column(JSON, default=dict)


class ClientResidence(Base):
    __tablename__ = "client_residences"

    client_id = Column(Integer, primary_key=True)
    residencia_id = Column(Integer, index=True)
    condominium_name = Column(String)
    house_number = Column(String)
