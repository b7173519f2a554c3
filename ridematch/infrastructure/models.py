"""
SQLAlchemy ORM models.

Tables
------
* ``drivers``   -- onboarded drivers, last known position and status
* ``bookings``  -- booking requests and their assignment state

Coordinates are plain floats: spatial lookups are served by the in-memory
H3 ``GeoIndex``, so the database never runs radius queries.

Indexes
-------
* **B-Tree** on ``drivers.status`` and ``bookings.state`` for recovery scans.
* ``(customer_id, requested_at)`` serves the per-customer booking list.
* ``idempotency_key`` is covered by its unique constraint.
"""

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Enum,
    Float,
    Index,
    Integer,
    String,
    func,
)

from .database import Base
from ridematch.domain.enums import BookingState, DriverStatus


class DriverModel(Base):
    __tablename__ = "drivers"

    id = Column(String(64), primary_key=True)
    latitude = Column(Float, nullable=True)
    longitude = Column(Float, nullable=True)
    status = Column(Enum(DriverStatus), default=DriverStatus.OFFLINE, nullable=False)
    last_updated = Column(DateTime(timezone=True), nullable=True)
    capabilities = Column(JSON, default=list, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    current_booking_id = Column(String(64), nullable=True)
    reserved_until = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (Index("idx_drivers_status", "status"),)


class BookingModel(Base):
    __tablename__ = "bookings"

    id = Column(String(64), primary_key=True)
    customer_id = Column(String(64), nullable=False)

    pickup_lat = Column(Float, nullable=False)
    pickup_lng = Column(Float, nullable=False)
    dropoff_lat = Column(Float, nullable=True)
    dropoff_lng = Column(Float, nullable=True)

    state = Column(Enum(BookingState), default=BookingState.PENDING, nullable=False)
    assigned_driver_id = Column(String(64), nullable=True)
    attempts = Column(Integer, default=0, nullable=False)
    offers_made = Column(Integer, default=0, nullable=False)
    required_capabilities = Column(JSON, default=list, nullable=False)
    declined_driver_ids = Column(JSON, default=list, nullable=False)
    idempotency_key = Column(String(64), unique=True, nullable=True)
    reason = Column(String(255), nullable=True)

    requested_at = Column(DateTime(timezone=True), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    closed_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        Index("idx_bookings_state", "state"),
        Index("idx_bookings_customer", "customer_id", "requested_at"),
    )
