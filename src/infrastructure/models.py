"""
SQLAlchemy ORM models.

Tables
------
* ``vehicles``          -- fleet registry view: class, last fix, availability
* ``trips``             -- one rider request through settlement
* ``trip_path_points``  -- append-only breadcrumbs per trip
* ``trip_activities``   -- best-effort activity feed written from the event bus

Indexes
-------
* **B-Tree** on ``h3_cell`` / ``pickup_h3_cell`` so radius queries (surge,
  quotes) only scan the hexagons around a point.
* **B-Tree** on ``status``, ``vehicle_id`` and ``(is_available, vehicle_class)``
  for the dispatch and relay look-ups.
"""

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    func,
)

from .database import Base
from src.domain.enums import (
    CancelledBy,
    PaymentMethod,
    PaymentStatus,
    TripStatus,
    VehicleClass,
)


class VehicleModel(Base):
    __tablename__ = "vehicles"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(120), nullable=False, default="")
    vehicle_class = Column(Enum(VehicleClass), default=VehicleClass.NORMAL, nullable=False)

    lat = Column(Float, nullable=True)
    lng = Column(Float, nullable=True)
    h3_cell = Column(String(20), nullable=True)
    last_seen_at = Column(DateTime(timezone=True), nullable=True)

    is_available = Column(Boolean, default=False, nullable=False)
    rate_override = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        Index("idx_vehicles_cell", "h3_cell"),
        Index("idx_vehicles_available", "is_available", "vehicle_class"),
    )


class TripModel(Base):
    __tablename__ = "trips"

    id = Column(Integer, primary_key=True, autoincrement=True)
    rider_ref = Column(String(120), nullable=True)

    pickup_lat = Column(Float, nullable=False)
    pickup_lng = Column(Float, nullable=False)
    pickup_h3_cell = Column(String(20), nullable=True)
    destination_lat = Column(Float, nullable=False)
    destination_lng = Column(Float, nullable=False)

    vehicle_class = Column(Enum(VehicleClass), nullable=True)
    status = Column(Enum(TripStatus), default=TripStatus.PENDING, nullable=False)

    payment_method = Column(Enum(PaymentMethod), default=PaymentMethod.CASH, nullable=False)
    payment_status = Column(Enum(PaymentStatus), default=PaymentStatus.UNPAID, nullable=False)
    paid_at = Column(DateTime(timezone=True), nullable=True)

    vehicle_id = Column(Integer, ForeignKey("vehicles.id"), nullable=True)
    offered_vehicle_id = Column(Integer, ForeignKey("vehicles.id"), nullable=True)
    estimate = Column(Integer, nullable=True)
    pickup_distance_km = Column(Float, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
    accepted_at = Column(DateTime(timezone=True), nullable=True)
    arrived_at = Column(DateTime(timezone=True), nullable=True)
    started_at = Column(DateTime(timezone=True), nullable=True)
    picked_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)

    cancelled_by = Column(Enum(CancelledBy), nullable=True)
    cancellation_reason = Column(String(255), nullable=True)
    cancellation_note = Column(String(1000), nullable=True)

    # Final fare snapshot (written once, by the transition into COMPLETED)
    final_amount = Column(Integer, nullable=True)
    final_distance_km = Column(Float, nullable=True)
    final_duration_sec = Column(Integer, nullable=True)
    final_expected_duration_sec = Column(Integer, nullable=True)
    final_traffic_factor = Column(Float, nullable=True)
    final_surge = Column(Float, nullable=True)
    final_waiting_fee = Column(Integer, nullable=True)

    __table_args__ = (
        Index("idx_trips_status", "status"),
        Index("idx_trips_vehicle", "vehicle_id", "status"),
        Index("idx_trips_pickup_cell", "pickup_h3_cell", "created_at"),
    )


class TripPathPointModel(Base):
    __tablename__ = "trip_path_points"

    id = Column(Integer, primary_key=True, autoincrement=True)
    trip_id = Column(Integer, ForeignKey("trips.id"), nullable=False)
    lat = Column(Float, nullable=False)
    lng = Column(Float, nullable=False)
    recorded_at = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (Index("idx_path_points_trip", "trip_id", "id"),)


class TripActivityModel(Base):
    __tablename__ = "trip_activities"

    id = Column(Integer, primary_key=True, autoincrement=True)
    trip_id = Column(Integer, ForeignKey("trips.id"), nullable=False)
    kind = Column(String(20), nullable=False)
    actor_type = Column(String(20), default="system", nullable=False)
    actor_id = Column(String(64), nullable=True)
    message = Column(String(255), nullable=True)
    meta = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (Index("idx_activities_trip", "trip_id"),)
