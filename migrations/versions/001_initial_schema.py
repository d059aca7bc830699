"""Initial schema: vehicles, trips, trip path points and activity feed.

Revision ID: 001
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa


revision = "001"
down_revision = None
branch_labels = None
depends_on = None

VEHICLE_CLASS = sa.Enum("NORMAL", "COMFORT", "LUXURY", "XL", name="vehicleclass")


def upgrade() -> None:
    # ── vehicles ──────────────────────────────────────────────────────
    op.create_table(
        "vehicles",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(120), nullable=False, server_default=""),
        sa.Column("vehicle_class", VEHICLE_CLASS, nullable=False),
        sa.Column("lat", sa.Float, nullable=True),
        sa.Column("lng", sa.Float, nullable=True),
        sa.Column("h3_cell", sa.String(20), nullable=True),
        sa.Column("last_seen_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_available", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("rate_override", sa.JSON, nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
        ),
    )
    op.create_index("idx_vehicles_cell", "vehicles", ["h3_cell"])
    op.create_index(
        "idx_vehicles_available", "vehicles", ["is_available", "vehicle_class"]
    )

    # ── trips ─────────────────────────────────────────────────────────
    op.create_table(
        "trips",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("rider_ref", sa.String(120), nullable=True),
        sa.Column("pickup_lat", sa.Float, nullable=False),
        sa.Column("pickup_lng", sa.Float, nullable=False),
        sa.Column("pickup_h3_cell", sa.String(20), nullable=True),
        sa.Column("destination_lat", sa.Float, nullable=False),
        sa.Column("destination_lng", sa.Float, nullable=False),
        sa.Column("vehicle_class", VEHICLE_CLASS, nullable=True),
        sa.Column(
            "status",
            sa.Enum(
                "PAYMENT_PENDING",
                "PENDING",
                "ACCEPTED",
                "ENROUTE",
                "COMPLETED",
                "CANCELLED",
                name="tripstatus",
            ),
            nullable=False,
        ),
        sa.Column(
            "payment_method",
            sa.Enum("CASH", "ONLINE", name="paymentmethod"),
            nullable=False,
        ),
        sa.Column(
            "payment_status",
            sa.Enum("UNPAID", "PAID", name="paymentstatus"),
            nullable=False,
        ),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("vehicle_id", sa.Integer, sa.ForeignKey("vehicles.id"), nullable=True),
        sa.Column(
            "offered_vehicle_id", sa.Integer, sa.ForeignKey("vehicles.id"), nullable=True
        ),
        sa.Column("estimate", sa.Integer, nullable=True),
        sa.Column("pickup_distance_km", sa.Float, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
        ),
        sa.Column("accepted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("arrived_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("picked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "cancelled_by",
            sa.Enum("DRIVER", "RIDER", "SYSTEM", name="cancelledby"),
            nullable=True,
        ),
        sa.Column("cancellation_reason", sa.String(255), nullable=True),
        sa.Column("cancellation_note", sa.String(1000), nullable=True),
        sa.Column("final_amount", sa.Integer, nullable=True),
        sa.Column("final_distance_km", sa.Float, nullable=True),
        sa.Column("final_duration_sec", sa.Integer, nullable=True),
        sa.Column("final_expected_duration_sec", sa.Integer, nullable=True),
        sa.Column("final_traffic_factor", sa.Float, nullable=True),
        sa.Column("final_surge", sa.Float, nullable=True),
        sa.Column("final_waiting_fee", sa.Integer, nullable=True),
    )
    op.create_index("idx_trips_status", "trips", ["status"])
    op.create_index("idx_trips_vehicle", "trips", ["vehicle_id", "status"])
    op.create_index("idx_trips_pickup_cell", "trips", ["pickup_h3_cell", "created_at"])

    # ── trip_path_points ──────────────────────────────────────────────
    op.create_table(
        "trip_path_points",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("trip_id", sa.Integer, sa.ForeignKey("trips.id"), nullable=False),
        sa.Column("lat", sa.Float, nullable=False),
        sa.Column("lng", sa.Float, nullable=False),
        sa.Column("recorded_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("idx_path_points_trip", "trip_path_points", ["trip_id", "id"])

    # ── trip_activities ───────────────────────────────────────────────
    op.create_table(
        "trip_activities",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("trip_id", sa.Integer, sa.ForeignKey("trips.id"), nullable=False),
        sa.Column("kind", sa.String(20), nullable=False),
        sa.Column("actor_type", sa.String(20), nullable=False, server_default="system"),
        sa.Column("actor_id", sa.String(64), nullable=True),
        sa.Column("message", sa.String(255), nullable=True),
        sa.Column("meta", sa.JSON, nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
        ),
    )
    op.create_index("idx_activities_trip", "trip_activities", ["trip_id"])


def downgrade() -> None:
    op.drop_table("trip_activities")
    op.drop_table("trip_path_points")
    op.drop_table("trips")
    op.drop_table("vehicles")
    for enum_type in (
        "cancelledby",
        "paymentstatus",
        "paymentmethod",
        "tripstatus",
        "vehicleclass",
    ):
        op.execute(f"DROP TYPE IF EXISTS {enum_type}")
