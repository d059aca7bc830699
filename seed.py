"""
Seed script -- populates the database with sample data for reviewers.

Run after migrations:
    python seed.py

Creates:
  - 12 vehicles across all classes, spread around the Cape Town CBD
  - 1 vehicle with a custom rate card
  - 3 sample trips (pending, payment_pending, completed)
"""

import asyncio
from datetime import timedelta

from sqlalchemy import text

from src.config import settings
from src.domain.entities import FareSnapshot, GeoPoint, PathPoint, Trip, Vehicle, utcnow
from src.domain.enums import PaymentMethod, PaymentStatus, TripStatus, VehicleClass
from src.infrastructure.database import build_engine, build_session_factory
from src.infrastructure.repositories import SqlFleetRegistry, SqlTripStore

# Cape Town CBD (approx)
CBD_LAT, CBD_LNG = -33.9249, 18.4241


VEHICLES = [
    {"name": "CA 123-456", "vehicle_class": VehicleClass.NORMAL, "lat": -33.9235, "lng": 18.4210},
    {"name": "CA 234-567", "vehicle_class": VehicleClass.NORMAL, "lat": -33.9262, "lng": 18.4275},
    {"name": "CA 345-678", "vehicle_class": VehicleClass.NORMAL, "lat": -33.9301, "lng": 18.4190},
    {"name": "CA 456-789", "vehicle_class": VehicleClass.NORMAL, "lat": -33.9188, "lng": 18.4302},
    {"name": "CA 567-890", "vehicle_class": VehicleClass.COMFORT, "lat": -33.9220, "lng": 18.4180},
    {"name": "CA 678-901", "vehicle_class": VehicleClass.COMFORT, "lat": -33.9270, "lng": 18.4150},
    {"name": "CA 789-012", "vehicle_class": VehicleClass.COMFORT, "lat": -33.9155, "lng": 18.4235},
    {"name": "CA 890-123", "vehicle_class": VehicleClass.LUXURY, "lat": -33.9060, "lng": 18.4190},
    {"name": "CA 901-234", "vehicle_class": VehicleClass.LUXURY, "lat": -33.9340, "lng": 18.4110},
    {"name": "CA 012-345", "vehicle_class": VehicleClass.XL, "lat": -33.9250, "lng": 18.4350},
    {"name": "CA 135-791", "vehicle_class": VehicleClass.XL, "lat": -33.9400, "lng": 18.4000},
    {
        "name": "CA 246-802",
        "vehicle_class": VehicleClass.NORMAL,
        "lat": -33.9210,
        "lng": 18.4250,
        "rate_override": {"base_fare": 10, "per_km": 6.5, "min_charge": 35},
    },
]


async def seed():
    engine = build_engine(settings.database_url)
    sessions = build_session_factory(engine)
    fleet = SqlFleetRegistry(sessions, settings.h3_resolution)
    trips = SqlTripStore(sessions, settings.h3_resolution)

    async with sessions() as session:
        # Check if already seeded
        result = await session.execute(text("SELECT count(*) FROM vehicles"))
        if result.scalar() > 0:
            print("Database already seeded. Skipping.")
            await engine.dispose()
            return

    # ── Vehicles ──────────────────────────────────────────────────────
    registered = []
    for v in VEHICLES:
        registered.append(
            await fleet.register(
                Vehicle(
                    name=v["name"],
                    vehicle_class=v["vehicle_class"],
                    location=GeoPoint(v["lat"], v["lng"]),
                    is_available=True,
                    last_seen_at=utcnow(),
                    rate_override=v.get("rate_override"),
                )
            )
        )
    print(f"  Created {len(registered)} vehicles")

    # ── Trips ─────────────────────────────────────────────────────────
    now = utcnow()
    await trips.create(
        Trip(
            rider_ref="rider-001",
            pickup=GeoPoint(-33.9249, 18.4241),  # CBD
            destination=GeoPoint(-33.9057, 18.4197),  # V&A Waterfront
            vehicle_class=VehicleClass.NORMAL,
            status=TripStatus.PENDING,
            created_at=now,
        )
    )
    await trips.create(
        Trip(
            rider_ref="rider-002",
            pickup=GeoPoint(-33.9280, 18.4170),  # Gardens
            destination=GeoPoint(-33.9608, 18.4753),  # Observatory
            status=TripStatus.PAYMENT_PENDING,
            payment_method=PaymentMethod.ONLINE,
            created_at=now,
        )
    )

    done = await trips.create(
        Trip(
            rider_ref="rider-003",
            pickup=GeoPoint(-33.9249, 18.4241),
            destination=GeoPoint(-33.9155, 18.3860),  # Sea Point
            vehicle_class=VehicleClass.COMFORT,
            status=TripStatus.PENDING,
            created_at=now - timedelta(hours=2),
        )
    )
    picked = now - timedelta(hours=2) + timedelta(minutes=6)
    for i, (lat, lng) in enumerate(
        [(-33.9249, 18.4241), (-33.9215, 18.4102), (-33.9180, 18.3975), (-33.9155, 18.3860)]
    ):
        await trips.append_path_point(
            done.id, PathPoint(lat, lng, picked + timedelta(minutes=4 * i))
        )
    completed = picked + timedelta(minutes=14)
    await trips.transition(
        done.id,
        {TripStatus.PENDING},
        TripStatus.COMPLETED,
        vehicle_id=registered[4].id,
        accepted_at=now - timedelta(hours=2) + timedelta(minutes=1),
        picked_at=picked,
        completed_at=completed,
        payment_status=PaymentStatus.PAID,
        paid_at=completed,
        fare=FareSnapshot(
            price=52,
            distance_km=3.9,
            duration_sec=840,
            traffic_factor=1.0,
            surge=1.0,
            expected_duration_sec=900,
        ),
    )
    print("  Created 3 trips")

    await engine.dispose()
    print("\nSeed complete!")


async def main():
    print("Seeding database...")
    await seed()


if __name__ == "__main__":
    asyncio.run(main())
