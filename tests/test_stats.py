"""Unit tests for the per-vehicle trip summary."""

from datetime import timedelta

from src.domain.entities import FareSnapshot, GeoPoint, PathPoint, Trip, utcnow
from src.domain.enums import PaymentMethod, TripStatus
from src.domain.stats import VehicleStats, summarize_vehicle_trips


def _fare(price, km, sec=600):
    return FareSnapshot(price=price, distance_km=km, duration_sec=sec, traffic_factor=1.0, surge=1.0)


def _done(trip_id, fare=None, method=PaymentMethod.CASH, **kwargs) -> Trip:
    now = utcnow()
    return Trip(
        id=trip_id,
        status=TripStatus.COMPLETED,
        payment_method=method,
        pickup=GeoPoint(0, 0),
        destination=GeoPoint(0.1, 0),
        created_at=now - timedelta(minutes=30),
        completed_at=now,
        fare=fare,
        **kwargs,
    )


class TestSummarizeVehicleTrips:
    def test_no_trips(self):
        assert summarize_vehicle_trips([]) == VehicleStats()

    def test_totals_and_payment_split(self):
        stats = summarize_vehicle_trips(
            [
                _done(3, _fare(70, 9.996), PaymentMethod.ONLINE),
                _done(2, _fare(45, 4.5)),
                _done(1, _fare(30, 1.2)),
            ]
        )
        assert stats.total_trips == 3
        assert stats.total_earnings == 145
        assert stats.total_distance_m == 15_696
        assert stats.cash_count == 2
        assert stats.online_count == 1

    def test_last_trip_is_first_in_list(self):
        stats = summarize_vehicle_trips([_done(9, _fare(70, 10.0, 840)), _done(4, _fare(30, 1.0))])
        last = stats.last_trip
        assert last.trip_id == 9
        assert last.amount == 70
        assert last.distance_m == 10_000
        assert last.duration_sec == 840
        assert last.payment_method is PaymentMethod.CASH

    def test_trip_without_fare_falls_back_to_estimate_and_path(self):
        start = utcnow()
        path = [
            PathPoint(0.0, 0.0, start),
            PathPoint(0.01, 0.0, start + timedelta(minutes=3)),
        ]
        stats = summarize_vehicle_trips([_done(1, None, estimate=55, path=path)])
        assert stats.total_earnings == 55
        assert stats.last_trip.distance_m == 1112
        assert stats.last_trip.duration_sec == 180
