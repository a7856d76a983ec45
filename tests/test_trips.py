from datetime import timedelta

import pytest

from handlers.results import ErrorKind
from handlers.trips import record_location, start_trip, track_trip_location, batch_track_trip_location
from models.booking import BookingStatus
from models.car import CarStatus
from models.common import utcnow
from models.gps import CarGPS
from models.trip_tracking import TripTracking
from models.user import UserRole
from services import broadcast
from services.geo import planar_distance_m

LAT, LON = 10.7769, 106.7009


def _points(db, booking):
    return db.query(TripTracking).filter(TripTracking.booking_id == booking.id).order_by(TripTracking.id).all()


def test_flat_distance_of_a_thousandth_degree():
    distance = planar_distance_m(10.0, 106.0, 10.001, 106.0)
    assert distance == pytest.approx(111.32, abs=0.01)


def test_record_location_rejects_out_of_range_coordinates(db, make):
    car = make.car()

    result = record_location(db, car.id, 91.0, LON)

    assert result.error == ErrorKind.VALIDATION
    car_gps = db.query(CarGPS).filter(CarGPS.car_id == car.id).one()
    assert car_gps.latitude == LAT
    assert broadcast.queue.empty()


def test_record_location_requires_a_device(db, make):
    car = make.car(onboarded=False)
    assert record_location(db, car.id, LAT, LON).error == ErrorKind.NOT_FOUND
    assert record_location(db, 987654, LAT, LON).error == ErrorKind.NOT_FOUND


def test_record_location_without_trip_only_moves_the_car(db, make):
    car = make.car()
    make.booking(car=car, status=BookingStatus.APPROVED)

    result = record_location(db, car.id, LAT + 0.01, LON)

    assert result.ok
    assert result.value is None
    assert db.query(TripTracking).count() == 0
    car_gps = db.query(CarGPS).filter(CarGPS.car_id == car.id).one()
    assert car_gps.latitude == pytest.approx(LAT + 0.01)

    message = broadcast.queue.get_nowait()
    assert message["topic"] == f"car:{car.id}"
    assert message["payload"]["latitude"] == pytest.approx(LAT + 0.01)


def test_cumulative_distance_is_sum_of_increments(db, make):
    car = make.car()
    booking = make.booking(car=car, status=BookingStatus.ONGOING, start_time=utcnow(), is_paid=True)

    for step in range(1, 4):
        assert record_location(db, car.id, LAT + 0.001 * step, LON).ok

    points = _points(db, booking)
    assert points[0].distance == 0
    assert points[0].cumulative_distance == 0
    cumulative = [p.cumulative_distance for p in points]
    assert cumulative == sorted(cumulative)
    assert points[-1].cumulative_distance == pytest.approx(sum(p.distance for p in points))
    assert points[-1].cumulative_distance == pytest.approx(2 * 111.32, abs=0.05)


def test_start_trip_too_far_from_car(db, make):
    booking = make.booking(status=BookingStatus.READY_FOR_PICKUP, is_paid=True)

    result = start_trip(db, booking.renter, booking.id, LAT + 50 / 111320, LON)

    assert result.error == ErrorKind.CONFLICT
    assert "50 m" in result.message
    db.expire_all()
    assert booking.status == BookingStatus.READY_FOR_PICKUP
    assert db.query(TripTracking).count() == 0


def test_start_trip_seeds_tracking_at_car(db, make):
    booking = make.booking(status=BookingStatus.READY_FOR_PICKUP, is_paid=True)

    result = start_trip(db, booking.renter, booking.id, LAT + 0.00002, LON)

    assert result.ok
    assert booking.status == BookingStatus.ONGOING
    assert booking.car.status == CarStatus.RENTED
    [seed] = _points(db, booking)
    assert (seed.latitude, seed.longitude) == (LAT, LON)
    assert seed.cumulative_distance == 0


def test_start_trip_only_for_renter_and_ready_booking(db, make):
    ready = make.booking(status=BookingStatus.READY_FOR_PICKUP, is_paid=True)
    stranger = make.user(UserRole.DRIVER)
    assert start_trip(db, stranger, ready.id, LAT, LON).error == ErrorKind.FORBIDDEN

    pending = make.booking()
    assert start_trip(db, pending.renter, pending.id, LAT, LON).error == ErrorKind.CONFLICT
    db.expire_all()
    assert pending.status == BookingStatus.PENDING


def test_track_requires_ongoing_trip(db, make):
    booking = make.booking(status=BookingStatus.APPROVED)
    result = track_trip_location(db, booking.renter, booking.id, LAT, LON)
    assert result.error == ErrorKind.CONFLICT


def test_track_appends_to_latest_point(db, make):
    booking = make.booking(status=BookingStatus.ONGOING, start_time=utcnow(), is_paid=True)
    track_trip_location(db, booking.renter, booking.id, LAT, LON)

    result = track_trip_location(db, booking.renter, booking.id, LAT, LON + 0.002)

    assert result.ok
    assert result.value.distance == pytest.approx(222.64, abs=0.01)
    assert result.value.cumulative_distance == pytest.approx(222.64, abs=0.01)


def test_batch_tracking_orders_points_by_time(db, make):
    booking = make.booking(status=BookingStatus.ONGOING, start_time=utcnow(), is_paid=True)
    now = utcnow()
    points = [
        {"latitude": LAT + 0.002, "longitude": LON, "recorded_at": now + timedelta(seconds=20)},
        {"latitude": LAT, "longitude": LON, "recorded_at": now},
        {"latitude": LAT + 0.001, "longitude": LON, "recorded_at": now + timedelta(seconds=10)},
    ]

    result = batch_track_trip_location(db, booking.renter, booking.id, points)

    assert result.ok
    stored = _points(db, booking)
    assert [round(p.latitude, 4) for p in stored] == [round(LAT, 4), round(LAT + 0.001, 4), round(LAT + 0.002, 4)]
    assert stored[-1].cumulative_distance == pytest.approx(2 * 111.32, abs=0.05)


def test_batch_tracking_needs_points(db, make):
    booking = make.booking(status=BookingStatus.ONGOING, start_time=utcnow(), is_paid=True)
    result = batch_track_trip_location(db, booking.renter, booking.id, [])
    assert result.error == ErrorKind.VALIDATION
