from datetime import datetime
from typing import List

from loguru import logger
from pydantic import BaseModel, Field

import config
from database import for_update, after_commit
from handlers.auth import get_live
from handlers.lifecycle import lock_booking, transition
from handlers.results import operation, Forbidden, Conflict, NotFound, DomainError, ValidationError
from models.booking import Booking, BookingStatus
from models.car import Car, CarStatus
from models.common import utcnow
from models.gps import CarGPS, GPSDevice
from models.trip_tracking import TripTracking
from models.user import User
from services import broadcast
from services.geo import planar_distance_m


class LocationPayload(BaseModel):
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)


class TrackPoint(LocationPayload):
    recorded_at: datetime


def latest_point(db, booking_id: int):
    return db.query(TripTracking).filter(
        TripTracking.booking_id == booking_id
    ).order_by(TripTracking.id.desc()).first()


def append_point(db, booking: Booking, latitude: float, longitude: float, recorded_at=None,
                 previous: TripTracking = None) -> TripTracking:
    """Adds a sample chained to ``previous`` (or the booking's latest sample)."""
    if previous is None:
        previous = latest_point(db, booking.id)

    distance = 0.0
    cumulative = 0.0
    if previous is not None:
        distance = planar_distance_m(previous.latitude, previous.longitude, latitude, longitude)
        cumulative = previous.cumulative_distance + distance

    point = TripTracking(
        booking_id=booking.id,
        latitude=latitude,
        longitude=longitude,
        distance=distance,
        cumulative_distance=cumulative,
        recorded_at=recorded_at or utcnow(),
    )
    db.add(point)
    db.flush()
    return point


def _require_renter(booking: Booking, caller: User):
    if caller is None or booking.renter_id != caller.id:
        raise Forbidden("Only the renter of this booking can do this")


# ===== Device pings =====

@operation
def record_location(db, car_id: int, latitude: float, longitude: float):
    """GPS device ping: moves the car's marker and, during a trip, extends the track."""
    data = LocationPayload(latitude=latitude, longitude=longitude)
    car = get_live(db, Car, car_id, "Car")
    car_gps = db.query(CarGPS).filter(CarGPS.car_id == car.id).first()
    if not car_gps:
        raise NotFound("Car has no GPS device")

    car_gps.latitude = data.latitude
    car_gps.longitude = data.longitude
    car_gps.updated_at = utcnow()

    ongoing = for_update(db.query(Booking).filter(
        Booking.car_id == car.id,
        Booking.status == BookingStatus.ONGOING,
        Booking.live(),
    )).all()

    point = None
    if len(ongoing) == 1:
        point = append_point(db, ongoing[0], data.latitude, data.longitude)
    elif len(ongoing) > 1:
        logger.error(f"Car {car.id} has {len(ongoing)} ongoing bookings, location not tracked")

    message = {"car_id": car.id, "latitude": data.latitude, "longitude": data.longitude}
    topic = broadcast.car_topic(car.id)
    after_commit(db, lambda: broadcast.publish(topic, message))
    return point


# ===== Renter side =====

@operation
def start_trip(db, caller: User, booking_id: int, latitude: float, longitude: float) -> Booking:
    data = LocationPayload(latitude=latitude, longitude=longitude)
    booking = lock_booking(db, booking_id)
    _require_renter(booking, caller)
    if booking.status != BookingStatus.READY_FOR_PICKUP:
        raise Conflict("The car is not ready for pickup yet")

    car_gps = db.query(CarGPS).filter(CarGPS.car_id == booking.car_id).first()
    if not car_gps or car_gps.latitude is None or car_gps.longitude is None:
        raise DomainError("The car's location is unknown")

    distance = planar_distance_m(car_gps.latitude, car_gps.longitude, data.latitude, data.longitude)
    if distance > config.PICKUP_RADIUS_M:
        raise Conflict(
            f"You are {distance:.0f} m away from the car, come within {config.PICKUP_RADIUS_M} m to start the trip"
        )

    transition(booking, BookingStatus.ONGOING)
    booking.car.status = CarStatus.RENTED
    db.add(TripTracking(
        booking_id=booking.id,
        latitude=car_gps.latitude,
        longitude=car_gps.longitude,
        distance=0.0,
        cumulative_distance=0.0,
    ))
    logger.info(f"Trip started for booking {booking.id} by user {caller.id}")
    return booking


@operation
def track_trip_location(db, caller: User, booking_id: int, latitude: float, longitude: float) -> TripTracking:
    data = LocationPayload(latitude=latitude, longitude=longitude)
    booking = lock_booking(db, booking_id)
    _require_renter(booking, caller)
    if booking.status != BookingStatus.ONGOING:
        raise Conflict("The trip is not in progress")
    return append_point(db, booking, data.latitude, data.longitude)


@operation
def batch_track_trip_location(db, caller: User, booking_id: int, points: List[dict]) -> List[TripTracking]:
    """Stores samples buffered offline; they are chained in recording order."""
    if not points:
        raise ValidationError("No locations to track")
    samples = sorted((TrackPoint.model_validate(p) for p in points), key=lambda p: p.recorded_at)

    booking = lock_booking(db, booking_id)
    _require_renter(booking, caller)
    if booking.status != BookingStatus.ONGOING:
        raise Conflict("The trip is not in progress")

    stored = []
    previous = latest_point(db, booking.id)
    for sample in samples:
        previous = append_point(db, booking, sample.latitude, sample.longitude, sample.recorded_at, previous)
        stored.append(previous)
    logger.info(f"Tracked {len(stored)} locations for booking {booking.id}")
    return stored


def total_distance(db, booking_id: int) -> float:
    last = latest_point(db, booking_id)
    return last.cumulative_distance if last else 0.0


def device_matches(db, car_id: int, serial_number: str) -> bool:
    return db.query(CarGPS).join(GPSDevice, GPSDevice.id == CarGPS.device_id).filter(
        CarGPS.car_id == car_id,
        GPSDevice.serial_number == serial_number,
    ).first() is not None
