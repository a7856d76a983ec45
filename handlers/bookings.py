from datetime import datetime, timedelta
from typing import Optional

from loguru import logger
from pydantic import BaseModel, field_validator, model_validator

import config
from database import for_update
from handlers.auth import require_role, require_active, get_live
from handlers.calculator import (
    calculate_rental_price, rental_days, late_return_fee, excess_distance_fee, cancellation_refund,
    early_return_refund,
)
from handlers.lifecycle import lock_booking, transition
from handlers.payments import open_payment, owner_share
from handlers.results import operation, Result, Forbidden, Conflict, DomainError, ValidationError
from handlers.trips import total_distance
from models.booking import Booking, BookingStatus, LIVE_STATUSES
from models.car import Car, CarStatus
from models.car_contract import CarContract, CarContractStatus
from models.common import utcnow, as_naive_utc
from models.contract import BookingContract, BookingContractStatus
from models.gps import CarGPS
from models.payment import PaymentKind, Payment, PaymentStatus
from models.user import User, UserRole
from services import jobs
from services.documents import render_booking_contract
from services.geo import planar_distance_m
from services.notifications import notify
from services.payos import PaymentProviderError
from services.tokens import issue_payment_token

EXPIRE_UNPAID_JOB = "booking.expire_unpaid"
REVERT_EXTENSION_JOB = "booking.revert_extension"


def _check_window(start_time: datetime, end_time: datetime, now: datetime):
    if end_time <= start_time:
        raise ValueError("End time must be after start time")
    if start_time < now + timedelta(minutes=config.MIN_BOOKING_LEAD_MINUTES):
        raise ValueError(f"Start time must be at least {config.MIN_BOOKING_LEAD_MINUTES} minutes from now")
    if end_time - start_time > timedelta(days=config.MAX_BOOKING_DAYS):
        raise ValueError(f"A booking cannot be longer than {config.MAX_BOOKING_DAYS} days")


class BookingPayload(BaseModel):
    car_id: int
    start_time: datetime
    end_time: datetime

    @field_validator("start_time", "end_time")
    @classmethod
    def naive_utc(cls, value):
        return as_naive_utc(value)

    @model_validator(mode="after")
    def check_window(self):
        _check_window(self.start_time, self.end_time, utcnow())
        return self


def _overlapping(db, car_id: int, start_time: datetime, end_time: datetime, exclude_id: int = None):
    query = db.query(Booking).filter(
        Booking.car_id == car_id,
        Booking.status.in_(LIVE_STATUSES),
        Booking.live(),
        Booking.start_time < end_time,
        Booking.end_time > start_time,
    )
    if exclude_id is not None:
        query = query.filter(Booking.id != exclude_id)
    return query.first()


def _booking_contract(db, booking: Booking):
    return db.query(BookingContract).filter(BookingContract.booking_id == booking.id).first()


def _require_owner(booking: Booking, caller: User):
    require_role(caller, UserRole.OWNER)
    if booking.car.owner_id != caller.id:
        raise Forbidden("Only the car's owner can do this")


def _require_renter(booking: Booking, caller: User):
    if caller is None or booking.renter_id != caller.id:
        raise Forbidden("Only the renter of this booking can do this")


def pay_url(booking: Booking) -> str:
    return f"{config.PUBLIC_BASE_URL}/api/payments/{issue_payment_token(booking.id)}"


# ===== Create / approve =====

@operation
def create_booking(db, caller: User, car_id: int, start_time: datetime, end_time: datetime) -> Booking:
    require_role(caller, UserRole.DRIVER, UserRole.OWNER)
    require_active(caller)
    data = BookingPayload(car_id=car_id, start_time=start_time, end_time=end_time)

    if not caller.license_is_approved or caller.license_expiry_date is None \
            or caller.license_expiry_date <= data.end_time:
        raise DomainError("Your driving license is not approved or expires before the booking ends")

    car = get_live(db, Car, data.car_id, "Car")
    if car.owner_id == caller.id:
        raise DomainError("You cannot book your own car")
    contract = db.query(CarContract).filter(CarContract.car_id == car.id, CarContract.live()).first()
    if car.status != CarStatus.AVAILABLE or not contract or contract.status != CarContractStatus.COMPLETED:
        raise DomainError("The car is not available for rent")

    duplicate = db.query(Booking).filter(
        Booking.renter_id == caller.id,
        Booking.car_id == car.id,
        Booking.start_time == data.start_time,
        Booking.end_time == data.end_time,
        Booking.status.in_(LIVE_STATUSES),
        Booking.live(),
    ).first()
    if duplicate:
        raise Conflict(f"Duplicate booking request, booking {duplicate.id} already exists")

    active = db.query(Booking).filter(
        Booking.renter_id == caller.id,
        Booking.status.in_(LIVE_STATUSES),
        Booking.live(),
    ).first()
    if active:
        raise DomainError("You can only have one active booking at a time")

    if _overlapping(db, car.id, data.start_time, data.end_time):
        raise Conflict("The car is already booked for this period")

    quote = calculate_rental_price(data.start_time, data.end_time, car.price_per_day)
    booking = Booking(
        car_id=car.id,
        renter_id=caller.id,
        start_time=data.start_time,
        end_time=data.end_time,
        base_price=quote.base_price,
        platform_fee=quote.platform_fee,
        total_amount=quote.total_amount,
        status=BookingStatus.PENDING,
    )
    db.add(booking)
    db.flush()

    db.add(BookingContract(
        booking_id=booking.id,
        start_date=booking.start_time,
        end_date=booking.end_time,
        terms=render_booking_contract(booking, car, caller, car.owner),
        driver_signed_at=utcnow(),
        status=BookingContractStatus.PENDING,
    ))

    notify(db, caller, "Booking created", "booking_created", booking=booking, car=car)
    notify(db, car.owner, "New booking request", "booking_requested", booking=booking, car=car)
    logger.info(f"Booking {booking.id}: user={caller.id}, car={car.id}, total={booking.total_amount}")
    return booking


@operation
def approve_booking(db, caller: User, booking_id: int, is_approved: bool, note: str = None) -> Booking:
    booking = lock_booking(db, booking_id)
    _require_owner(booking, caller)
    if booking.status != BookingStatus.PENDING:
        raise Conflict(f"Booking is {booking.status.value}, only pending bookings can be reviewed")

    if not is_approved:
        transition(booking, BookingStatus.REJECTED)
        booking.note = note
        notify(db, booking.renter, "Booking rejected", "booking_rejected", booking=booking, note=note)
        logger.info(f"Booking {booking.id} rejected by owner {caller.id}")
        return booking

    transition(booking, BookingStatus.APPROVED)
    now = utcnow()
    contract = _booking_contract(db, booking)
    if contract:
        contract.owner_signed_at = now
        contract.status = BookingContractStatus.CONFIRMED

    if not booking.is_paid:
        jobs.schedule_job(db, EXPIRE_UNPAID_JOB, booking.id,
                          now + timedelta(hours=config.BOOKING_PAYMENT_WINDOW_HOURS))

    notify(db, booking.renter, "Booking approved", "booking_approved", booking=booking, pay_url=pay_url(booking))
    logger.info(f"Booking {booking.id} approved by owner {caller.id}")
    return booking


# ===== Extension =====

class ExtensionPayload(BaseModel):
    new_start: Optional[datetime] = None
    new_end: Optional[datetime] = None

    @field_validator("new_start", "new_end")
    @classmethod
    def naive_utc(cls, value):
        return as_naive_utc(value)


def _ensure_free(db, booking: Booking, start_time: datetime, end_time: datetime):
    if _overlapping(db, booking.car_id, start_time, end_time, exclude_id=booking.id):
        raise DomainError("The car is booked by someone else in the requested period")


def _reschedule(db, booking: Booking, start_time: datetime, end_time: datetime):
    try:
        _check_window(start_time, end_time, utcnow())
    except ValueError as e:
        raise DomainError(str(e))
    _ensure_free(db, booking, start_time, end_time)
    booking.start_time = start_time
    booking.end_time = end_time
    contract = _booking_contract(db, booking)
    if contract:
        contract.start_date = start_time
        contract.end_date = end_time


def _extend_ongoing(db, booking: Booking, new_end: Optional[datetime]):
    if not booking.is_paid:
        raise DomainError("The booking has to be paid before it can be extended")
    if new_end is None:
        raise ValidationError("new_end is required to extend a trip")

    if booking.has_pending_extension:
        if new_end == booking.end_time:
            return Result.success(booking, "Extension already requested, waiting for payment")
        raise Conflict("Another extension is waiting for payment")
    if booking.extension_amount is not None and booking.is_extension_paid and new_end == booking.end_time:
        return Result.success(booking, "The booking is already extended")

    if new_end <= booking.end_time:
        raise DomainError("The new end time must be after the current end time")
    if new_end - booking.start_time > timedelta(days=config.MAX_BOOKING_DAYS):
        raise DomainError(f"A booking cannot be longer than {config.MAX_BOOKING_DAYS} days")
    _ensure_free(db, booking, booking.end_time, new_end)

    extra = calculate_rental_price(booking.end_time, new_end, booking.car.price_per_day)
    previous = {
        "end_time": booking.end_time.isoformat(),
        "base_price": booking.base_price,
        "platform_fee": booking.platform_fee,
        "total_amount": booking.total_amount,
        "extended_end_time": new_end.isoformat(),
    }

    booking.end_time = new_end
    booking.base_price = round(booking.base_price + extra.base_price, 2)
    booking.platform_fee = round(booking.platform_fee + extra.platform_fee, 2)
    booking.total_amount = round(booking.total_amount + extra.total_amount, 2)
    booking.extension_amount = extra.total_amount
    booking.is_extension_paid = False

    jobs.schedule_job(db, REVERT_EXTENSION_JOB, booking.id,
                      utcnow() + timedelta(minutes=config.EXTENSION_PAYMENT_WINDOW_MINUTES), previous)
    notify(db, booking.renter, "Extension requested", "extension_requested", booking=booking,
           amount=extra.total_amount, minutes=config.EXTENSION_PAYMENT_WINDOW_MINUTES)
    logger.info(f"Booking {booking.id} extended to {new_end}, {extra.total_amount} due")
    return booking


@operation
def extend_booking_day(db, caller: User, booking_id: int, new_start: datetime = None,
                       new_end: datetime = None) -> Booking:
    """
    Moves or extends a booking.

    Before pickup the window may move (a pending booking may also change its
    length and is re-priced). During a trip only the end can move later, and
    the extra amount has to be paid within the extension payment window or
    the change is rolled back.
    """
    data = ExtensionPayload(new_start=new_start, new_end=new_end)
    booking = lock_booking(db, booking_id)
    _require_renter(booking, caller)

    match booking.status:
        case BookingStatus.PENDING:
            start_time = data.new_start or booking.start_time
            end_time = data.new_end or booking.end_time
            _reschedule(db, booking, start_time, end_time)
            quote = calculate_rental_price(start_time, end_time, booking.car.price_per_day)
            booking.base_price = quote.base_price
            booking.platform_fee = quote.platform_fee
            booking.total_amount = quote.total_amount
        case BookingStatus.APPROVED | BookingStatus.READY_FOR_PICKUP:
            if data.new_start is None:
                raise ValidationError("new_start is required to move an approved booking")
            moved_later = data.new_start > booking.start_time
            duration = booking.end_time - booking.start_time
            _reschedule(db, booking, data.new_start, data.new_start + duration)
            if moved_later and booking.status == BookingStatus.READY_FOR_PICKUP:
                transition(booking, BookingStatus.APPROVED)
        case BookingStatus.ONGOING:
            return _extend_ongoing(db, booking, data.new_end)
        case _:
            raise DomainError(f"A {booking.status.value} booking cannot be changed")

    logger.info(f"Booking {booking.id} rescheduled to {booking.start_time} - {booking.end_time}")
    return booking


# ===== Pickup / return =====

@operation
def mark_booking_ready_for_pickup(db, caller: User, booking_id: int):
    booking = lock_booking(db, booking_id)
    _require_owner(booking, caller)
    if booking.status != BookingStatus.APPROVED:
        raise Conflict(f"Booking is {booking.status.value}, only approved bookings can be prepared")

    if not booking.is_paid:
        # the payment webhook finishes the transition
        booking.pickup_prepared_at = utcnow()
        logger.info(f"Booking {booking.id} prepared for pickup, waiting for payment")
        return Result.success(booking, "Car prepared, the booking becomes ready once it is paid")

    transition(booking, BookingStatus.READY_FOR_PICKUP)
    booking.pickup_prepared_at = booking.pickup_prepared_at or utcnow()
    notify(db, booking.renter, "Car ready for pickup", "ready_for_pickup", booking=booking, car=booking.car)
    logger.info(f"Booking {booking.id} ready for pickup")
    return booking


@operation
def confirm_car_return(db, caller: User, booking_id: int) -> Booking:
    booking = lock_booking(db, booking_id)
    _require_owner(booking, caller)
    if booking.status != BookingStatus.ONGOING:
        raise Conflict("Only an ongoing trip can be returned")
    booking.is_car_returned = True
    logger.info(f"Car return confirmed for booking {booking.id} by owner {caller.id}")
    return booking


@operation
def complete_booking(db, caller: User, booking_id: int) -> Booking:
    booking = lock_booking(db, booking_id)
    _require_renter(booking, caller)
    if booking.status != BookingStatus.ONGOING:
        raise Conflict("Only an ongoing trip can be completed")
    if not booking.is_car_returned:
        raise DomainError("The owner has not confirmed the car's return yet")

    car = booking.car
    car_gps = db.query(CarGPS).filter(CarGPS.car_id == car.id).first()
    if not car_gps or car_gps.latitude is None or car_gps.longitude is None:
        raise DomainError("The car's location is unknown")
    away = planar_distance_m(car.pickup_latitude, car.pickup_longitude, car_gps.latitude, car_gps.longitude)
    if away > config.RETURN_RADIUS_M:
        raise DomainError(
            f"The car must be returned to {car.pickup_address or 'its pickup location'}, "
            f"it is {away:.0f} m away (at most {config.RETURN_RADIUS_M} m)"
        )

    now = utcnow()
    distance = total_distance(db, booking.id)
    days = rental_days(booking.start_time, booking.end_time)
    excess_days, late_fee = late_return_fee(booking.end_time, now, car.price_per_day)
    distance_fee = excess_distance_fee(distance, days)

    booking.actual_return_time = now
    booking.total_distance = distance
    booking.excess_day = excess_days
    booking.excess_day_fee = late_fee
    booking.excess_distance_fee = distance_fee
    booking.total_amount = round(booking.base_price + booking.platform_fee + late_fee + distance_fee, 2)
    transition(booking, BookingStatus.COMPLETED)

    car.status = CarStatus.AVAILABLE
    car.total_rented = (car.total_rented or 0) + 1
    booking.renter.total_bookings = (booking.renter.total_bookings or 0) + 1

    refund = early_return_refund(booking.paid_amount or 0.0, booking.start_time, booking.end_time, now)
    if refund > 0:
        booking.is_refund = True
        booking.refund_amount = round((booking.refund_amount or 0.0) + refund, 2)
        booking.refund_date = now
        share = owner_share(refund)
        car.total_earning = round((car.total_earning or 0.0) - share, 2)
        car.owner.total_earning = round((car.owner.total_earning or 0.0) - share, 2)

    payment = None
    if booking.outstanding_amount > 0:
        try:
            payment = open_payment(db, booking, PaymentKind.SETTLEMENT, booking.outstanding_amount)
        except PaymentProviderError as e:
            # the renter can still settle later through process_booking_payment
            logger.warning(f"Settlement link for booking {booking.id} failed: {e}")

    notify(db, booking.renter, "Trip completed", "booking_completed", booking=booking, payment=payment)
    notify(db, car.owner, "Trip completed", "booking_completed", booking=booking, payment=None)
    logger.info(
        f"Booking {booking.id} completed: distance={distance:.0f} m, late fee={late_fee}, "
        f"distance fee={distance_fee}, refund={refund}, outstanding={booking.outstanding_amount}"
    )
    return booking


@operation
def cancel_booking(db, caller: User, booking_id: int) -> Booking:
    booking = lock_booking(db, booking_id)
    require_role(caller, UserRole.DRIVER)
    _require_renter(booking, caller)
    if booking.status not in (BookingStatus.PENDING, BookingStatus.APPROVED):
        raise Conflict(f"A {booking.status.value} booking cannot be cancelled")

    now = utcnow()
    transition(booking, BookingStatus.CANCELLED)
    booking.car.total_cancelled = (booking.car.total_cancelled or 0) + 1
    caller.total_cancelled = (caller.total_cancelled or 0) + 1

    if booking.is_paid:
        refund = cancellation_refund(booking.paid_amount or 0.0, booking.start_time, now)
        booking.is_refund = refund > 0
        booking.refund_amount = round((booking.refund_amount or 0.0) + refund, 2)
        booking.refund_date = now if refund > 0 else None

    notify(db, booking.car.owner, "Booking cancelled", "booking_cancelled", booking=booking)
    logger.info(f"Booking {booking.id} cancelled by user {caller.id}, refund={booking.refund_amount}")
    return booking


# ===== Deferred effects =====

@jobs.register(EXPIRE_UNPAID_JOB)
def expire_unpaid_booking(db, job, now) -> bool:
    booking = for_update(db.query(Booking).filter(Booking.id == job.entity_id, Booking.live())).first()
    if not booking or booking.status != BookingStatus.APPROVED or booking.is_paid:
        return False
    transition(booking, BookingStatus.EXPIRED)
    for payment in db.query(Payment).filter(
        Payment.booking_id == booking.id,
        Payment.status == PaymentStatus.PENDING,
    ).all():
        payment.status = PaymentStatus.FAILED
    notify(db, booking.renter, "Booking expired", "booking_expired", booking=booking)
    logger.info(f"Booking {booking.id} expired unpaid")
    return True


@jobs.register(REVERT_EXTENSION_JOB)
def revert_unpaid_extension(db, job, now) -> bool:
    booking = for_update(db.query(Booking).filter(Booking.id == job.entity_id, Booking.live())).first()
    previous = job.payload or {}
    if not booking or booking.status != BookingStatus.ONGOING or not booking.has_pending_extension:
        return False
    if booking.end_time.isoformat() != previous.get("extended_end_time"):
        return False

    booking.end_time = datetime.fromisoformat(previous["end_time"])
    booking.base_price = previous["base_price"]
    booking.platform_fee = previous["platform_fee"]
    booking.total_amount = previous["total_amount"]
    booking.extension_amount = None
    booking.is_extension_paid = None
    for payment in db.query(Payment).filter(
        Payment.booking_id == booking.id,
        Payment.kind == PaymentKind.EXTENSION,
        Payment.status == PaymentStatus.PENDING,
    ).all():
        payment.status = PaymentStatus.FAILED

    notify(db, booking.renter, "Extension cancelled", "extension_reverted", booking=booking)
    logger.info(f"Unpaid extension of booking {booking.id} reverted to {booking.end_time}")
    return True
