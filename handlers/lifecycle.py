from database import for_update
from handlers.results import Conflict, NotFound
from models.booking import Booking, BookingStatus, ALLOWED_TRANSITIONS


def lock_booking(db, booking_id: int) -> Booking:
    booking = for_update(db.query(Booking).filter(Booking.id == booking_id, Booking.live())).first()
    if not booking:
        raise NotFound("Booking not found")
    return booking


def can_transition(current: BookingStatus, target: BookingStatus) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, set())


def transition(booking: Booking, target: BookingStatus):
    if not can_transition(booking.status, target):
        raise Conflict(f"Booking cannot move from {booking.status.value} to {target.value}")
    booking.status = target
