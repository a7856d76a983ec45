from datetime import timedelta
from typing import Optional

from loguru import logger
from pydantic import BaseModel, Field

import config
from handlers.auth import get_live
from handlers.results import operation, DomainError, Forbidden
from models.booking import Booking, BookingStatus
from models.common import utcnow
from models.review import Feedback, FeedbackType
from models.user import User, UserRole


class FeedbackPayload(BaseModel):
    rating: int = Field(ge=1, le=5)
    comment: Optional[str] = Field(default=None, max_length=500)


def _feedback_type(booking: Booking, caller: User) -> FeedbackType:
    match caller.role:
        case UserRole.DRIVER | UserRole.OWNER if booking.renter_id == caller.id:
            return FeedbackType.DRIVER
        case UserRole.OWNER if booking.car.owner_id == caller.id:
            return FeedbackType.OWNER
        case _:
            raise DomainError("Only the renter or the car's owner can leave feedback on this booking")


@operation
def create_feedback(db, caller: User, booking_id: int, rating: int, comment: str = None) -> Feedback:
    if caller is None:
        raise Forbidden("You must be signed in to leave feedback")
    data = FeedbackPayload(rating=rating, comment=comment)
    booking = get_live(db, Booking, booking_id, "Booking")
    if booking.status != BookingStatus.COMPLETED:
        raise DomainError("Feedback can only be left on completed bookings")

    feedback_type = _feedback_type(booking, caller)

    now = utcnow()
    if now < booking.end_time or now > booking.end_time + timedelta(days=config.FEEDBACK_WINDOW_DAYS):
        raise DomainError(f"Feedback can only be left within {config.FEEDBACK_WINDOW_DAYS} days after the booking ends")

    exists = db.query(Feedback).filter(
        Feedback.booking_id == booking.id,
        Feedback.type == feedback_type,
    ).first()
    if exists:
        raise DomainError("You have already left feedback for this booking")

    feedback = Feedback(
        booking_id=booking.id,
        user_id=caller.id,
        type=feedback_type,
        rating=data.rating,
        content=data.comment,
    )
    db.add(feedback)
    db.flush()
    logger.info(f"Feedback {feedback.id} ({feedback_type.value}) on booking {booking.id} by user {caller.id}")
    return feedback

