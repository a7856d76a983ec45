from sqlalchemy import Column, Integer, ForeignKey, String, Enum, DateTime, UniqueConstraint
from database import Base
from sqlalchemy.orm import relationship
from models.booking import Booking
from models.common import utcnow
from models.user import User
import enum


class FeedbackType(enum.Enum):
    DRIVER = "driver"
    OWNER = "owner"


class Feedback(Base):
    __tablename__ = "feedbacks"
    __table_args__ = (UniqueConstraint("booking_id", "type", name="uq_feedback_booking_type"),)

    id = Column(Integer, primary_key=True, index=True)
    booking_id = Column(Integer, ForeignKey("bookings.id"), nullable=False)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    type = Column(Enum(FeedbackType), nullable=False)
    rating = Column(Integer, nullable=False)
    content = Column(String(500), nullable=True)
    created_at = Column(DateTime, default=utcnow)

    booking = relationship(Booking)
    user = relationship(User)
