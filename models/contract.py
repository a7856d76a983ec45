from sqlalchemy import Column, Integer, ForeignKey, Enum, Text, DateTime
from database import Base
from sqlalchemy.orm import relationship
from models.booking import Booking
from models.common import utcnow
import enum


class BookingContractStatus(enum.Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"


class BookingContract(Base):
    __tablename__ = "booking_contracts"

    id = Column(Integer, primary_key=True, index=True)
    booking_id = Column(Integer, ForeignKey("bookings.id"), unique=True, nullable=False)
    start_date = Column(DateTime, nullable=False)
    end_date = Column(DateTime, nullable=False)
    terms = Column(Text, nullable=True)
    driver_signed_at = Column(DateTime, nullable=True)
    owner_signed_at = Column(DateTime, nullable=True)
    status = Column(Enum(BookingContractStatus), default=BookingContractStatus.PENDING, nullable=False)
    created_at = Column(DateTime, default=utcnow)

    booking = relationship(Booking)
