from sqlalchemy import Column, Integer, BigInteger, ForeignKey, String, Float, Enum, DateTime
from database import Base
from sqlalchemy.orm import relationship
from models.booking import Booking
from models.common import utcnow
import enum


class PaymentStatus(enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class PaymentKind(enum.Enum):
    BOOKING = "booking"
    EXTENSION = "extension"
    SETTLEMENT = "settlement"


class Payment(Base):
    __tablename__ = "payments"

    id = Column(Integer, primary_key=True, index=True)
    booking_id = Column(Integer, ForeignKey("bookings.id"), nullable=False, index=True)
    order_code = Column(BigInteger, unique=True, nullable=False, index=True)
    kind = Column(Enum(PaymentKind), nullable=False)
    amount = Column(Float, nullable=False)
    status = Column(Enum(PaymentStatus), default=PaymentStatus.PENDING, nullable=False)
    checkout_url = Column(String, nullable=True)
    qr_code = Column(String, nullable=True)
    provider_link_id = Column(String, nullable=True)
    transaction_id = Column(String, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    paid_at = Column(DateTime, nullable=True)
    version = Column(Integer, nullable=False)

    booking = relationship(Booking)

    __mapper_args__ = {"version_id_col": version}
