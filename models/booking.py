from sqlalchemy import Column, Integer, ForeignKey, Enum, Float, Boolean, DateTime, Text, BigInteger
from sqlalchemy.orm import relationship
from database import Base
from models.common import SoftDeleteMixin, utcnow
from models.car import Car
from models.user import User
import enum


class BookingStatus(enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    READY_FOR_PICKUP = "ready_for_pickup"
    ONGOING = "ongoing"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


# statuses that hold the car for their time window
LIVE_STATUSES = (
    BookingStatus.PENDING,
    BookingStatus.APPROVED,
    BookingStatus.READY_FOR_PICKUP,
    BookingStatus.ONGOING,
)

ALLOWED_TRANSITIONS = {
    BookingStatus.PENDING: {BookingStatus.APPROVED, BookingStatus.REJECTED, BookingStatus.CANCELLED},
    BookingStatus.APPROVED: {BookingStatus.READY_FOR_PICKUP, BookingStatus.CANCELLED, BookingStatus.EXPIRED},
    BookingStatus.READY_FOR_PICKUP: {BookingStatus.ONGOING, BookingStatus.APPROVED},
    BookingStatus.ONGOING: {BookingStatus.COMPLETED},
}


class Booking(SoftDeleteMixin, Base):
    __tablename__ = "bookings"

    id = Column(Integer, primary_key=True, index=True)
    car_id = Column(Integer, ForeignKey("cars.id"), nullable=False, index=True)
    renter_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    status = Column(Enum(BookingStatus), default=BookingStatus.PENDING, nullable=False)
    start_time = Column(DateTime, nullable=False)
    end_time = Column(DateTime, nullable=False)
    actual_return_time = Column(DateTime, nullable=True)

    base_price = Column(Float, nullable=False)
    platform_fee = Column(Float, nullable=False)
    excess_day = Column(Float, default=0.0)
    excess_day_fee = Column(Float, default=0.0)
    excess_distance_fee = Column(Float, default=0.0)
    total_amount = Column(Float, nullable=False)
    paid_amount = Column(Float, default=0.0)
    total_distance = Column(Float, default=0.0)

    is_paid = Column(Boolean, default=False)
    extension_amount = Column(Float, nullable=True)
    is_extension_paid = Column(Boolean, nullable=True)
    is_car_returned = Column(Boolean, default=False)
    is_refund = Column(Boolean, default=False)
    refund_amount = Column(Float, nullable=True)
    refund_date = Column(DateTime, nullable=True)
    pickup_prepared_at = Column(DateTime, nullable=True)
    payos_order_code = Column(BigInteger, nullable=True)
    note = Column(Text, nullable=True)

    version = Column(Integer, nullable=False)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    car = relationship(Car)
    renter = relationship(User)

    __mapper_args__ = {"version_id_col": version}

    @property
    def has_pending_extension(self):
        return self.extension_amount is not None and self.is_extension_paid is False

    @property
    def outstanding_amount(self):
        return round(max((self.total_amount or 0.0) - (self.paid_amount or 0.0), 0.0), 2)
