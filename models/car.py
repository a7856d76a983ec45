from sqlalchemy import Column, Integer, String, Float, ForeignKey, Enum, Text, DateTime
from sqlalchemy.orm import relationship
from database import Base
from models.common import SoftDeleteMixin, utcnow
from models.encryption_key import EncryptionKey
from models.user import User
import enum


class CarStatus(enum.Enum):
    PENDING = "pending"
    AVAILABLE = "available"
    RENTED = "rented"
    INACTIVE = "inactive"
    REJECTED = "rejected"


class Car(SoftDeleteMixin, Base):
    __tablename__ = "cars"

    id = Column(Integer, primary_key=True, index=True)
    owner_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    encryption_key_id = Column(Integer, ForeignKey("encryption_keys.id"), nullable=True)
    encrypted_license_plate = Column(String, nullable=True)
    brand = Column(String, nullable=False)
    model = Column(String, nullable=False)
    color = Column(String, nullable=True)
    seats = Column(Integer, default=4)
    description = Column(Text, nullable=True)
    price_per_hour = Column(Float, default=0.0)
    price_per_day = Column(Float, nullable=False)
    terms = Column(Text, nullable=True)
    status = Column(Enum(CarStatus), default=CarStatus.PENDING, nullable=False)

    pickup_latitude = Column(Float, nullable=True)
    pickup_longitude = Column(Float, nullable=True)
    pickup_address = Column(String, nullable=True)

    total_rented = Column(Integer, default=0)
    total_cancelled = Column(Integer, default=0)
    total_earning = Column(Float, default=0.0)
    created_at = Column(DateTime, default=utcnow)

    owner = relationship(User)
    encryption_key = relationship(EncryptionKey)
