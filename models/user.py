from sqlalchemy import Column, Integer, BigInteger, String, Boolean, Enum, Float, DateTime, ForeignKey
from sqlalchemy.orm import relationship
from database import Base
from models.common import SoftDeleteMixin, utcnow
from models.encryption_key import EncryptionKey
import enum


class UserRole(enum.Enum):
    ADMIN = "admin"
    OWNER = "owner"
    DRIVER = "driver"
    CONSULTANT = "consultant"
    TECHNICIAN = "technician"


class User(SoftDeleteMixin, Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    telegram_id = Column(BigInteger, unique=True, index=True, nullable=True)
    role = Column(Enum(UserRole), nullable=False)
    name = Column(String, nullable=False)
    email = Column(String, nullable=True)
    address = Column(String, nullable=True)

    encryption_key_id = Column(Integer, ForeignKey("encryption_keys.id"), nullable=True)
    encrypted_phone = Column(String, nullable=True)
    encrypted_license_number = Column(String, nullable=True)
    license_expiry_date = Column(DateTime, nullable=True)
    license_is_approved = Column(Boolean, default=False)

    is_banned = Column(Boolean, default=False)
    total_bookings = Column(Integer, default=0)
    total_cancelled = Column(Integer, default=0)
    total_earning = Column(Float, default=0.0)
    created_at = Column(DateTime, default=utcnow)

    encryption_key = relationship(EncryptionKey)
