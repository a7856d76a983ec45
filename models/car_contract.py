from sqlalchemy import Column, Integer, ForeignKey, Enum, Text, DateTime
from sqlalchemy.orm import relationship
from database import Base
from models.common import SoftDeleteMixin, utcnow
from models.car import Car
from models.gps import GPSDevice
from models.user import User
import enum


class CarContractStatus(enum.Enum):
    PENDING = "pending"
    OWNER_SIGNED = "owner_signed"
    TECHNICIAN_SIGNED = "technician_signed"
    COMPLETED = "completed"
    REJECTED = "rejected"


class CarContract(SoftDeleteMixin, Base):
    __tablename__ = "car_contracts"

    id = Column(Integer, primary_key=True, index=True)
    car_id = Column(Integer, ForeignKey("cars.id"), unique=True, nullable=False)
    technician_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    gps_device_id = Column(Integer, ForeignKey("gps_devices.id"), nullable=True)
    owner_signed_at = Column(DateTime, nullable=True)
    technician_signed_at = Column(DateTime, nullable=True)
    inspection_results = Column(Text, nullable=True)
    terms = Column(Text, nullable=True)
    status = Column(Enum(CarContractStatus), default=CarContractStatus.PENDING, nullable=False)
    version = Column(Integer, nullable=False)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    car = relationship(Car)
    technician = relationship(User)
    gps_device = relationship(GPSDevice)

    __mapper_args__ = {"version_id_col": version}
