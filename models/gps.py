from sqlalchemy import Column, Integer, String, Float, ForeignKey, Enum, DateTime
from sqlalchemy.orm import relationship
from database import Base
from models.common import utcnow
from models.car import Car
import enum


class DeviceStatus(enum.Enum):
    AVAILABLE = "available"
    IN_USED = "in_used"
    UNAVAILABLE = "unavailable"


class GPSDevice(Base):
    __tablename__ = "gps_devices"

    id = Column(Integer, primary_key=True, index=True)
    serial_number = Column(String, unique=True, nullable=False)
    name = Column(String, nullable=True)
    status = Column(Enum(DeviceStatus), default=DeviceStatus.AVAILABLE, nullable=False)
    version = Column(Integer, nullable=False)
    created_at = Column(DateTime, default=utcnow)

    __mapper_args__ = {"version_id_col": version}


class CarGPS(Base):
    """Binding of a car to its tracker plus the last reported position."""

    __tablename__ = "car_gps"

    id = Column(Integer, primary_key=True, index=True)
    car_id = Column(Integer, ForeignKey("cars.id"), unique=True, nullable=False)
    device_id = Column(Integer, ForeignKey("gps_devices.id"), unique=True, nullable=False)
    latitude = Column(Float, nullable=True)
    longitude = Column(Float, nullable=True)
    updated_at = Column(DateTime, default=utcnow)

    car = relationship(Car)
    device = relationship(GPSDevice)
