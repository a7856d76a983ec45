from typing import Optional

from loguru import logger
from pydantic import BaseModel, Field

from handlers.auth import require_role, require_active
from handlers.results import operation, Conflict
from models.car import Car, CarStatus
from models.gps import GPSDevice
from models.user import User, UserRole
from services.encryption import provision_key, encrypt


class CarPayload(BaseModel):
    brand: str = Field(min_length=1)
    model: str = Field(min_length=1)
    license_plate: str = Field(min_length=1, max_length=20)
    price_per_day: float = Field(gt=0)
    price_per_hour: float = Field(default=0, ge=0)
    color: Optional[str] = None
    seats: int = Field(default=4, ge=1, le=60)
    description: Optional[str] = None
    terms: Optional[str] = None
    pickup_latitude: float = Field(ge=-90, le=90)
    pickup_longitude: float = Field(ge=-180, le=180)
    pickup_address: Optional[str] = None


@operation
def add_car(db, caller: User, payload) -> Car:
    """Registers an owner's car; it stays PENDING until an inspection approves it."""
    require_role(caller, UserRole.OWNER)
    require_active(caller)
    data = CarPayload.model_validate(payload)

    key_row, raw_key = provision_key(db)
    car = Car(
        owner_id=caller.id,
        encryption_key_id=key_row.id,
        encrypted_license_plate=encrypt(data.license_plate.upper(), raw_key, key_row.iv),
        brand=data.brand,
        model=data.model,
        color=data.color,
        seats=data.seats,
        description=data.description,
        price_per_day=data.price_per_day,
        price_per_hour=data.price_per_hour,
        terms=data.terms,
        pickup_latitude=data.pickup_latitude,
        pickup_longitude=data.pickup_longitude,
        pickup_address=data.pickup_address,
        status=CarStatus.PENDING,
    )
    db.add(car)
    db.flush()
    logger.info(f"Car {car.id} added by owner {caller.id}")
    return car


@operation
def register_gps_device(db, caller: User, serial_number: str, name: str = None) -> GPSDevice:
    require_role(caller, UserRole.ADMIN, UserRole.TECHNICIAN)
    if db.query(GPSDevice).filter(GPSDevice.serial_number == serial_number).first():
        raise Conflict(f"GPS device {serial_number} already registered")
    device = GPSDevice(serial_number=serial_number, name=name)
    db.add(device)
    db.flush()
    logger.info(f"GPS device {device.id} ({serial_number}) registered")
    return device
