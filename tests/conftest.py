import asyncio
import base64
import itertools
import os
from datetime import timedelta

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("MASTER_ENCRYPTION_KEY", base64.b64encode(b"m" * 32).decode())
os.environ.setdefault("PAYMENT_TOKEN_SECRET", "test-token-secret")
os.environ.setdefault("PAYOS_CHECKSUM_KEY", "test-checksum")

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from database import init_db
from handlers.calculator import calculate_rental_price
from models.booking import Booking, BookingStatus
from models.car import Car, CarStatus
from models.car_contract import CarContract, CarContractStatus
from models.common import utcnow
from models.gps import GPSDevice, CarGPS, DeviceStatus
from models.user import User, UserRole
from services import broadcast, notifications, payos
from services.encryption import provision_key, encrypt
from services.payos import PayOSClient, PaymentLink, PaymentProviderError, sign_data

CHECKSUM_KEY = "test-checksum"

# job handlers register on import
import handlers.bookings  # noqa: E402,F401
import handlers.inspections  # noqa: E402,F401


@pytest.fixture()
def engine():
    """
    Isolated in-memory SQLite engine; StaticPool lets the job runner's
    own sessions see the same database as the test session.
    """
    eng = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(eng)
    yield eng
    eng.dispose()


@pytest.fixture()
def session_factory(engine):
    return sessionmaker(bind=engine)


@pytest.fixture()
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture(autouse=True)
def fresh_queues(monkeypatch):
    monkeypatch.setattr(broadcast, "queue", asyncio.Queue())
    monkeypatch.setattr(notifications, "outbox", asyncio.Queue())


class FakeProvider(PayOSClient):
    """Payment provider double: hands out deterministic links, verifies real signatures."""

    def __init__(self):
        super().__init__(client_id="test", api_key="test", checksum_key=CHECKSUM_KEY)
        self.calls = []
        self.fail = False

    def create_payment_link(self, order_code, amount, description, buyer_name=None):
        if self.fail:
            raise PaymentProviderError("provider down")
        self.calls.append({"order_code": order_code, "amount": amount, "description": description})
        return PaymentLink(
            link_id=f"link-{order_code}",
            checkout_url=f"https://pay.test/{order_code}",
            qr_code=f"00020101021238570010A000000727{order_code}",
            status="PENDING",
        )


@pytest.fixture(autouse=True)
def provider(monkeypatch):
    fake = FakeProvider()
    monkeypatch.setattr(payos, "provider", fake)
    return fake


def webhook_event(order_code, amount, code="00", checksum_key=CHECKSUM_KEY):
    data = {
        "orderCode": order_code,
        "amount": int(round(amount)),
        "description": "Booking",
        "accountNumber": "12345678",
        "reference": f"REF{order_code}",
        "transactionDateTime": "2024-05-01 10:00:00",
        "currency": "VND",
        "paymentLinkId": f"link-{order_code}",
        "code": code,
        "desc": "success" if code == "00" else "failed",
    }
    return {
        "code": code,
        "desc": data["desc"],
        "success": code == "00",
        "data": data,
        "signature": sign_data(data, checksum_key),
    }


class Factory:
    _ids = itertools.count(1000)

    def __init__(self, db):
        self.db = db

    def user(self, role=UserRole.DRIVER, name=None, license_number="B2-000111", **kwargs):
        key_row, raw_key = provision_key(self.db)
        n = next(self._ids)
        fields = {"license_is_approved": True, "license_expiry_date": utcnow() + timedelta(days=365)}
        fields.update(kwargs)
        user = User(
            role=role,
            name=name or f"{role.value.title()} {n}",
            telegram_id=n,
            encryption_key_id=key_row.id,
            encrypted_phone=encrypt("+84900000000", raw_key, key_row.iv),
            encrypted_license_number=encrypt(license_number, raw_key, key_row.iv) if license_number else None,
            **fields,
        )
        self.db.add(user)
        self.db.commit()
        return user

    def device(self, status=DeviceStatus.AVAILABLE):
        device = GPSDevice(serial_number=f"SN-{next(self._ids)}", name="tracker", status=status)
        self.db.add(device)
        self.db.commit()
        return device

    def car(self, owner=None, status=CarStatus.AVAILABLE, price_per_day=100.0, onboarded=True,
            latitude=10.7769, longitude=106.7009, terms="No smoking in the car."):
        owner = owner or self.user(UserRole.OWNER)
        key_row, raw_key = provision_key(self.db)
        car = Car(
            owner_id=owner.id,
            encryption_key_id=key_row.id,
            encrypted_license_plate=encrypt("51A-12345", raw_key, key_row.iv),
            brand="Toyota",
            model="Vios",
            color="white",
            seats=5,
            price_per_day=price_per_day,
            terms=terms,
            status=status,
            pickup_latitude=latitude,
            pickup_longitude=longitude,
            pickup_address="1 Le Loi, District 1",
        )
        self.db.add(car)
        self.db.flush()
        if onboarded:
            device = GPSDevice(serial_number=f"SN-{next(self._ids)}", status=DeviceStatus.IN_USED)
            self.db.add(device)
            self.db.flush()
            self.db.add(CarGPS(car_id=car.id, device_id=device.id, latitude=latitude, longitude=longitude))
            self.db.add(CarContract(
                car_id=car.id,
                gps_device_id=device.id,
                owner_signed_at=utcnow(),
                technician_signed_at=utcnow(),
                status=CarContractStatus.COMPLETED,
            ))
        self.db.commit()
        return car

    def booking(self, car=None, renter=None, status=BookingStatus.PENDING, start_time=None, days=2,
                is_paid=False, **kwargs):
        car = car or self.car()
        renter = renter or self.user(UserRole.DRIVER)
        start_time = start_time or utcnow() + timedelta(days=1)
        end_time = start_time + timedelta(days=days)
        quote = calculate_rental_price(start_time, end_time, car.price_per_day)
        booking = Booking(
            car_id=car.id,
            renter_id=renter.id,
            status=status,
            start_time=start_time,
            end_time=end_time,
            base_price=quote.base_price,
            platform_fee=quote.platform_fee,
            total_amount=quote.total_amount,
            is_paid=is_paid,
            paid_amount=quote.total_amount if is_paid else 0.0,
            **kwargs,
        )
        self.db.add(booking)
        self.db.commit()
        return booking


@pytest.fixture()
def make(db):
    return Factory(db)


@pytest.fixture()
def payos_event():
    return webhook_event
