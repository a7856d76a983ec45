import re
from datetime import datetime
from typing import Optional

from loguru import logger
from pydantic import BaseModel, Field

from handlers.auth import require_role, get_live
from handlers.results import operation, Conflict
from models.user import User, UserRole
from services.encryption import provision_key, encrypt


def normalize_phone(raw: str) -> str:
    s = (raw or "").strip()
    # drop spaces, brackets, dashes and dots
    s = re.sub(r"[()\s\-\.]", "", s)
    # 00... -> +...
    if s.startswith("00"):
        s = "+" + s[2:]
    return s


class UserPayload(BaseModel):
    role: UserRole
    name: str = Field(min_length=1, max_length=200)
    telegram_id: Optional[int] = None
    email: Optional[str] = None
    address: Optional[str] = None
    phone: Optional[str] = None
    license_number: Optional[str] = None
    license_expiry_date: Optional[datetime] = None


@operation
def register_user(db, payload) -> User:
    data = UserPayload.model_validate(payload)
    if data.telegram_id is not None:
        exists = db.query(User).filter(User.telegram_id == data.telegram_id).first()
        if exists:
            raise Conflict("This Telegram account is already registered")

    key_row, raw_key = provision_key(db)
    user = User(
        role=data.role,
        name=data.name,
        telegram_id=data.telegram_id,
        email=data.email,
        address=data.address,
        encryption_key_id=key_row.id,
        encrypted_phone=encrypt(normalize_phone(data.phone), raw_key, key_row.iv) if data.phone else None,
        encrypted_license_number=encrypt(data.license_number, raw_key, key_row.iv) if data.license_number else None,
        license_expiry_date=data.license_expiry_date,
    )
    db.add(user)
    db.flush()
    logger.info(f"User {user.id} registered as {user.role.value}")
    return user


@operation
def approve_license(db, caller: User, user_id: int) -> User:
    require_role(caller, UserRole.ADMIN, UserRole.CONSULTANT)
    user = get_live(db, User, user_id, "User")
    user.license_is_approved = True
    logger.info(f"License of user {user.id} approved by {caller.id}")
    return user


@operation
def ban_user(db, caller: User, user_id: int) -> User:
    require_role(caller, UserRole.ADMIN)
    user = get_live(db, User, user_id, "User")
    user.is_banned = True
    logger.info(f"User {user.id} banned by {caller.id}")
    return user
