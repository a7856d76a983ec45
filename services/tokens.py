import base64
import hashlib
import hmac
from datetime import timedelta, timezone

import config
from models.common import utcnow


class InvalidToken(Exception):
    pass


def _sign(body: str) -> str:
    return hmac.new(config.PAYMENT_TOKEN_SECRET.encode(), body.encode(), hashlib.sha256).hexdigest()


def _timestamp(dt) -> int:
    return int(dt.replace(tzinfo=timezone.utc).timestamp())


def issue_payment_token(booking_id: int, now=None) -> str:
    expires_at = (now or utcnow()) + timedelta(hours=config.PAYMENT_TOKEN_TTL_HOURS)
    body = f"{booking_id}.{_timestamp(expires_at)}"
    raw = f"{body}.{_sign(body)}"
    return base64.urlsafe_b64encode(raw.encode()).decode().rstrip("=")


def verify_payment_token(token: str, now=None) -> int:
    """Returns the booking id carried by a valid, unexpired token."""
    try:
        padded = token + "=" * (-len(token) % 4)
        raw = base64.urlsafe_b64decode(padded.encode()).decode()
        booking_id, expires, signature = raw.split(".")
    except (ValueError, UnicodeDecodeError) as e:
        raise InvalidToken("Malformed payment token") from e

    if not hmac.compare_digest(_sign(f"{booking_id}.{expires}"), signature):
        raise InvalidToken("Payment token signature mismatch")
    if int(expires) < _timestamp(now or utcnow()):
        raise InvalidToken("Payment token has expired")
    return int(booking_id)
