import hashlib
import hmac
import json
import secrets
import time
from dataclasses import dataclass
from io import BytesIO

import httpx
import qrcode
from loguru import logger

import config


@dataclass
class PaymentLink:
    link_id: str
    checkout_url: str
    qr_code: str
    status: str


class PaymentProviderError(Exception):
    pass


def generate_order_code() -> int:
    # millisecond clock plus random suffix, below 2**53 as the provider requires
    millis = int(time.time() * 1000) % 10 ** 10
    return int(f"{millis}{secrets.randbelow(10 ** 5):05d}")


def _signature_value(value) -> str:
    if value is None:
        return ""
    if isinstance(value, (dict, list)):
        return json.dumps(value, separators=(",", ":"), ensure_ascii=False)
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def sign_data(data: dict, checksum_key: str) -> str:
    message = "&".join(f"{key}={_signature_value(data[key])}" for key in sorted(data))
    return hmac.new(checksum_key.encode(), message.encode(), hashlib.sha256).hexdigest()


class PayOSClient:
    """Thin client for the PayOS merchant API (payment links and webhook checks)."""

    def __init__(self, client_id=None, api_key=None, checksum_key=None, base_url=None, timeout=10.0):
        self.client_id = client_id or config.PAYOS_CLIENT_ID
        self.api_key = api_key or config.PAYOS_API_KEY
        self.checksum_key = checksum_key or config.PAYOS_CHECKSUM_KEY
        self.base_url = (base_url or config.PAYOS_API_URL).rstrip("/")
        self.timeout = timeout

    def create_payment_link(self, order_code: int, amount: float, description: str, buyer_name=None) -> PaymentLink:
        body = {
            "orderCode": order_code,
            "amount": int(round(amount)),
            # the provider truncates longer descriptions
            "description": description[:25],
            "cancelUrl": config.PAYMENT_CANCEL_URL,
            "returnUrl": config.PAYMENT_RETURN_URL,
        }
        body["signature"] = sign_data(dict(body), self.checksum_key)
        if buyer_name:
            body["buyerName"] = buyer_name

        try:
            resp = httpx.post(
                f"{self.base_url}/v2/payment-requests",
                json=body,
                headers={"x-client-id": self.client_id, "x-api-key": self.api_key},
                timeout=self.timeout,
            )
            resp.raise_for_status()
        except httpx.HTTPError as e:
            logger.error(f"PayOS request for order {order_code} failed: {e}")
            raise PaymentProviderError(str(e)) from e

        payload = resp.json()
        if payload.get("code") != "00":
            raise PaymentProviderError(payload.get("desc") or "payment link rejected")
        data = payload["data"]
        return PaymentLink(
            link_id=data.get("paymentLinkId", ""),
            checkout_url=data["checkoutUrl"],
            qr_code=data.get("qrCode", ""),
            status=data.get("status", "PENDING"),
        )

    def verify_webhook(self, data: dict, signature: str) -> bool:
        if not signature or not isinstance(data, dict):
            return False
        expected = sign_data(data, self.checksum_key)
        return hmac.compare_digest(expected, signature)


provider = PayOSClient()


def render_qr_png(payload: str) -> bytes:
    qr = qrcode.QRCode(version=1, box_size=10, border=4)
    qr.add_data(payload)
    qr.make(fit=True)
    img = qr.make_image(fill_color="black", back_color="white")
    bio = BytesIO()
    img.save(bio, format="PNG")
    return bio.getvalue()
