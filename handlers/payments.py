from datetime import timedelta
from typing import Optional

from loguru import logger
from pydantic import BaseModel, ConfigDict

import config
from database import for_update
from handlers.lifecycle import lock_booking, transition
from handlers.results import operation, Result, ErrorKind, Forbidden, NotFound, DomainError
from models.booking import Booking, BookingStatus
from models.common import utcnow
from models.payment import Payment, PaymentStatus, PaymentKind
from models.user import User
from services import payos
from services.notifications import notify
from services.payos import PaymentProviderError, generate_order_code
from services.tokens import InvalidToken, verify_payment_token

UNPAYABLE_STATUSES = (
    BookingStatus.PENDING,
    BookingStatus.REJECTED,
    BookingStatus.CANCELLED,
    BookingStatus.EXPIRED,
)


class WebhookData(BaseModel):
    model_config = ConfigDict(extra="allow")

    orderCode: int
    amount: float
    code: str = "00"
    desc: str = ""
    reference: Optional[str] = None
    paymentLinkId: Optional[str] = None


class WebhookEvent(BaseModel):
    code: str
    desc: str = ""
    success: bool = True
    data: dict
    signature: str


def amount_due(booking: Booking):
    """(kind, amount) the renter has to pay next, or (None, 0)."""
    if booking.has_pending_extension:
        return PaymentKind.EXTENSION, booking.extension_amount
    if not booking.is_paid:
        return PaymentKind.BOOKING, booking.total_amount
    if booking.status == BookingStatus.COMPLETED and booking.outstanding_amount > 0:
        return PaymentKind.SETTLEMENT, booking.outstanding_amount
    return None, 0.0


def open_payment(db, booking: Booking, kind: PaymentKind, amount: float) -> Payment:
    """Reuses a fresh pending link for the same charge, otherwise asks the provider for a new one."""
    amount = round(amount, 2)
    fresh_since = utcnow() - timedelta(minutes=config.PAYMENT_LINK_TTL_MINUTES)
    recent = db.query(Payment).filter(
        Payment.booking_id == booking.id,
        Payment.kind == kind,
        Payment.status == PaymentStatus.PENDING,
        Payment.amount == amount,
        Payment.created_at >= fresh_since,
    ).order_by(Payment.id.desc()).first()
    if recent:
        return recent

    order_code = generate_order_code()
    link = payos.provider.create_payment_link(
        order_code=order_code,
        amount=amount,
        description=f"Booking {booking.id}",
        buyer_name=booking.renter.name if booking.renter else None,
    )
    payment = Payment(
        booking_id=booking.id,
        order_code=order_code,
        kind=kind,
        amount=amount,
        checkout_url=link.checkout_url,
        qr_code=link.qr_code,
        provider_link_id=link.link_id,
    )
    db.add(payment)
    booking.payos_order_code = order_code
    db.flush()
    logger.info(f"Payment link {order_code} ({kind.value}, {amount}) created for booking {booking.id}")
    return payment


def _checkout(db, booking: Booking) -> Payment:
    if booking.status in UNPAYABLE_STATUSES:
        raise DomainError(f"A {booking.status.value} booking cannot be paid")
    kind, amount = amount_due(booking)
    if kind is None or amount <= 0:
        raise DomainError("The booking is already paid")
    try:
        return open_payment(db, booking, kind, amount)
    except PaymentProviderError as e:
        logger.error(f"Payment link for booking {booking.id} failed: {e}")
        raise DomainError("The payment provider is unavailable, please try again later")


@operation
def process_booking_payment(db, caller: User, booking_id: int) -> Payment:
    booking = lock_booking(db, booking_id)
    if caller is None or booking.renter_id != caller.id:
        raise Forbidden("Only the renter can pay for this booking")
    return _checkout(db, booking)


@operation
def process_booking_payment_by_token(db, token: str) -> Payment:
    """Pay link from a notification: the signed token stands in for the renter's session."""
    try:
        booking_id = verify_payment_token(token)
    except InvalidToken as e:
        raise DomainError(str(e))
    booking = lock_booking(db, booking_id)
    return _checkout(db, booking)


def owner_share(amount: float) -> float:
    # platform keeps its fee share of every payment
    return round(amount / (1 + config.PLATFORM_FEE_RATE), 2)


def _is_stale(booking: Booking, payment: Payment) -> bool:
    match payment.kind:
        case PaymentKind.BOOKING:
            return booking.is_paid or booking.status in (
                BookingStatus.REJECTED, BookingStatus.CANCELLED, BookingStatus.EXPIRED)
        case PaymentKind.EXTENSION:
            return not booking.has_pending_extension
    return False


@operation
def process_payment_webhook(db, event: dict):
    evt = WebhookEvent.model_validate(event)
    if not payos.provider.verify_webhook(evt.data, evt.signature):
        raise DomainError("Invalid webhook signature")
    data = WebhookData.model_validate(evt.data)

    payment = for_update(db.query(Payment).filter(Payment.order_code == data.orderCode)).first()
    if not payment:
        raise NotFound(f"Unknown order {data.orderCode}")
    if payment.status == PaymentStatus.COMPLETED:
        logger.info(f"Webhook replay for order {payment.order_code} ignored")
        return Result.success(payment, "Payment already processed")

    if evt.code != "00" or data.code != "00":
        payment.status = PaymentStatus.FAILED
        logger.warning(f"Payment {payment.order_code} failed: {data.desc or evt.desc}")
        return Result.success(payment, "Payment failure recorded")

    if int(round(data.amount)) != int(round(payment.amount)):
        raise DomainError(f"Amount {data.amount} does not match order {payment.order_code}")

    payment.status = PaymentStatus.COMPLETED
    payment.paid_at = utcnow()
    payment.transaction_id = data.reference

    booking = lock_booking(db, payment.booking_id)
    if _is_stale(booking, payment):
        # money came in for something that no longer exists, owe it back
        booking.is_refund = True
        booking.refund_amount = round((booking.refund_amount or 0.0) + payment.amount, 2)
        booking.refund_date = payment.paid_at
        notify(db, booking.renter, "Payment refunded", "payment_refunded", booking=booking, payment=payment)
        logger.warning(f"Payment {payment.order_code} ({payment.kind.value}) arrived for booking {booking.id} "
                       f"in status {booking.status.value}, recorded as refund")
        return Result.success(payment, f"Payment {payment.order_code} recorded as refund")

    booking.paid_amount = round((booking.paid_amount or 0.0) + payment.amount, 2)
    match payment.kind:
        case PaymentKind.BOOKING:
            booking.is_paid = True
        case PaymentKind.EXTENSION:
            booking.is_extension_paid = True
        case PaymentKind.SETTLEMENT:
            pass

    share = owner_share(payment.amount)
    car = booking.car
    car.total_earning = round((car.total_earning or 0.0) + share, 2)
    car.owner.total_earning = round((car.owner.total_earning or 0.0) + share, 2)

    if booking.status == BookingStatus.APPROVED and booking.is_paid and booking.pickup_prepared_at:
        transition(booking, BookingStatus.READY_FOR_PICKUP)
        notify(db, booking.renter, "Car ready for pickup", "ready_for_pickup", booking=booking, car=car)

    notify(db, booking.renter, "Payment received", "payment_received", booking=booking, payment=payment)
    notify(db, car.owner, "Payment received", "payment_received", booking=booking, payment=payment)
    logger.info(f"Payment {payment.order_code} ({payment.kind.value}) completed for booking {booking.id}")
    return payment


def handle_payment_webhook(db, event: dict) -> Result:
    """Webhook entry point; a delivery racing a duplicate is retried once and then sees the stored result."""
    result = process_payment_webhook(db, event)
    if not result.ok and result.error == ErrorKind.CONFLICT:
        logger.info("Webhook hit a concurrent update, retrying once")
        result = process_payment_webhook(db, event)
    return result
