import math
from dataclasses import dataclass
from datetime import datetime, timedelta

import config


@dataclass
class Quote:
    days: int
    base_price: float
    platform_fee: float
    total_amount: float


def rental_days(start_time: datetime, end_time: datetime) -> int:
    if end_time <= start_time:
        raise ValueError("End time must be after start time")
    return math.ceil((end_time - start_time) / timedelta(days=1))


def calculate_rental_price(start_time: datetime, end_time: datetime, price_per_day: float,
                           fee_rate: float = None) -> Quote:
    """
    Rental price for a time window.

    :param start_time: rental start
    :param end_time: rental end
    :param price_per_day: car's daily rate
    :param fee_rate: platform fee share, defaults to PLATFORM_FEE_RATE
    :return: days counted (every started day), base price, fee and total
    """
    if fee_rate is None:
        fee_rate = config.PLATFORM_FEE_RATE
    days = rental_days(start_time, end_time)
    base = round(price_per_day * days, 2)
    fee = round(base * fee_rate, 2)
    return Quote(days=days, base_price=base, platform_fee=fee, total_amount=round(base + fee, 2))


def late_return_fee(end_time: datetime, returned_at: datetime, price_per_day: float):
    """(excess days, fee) for a return after the booked end."""
    overtime_hours = (returned_at - end_time) / timedelta(hours=1)
    if overtime_hours <= config.LATE_RETURN_GRACE_HOURS:
        return 0, 0.0
    overtime_days = overtime_hours / 24.0
    if overtime_days <= config.LATE_RETURN_DAY_THRESHOLD:
        return 0, 0.0
    excess_days = math.ceil(overtime_days)
    return excess_days, round(price_per_day * excess_days * config.LATE_RETURN_MULTIPLIER, 2)


def excess_distance_fee(total_distance_m: float, days: int) -> float:
    allowance_km = config.DAILY_DISTANCE_ALLOWANCE_KM * days
    excess_km = total_distance_m / 1000.0 - allowance_km
    if excess_km <= 0:
        return 0.0
    return round(excess_km * config.EXCESS_DISTANCE_FEE_PER_KM, 2)


def cancellation_refund(paid_amount: float, start_time: datetime, now: datetime) -> float:
    # full refund 3+ days ahead, half 2+ days ahead, nothing after that
    lead = start_time - now
    if lead >= timedelta(days=3):
        return round(paid_amount, 2)
    if lead >= timedelta(days=2):
        return round(paid_amount * 0.5, 2)
    return 0.0


def early_return_refund(paid_amount: float, start_time: datetime, end_time: datetime, returned_at: datetime) -> float:
    # half back when the car comes back after at least a day but before half the booked days
    booked_days = rental_days(start_time, end_time)
    used_days = (returned_at - start_time) / timedelta(days=1)
    if 1 <= used_days < booked_days / 2:
        return round(paid_amount * config.EARLY_RETURN_REFUND_RATE, 2)
    return 0.0
