from __future__ import annotations

from decimal import Decimal, ROUND_HALF_UP

from app.utils.env import env_int

DELIVERY_SPLIT_RULE_V1 = "DELIVERY_SPLIT_80_20_V1"

DELIVERY_RIDER_BPS = 8000
DELIVERY_PLATFORM_BPS = 2000


def _clamp_minor(value: int | float | Decimal | None) -> int:
    try:
        parsed = int(value or 0)
    except Exception:
        parsed = 0
    return parsed if parsed > 0 else 0


def money_major_to_minor(amount: float | Decimal | int | str | None) -> int:
    try:
        parsed = Decimal(str(amount or 0))
    except Exception:
        parsed = Decimal("0")
    minor = (parsed * Decimal("100")).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    return _clamp_minor(int(minor))


def money_minor_to_major(minor: int | float | Decimal | None) -> float:
    try:
        parsed = Decimal(int(minor or 0))
    except Exception:
        parsed = Decimal("0")
    return float((parsed / Decimal("100")).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def format_naira(minor: int | None) -> str:
    major = money_minor_to_major(minor)
    return f"₦{major:,.2f}"


def _bps_minor_half_up(amount_minor: int, bps: int) -> int:
    amt = Decimal(_clamp_minor(amount_minor))
    rate = Decimal(int(max(0, bps)))
    raw = (amt * rate) / Decimal("10000")
    return _clamp_minor(int(raw.quantize(Decimal("1"), rounding=ROUND_HALF_UP)))


def platform_delivery_bps() -> int:
    return env_int("PLATFORM_DELIVERY_SHARE_BPS", DELIVERY_PLATFORM_BPS, minimum=0, maximum=10000)


def split_delivery_fee_minor(delivery_fee_minor: int, *, platform_bps: int | None = None) -> tuple[int, int]:
    """Split a delivery fee into (rider_minor, platform_minor).

    The platform share is rounded half-up and the rider receives the
    remainder, so the two parts always sum to the fee.
    """
    total = _clamp_minor(delivery_fee_minor)
    if total <= 0:
        return 0, 0
    bps = platform_delivery_bps() if platform_bps is None else int(platform_bps)
    platform_minor = _bps_minor_half_up(total, bps)
    rider_minor = total - platform_minor
    if rider_minor < 0:
        rider_minor = 0
    return int(rider_minor), int(platform_minor)


def line_commission_minor(*, retail_minor: int, wholesale_minor: int, quantity: int) -> int:
    """Platform markup on one order line; never negative."""
    markup = int(retail_minor or 0) - int(wholesale_minor or 0)
    if markup <= 0:
        return 0
    return markup * max(0, int(quantity or 0))
