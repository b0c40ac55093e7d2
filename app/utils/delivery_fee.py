from __future__ import annotations

from app.utils.env import env_int

ZONE_ISLAND = "ISLAND"
ZONE_MAINLAND = "MAINLAND"

# Lagos Island bounding box; anything else is treated as Mainland.
_ISLAND_LAT = (6.42, 6.50)
_ISLAND_LNG = (3.38, 3.70)


def same_zone_fee_minor() -> int:
    return env_int("DELIVERY_FEE_SAME_ZONE_MINOR", 150000, minimum=0)


def cross_zone_fee_minor() -> int:
    return env_int("DELIVERY_FEE_CROSS_ZONE_MINOR", 250000, minimum=0)


def resolve_zone(latitude: float | None, longitude: float | None) -> str:
    if latitude is None or longitude is None:
        return ZONE_MAINLAND
    lat = float(latitude)
    lng = float(longitude)
    if _ISLAND_LAT[0] <= lat <= _ISLAND_LAT[1] and _ISLAND_LNG[0] <= lng <= _ISLAND_LNG[1]:
        return ZONE_ISLAND
    return ZONE_MAINLAND


def compute_delivery_fee_minor(
    *,
    pickup_latitude: float | None,
    pickup_longitude: float | None,
    dropoff_latitude: float | None,
    dropoff_longitude: float | None,
) -> int:
    pickup = resolve_zone(pickup_latitude, pickup_longitude)
    dropoff = resolve_zone(dropoff_latitude, dropoff_longitude)
    if pickup == dropoff:
        return same_zone_fee_minor()
    return cross_zone_fee_minor()
