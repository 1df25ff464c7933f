"""
Delivery distance and fee calculation.
"""

import math
from typing import Optional

from aroundyou.models import Coordinates, DeliveryLogic, Shop

EARTH_RADIUS_KM = 6371.0


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance between two points in kilometres."""
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)
    a = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    return 2 * EARTH_RADIUS_KM * math.asin(math.sqrt(a))


def calculate_delivery_fee(distance_m: float, logic: DeliveryLogic) -> float:
    """
    Base delivery fee in PKR for a distance in metres.

    The first tier whose ``max_distance_m`` covers the distance sets the fee.
    Beyond the last tier, each started distance unit adds the per-unit fee.
    Without tiers the maximum fee applies.
    """
    if not logic.distance_tiers:
        return logic.max_delivery_fee

    for tier in logic.distance_tiers:
        if distance_m <= tier.max_distance_m:
            return min(tier.fee, logic.max_delivery_fee)

    last = logic.distance_tiers[-1]
    extra_units = math.ceil((distance_m - last.max_distance_m) / logic.beyond_tier_distance_unit)
    return min(last.fee + extra_units * logic.beyond_tier_fee_per_unit, logic.max_delivery_fee)


def delivery_fee_for(shop: Shop, coordinates: Coordinates) -> Optional[float]:
    """
    The fee ``shop`` charges to deliver to ``coordinates``.

    Shops without delivery rules or a position keep their flat ``delivery_fee``.
    """
    if shop.delivery_logic is None or shop.latitude is None or shop.longitude is None:
        return shop.delivery_fee
    distance_km = haversine_km(coordinates.latitude, coordinates.longitude, shop.latitude, shop.longitude)
    return calculate_delivery_fee(distance_km * 1000, shop.delivery_logic)
