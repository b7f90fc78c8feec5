"""
Order Service — 配達先の解決

fulfillment_type = delivery の時だけ呼ばれる。

1. 保存済み住所（本人のもの）またはインライン住所を具体的な住所に解決
2. ジオコーディングで座標を取得（クライアントの座標は信用しない）
3. トラック位置との大圏距離（ハバーサイン, R = 6371 km）が配達半径以内か確認
4. 小計が最低注文金額以上か確認

住所スナップショットには座標を含めない。座標は距離チェックにだけ使う。
"""

import logging
import math
from dataclasses import dataclass

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from .errors import DeliveryConflict, NotFoundError, ValidationError
from .geocoding import Coordinates, Geocoder, GeocodingError
from .money import format_amount
from .trucks import Truck

logger = logging.getLogger(__name__)

EARTH_RADIUS_KM = 6371.0

_ADDRESS_FIELDS = ("street_address", "apt_suite", "city", "state", "zip_code")


@dataclass(frozen=True)
class DeliveryAddress:
    """リクエストの配達先: address_uid か、インライン住所のどちらか"""
    address_uid: str | None = None
    street_address: str | None = None
    apt_suite: str | None = None
    city: str | None = None
    state: str | None = None
    zip_code: str | None = None


@dataclass(frozen=True)
class DeliveryResolution:
    address_snapshot: dict
    coordinates: Coordinates
    distance_km: float
    delivery_fee_cents: int


def haversine_km(lat1, lon1, lat2, lon2) -> float:
    """座標が欠けている場合は無限大（配達不可）を返す。"""
    if lat1 is None or lon1 is None or lat2 is None or lon2 is None:
        return math.inf
    if lat1 == lat2 and lon1 == lon2:
        return 0.0
    d_lat = math.radians(lat2 - lat1)
    d_lon = math.radians(lon2 - lon1)
    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lon / 2) ** 2
    )
    return EARTH_RADIUS_KM * 2 * math.asin(math.sqrt(a))


def format_address(snapshot: dict) -> str:
    return f"{snapshot['street_address']}, {snapshot['city']}, {snapshot['state']} {snapshot['zip_code']}"


async def _resolve_address(
    session: AsyncSession,
    customer_uid: str,
    address: DeliveryAddress,
) -> dict:
    if address.address_uid:
        result = await session.execute(
            text("""
                SELECT street_address, apt_suite, city, state, zip_code
                FROM addresses
                WHERE uid = :uid AND customer_user_uid = :customer_uid
            """),
            {"uid": address.address_uid, "customer_uid": customer_uid},
        )
        row = result.fetchone()
        if not row:
            raise NotFoundError("Saved delivery address not found.")
        return {name: getattr(row, name) for name in _ADDRESS_FIELDS}

    if address.street_address and address.city and address.state and address.zip_code:
        return {name: getattr(address, name) or None for name in _ADDRESS_FIELDS}

    raise ValidationError("Invalid or incomplete delivery address provided.")


async def resolve_delivery(
    session: AsyncSession,
    geocoder: Geocoder,
    truck: Truck,
    customer_uid: str,
    address: DeliveryAddress | None,
    subtotal_cents: int,
) -> DeliveryResolution:
    """
    配達先を検証済みのスナップショットに解決する。

    Raises:
        ValidationError: 住所がない・不完全
        NotFoundError: 保存済み住所が本人のものではない
        DeliveryConflict: 配達非対応・範囲外・最低金額未満・住所を検証できない
    """
    if address is None:
        raise ValidationError("Delivery address is required for delivery orders.")
    if not truck.delivery_enabled:
        raise DeliveryConflict("This truck does not offer delivery.")

    snapshot = await _resolve_address(session, customer_uid, address)

    try:
        coords = await geocoder.geocode(format_address(snapshot))
    except GeocodingError as e:
        raise DeliveryConflict(f"Could not verify delivery address location: {e}") from e

    distance = check_delivery_rules(truck, coords, subtotal_cents)
    return DeliveryResolution(
        address_snapshot=snapshot,
        coordinates=coords,
        distance_km=distance,
        delivery_fee_cents=truck.delivery_fee_cents,
    )


def check_delivery_rules(truck: Truck, coords: Coordinates, subtotal_cents: int) -> float:
    """
    配達半径と最低注文金額を確認し、距離 (km) を返す。
    コミット時にはロックしたトラック行に対して、検証済みの座標で再確認する。
    """
    if not truck.delivery_enabled:
        raise DeliveryConflict("This truck does not offer delivery.")
    if truck.location_latitude is None or truck.location_longitude is None:
        raise DeliveryConflict("Truck location not set; delivery distance cannot be verified.")

    distance = haversine_km(truck.location_latitude, truck.location_longitude, coords.lat, coords.lon)
    radius = truck.delivery_radius_km if truck.delivery_radius_km is not None else math.inf
    if not math.isfinite(distance) or distance > radius:
        raise DeliveryConflict(
            f"Delivery address is outside the truck's {radius}km delivery radius "
            f"(distance: {distance:.1f}km)."
        )
    logger.info("Delivery distance for truck %s: %.1fkm", truck.uid, distance)

    if subtotal_cents < truck.delivery_minimum_order_cents:
        raise DeliveryConflict(
            f"Order subtotal ({format_amount(subtotal_cents)}) is below the minimum of "
            f"{format_amount(truck.delivery_minimum_order_cents)} for delivery."
        )
    return distance
