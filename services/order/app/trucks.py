"""
Order Service — フードトラックの読み取りとロック

food_trucks はメニュー管理側が所有する。このサービスは読み取りと、
チェックアウトのコミット時の行ロックだけを行う。
"""

from dataclasses import dataclass

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from .db import for_update
from .errors import NotFoundError

ONLINE = "online"


@dataclass(frozen=True)
class Truck:
    uid: str
    name: str
    operator_user_uid: str
    current_status: str
    location_latitude: float | None
    location_longitude: float | None
    current_location_address: str | None
    delivery_enabled: bool
    delivery_fee_cents: int
    delivery_minimum_order_cents: int
    delivery_radius_km: float | None
    average_preparation_minutes: int | None

    @property
    def is_online(self) -> bool:
        return self.current_status == ONLINE


async def load_truck(session: AsyncSession, truck_uid: str, lock: bool = False) -> Truck:
    """トラックを取得する。lock=True なら行ロックを取得する。"""
    result = await session.execute(
        text(f"""
            SELECT uid, name, operator_user_uid, current_status,
                   location_latitude, location_longitude, current_location_address,
                   delivery_enabled, delivery_fee_cents, delivery_minimum_order_cents,
                   delivery_radius_km, average_preparation_minutes
            FROM food_trucks
            WHERE uid = :uid{for_update(session) if lock else ""}
        """),
        {"uid": truck_uid},
    )
    row = result.fetchone()
    if not row:
        raise NotFoundError("Food truck not found.")
    return Truck(
        uid=row.uid,
        name=row.name,
        operator_user_uid=row.operator_user_uid,
        current_status=row.current_status,
        location_latitude=row.location_latitude,
        location_longitude=row.location_longitude,
        current_location_address=row.current_location_address,
        delivery_enabled=bool(row.delivery_enabled),
        delivery_fee_cents=int(row.delivery_fee_cents or 0),
        delivery_minimum_order_cents=int(row.delivery_minimum_order_cents or 0),
        delivery_radius_km=row.delivery_radius_km,
        average_preparation_minutes=row.average_preparation_minutes,
    )


async def find_operator_truck_uid(session: AsyncSession, operator_user_uid: str) -> str:
    result = await session.execute(
        text("SELECT uid FROM food_trucks WHERE operator_user_uid = :uid"),
        {"uid": operator_user_uid},
    )
    row = result.fetchone()
    if not row:
        raise NotFoundError("Food truck not found for this operator.")
    return row.uid
