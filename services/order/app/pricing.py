"""
Order Service — 価格計算と在庫（販売可否）チェック

金額の唯一の算出元。クライアントが送ってきた価格は一切使わず、
現在のカタログ価格から小計を決定的に計算する。

    行の価格 = (商品の基本価格 + Σ オプションの価格調整) × 数量
    小計     = Σ 行の価格

- 商品はトラック ID でスコープして検索する（他トラックの ID の注入を防ぐ）
- オプションは同じ行の商品に属していることを確認する（他商品のオプションで価格を偽装させない）
"""

from dataclasses import dataclass, field

from sqlalchemy import bindparam, text
from sqlalchemy.ext.asyncio import AsyncSession

from .errors import AvailabilityConflict, NotFoundError, ValidationError


@dataclass(frozen=True)
class CartLine:
    item_id: str
    quantity: int
    selected_option_ids: tuple[str, ...] = ()
    special_instructions: str | None = None


@dataclass(frozen=True)
class PricedOption:
    option_id: str
    group_name: str
    name: str
    price_adjustment_cents: int


@dataclass(frozen=True)
class PricedLine:
    """注文時点の行スナップショット（カタログが後で変わっても影響を受けない）"""
    item_id: str
    name: str
    quantity: int
    base_price_cents: int
    total_cents: int
    options: tuple[PricedOption, ...] = ()
    special_instructions: str | None = None


@dataclass(frozen=True)
class PricedCart:
    subtotal_cents: int
    lines: tuple[PricedLine, ...] = field(default_factory=tuple)

    @property
    def special_instructions(self) -> str | None:
        joined = "; ".join(line.special_instructions for line in self.lines if line.special_instructions)
        return joined or None


_ITEMS_SQL = text("""
    SELECT mi.uid, mi.name, mi.base_price_cents, mi.is_available,
           mc.is_available AS category_available
    FROM menu_items mi
    JOIN menu_categories mc ON mi.menu_category_uid = mc.uid
    WHERE mi.uid IN :ids AND mi.food_truck_uid = :truck_uid
""").bindparams(bindparam("ids", expanding=True))

_OPTIONS_SQL = text("""
    SELECT mo.uid, mo.name, mo.price_adjustment_cents,
           mg.name AS group_name, mg.menu_item_uid
    FROM modifier_options mo
    JOIN modifier_groups mg ON mo.modifier_group_uid = mg.uid
    WHERE mo.uid IN :ids
""").bindparams(bindparam("ids", expanding=True))


def _valid_quantity(quantity) -> bool:
    return isinstance(quantity, int) and not isinstance(quantity, bool) and quantity > 0


async def price_cart(
    session: AsyncSession,
    truck_uid: str,
    lines: list[CartLine],
) -> PricedCart:
    """
    カートを検証して価格を計算する。

    Raises:
        ValidationError: 空のカート、不正な数量、他商品のオプション
        NotFoundError: このトラックに存在しない商品・存在しないオプション
        AvailabilityConflict: 商品またはカテゴリが販売停止中
    """
    if not lines:
        raise ValidationError("Order must contain at least one item.")
    if any(not line.item_id for line in lines):
        raise ValidationError("Invalid menu item UID found in request.")

    item_ids = sorted({line.item_id for line in lines})
    option_ids = sorted({oid for line in lines for oid in line.selected_option_ids})

    result = await session.execute(_ITEMS_SQL, {"ids": item_ids, "truck_uid": truck_uid})
    db_items = {row.uid: row for row in result.fetchall()}

    db_options = {}
    if option_ids:
        result = await session.execute(_OPTIONS_SQL, {"ids": option_ids})
        db_options = {row.uid: row for row in result.fetchall()}

    priced: list[PricedLine] = []
    for line in lines:
        item = db_items.get(line.item_id)
        if item is None:
            raise NotFoundError(f"Menu item UID {line.item_id} not found for this truck.")
        if not item.is_available or not item.category_available:
            raise AvailabilityConflict(f"Item '{item.name}' is currently unavailable.")

        if len(set(line.selected_option_ids)) != len(line.selected_option_ids):
            raise ValidationError(f"Duplicate option selected for item '{item.name}'.")

        options: list[PricedOption] = []
        for option_id in line.selected_option_ids:
            option = db_options.get(option_id)
            if option is None:
                raise NotFoundError(f"Selected option UID {option_id} not found.")
            if option.menu_item_uid != line.item_id:
                raise ValidationError(
                    f"Option '{option.name}' does not belong to item '{item.name}'."
                )
            options.append(
                PricedOption(
                    option_id=option.uid,
                    group_name=option.group_name,
                    name=option.name,
                    price_adjustment_cents=int(option.price_adjustment_cents),
                )
            )

        if not _valid_quantity(line.quantity):
            raise ValidationError(f"Invalid quantity for item '{item.name}'.")

        base = int(item.base_price_cents)
        unit = base + sum(o.price_adjustment_cents for o in options)
        priced.append(
            PricedLine(
                item_id=item.uid,
                name=item.name,
                quantity=line.quantity,
                base_price_cents=base,
                total_cents=unit * line.quantity,
                options=tuple(options),
                special_instructions=line.special_instructions or None,
            )
        )

    return PricedCart(
        subtotal_cents=sum(line.total_cents for line in priced),
        lines=tuple(priced),
    )
