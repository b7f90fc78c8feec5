"""
Order Service — 金額計算

金額はすべて最小通貨単位（セント）の整数で扱う。
税率のような小数は Decimal で計算し、1 セント単位に四捨五入する。
float は金額計算に一切使わない。
"""

from decimal import ROUND_HALF_UP, Decimal


def tax_cents(subtotal_cents: int, rate: Decimal) -> int:
    return int((Decimal(subtotal_cents) * rate).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def to_amount(cents: int) -> Decimal:
    """セントを 2 桁の Decimal 金額に変換する（レスポンス用）。"""
    return (Decimal(cents) / 100).quantize(Decimal("0.01"))


def format_amount(cents: int) -> str:
    return f"${to_amount(cents)}"
