"""
Order Service — 価格スナップショット (Pricing Snapshot)

注文時点の単価を記録する。後から商品価格が変わっても過去の注文には影響しない。
単価は必ず在庫台帳がロックして読んだ Product から取る。
"""

from decimal import ROUND_HALF_UP, Decimal
from typing import NamedTuple

from .inventory import Product

CENT = Decimal("0.01")


class PriceSnapshot(NamedTuple):
    unit_price: Decimal
    subtotal: Decimal


def to_money(value: Decimal) -> Decimal:
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def snapshot(product: Product, quantity: int) -> PriceSnapshot:
    unit_price = to_money(product.price)
    return PriceSnapshot(unit_price, to_money(unit_price * quantity))
