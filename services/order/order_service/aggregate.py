"""
Order Service — 注文集約 (Order Aggregate)

検証済みの明細を組み立て、合計金額を計算し、
Order + OrderItem + Payment のレコード一式を作る。

ロック順序:
    明細の商品はリクエストの並び順ではなく商品 ID の昇順でロックする。
    重なる商品を異なる順序で含む 2 つの注文がデッドロックしないようにするため。
    明細自体 (position) はリクエストの並び順のまま保持する。
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import NamedTuple, Sequence
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession

from . import inventory, pricing
from .errors import InsufficientStockError, ValidationError


class OrderStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    CANCELLED = "cancelled"
    COMPLETED = "completed"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


class OrderLine(NamedTuple):
    """リクエストされた 1 明細 (product_id, quantity)"""

    product_id: str
    quantity: int


@dataclass
class OrderItem:
    product_id: str
    quantity: int
    price: Decimal
    position: int
    id: str = field(default_factory=lambda: str(uuid4()))

    @property
    def subtotal(self) -> Decimal:
        return pricing.to_money(self.price * self.quantity)

    def validate(self) -> None:
        if not self.product_id:
            raise ValidationError("product ID is required")
        if self.quantity <= 0:
            raise ValidationError("quantity must be greater than 0")
        if self.price <= 0:
            raise ValidationError("price must be greater than 0")


@dataclass
class Payment:
    order_id: str
    amount: Decimal
    method: str
    status: PaymentStatus = PaymentStatus.PENDING
    id: str = field(default_factory=lambda: str(uuid4()))

    def validate(self) -> None:
        if not self.order_id:
            raise ValidationError("order ID is required")
        if self.amount <= 0:
            raise ValidationError("payment amount must be greater than 0")
        if not self.method:
            raise ValidationError("payment method is required")


class OrderAggregate:
    """
    作成中の注文。

    build() が返した時点で、全明細の商品はロック済み・在庫確認済み。
    在庫の減算と永続化は Coordinator (commands.py) が行う。
    """

    def __init__(self, user_id: str) -> None:
        self.id: str = str(uuid4())
        self.user_id: str = user_id
        self.items: list[OrderItem] = []
        self.total_amount: Decimal = Decimal("0.00")
        self.status: OrderStatus = OrderStatus.PENDING
        self.created_at: datetime = datetime.now(timezone.utc)

    def add_item(
        self, line: OrderLine, snapshot: pricing.PriceSnapshot, position: int
    ) -> OrderItem:
        item = OrderItem(
            product_id=line.product_id,
            quantity=line.quantity,
            price=snapshot.unit_price,
            position=position,
        )
        self.items.append(item)
        self.total_amount = pricing.to_money(self.total_amount + snapshot.subtotal)
        return item

    def locking_order(self) -> list[OrderItem]:
        """在庫を触る順序 (商品 ID 昇順、同じ商品ならリクエスト順)"""
        return sorted(self.items, key=lambda i: (i.product_id, i.position))

    def calculate_total(self) -> Decimal:
        return pricing.to_money(sum((i.subtotal for i in self.items), Decimal("0")))

    def validate(self) -> None:
        if not self.user_id:
            raise ValidationError("user ID is required")
        if not self.items:
            raise ValidationError("order must have at least one item")
        for item in self.items:
            item.validate()
        if self.total_amount <= 0:
            raise ValidationError("total amount must be greater than 0")
        if self.total_amount != self.calculate_total():
            raise ValidationError("total amount does not match order items")

    def new_payment(self, method: str) -> Payment:
        payment = Payment(order_id=self.id, amount=self.total_amount, method=method)
        payment.validate()
        return payment

    # ── 組み立て ─────────────────────────────────

    @staticmethod
    def check_lines(lines: Sequence[OrderLine]) -> None:
        """ロックを取る前に入力だけで判定できる不正を弾く。"""
        if not lines:
            raise ValidationError("order must have at least one item")
        for line in lines:
            if not line.product_id:
                raise ValidationError("product ID is required")
            if line.quantity <= 0:
                raise ValidationError(
                    f"quantity must be greater than 0 (product {line.product_id})"
                )

    @classmethod
    async def build(
        cls,
        session: AsyncSession,
        user_id: str,
        lines: Sequence[OrderLine],
    ) -> "OrderAggregate":
        """
        明細をロック・検証・価格確定して集約を作る。

        1 明細でも失敗したら例外を送出し、部分的な明細は返さない。
        """
        cls.check_lines(lines)

        order = cls(user_id)
        positioned = sorted(enumerate(lines), key=lambda p: (p[1].product_id, p[0]))

        snapshots: dict[int, pricing.PriceSnapshot] = {}
        requested: dict[str, int] = {}
        for position, line in positioned:
            product = await inventory.lock_and_get(session, line.product_id)

            # 同じ商品が複数明細にある場合は累計で在庫を判定する
            wanted = requested.get(product.id, 0) + line.quantity
            if not product.is_available(wanted):
                raise InsufficientStockError(
                    product.id, product.name, product.stock, wanted
                )
            requested[product.id] = wanted
            snapshots[position] = pricing.snapshot(product, line.quantity)

        for position, line in enumerate(lines):
            order.add_item(line, snapshots[position], position)

        order.validate()
        return order
