"""
Order Service — コマンドハンドラ (Write 側)

注文作成トランザクション (Order Transaction Coordinator) が中心。

  状態遷移 (すべて 1 つのトランザクション内):
  ┌───────────────────────────────────────────────────────────────┐
  │ START → ITEMS_VALIDATED → STOCK_RESERVED → ORDER_PERSISTED    │
  │       → PAYMENT_PERSISTED → COMMITTED                         │
  │                                                               │
  │ どの状態で失敗しても ROLLED_BACK に遷移し、在庫の減算・注文・ │
  │ 支払いはすべて取り消される。中途半端な注文は外から見えない。  │
  └───────────────────────────────────────────────────────────────┘

業務ルールの失敗 (在庫不足・存在しない商品) は自動リトライしない。
ロック待ちタイムアウトなど一時的な失敗のリトライは呼び出し側の責務。

カタログとユーザーの単純な書き込みコマンドもここに置く。
"""

import json
import logging
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Iterable, Sequence
from uuid import uuid4

import redis.asyncio as aioredis
from redis.exceptions import RedisError
from sqlalchemy import delete, func, insert, select, update
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from . import inventory, queries
from .aggregate import OrderAggregate, OrderLine, Payment
from .db import order_items, orders, payments, products, users
from .errors import (
    LockTimeoutError,
    NotFoundError,
    OrderError,
    TransactionError,
    ValidationError,
)
from .events import OrderCreated, OrderItemSnapshot

logger = logging.getLogger(__name__)

# PostgreSQL: lock_not_available
LOCK_NOT_AVAILABLE = "55P03"


class OrderState(str, Enum):
    START = "START"
    ITEMS_VALIDATED = "ITEMS_VALIDATED"
    STOCK_RESERVED = "STOCK_RESERVED"
    ORDER_PERSISTED = "ORDER_PERSISTED"
    PAYMENT_PERSISTED = "PAYMENT_PERSISTED"
    COMMITTED = "COMMITTED"
    ROLLED_BACK = "ROLLED_BACK"


def _translate_db_error(exc: DBAPIError) -> TransactionError:
    """DB ドライバの例外を TransactionError に変換する。内部の詳細は載せない。"""
    orig = exc.orig
    code = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if code == LOCK_NOT_AVAILABLE or "database is locked" in str(orig):
        return LockTimeoutError("Timed out waiting for a product lock")
    if isinstance(exc, IntegrityError):
        return TransactionError("Order violates a database constraint")
    return TransactionError("Order could not be committed")


def lock_timeout_statement(lock_timeout_ms: int):
    """現在のトランザクションに限り lock_timeout を設定する (PostgreSQL)"""
    return select(func.set_config("lock_timeout", f"{int(lock_timeout_ms)}ms", True))


class OrderPlacement:
    """注文作成トランザクションのコーディネーター

    セッションは呼び出しごとに注入する。トランザクション境界を開くのはここだけ。
    """

    def __init__(
        self,
        session: AsyncSession,
        redis: aioredis.Redis | None = None,
        lock_timeout_ms: int | None = None,
    ):
        self.session = session
        self.redis = redis
        self.lock_timeout_ms = lock_timeout_ms
        self.state = OrderState.START
        self.transitions: list[dict] = []

    async def execute(
        self,
        user_id: str,
        payment_method: str,
        lines: Sequence[OrderLine],
    ) -> dict:
        """
        注文を作成して、明細付きの注文を返す。

        1. 行ロックの待ち時間に上限を設定
        2. ユーザーの存在確認
        3. 明細をロック・検証・価格確定 (ITEMS_VALIDATED)
        4. 在庫を減算 (STOCK_RESERVED)
        5. 注文と明細を INSERT (ORDER_PERSISTED)
        6. pending の支払いを INSERT (PAYMENT_PERSISTED)
        7. コミット (COMMITTED)
        """
        self._advance(OrderState.START)

        try:
            # 入力だけで判定できる不正はトランザクションを開く前に弾く
            if not payment_method:
                raise ValidationError("payment method is required")
            OrderAggregate.check_lines(lines)
            if self.session.in_transaction():
                # 呼び出し側の未完了トランザクションには相乗りしない
                raise TransactionError(
                    "Session already has an open transaction; "
                    "order placement needs its own unit of work"
                )

            async with self.session.begin():
                await self._bound_lock_wait()
                await self._require_user(user_id)

                order = await OrderAggregate.build(self.session, user_id, lines)
                self._advance(OrderState.ITEMS_VALIDATED)

                for item in order.locking_order():
                    await inventory.decrement(
                        self.session, item.product_id, item.quantity
                    )
                self._advance(OrderState.STOCK_RESERVED)

                await self._persist_order(order)
                self._advance(OrderState.ORDER_PERSISTED)

                payment = order.new_payment(payment_method)
                await self._persist_payment(payment)
                self._advance(OrderState.PAYMENT_PERSISTED)
        except OrderError as e:
            self._advance(OrderState.ROLLED_BACK, error=e.message)
            raise
        except DBAPIError as e:
            error = _translate_db_error(e)
            self._advance(OrderState.ROLLED_BACK, error=error.message)
            logger.warning("Order transaction failed for user %s: %s", user_id, e)
            raise error from e
        except Exception:
            self._advance(OrderState.ROLLED_BACK, error="unexpected error")
            raise

        self._advance(OrderState.COMMITTED)
        logger.info(
            "Order %s committed for user %s (total=%s, items=%d)",
            order.id,
            user_id,
            order.total_amount,
            len(order.items),
        )

        await self._publish_order_created(order, payment_method)
        hydrated = await queries.get_order(self.session, order.id)
        # 読み取り用に自動で始まったトランザクションを閉じ、セッションを再利用できるようにする
        await self.session.commit()
        return hydrated

    # ── 各ステップ ───────────────────────────────

    def _advance(self, state: OrderState, error: str | None = None) -> None:
        self.state = state
        entry = {
            "state": state.value,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        if error:
            entry["error"] = error
        self.transitions.append(entry)
        logger.debug("Order placement -> %s", state.value)

    async def _bound_lock_wait(self) -> None:
        # SQLite は接続時の busy_timeout で上限を設定済み (db.py)
        if self.lock_timeout_ms is None:
            return
        if self.session.bind.dialect.name == "postgresql":
            await self.session.execute(lock_timeout_statement(self.lock_timeout_ms))

    async def _require_user(self, user_id: str) -> None:
        if not user_id:
            raise ValidationError("user ID is required")
        result = await self.session.execute(
            select(users.c.id).where(users.c.id == user_id)
        )
        if result.fetchone() is None:
            raise NotFoundError(f"User {user_id} not found")

    async def _persist_order(self, order: OrderAggregate) -> None:
        # 明細なしの注文は永続化しない
        order.validate()
        # ロック待ちの後で時刻を確定する。待たされた注文が先の注文より古く見えないように
        order.created_at = datetime.now(timezone.utc)
        await self.session.execute(
            insert(orders).values(
                id=order.id,
                user_id=order.user_id,
                total_amount=order.total_amount,
                status=order.status.value,
                created_at=order.created_at,
                updated_at=order.created_at,
            )
        )
        await self.session.execute(
            insert(order_items),
            [
                {
                    "id": item.id,
                    "order_id": order.id,
                    "product_id": item.product_id,
                    "quantity": item.quantity,
                    "price": item.price,
                    "position": item.position,
                    "created_at": order.created_at,
                }
                for item in order.items
            ],
        )

    async def _persist_payment(self, payment: Payment) -> None:
        now = datetime.now(timezone.utc)
        await self.session.execute(
            insert(payments).values(
                id=payment.id,
                order_id=payment.order_id,
                amount=payment.amount,
                status=payment.status.value,
                method=payment.method,
                created_at=now,
                updated_at=now,
            )
        )

    async def _publish_order_created(
        self, order: OrderAggregate, payment_method: str
    ) -> None:
        """コミット済みの注文を Redis に通知する。失敗しても注文は取り消さない。"""
        if self.redis is None:
            return
        event = OrderCreated(
            order_id=order.id,
            user_id=order.user_id,
            total_amount=order.total_amount,
            payment_method=payment_method,
            items=[
                OrderItemSnapshot(
                    product_id=i.product_id, quantity=i.quantity, price=i.price
                )
                for i in order.items
            ],
            timestamp=order.created_at,
        )
        try:
            await self.redis.publish(
                "order_events",
                json.dumps(
                    {
                        "event_type": "OrderCreated",
                        "data": event.model_dump(mode="json"),
                    }
                ),
            )
        except RedisError:
            logger.exception("Failed to publish OrderCreated for order %s", order.id)


async def create_order(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    user_id: str,
    payment_method: str,
    items: Iterable[tuple[str, int]],
    lock_timeout_ms: int | None = None,
) -> dict:
    """注文作成コマンド"""
    lines = [OrderLine(str(product_id), quantity) for product_id, quantity in items]
    placement = OrderPlacement(session, redis, lock_timeout_ms)
    return await placement.execute(user_id, payment_method, lines)


# ── カタログ (単一エンティティの書き込み) ─────────


def _validate_product(name: str, price: Decimal, stock: int) -> None:
    if not name:
        raise ValidationError("product name is required")
    if price <= 0:
        raise ValidationError("product price must be greater than 0")
    if stock < 0:
        raise ValidationError("product stock cannot be negative")


async def create_product(
    session: AsyncSession,
    name: str,
    description: str,
    price: Decimal,
    stock: int,
) -> dict:
    _validate_product(name, price, stock)
    product_id = str(uuid4())
    now = datetime.now(timezone.utc)
    await session.execute(
        insert(products).values(
            id=product_id,
            name=name,
            description=description,
            price=price,
            stock=stock,
            created_at=now,
            updated_at=now,
        )
    )
    await session.commit()
    logger.info("Created product %s (%s)", product_id, name)
    return await queries.get_product(session, product_id)


async def update_product(
    session: AsyncSession,
    product_id: str,
    name: str,
    description: str,
    price: Decimal,
    stock: int,
) -> dict:
    """管理者による直接更新 (在庫数の上書きを含む)"""
    _validate_product(name, price, stock)
    result = await session.execute(
        update(products)
        .where(products.c.id == product_id)
        .values(
            name=name,
            description=description,
            price=price,
            stock=stock,
            updated_at=datetime.now(timezone.utc),
        )
    )
    if result.rowcount == 0:
        await session.rollback()
        raise NotFoundError(f"Product {product_id} not found")
    await session.commit()
    return await queries.get_product(session, product_id)


async def delete_product(session: AsyncSession, product_id: str) -> None:
    try:
        result = await session.execute(
            delete(products).where(products.c.id == product_id)
        )
    except IntegrityError as e:
        await session.rollback()
        raise ValidationError("product is referenced by existing orders") from e
    if result.rowcount == 0:
        await session.rollback()
        raise NotFoundError(f"Product {product_id} not found")
    await session.commit()
    logger.info("Deleted product %s", product_id)


# ── ユーザー ─────────────────────────────────────


async def create_user(session: AsyncSession, email: str, full_name: str) -> dict:
    if not email:
        raise ValidationError("email is required")
    if not full_name:
        raise ValidationError("full name is required")
    if await queries.get_user_by_email(session, email):
        await session.rollback()
        raise ValidationError("email already registered")

    user_id = str(uuid4())
    now = datetime.now(timezone.utc)
    try:
        await session.execute(
            insert(users).values(
                id=user_id,
                email=email,
                full_name=full_name,
                created_at=now,
                updated_at=now,
            )
        )
        await session.commit()
    except IntegrityError as e:
        await session.rollback()
        raise ValidationError("email already registered") from e
    logger.info("Created user %s", user_id)
    return await queries.get_user(session, user_id)
