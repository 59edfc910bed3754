"""
Order Service — 在庫台帳 (Inventory Ledger)

商品行の排他ロック付き読み取りと、条件付きの在庫減算を提供する。
どちらも呼び出し側のトランザクション内で実行する。
ロックはトランザクション終了 (コミット / ロールバック) まで保持されるので、
最後の 1 個を取り合う 2 つの注文は直列化され、後の注文は減算済みの在庫を見る。
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import Select, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from .db import products
from .errors import InsufficientStockError, NotFoundError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Product:
    id: str
    name: str
    price: Decimal
    stock: int

    def is_available(self, quantity: int) -> bool:
        return self.stock >= quantity


def locked_select(product_id: str) -> Select:
    """商品行を排他ロックで読む SELECT (PostgreSQL では FOR UPDATE 付き)"""
    return (
        select(products.c.id, products.c.name, products.c.price, products.c.stock)
        .where(products.c.id == product_id)
        .with_for_update()
    )


async def lock_and_get(session: AsyncSession, product_id: str) -> Product:
    """
    商品行を排他ロックして読み取る。

    PostgreSQL: SELECT ... FOR UPDATE
    SQLite: 行ロックがないため、先に無変更の UPDATE を発行して
            データベースの書き込みロックを取る (粒度は粗いが直列化は同じ)
    """
    if session.bind.dialect.name == "sqlite":
        await session.execute(
            update(products)
            .where(products.c.id == product_id)
            .values(stock=products.c.stock)
        )

    result = await session.execute(locked_select(product_id))
    row = result.fetchone()
    if not row:
        raise NotFoundError(f"Product {product_id} not found")

    logger.debug("Locked product %s (stock=%d)", row.id, row.stock)
    return Product(id=row.id, name=row.name, price=row.price, stock=row.stock)


async def decrement(session: AsyncSession, product_id: str, quantity: int) -> None:
    """
    在庫を quantity だけ減らす。

    WHERE stock >= :qty の条件付き UPDATE なので、在庫が負になることはない。
    更新行が 0 件なら在庫不足として InsufficientStockError を送出する。
    """
    result = await session.execute(
        update(products)
        .where(products.c.id == product_id, products.c.stock >= quantity)
        .values(
            stock=products.c.stock - quantity,
            updated_at=datetime.now(timezone.utc),
        )
    )
    if result.rowcount == 1:
        return

    current = await session.execute(
        select(products.c.name, products.c.stock).where(products.c.id == product_id)
    )
    row = current.fetchone()
    if not row:
        raise NotFoundError(f"Product {product_id} not found")
    raise InsufficientStockError(product_id, row.name, row.stock, quantity)
