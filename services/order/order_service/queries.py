"""
Order Service — クエリハンドラ (Read 側)

読み取り専用。ロックは取らない。
書き込みと並行して実行された場合、read committed の一貫性で十分
(情報表示用のクエリであり、注文作成のプロトコルには関与しない)。
"""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .db import order_items, orders, payments, products, users


def _iso(value):
    return value.isoformat() if value else None


def _product_dict(row) -> dict:
    return {
        "id": row.id,
        "name": row.name,
        "description": row.description,
        "price": row.price,
        "stock": row.stock,
        "created_at": _iso(row.created_at),
        "updated_at": _iso(row.updated_at),
    }


def _user_dict(row) -> dict:
    return {
        "id": row.id,
        "email": row.email,
        "full_name": row.full_name,
        "created_at": _iso(row.created_at),
        "updated_at": _iso(row.updated_at),
    }


def _order_dict(row) -> dict:
    return {
        "id": row.id,
        "user_id": row.user_id,
        "total_amount": row.total_amount,
        "status": row.status,
        "created_at": _iso(row.created_at),
        "updated_at": _iso(row.updated_at),
        "items": [],
    }


async def _load_items(session: AsyncSession, order_ids: list[str]) -> dict[str, list]:
    """注文 ID ごとの明細 (商品情報付き) を position 順で返す。"""
    if not order_ids:
        return {}
    result = await session.execute(
        select(
            order_items.c.id,
            order_items.c.order_id,
            order_items.c.product_id,
            order_items.c.quantity,
            order_items.c.price,
            order_items.c.position,
            order_items.c.created_at,
            products.c.name.label("product_name"),
            products.c.price.label("product_price"),
            products.c.stock.label("product_stock"),
        )
        .join(products, products.c.id == order_items.c.product_id)
        .where(order_items.c.order_id.in_(order_ids))
        .order_by(order_items.c.order_id, order_items.c.position)
    )
    items: dict[str, list] = {order_id: [] for order_id in order_ids}
    for row in result.fetchall():
        items[row.order_id].append(
            {
                "id": row.id,
                "order_id": row.order_id,
                "product_id": row.product_id,
                "quantity": row.quantity,
                "price": row.price,
                "created_at": _iso(row.created_at),
                "product": {
                    "id": row.product_id,
                    "name": row.product_name,
                    "price": row.product_price,
                    "stock": row.product_stock,
                },
            }
        )
    return items


async def get_order(session: AsyncSession, order_id: str) -> dict | None:
    """注文を明細・商品・ユーザー・支払い付きで取得する。"""
    result = await session.execute(select(orders).where(orders.c.id == order_id))
    row = result.fetchone()
    if not row:
        return None
    order = _order_dict(row)
    order["items"] = (await _load_items(session, [row.id]))[row.id]
    order["user"] = await get_user(session, row.user_id)

    result = await session.execute(
        select(payments).where(payments.c.order_id == row.id)
    )
    payment = result.fetchone()
    order["payment"] = (
        {
            "id": payment.id,
            "order_id": payment.order_id,
            "amount": payment.amount,
            "status": payment.status,
            "method": payment.method,
            "created_at": _iso(payment.created_at),
        }
        if payment
        else None
    )
    return order


async def list_orders_for_user(session: AsyncSession, user_id: str) -> list[dict]:
    """ユーザーの注文一覧 (新しい順)"""
    result = await session.execute(
        select(orders)
        .where(orders.c.user_id == user_id)
        .order_by(orders.c.created_at.desc(), orders.c.id)
    )
    order_list = [_order_dict(row) for row in result.fetchall()]
    items = await _load_items(session, [o["id"] for o in order_list])
    for order in order_list:
        order["items"] = items[order["id"]]
    return order_list


# ── カタログ ─────────────────────────────────────


async def get_product(session: AsyncSession, product_id: str) -> dict | None:
    result = await session.execute(select(products).where(products.c.id == product_id))
    row = result.fetchone()
    if not row:
        return None
    return _product_dict(row)


async def list_products(session: AsyncSession) -> list[dict]:
    # ロックなしの読み取り。在庫数は表示用で、わずかに古い場合がある
    result = await session.execute(select(products).order_by(products.c.name))
    return [_product_dict(row) for row in result.fetchall()]


# ── ユーザー ─────────────────────────────────────


async def get_user(session: AsyncSession, user_id: str) -> dict | None:
    result = await session.execute(select(users).where(users.c.id == user_id))
    row = result.fetchone()
    if not row:
        return None
    return _user_dict(row)


async def get_user_by_email(session: AsyncSession, email: str) -> dict | None:
    result = await session.execute(select(users).where(users.c.email == email))
    row = result.fetchone()
    if not row:
        return None
    return _user_dict(row)
