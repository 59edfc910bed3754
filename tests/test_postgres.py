"""PostgreSQL の行ロック経路

SQL のコンパイル結果は常に検証する。実 DB を使うテストは DATABASE_URL が
PostgreSQL を指すときだけ動く (pytest -m postgres)。
"""

import asyncio
import os
from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy.dialects import postgresql
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import sessionmaker

from order_service import commands, db, inventory
from order_service.aggregate import OrderLine
from order_service.commands import OrderPlacement, OrderState
from order_service.errors import LockTimeoutError

POSTGRES_URL = os.environ.get("DATABASE_URL", "")

requires_postgres = pytest.mark.skipif(
    not POSTGRES_URL.startswith("postgresql"),
    reason="DATABASE_URL does not point at PostgreSQL",
)


def _compile(statement) -> str:
    return str(statement.compile(dialect=postgresql.dialect()))


def test_product_lock_selects_for_update():
    sql = _compile(inventory.locked_select("some-product"))
    assert "FROM products" in sql
    assert sql.rstrip().endswith("FOR UPDATE")


def test_lock_timeout_is_local_to_transaction():
    statement = commands.lock_timeout_statement(250)
    sql = _compile(statement)
    params = statement.compile(dialect=postgresql.dialect()).params

    assert "set_config" in sql
    assert "lock_timeout" in params.values()
    assert "250ms" in params.values()
    assert True in params.values()


@pytest.fixture
async def pg_session_factory():
    engine = db.create_engine(POSTGRES_URL, lock_timeout_ms=5000)
    await db.create_schema(engine)
    yield sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


async def _seed(session_factory):
    suffix = uuid4().hex[:8]
    async with session_factory() as session:
        user = await commands.create_user(
            session, f"pg-{suffix}@example.com", "Postgres Buyer"
        )
    products = []
    for name in ("Anvil", "Bucket"):
        async with session_factory() as session:
            products.append(
                await commands.create_product(
                    session, f"{name} {suffix}", "", Decimal("5.00"), 10
                )
            )
    return user, products


@pytest.mark.postgres
@requires_postgres
@pytest.mark.asyncio
async def test_orders_on_disjoint_products_do_not_wait(pg_session_factory):
    user, (anvil, bucket) = await _seed(pg_session_factory)

    async with pg_session_factory() as holder:
        async with holder.begin():
            await inventory.lock_and_get(holder, anvil["id"])

            async with pg_session_factory() as session:
                order = await asyncio.wait_for(
                    commands.create_order(
                        session, None, user["id"], "credit_card", [(bucket["id"], 1)]
                    ),
                    timeout=5,
                )
            assert order["items"][0]["product_id"] == bucket["id"]

            async with pg_session_factory() as session:
                placement = OrderPlacement(session, lock_timeout_ms=200)
                with pytest.raises(LockTimeoutError):
                    await placement.execute(
                        user["id"], "credit_card", [OrderLine(anvil["id"], 1)]
                    )
            assert placement.state is OrderState.ROLLED_BACK
