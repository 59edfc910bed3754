import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

from decimal import Decimal

import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import sessionmaker

from order_service import commands, db


@pytest.fixture
def database_url(tmp_path):
    return f"sqlite+aiosqlite:///{tmp_path / 'orders.db'}"


@pytest.fixture
async def engine(database_url):
    engine = db.create_engine(database_url, lock_timeout_ms=5000)
    await db.create_schema(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def user(session_factory):
    async with session_factory() as session:
        return await commands.create_user(session, "alice@example.com", "Alice Example")


@pytest.fixture
def make_product(session_factory):
    async def _make(name="Widget", price="10.00", stock=5):
        async with session_factory() as session:
            return await commands.create_product(
                session, name, f"{name} description", Decimal(price), stock
            )

    return _make


@pytest.fixture
def stock_of(session_factory):
    async def _stock(product_id):
        async with session_factory() as session:
            result = await session.execute(
                select(db.products.c.stock).where(db.products.c.id == product_id)
            )
            return result.scalar_one()

    return _stock


@pytest.fixture
def row_count(session_factory):
    async def _count(table):
        async with session_factory() as session:
            result = await session.execute(select(func.count()).select_from(table))
            return result.scalar_one()

    return _count
