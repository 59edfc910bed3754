from decimal import Decimal

import pytest

from order_service import commands, db, queries
from order_service.errors import NotFoundError, ValidationError


@pytest.mark.asyncio
async def test_create_product_validates_fields(session_factory):
    async with session_factory() as session:
        with pytest.raises(ValidationError, match="name"):
            await commands.create_product(session, "", "", Decimal("1.00"), 1)
        with pytest.raises(ValidationError, match="price"):
            await commands.create_product(session, "Free", "", Decimal("0"), 1)
        with pytest.raises(ValidationError, match="negative"):
            await commands.create_product(session, "Owed", "", Decimal("1.00"), -1)


@pytest.mark.asyncio
async def test_update_unknown_product(session_factory):
    async with session_factory() as session:
        with pytest.raises(NotFoundError):
            await commands.update_product(
                session,
                "ffffffff-ffff-ffff-ffff-ffffffffffff",
                "Ghost",
                "",
                Decimal("1.00"),
                1,
            )


@pytest.mark.asyncio
async def test_list_products_sorted_by_name(session_factory, make_product):
    await make_product(name="Zither")
    await make_product(name="Accordion")

    async with session_factory() as session:
        names = [p["name"] for p in await queries.list_products(session)]

    assert names == ["Accordion", "Zither"]


@pytest.mark.asyncio
async def test_ordered_product_cannot_be_deleted(session_factory, user, make_product):
    product = await make_product(stock=5)
    async with session_factory() as session:
        await commands.create_order(
            session, None, user["id"], "credit_card", [(product["id"], 1)]
        )

    async with session_factory() as session:
        with pytest.raises(ValidationError, match="referenced"):
            await commands.delete_product(session, product["id"])

    async with session_factory() as session:
        assert await queries.get_product(session, product["id"]) is not None


@pytest.mark.asyncio
async def test_order_items_cascade_with_order(
    session_factory, user, make_product, row_count
):
    product = await make_product(stock=5)
    async with session_factory() as session:
        order = await commands.create_order(
            session, None, user["id"], "credit_card", [(product["id"], 2)]
        )

    async with session_factory() as session:
        await session.execute(
            db.payments.delete().where(db.payments.c.order_id == order["id"])
        )
        await session.execute(db.orders.delete().where(db.orders.c.id == order["id"]))
        await session.commit()

    assert await row_count(db.order_items) == 0


@pytest.mark.asyncio
async def test_duplicate_email_is_rejected(session_factory, user):
    async with session_factory() as session:
        with pytest.raises(ValidationError, match="already registered"):
            await commands.create_user(session, user["email"], "Someone Else")


@pytest.mark.asyncio
async def test_get_user_by_email(session_factory, user):
    async with session_factory() as session:
        found = await queries.get_user_by_email(session, "alice@example.com")
        missing = await queries.get_user_by_email(session, "nobody@example.com")

    assert found["id"] == user["id"]
    assert missing is None
