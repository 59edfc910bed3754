"""
Order Service — スキーマとエンジン

注文・在庫・支払いは同じデータベースに置く。
在庫の減算と注文の作成を 1 つのトランザクションでコミットするため。

テーブル:
    users        ─┐
    products     ─┼─ orders ─┬─ order_items (注文と一緒に CASCADE 削除)
                  │          └─ payments    (注文と 1 対 1)
"""

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    Text,
    event,
)
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

Money = Numeric(12, 2)

metadata = MetaData()

users = Table(
    "users",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("full_name", String(255), nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)

products = Table(
    "products",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("name", String(255), nullable=False),
    Column("description", Text, nullable=False, default=""),
    Column("price", Money, nullable=False),
    Column("stock", Integer, nullable=False, default=0),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
    CheckConstraint("price > 0", name="ck_products_price_positive"),
    CheckConstraint("stock >= 0", name="ck_products_stock_non_negative"),
)

orders = Table(
    "orders",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("user_id", String(36), ForeignKey("users.id"), nullable=False, index=True),
    Column("total_amount", Money, nullable=False),
    Column("status", String(20), nullable=False, default="pending"),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
    CheckConstraint("total_amount > 0", name="ck_orders_total_positive"),
)

order_items = Table(
    "order_items",
    metadata,
    Column("id", String(36), primary_key=True),
    Column(
        "order_id",
        String(36),
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    ),
    Column("product_id", String(36), ForeignKey("products.id"), nullable=False),
    Column("quantity", Integer, nullable=False),
    # 注文時点の単価。商品の現在価格とは切り離す
    Column("price", Money, nullable=False),
    Column("position", Integer, nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
    CheckConstraint("quantity > 0", name="ck_order_items_quantity_positive"),
    CheckConstraint("price > 0", name="ck_order_items_price_positive"),
)

payments = Table(
    "payments",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("order_id", String(36), ForeignKey("orders.id"), nullable=False, unique=True),
    Column("amount", Money, nullable=False),
    Column("status", String(20), nullable=False, default="pending"),
    Column("method", String(50), nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
    CheckConstraint("amount > 0", name="ck_payments_amount_positive"),
)


def create_engine(database_url: str, lock_timeout_ms: int) -> AsyncEngine:
    """
    非同期エンジンを作る。

    SQLite の場合は接続ごとに外部キー制約を有効にし、
    ロック待ちの上限を busy_timeout で設定する。
    PostgreSQL のロック待ち上限はトランザクションごとに設定する (commands.py)。
    """
    engine = create_async_engine(database_url, echo=False)

    if engine.dialect.name == "sqlite":

        @event.listens_for(engine.sync_engine, "connect")
        def _sqlite_pragmas(dbapi_connection, _record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.execute(f"PRAGMA busy_timeout={int(lock_timeout_ms)}")
            cursor.close()

    return engine


async def create_schema(engine: AsyncEngine) -> None:
    """存在しないテーブルだけを作成する。"""
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)
