"""
Order Service — FastAPI エントリーポイント

Command (POST/PUT/DELETE) と Query (GET) のエンドポイントを分離する。
注文作成は在庫減算・注文・支払いを 1 トランザクションで行う (commands.py)。

設定は環境変数から読む:
    DATABASE_URL     必須 (例: postgresql+asyncpg://..., sqlite+aiosqlite:///./orders.db)
    REDIS_URL        OrderCreated イベントの発行先
    LOCK_TIMEOUT_MS  行ロック待ちの上限 (ミリ秒)
    LOG_LEVEL        ログレベル
"""

import logging
import os
from contextlib import asynccontextmanager
from decimal import Decimal
from uuid import UUID

import redis.asyncio as aioredis
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import sessionmaker

from . import commands, db, queries
from .errors import NotFoundError, OrderError

DATABASE_URL = os.environ["DATABASE_URL"]
REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379")
LOCK_TIMEOUT_MS = int(os.environ.get("LOCK_TIMEOUT_MS", "5000"))
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

engine = db.create_engine(DATABASE_URL, LOCK_TIMEOUT_MS)
async_session = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
redis_pool: aioredis.Redis | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    global redis_pool
    await db.create_schema(engine)
    redis_pool = aioredis.from_url(REDIS_URL, decode_responses=True)
    logger.info("Order service started (lock timeout %dms)", LOCK_TIMEOUT_MS)
    yield
    await redis_pool.aclose()
    await engine.dispose()


app = FastAPI(title="Order Service", lifespan=lifespan)


# ── エラーレスポンス ─────────────────────────────


@app.exception_handler(OrderError)
async def handle_order_error(request: Request, exc: OrderError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def handle_request_validation(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    detail = "Invalid request"
    if errors:
        location = ".".join(str(part) for part in errors[0].get("loc", ()))
        detail = f"Invalid request: {location}: {errors[0].get('msg', '')}"
    return JSONResponse(
        status_code=422,
        content={"error": "validation", "detail": detail, "retryable": False},
    )


@app.exception_handler(Exception)
async def handle_unexpected(request: Request, exc: Exception):
    # スタックトレースはログにだけ出す
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content={"error": "internal", "detail": "Internal server error", "retryable": False},
    )


# ── Request Models ───────────────────────────────


class OrderItemRequest(BaseModel):
    product_id: UUID
    quantity: int


class CreateOrderRequest(BaseModel):
    user_id: UUID
    payment_method: str
    items: list[OrderItemRequest]


class ProductRequest(BaseModel):
    name: str
    description: str = ""
    price: Decimal
    stock: int = 0


class CreateUserRequest(BaseModel):
    email: str
    full_name: str


# ── Command Endpoints (Write 側) ─────────────────


@app.post("/commands/orders", status_code=201)
async def cmd_create_order(req: CreateOrderRequest):
    """注文作成コマンド (在庫引き当て + 注文 + 支払いを 1 トランザクションで)"""
    async with async_session() as session:
        return await commands.create_order(
            session,
            redis_pool,
            str(req.user_id),
            req.payment_method,
            [(str(item.product_id), item.quantity) for item in req.items],
            lock_timeout_ms=LOCK_TIMEOUT_MS,
        )


@app.post("/commands/products", status_code=201)
async def cmd_create_product(req: ProductRequest):
    async with async_session() as session:
        return await commands.create_product(
            session, req.name, req.description, req.price, req.stock
        )


@app.put("/commands/products/{product_id}")
async def cmd_update_product(product_id: UUID, req: ProductRequest):
    async with async_session() as session:
        return await commands.update_product(
            session, str(product_id), req.name, req.description, req.price, req.stock
        )


@app.delete("/commands/products/{product_id}", status_code=204)
async def cmd_delete_product(product_id: UUID):
    async with async_session() as session:
        await commands.delete_product(session, str(product_id))


@app.post("/commands/users", status_code=201)
async def cmd_create_user(req: CreateUserRequest):
    async with async_session() as session:
        return await commands.create_user(session, req.email, req.full_name)


# ── Query Endpoints (Read 側) ────────────────────


@app.get("/queries/orders/{order_id}")
async def query_get_order(order_id: UUID):
    """注文を明細・商品・ユーザー付きで取得"""
    async with async_session() as session:
        order = await queries.get_order(session, str(order_id))
        if not order:
            raise NotFoundError(f"Order {order_id} not found")
        return order


@app.get("/queries/users/{user_id}/orders")
async def query_list_user_orders(user_id: UUID):
    """ユーザーの注文一覧 (新しい順)"""
    async with async_session() as session:
        return await queries.list_orders_for_user(session, str(user_id))


@app.get("/queries/products")
async def query_list_products():
    async with async_session() as session:
        return await queries.list_products(session)


@app.get("/queries/products/{product_id}")
async def query_get_product(product_id: UUID):
    async with async_session() as session:
        product = await queries.get_product(session, str(product_id))
        if not product:
            raise NotFoundError(f"Product {product_id} not found")
        return product


@app.get("/queries/users/{user_id}")
async def query_get_user(user_id: UUID):
    async with async_session() as session:
        user = await queries.get_user(session, str(user_id))
        if not user:
            raise NotFoundError(f"User {user_id} not found")
        return user


@app.get("/health")
async def health():
    return {"status": "ok", "service": "order-service"}
