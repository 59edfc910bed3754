"""
Order Service — イベント定義

コミット後に Redis Pub/Sub (order_events チャネル) へ発行する。
イベントは過去形で命名し、不変として扱う。
"""

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel


class OrderItemSnapshot(BaseModel):
    product_id: str
    quantity: int
    price: Decimal


class OrderCreated(BaseModel):
    """注文が作成された (在庫は減算済み、支払いは pending)"""
    order_id: str
    user_id: str
    total_amount: Decimal
    payment_method: str
    items: list[OrderItemSnapshot]
    timestamp: datetime
