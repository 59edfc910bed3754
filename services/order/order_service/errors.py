"""
Order Service — エラー分類

呼び出し側がメッセージ文字列ではなく種別 (kind) で分岐できるようにする。

    validation          入力不正 (空の明細、0 以下の数量など)
    not_found           ユーザー・商品・注文が存在しない
    insufficient_stock  在庫不足 (業務ルール上の競合。リトライしない)
    internal            インフラ障害 (ロック待ちタイムアウト、接続断、制約違反)
"""


class OrderError(Exception):
    kind = "internal"
    status_code = 500
    retryable = False

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {
            "error": self.kind,
            "detail": self.message,
            "retryable": self.retryable,
        }


class ValidationError(OrderError):
    kind = "validation"
    status_code = 422


class NotFoundError(OrderError):
    kind = "not_found"
    status_code = 404


class InsufficientStockError(OrderError):
    kind = "insufficient_stock"
    status_code = 409

    def __init__(
        self, product_id: str, product_name: str, available: int, requested: int
    ) -> None:
        super().__init__(
            f"Insufficient stock for product {product_name}: "
            f"requested={requested}, available={available}"
        )
        self.product_id = product_id
        self.available = available
        self.requested = requested


class TransactionError(OrderError):
    """DB 側の失敗。内部の詳細はメッセージに含めない。"""


class LockTimeoutError(TransactionError):
    """行ロックの待ち時間が上限を超えた。呼び出し側はリトライしてよい。"""

    status_code = 503
    retryable = True
