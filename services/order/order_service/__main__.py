"""`python -m order_service` / `order-service` で API サーバーを起動する"""

import os

import uvicorn


def run() -> None:
    uvicorn.run(
        "order_service.main:app",
        host=os.environ.get("HOST", "0.0.0.0"),
        port=int(os.environ.get("PORT", "8000")),
        log_level=os.environ.get("LOG_LEVEL", "info").lower(),
    )


if __name__ == "__main__":
    run()
