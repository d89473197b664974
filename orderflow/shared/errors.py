"""
Shared: エラー分類とエラーレスポンス

- Validation: 400 系、再試行しない
- Guard failure: 戻り値で表現する (例外にしない)
- Business rejection: 注文を FAILED にして理由を記録する
- Transient: TransientError / SQLAlchemyError / RedisError、ワーカーが再配信させる
- Anomaly: 警告ログ + ドメインイベント

クライアントには常に {"error": {"code", "message"}} 形式で返す。
"""

import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from redis.exceptions import RedisError
from sqlalchemy.exc import SQLAlchemyError

logger = logging.getLogger(__name__)


class TransientError(Exception):
    """再試行すれば回復しうるインフラ障害。"""


class PaymentUnavailable(TransientError):
    """決済ゲートウェイのタイムアウト・通信障害・5xx。"""


class InvalidPageToken(ValueError):
    pass


def error_body(code: str, message: str, **extra) -> dict:
    return {"error": {"code": code, "message": message}, **extra}


def error_response(status_code: int, code: str, message: str, **extra) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=error_body(code, message, **extra))


def _validation_details(exc: RequestValidationError) -> list[dict]:
    details = []
    for err in exc.errors():
        loc = [str(part) for part in err.get("loc", ()) if part not in ("body", "query", "header")]
        details.append(
            {"field": ".".join(loc) or "body", "message": err.get("msg", ""), "code": err.get("type", "")}
        )
    return details


def install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(RequestValidationError)
    async def _on_validation_error(request: Request, exc: RequestValidationError):
        return error_response(
            400, "VALIDATION_FAILED", "Validation failed", details=_validation_details(exc)
        )

    @app.exception_handler(SQLAlchemyError)
    @app.exception_handler(RedisError)
    @app.exception_handler(TransientError)
    async def _on_infrastructure_error(request: Request, exc: Exception):
        logger.error("Infrastructure failure on %s %s: %r", request.method, request.url.path, exc)
        return error_response(500, "INTERNAL_ERROR", "Internal server error")
