from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from backend.app.core.errors import (
    ConcurrencyError,
    InsufficientStockError,
    InvalidStateError,
    NotFoundError,
    PermissionDeniedError,
    StockError,
    ValidationError,
)

logger = logging.getLogger(__name__)

STATUS_BY_ERROR: dict[type[StockError], int] = {
    ValidationError: 400,
    PermissionDeniedError: 403,
    NotFoundError: 404,
    InsufficientStockError: 409,
    InvalidStateError: 409,
    ConcurrencyError: 503,
}


def status_for(exc: StockError) -> int:
    for cls in type(exc).__mro__:
        if cls in STATUS_BY_ERROR:
            return STATUS_BY_ERROR[cls]
    return 400


async def stock_error_handler(request: Request, exc: StockError) -> JSONResponse:
    status_code = status_for(exc)
    body = {"error": exc.message, "code": exc.code}
    headers = None

    if isinstance(exc, InsufficientStockError):
        body.update(product_id=exc.product_id, requested=exc.requested, available=exc.available)
    if isinstance(exc, ConcurrencyError):
        headers = {"Retry-After": "1"}
        logger.warning("Concurrency conflict on %s %s", request.method, request.url.path)

    return JSONResponse(status_code=status_code, content=body, headers=headers)


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(StockError, stock_error_handler)
