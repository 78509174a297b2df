# responses.py
"""
Success / failure envelopes and the exception handlers that produce failures.

Every endpoint answers with either
    {"success": true,  "status_code", "message", "data"}
or
    {"success": false, "status_code", "message", "errors"}
"""

from __future__ import annotations

from typing import Any

from fastapi import FastAPI, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from .errors import TaxCalcError
from .logging_config import setup_logger
from .schemas import envelope_adapter

logger = setup_logger(__name__)


def _dump(data: Any) -> Any:
    # pydantic models go through their own serializers (Decimal -> str)
    if isinstance(data, BaseModel):
        return data.model_dump(mode="json")
    if isinstance(data, (list, tuple)):
        return [_dump(d) for d in data]
    if isinstance(data, dict):
        return {k: _dump(v) for k, v in data.items()}
    return jsonable_encoder(data)


def _envelope(status_code: int, body: dict[str, Any]) -> JSONResponse:
    # validated through the Success | Failure union, tagged by `success`
    envelope = envelope_adapter.validate_python(body)
    return JSONResponse(status_code=status_code, content=jsonable_encoder(envelope_adapter.dump_python(envelope)))


def success(data: Any, message: str, status_code: int = 200) -> JSONResponse:
    body = {"success": True, "status_code": status_code, "message": message, "data": _dump(data)}
    return _envelope(status_code, body)


def failure(status_code: int, message: str, errors: list[Any] | None = None) -> JSONResponse:
    body = {"success": False, "status_code": status_code, "message": message, "errors": errors}
    return _envelope(status_code, body)


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(TaxCalcError)
    async def _tax_calc_error(request: Request, exc: TaxCalcError) -> JSONResponse:
        logger.info(f"{request.method} {request.url.path} -> {exc.status_code} {type(exc).__name__}: {exc.message}")
        return failure(exc.status_code, exc.message, exc.errors)

    @app.exception_handler(RequestValidationError)
    async def _request_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        errors = [
            {"field": ".".join(str(p) for p in e.get("loc", ())), "message": e.get("msg", "")}
            for e in exc.errors()
        ]
        return failure(422, "Validation failed", errors)

    @app.exception_handler(HTTPException)
    async def _http_exception(request: Request, exc: HTTPException) -> JSONResponse:
        return failure(exc.status_code, str(exc.detail))
