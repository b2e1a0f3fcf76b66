"""Shared JSON error responses and correlation ids for the routers."""

from __future__ import annotations

from typing import Any, Dict, Optional
from uuid import uuid4

from fastapi import Request
from fastapi.responses import JSONResponse

from ..subscriptions.errors import SubscriptionError


def build_correlation_id(request: Request, prefix: str = "subs") -> str:
    existing = request.headers.get("X-Correlation-ID")
    if existing:
        return existing
    return f"{prefix}-{uuid4()}"


def error_response(
    status_code: int,
    *,
    error: str,
    code: str,
    details: Optional[Dict[str, Any]] = None,
) -> JSONResponse:
    payload: Dict[str, Any] = {"error": error, "code": code}
    if details:
        payload["details"] = details
    return JSONResponse(status_code=status_code, content=payload)


def subscription_error_response(exc: SubscriptionError, **extra: Any) -> JSONResponse:
    return error_response(
        exc.status_code,
        error=exc.error,
        code=exc.code,
        details={**(exc.details or {}), **{k: v for k, v in extra.items() if v is not None}},
    )
