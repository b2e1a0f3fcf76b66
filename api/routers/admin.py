"""Admin router - support-driven repair and scheduled batch reconciliation.

Endpoints:
    POST /api/admin/subscriptions/fix - Repair one identity, or run the batch scan
    POST /api/admin/subscriptions/diagnose - Read-only view of what a fix would do
    POST /api/admin/ttl/validate - Find (and optionally repair) TTL field problems
    POST /api/cron/subscriptions/reconcile - Scheduled batch scan

All admin endpoints require the ``X-Admin-Secret`` header. The cron endpoint
also accepts ``Authorization: Bearer <CRON_SECRET>``.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional, Union

from fastapi import APIRouter, Depends, Request

from ..dependencies import (
    get_batch_scanner,
    get_firestore,
    get_reconciler,
    require_admin_secret,
    require_cron_or_admin,
)
from ..middleware.rate_limit import rate_limit_admin
from ..models import (
    BatchSummaryResponse,
    DiagnoseRequest,
    DiagnoseResponse,
    ErrorResponse,
    FixIdentityResponse,
    FixRequest,
    TTLValidateRequest,
    TTLValidateResponse,
)
from ..subscriptions.errors import SubscriptionError
from ..subscriptions.reconciler import SubscriptionReconciler
from ..subscriptions.scanner import BatchScanner
from ..subscriptions.ttl_fields import sweep_collection
from ..utils.client_ip import get_client_ip
from ..utils.responses import build_correlation_id, error_response, subscription_error_response
from ..utils.security_logger import security_logger

router = APIRouter()
logger = logging.getLogger("api.admin")

_ADMIN_ERRORS = {
    400: {"model": ErrorResponse},
    401: {"model": ErrorResponse},
    404: {"model": ErrorResponse},
    409: {"model": ErrorResponse},
    500: {"model": ErrorResponse},
    502: {"model": ErrorResponse},
}


async def _run_batch(scanner: BatchScanner, correlation_id: str):
    try:
        return await asyncio.to_thread(scanner.run, correlation_id=correlation_id)
    except Exception as exc:
        logger.exception("Batch scan failed corr=%s", correlation_id)
        return error_response(
            500,
            error="Batch reconciliation failed",
            code="BATCH_SCAN_FAILED",
            details={"reason": str(exc), "correlationId": correlation_id},
        )


@router.post(
    "/admin/subscriptions/fix",
    response_model=Union[FixIdentityResponse, BatchSummaryResponse],
    responses=_ADMIN_ERRORS,
)
@rate_limit_admin
async def fix_subscriptions(
    request: Request,
    payload: Optional[FixRequest] = None,
    _admin: str = Depends(require_admin_secret),
    reconciler: SubscriptionReconciler = Depends(get_reconciler),
    scanner: BatchScanner = Depends(get_batch_scanner),
):
    """Repair one identity (``userId`` given) or run the batch scan (no ``userId``)."""
    correlation_id = build_correlation_id(request, prefix="admin")
    user_id = payload.userId if payload is not None else None
    security_logger.admin_action(
        "subscription_fix",
        ip=get_client_ip(request),
        path=request.url.path,
        uid=user_id,
        correlation_id=correlation_id,
    )

    if not user_id:
        return await _run_batch(scanner, correlation_id)

    try:
        result = await asyncio.to_thread(
            reconciler.reconcile_identity,
            user_id,
            require_existing=True,
            correlation_id=correlation_id,
        )
    except SubscriptionError as exc:
        logger.warning("Admin fix failed uid=%s code=%s corr=%s", user_id, exc.code, correlation_id)
        return subscription_error_response(exc, userId=user_id, correlationId=correlation_id)

    if result.billing_actions:
        security_logger.billing_cleanup(
            uid=result.uid,
            actions=[a.to_response() for a in result.billing_actions],
            correlation_id=correlation_id,
        )

    return FixIdentityResponse(
        ok=True,
        userId=result.uid,
        before=result.before.to_response(),
        after=result.after.to_response() if result.after is not None else None,
        changed=result.changed,
        canonical=result.record.to_response(),
        rule=result.decision.rule,
        inconsistencies=result.inconsistencies,
        billingActions=[a.to_response() for a in result.billing_actions],
        correlationId=correlation_id,
    )


@router.post(
    "/admin/subscriptions/diagnose",
    response_model=DiagnoseResponse,
    responses=_ADMIN_ERRORS,
)
@rate_limit_admin
async def diagnose_subscription(
    request: Request,
    payload: DiagnoseRequest,
    _admin: str = Depends(require_admin_secret),
    reconciler: SubscriptionReconciler = Depends(get_reconciler),
):
    """Show both snapshots, the billing view and the record a fix would write. Never writes."""
    try:
        preview = await asyncio.to_thread(reconciler.preview, payload.userId)
        return DiagnoseResponse(**preview)
    except SubscriptionError as exc:
        return subscription_error_response(exc, userId=payload.userId)


@router.post(
    "/admin/ttl/validate",
    response_model=TTLValidateResponse,
    responses={401: {"model": ErrorResponse}, 500: {"model": ErrorResponse}},
)
@rate_limit_admin
async def validate_ttl_fields(
    request: Request,
    payload: TTLValidateRequest,
    _admin: str = Depends(require_admin_secret),
    db = Depends(get_firestore),
):
    """Sweep listings or offers for TTL fields stored as null or missing on expired documents."""
    security_logger.admin_action(
        "ttl_validate",
        ip=get_client_ip(request),
        path=request.url.path,
        collection=payload.collection,
        dry_run=payload.dryRun,
    )
    try:
        return await asyncio.to_thread(
            sweep_collection,
            db,
            payload.collection,
            dry_run=payload.dryRun,
            limit=payload.limit,
        )
    except Exception as exc:
        logger.exception("TTL validation failed collection=%s", payload.collection)
        return error_response(
            500,
            error="TTL validation failed",
            code="TTL_VALIDATION_FAILED",
            details={"reason": str(exc), "collection": payload.collection},
        )


@router.post(
    "/cron/subscriptions/reconcile",
    response_model=BatchSummaryResponse,
    responses={401: {"model": ErrorResponse}, 500: {"model": ErrorResponse}},
)
@rate_limit_admin
async def scheduled_reconcile(
    request: Request,
    caller: str = Depends(require_cron_or_admin),
    scanner: BatchScanner = Depends(get_batch_scanner),
):
    """Scheduled batch scan; bounds how long a store divergence can persist."""
    correlation_id = build_correlation_id(request, prefix="cron")
    logger.info("Scheduled reconcile triggered by=%s corr=%s", caller, correlation_id)
    return await _run_batch(scanner, correlation_id)
