"""Subscriptions router - the caller's own subscription state.

Endpoints:
    POST /api/subscriptions/cleanup - Reconcile the caller's subscription now
    GET /api/subscriptions/status - Stored subscription state and detected inconsistencies
"""

from __future__ import annotations

import asyncio
import logging

from fastapi import APIRouter, Depends, Request

from ..dependencies import get_firestore, get_realtime_db, get_reconciler, verify_firebase_token
from ..middleware.rate_limit import rate_limit_cleanup, rate_limit_status
from ..models import CleanupResponse, ErrorResponse, SubscriptionStatusResponse
from ..subscriptions.errors import SubscriptionError
from ..subscriptions.policy import find_inconsistencies
from ..subscriptions.reconciler import SubscriptionReconciler
from ..subscriptions.records import utc_now
from ..subscriptions.snapshots import SubscriptionSnapshotReader
from ..utils.responses import build_correlation_id, subscription_error_response
from ..utils.security_logger import security_logger

router = APIRouter()
logger = logging.getLogger("api.subscriptions")


@router.post(
    "/subscriptions/cleanup",
    response_model=CleanupResponse,
    responses={
        400: {"model": ErrorResponse},
        401: {"model": ErrorResponse},
        409: {"model": ErrorResponse},
        500: {"model": ErrorResponse},
        502: {"model": ErrorResponse},
    },
)
@rate_limit_cleanup
async def cleanup_subscription(
    request: Request,
    decoded_token: dict = Depends(verify_firebase_token),
    reconciler: SubscriptionReconciler = Depends(get_reconciler),
):
    """Reconcile the caller's subscription against the billing provider.

    A billing provider failure is returned as 502 and nothing is written; the
    stored record is never downgraded on an unknown billing state.
    """
    correlation_id = build_correlation_id(request)
    uid = decoded_token.get("uid")
    email = decoded_token.get("email")

    try:
        result = await asyncio.to_thread(reconciler.reconcile_identity, uid, email, correlation_id=correlation_id)
    except SubscriptionError as exc:
        logger.warning("Cleanup failed uid=%s code=%s corr=%s", uid, exc.code, correlation_id)
        return subscription_error_response(exc, correlationId=correlation_id)

    if result.billing_actions:
        security_logger.billing_cleanup(
            uid=result.uid,
            actions=[a.to_response() for a in result.billing_actions],
            correlation_id=correlation_id,
        )

    return CleanupResponse(
        ok=True,
        subscription=result.record.to_response(),
        rule=result.decision.rule,
        changed=result.changed,
        correlationId=correlation_id,
    )


@router.get(
    "/subscriptions/status",
    response_model=SubscriptionStatusResponse,
    responses={401: {"model": ErrorResponse}, 503: {"model": ErrorResponse}},
)
@rate_limit_status
async def subscription_status(
    request: Request,
    decoded_token: dict = Depends(verify_firebase_token),
    db = Depends(get_firestore),
    realtime_db = Depends(get_realtime_db),
):
    """Both stored copies of the caller's subscription, read fresh."""
    uid = decoded_token.get("uid")
    try:
        snapshots = await asyncio.to_thread(SubscriptionSnapshotReader(db, realtime_db).read, uid)
    except SubscriptionError as exc:
        return subscription_error_response(exc)

    inconsistencies = find_inconsistencies(snapshots, utc_now())
    return SubscriptionStatusResponse(
        userId=uid,
        snapshots=snapshots.to_response(),
        inconsistencies=inconsistencies,
        consistent=not inconsistencies,
    )
