"""Health check router - store connectivity and billing configuration.

Endpoints:
    GET /api/health - Overall health status
    GET /api/health/firebase - Firestore and Realtime Database connectivity
"""

from __future__ import annotations

import os
import logging
from datetime import datetime
from fastapi import APIRouter, Depends, Request

from ..dependencies import get_firestore, get_realtime_db
from ..middleware.rate_limit import rate_limit_health
from ..subscriptions import config as subs_config

router = APIRouter()
logger = logging.getLogger(__name__)

# Only expose detailed errors in debug mode
DEBUG_MODE = os.environ.get("DEBUG", "false").lower() == "true"


@router.get("/health")
@rate_limit_health
async def health_check(request: Request) -> dict:
    """Basic health check - no auth required.

    Returns overall API status.
    """
    return {
        "status": "healthy",
        "billingConfigured": bool(subs_config.STRIPE_SECRET_KEY),
        "timestamp": datetime.utcnow().isoformat(),
        "version": "1.0.0"
    }


@router.get("/health/firebase")
@rate_limit_health
async def firebase_health(
    request: Request,
    db = Depends(get_firestore),
) -> dict:
    """Firebase health check.

    Performs a simple read against each store to verify connectivity.
    """
    stores = {}
    try:
        # Even if the doc doesn't exist, the connection worked
        db.collection('_health').document('ping').get()
        stores["firestore"] = "healthy"
    except Exception as e:
        logger.error(f"Firestore health check failed: {e}")
        stores["firestore"] = str(e) if DEBUG_MODE else "unhealthy"

    try:
        get_realtime_db().reference('_health/ping').get()
        stores["realtime"] = "healthy"
    except Exception as e:
        logger.error(f"Realtime Database health check failed: {e}")
        stores["realtime"] = str(e) if DEBUG_MODE else "unhealthy"

    healthy = all(value == "healthy" for value in stores.values())
    return {
        "status": "healthy" if healthy else "unhealthy",
        "stores": stores,
        "timestamp": datetime.utcnow().isoformat()
    }
