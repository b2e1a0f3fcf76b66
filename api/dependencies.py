"""FastAPI dependencies for authentication, store clients, and the reconciliation engine.

All endpoints use these dependencies for:
- Firebase token verification
- Admin / scheduler secret checks
- Firestore and Realtime Database access
- Building the reconciliation engine on top of those clients
"""

from __future__ import annotations

import hmac
import os
import logging
from pathlib import Path
from datetime import datetime, timezone
from typing import Optional, Dict, Any

from fastapi import Request, Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

import firebase_admin
from firebase_admin import auth, credentials, db, firestore

from .subscriptions import config as subs_config
from .subscriptions.billing_client import StripeBillingClient
from .subscriptions.errors import AuthenticationError
from .subscriptions.reconciler import SubscriptionReconciler
from .subscriptions.scanner import BatchScanner
from .subscriptions.snapshots import make_email_resolver
from .utils.client_ip import get_client_ip
from .utils.security_logger import security_logger

# =============================================================================
# CONFIGURATION
# =============================================================================

API_DIR = Path(__file__).parent
PROJECT_DIR = API_DIR.parent

SERVICE_ACCOUNT_PATH = os.environ.get(
    "GOOGLE_APPLICATION_CREDENTIALS",
    str(PROJECT_DIR / "firebase-adminsdk.json")
)
FIREBASE_DATABASE_URL = str(os.environ.get("FIREBASE_DATABASE_URL", "")).strip()

# Security settings
MAX_TOKEN_AGE_SECONDS = int(os.environ.get("MAX_TOKEN_AGE_SECONDS", 3600))  # Default 1 hour
CLOCK_SKEW_SECONDS = int(os.environ.get("CLOCK_SKEW_SECONDS", 300))  # Default 5 min
SKIP_TOKEN_AGE_CHECK = os.environ.get("SKIP_TOKEN_AGE_CHECK", "").lower() in ("1", "true")

logger = logging.getLogger("api.dependencies")

bearer_scheme = HTTPBearer(auto_error=False)


# =============================================================================
# FIREBASE INITIALIZATION
# =============================================================================

_firebase_app: Optional[firebase_admin.App] = None
_firestore_client = None


def get_firebase_app() -> firebase_admin.App:
    """Get or initialize Firebase Admin app."""
    global _firebase_app

    if _firebase_app is not None:
        return _firebase_app

    try:
        _firebase_app = firebase_admin.get_app()
        return _firebase_app
    except ValueError:
        pass

    if not Path(SERVICE_ACCOUNT_PATH).exists():
        raise RuntimeError(f"Service account not found: {SERVICE_ACCOUNT_PATH}")

    options = {"databaseURL": FIREBASE_DATABASE_URL} if FIREBASE_DATABASE_URL else None
    cred = credentials.Certificate(SERVICE_ACCOUNT_PATH)
    _firebase_app = firebase_admin.initialize_app(cred, options)
    logger.info("Firebase Admin initialized")
    return _firebase_app


def get_firestore() -> firestore.Client:
    """Get Firestore client (singleton)."""
    global _firestore_client

    if _firestore_client is None:
        get_firebase_app()
        _firestore_client = firestore.client()
        logger.info("Firestore client initialized")

    return _firestore_client


def get_realtime_db():
    """Realtime Database handle; exposes ``reference(path)``."""
    app = get_firebase_app()
    if not FIREBASE_DATABASE_URL and not (app.options.get("databaseURL") if app.options else None):
        raise RuntimeError("FIREBASE_DATABASE_URL is not configured")
    return db


# =============================================================================
# RECONCILIATION ENGINE
# =============================================================================

def get_billing_client() -> StripeBillingClient:
    return StripeBillingClient()


def get_email_resolver(firestore_client=Depends(get_firestore)):
    """Email for a uid: Firebase Auth first, then the Firestore user document."""
    return make_email_resolver(firestore_client)


def get_reconciler(
    firestore_client=Depends(get_firestore),
    realtime_db=Depends(get_realtime_db),
    billing: StripeBillingClient = Depends(get_billing_client),
    email_resolver=Depends(get_email_resolver),
) -> SubscriptionReconciler:
    return SubscriptionReconciler.for_clients(
        firestore_client,
        realtime_db,
        billing,
        email_resolver=email_resolver,
    )


def get_batch_scanner(
    reconciler: SubscriptionReconciler = Depends(get_reconciler),
    firestore_client=Depends(get_firestore),
    email_resolver=Depends(get_email_resolver),
) -> BatchScanner:
    return BatchScanner(reconciler, firestore_client, email_resolver=email_resolver)


# =============================================================================
# AUTHENTICATION
# =============================================================================

async def verify_firebase_token(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme)
) -> Dict[str, Any]:
    """Verify Firebase ID token from Authorization header.

    Security checks:
    - Valid signature (RS256)
    - Not expired
    - Not revoked
    - Token age < 1 hour (force refresh)
    - Not from the future (clock skew attack)

    Returns:
        Decoded token claims including 'uid'

    Raises:
        AuthenticationError (401) on any auth failure
    """
    if credentials is None:
        _log_auth_failure(request, "missing_auth_header")
        raise AuthenticationError("Missing Authorization header", code="AUTH_HEADER_MISSING")

    token = credentials.credentials

    try:
        get_firebase_app()
        decoded = auth.verify_id_token(token, check_revoked=True)
    except auth.RevokedIdTokenError:
        _log_auth_failure(request, "revoked_token")
        raise AuthenticationError("Token has been revoked")
    except auth.ExpiredIdTokenError:
        _log_auth_failure(request, "expired_token")
        raise AuthenticationError("Token has expired")
    except auth.InvalidIdTokenError as e:
        _log_auth_failure(request, "invalid_token", error=str(e))
        raise AuthenticationError("Invalid token")
    except Exception as e:
        _log_auth_failure(request, "auth_error", error=str(e))
        raise AuthenticationError("Authentication failed")

    # Can be disabled for testing with clock skew
    if not SKIP_TOKEN_AGE_CHECK:
        now = datetime.now(timezone.utc).timestamp()
        issued_at = decoded.get('iat', 0)

        if now - issued_at > MAX_TOKEN_AGE_SECONDS:
            _log_auth_failure(request, "token_too_old", uid=decoded.get('uid'))
            raise AuthenticationError("Token too old, please re-authenticate")

        if issued_at > now + CLOCK_SKEW_SECONDS:
            _log_auth_failure(request, "future_token", uid=decoded.get('uid'))
            raise AuthenticationError("Invalid token timestamp")

    return decoded


def _secret_matches(provided: Optional[str], expected: str) -> bool:
    if not expected or not provided:
        return False
    return hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))


async def require_admin_secret(request: Request) -> str:
    """Require the ``X-Admin-Secret`` header to match ``ADMIN_SECRET``."""
    provided = request.headers.get("X-Admin-Secret")
    if not _secret_matches(provided, subs_config.ADMIN_SECRET):
        _log_auth_failure(request, "admin_secret_mismatch" if provided else "admin_secret_missing")
        raise AuthenticationError("Unauthorized", code="ADMIN_UNAUTHORIZED")
    return "admin"


async def require_cron_or_admin(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme)
) -> str:
    """Scheduler bearer (``CRON_SECRET``) or the admin header secret."""
    if credentials is not None and _secret_matches(credentials.credentials, subs_config.CRON_SECRET):
        return "cron"
    if _secret_matches(request.headers.get("X-Admin-Secret"), subs_config.ADMIN_SECRET):
        return "admin"
    _log_auth_failure(request, "cron_secret_mismatch")
    raise AuthenticationError("Unauthorized", code="ADMIN_UNAUTHORIZED")


def _log_auth_failure(request: Request, reason: str, **extra):
    """Log authentication failure for security monitoring."""
    uid = extra.pop("uid", None)
    security_logger.log_event(
        event_type="auth_failure",
        severity="medium",
        details={
            "reason": reason,
            "user_agent": request.headers.get("user-agent", "unknown"),
            **extra
        },
        ip=get_client_ip(request),
        uid=uid,
        path=request.url.path,
    )
