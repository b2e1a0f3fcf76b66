"""Environment configuration for the subscription reconciliation engine."""

from __future__ import annotations

import os


def _bool_env(name: str, default: bool = False) -> bool:
    raw = str(os.environ.get(name, "")).strip().lower()
    if not raw:
        return default
    return raw in ("1", "true", "yes", "on")


def _int_env(name: str, default: int) -> int:
    raw = str(os.environ.get(name, "")).strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _float_env(name: str, default: float) -> float:
    raw = str(os.environ.get(name, "")).strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


# Billing provider (Stripe)
STRIPE_SECRET_KEY = str(os.environ.get("STRIPE_SECRET_KEY", "")).strip()
STRIPE_API_BASE = str(os.environ.get("STRIPE_API_BASE", "https://api.stripe.com/v1")).strip().rstrip("/")
STRIPE_API_TIMEOUT_SEC = _float_env("STRIPE_API_TIMEOUT_SEC", 20.0)
STRIPE_MAX_RETRIES = max(0, _int_env("STRIPE_MAX_RETRIES", 3))
STRIPE_RETRY_BASE_DELAY_SEC = _float_env("STRIPE_RETRY_BASE_DELAY_SEC", 0.5)
STRIPE_RETRY_MAX_DELAY_SEC = _float_env("STRIPE_RETRY_MAX_DELAY_SEC", 8.0)

# Provider-side caps; requests above these are clamped.
CUSTOMER_LOOKUP_LIMIT = min(5, max(1, _int_env("CUSTOMER_LOOKUP_LIMIT", 5)))
SUBSCRIPTION_LIST_LIMIT = min(10, max(1, _int_env("SUBSCRIPTION_LIST_LIMIT", 10)))

# Admin overrides
ADMIN_SECRET = str(os.environ.get("ADMIN_SECRET", "")).strip()
CRON_SECRET = str(os.environ.get("CRON_SECRET", "")).strip()
ADMIN_SUBSCRIPTION_PREFIX = str(os.environ.get("ADMIN_SUBSCRIPTION_PREFIX", "admin_")).strip() or "admin_"
ADMIN_GRANT_DAYS = max(1, _int_env("ADMIN_GRANT_DAYS", 365))

# Batch scanning
MAX_BATCH_SCAN_LIMIT = 100
BATCH_SCAN_LIMIT = min(MAX_BATCH_SCAN_LIMIT, max(1, _int_env("BATCH_SCAN_LIMIT", MAX_BATCH_SCAN_LIMIT)))

# Per-identity lease
RECONCILE_LEASES_ENABLED = _bool_env("RECONCILE_LEASES_ENABLED", True)
RECONCILE_LEASE_SECONDS = max(5, _int_env("RECONCILE_LEASE_SECONDS", 60))

# Firestore / Realtime Database layout
USERS_COLLECTION = "users"
LEASE_COLLECTION = "subscriptionReconcileLeases"
RTDB_ACCOUNT_PATH = "users/{uid}/account"
