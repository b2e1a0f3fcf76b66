"""Subscription record and billing signal types.

``SubscriptionRecord`` is the canonical entity mirrored in Firestore
(``users/{uid}.subscription``) and the Realtime Database
(``users/{uid}/account/subscription``). Timestamps are held as UTC datetimes
truncated to milliseconds so that a value read back from either store compares
equal to what was written.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Literal, Optional, Sequence

from pydantic import BaseModel

logger = logging.getLogger("api.subscriptions.records")

SubscriptionStatus = Literal["none", "active", "trialing", "canceled", "replaced"]
SubscriptionTier = Literal["free", "premium", "admin"]

SUBSCRIPTION_STATUSES = ("none", "active", "trialing", "canceled", "replaced")
PREMIUM_TIERS = ("premium", "admin")

# Fields holding a timestamp. They are written as a concrete value or removed,
# never persisted as null.
TIMESTAMP_FIELDS = ("startDate", "endDate", "renewalDate", "canceledAt", "lastManualUpdate", "lastUpdated")

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

_TIER_ALIASES = {
    "free": "free",
    "basic": "free",
    "none": "free",
    "premium": "premium",
    "pro": "premium",
    "admin": "admin",
    "admin-equivalent-premium": "admin",
    "admin_premium": "admin",
}


def utc_now() -> datetime:
    return truncate_ms(datetime.now(timezone.utc))


def truncate_ms(value: datetime) -> datetime:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    value = value.astimezone(timezone.utc)
    return value.replace(microsecond=(value.microsecond // 1000) * 1000)


def to_datetime(value: Any) -> Optional[datetime]:
    """Coerce a stored or provider timestamp into a UTC datetime.

    Accepts datetimes (including Firestore's DatetimeWithNanoseconds), epoch
    seconds or milliseconds, ISO-8601 strings and ``{seconds, nanoseconds}``
    maps. Anything unparseable is treated as absent.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return truncate_ms(value)
    if isinstance(value, (int, float)):
        # Values this large are epoch millis (Realtime Database), smaller ones epoch seconds.
        try:
            if abs(value) >= 100_000_000_000:
                return truncate_ms(_EPOCH + timedelta(milliseconds=value))
            return truncate_ms(_EPOCH + timedelta(seconds=value))
        except (OverflowError, ValueError):
            return None
    if isinstance(value, str):
        raw = value.strip()
        if not raw:
            return None
        try:
            return to_datetime(float(raw))
        except ValueError:
            pass
        try:
            return truncate_ms(datetime.fromisoformat(raw.replace("Z", "+00:00")))
        except ValueError:
            return None
    if isinstance(value, dict):
        seconds = value.get("seconds", value.get("_seconds"))
        nanos = value.get("nanoseconds") or value.get("_nanoseconds") or value.get("nanos") or 0
        if seconds is None:
            return None
        try:
            return to_datetime(float(seconds) + float(nanos) / 1_000_000_000)
        except (TypeError, ValueError):
            return None
    if hasattr(value, "timestamp"):
        try:
            return to_datetime(float(value.timestamp()))
        except Exception:
            return None
    return None


def to_epoch_ms(value: Optional[datetime]) -> Optional[int]:
    if value is None:
        return None
    return (truncate_ms(value) - _EPOCH) // timedelta(milliseconds=1)


def normalize_status(value: Any) -> SubscriptionStatus:
    status = str(value or "").strip().lower()
    if status == "cancelled":
        status = "canceled"
    if status in SUBSCRIPTION_STATUSES:
        return status  # type: ignore[return-value]
    if status:
        logger.debug("Unknown stored subscription status %r treated as none", status)
    return "none"


def normalize_tier(value: Any) -> SubscriptionTier:
    return _TIER_ALIASES.get(str(value or "").strip().lower(), "free")  # type: ignore[return-value]


class SubscriptionRecord(BaseModel):
    status: SubscriptionStatus = "none"
    tier: SubscriptionTier = "free"
    billingSubscriptionId: Optional[str] = None
    startDate: Optional[datetime] = None
    endDate: Optional[datetime] = None
    renewalDate: Optional[datetime] = None
    cancelAtPeriodEnd: bool = False
    canceledAt: Optional[datetime] = None
    manuallyUpdated: bool = False
    lastManualUpdate: Optional[datetime] = None
    lastUpdated: Optional[datetime] = None

    @classmethod
    def free(cls) -> "SubscriptionRecord":
        return cls(status="none", tier="free")

    @classmethod
    def from_store(cls, data: Optional[Dict[str, Any]], *, fallback_tier: Any = None) -> "SubscriptionRecord":
        """Build a record from a stored ``subscription`` object.

        Missing data yields the free record. Legacy keys (``stripeSubscriptionId``,
        ``currentPlan``) are honoured.
        """
        if not isinstance(data, dict) or not data:
            return cls.free()

        if "billingSubscriptionId" in data:
            billing_id = data.get("billingSubscriptionId")
        else:
            billing_id = data.get("stripeSubscriptionId")
        billing_id = str(billing_id).strip() if billing_id is not None else None

        tier_raw = data.get("tier") or data.get("currentPlan") or fallback_tier
        return cls(
            status=normalize_status(data.get("status")),
            tier=normalize_tier(tier_raw),
            billingSubscriptionId=billing_id or None,
            startDate=to_datetime(data.get("startDate")),
            endDate=to_datetime(data.get("endDate")),
            renewalDate=to_datetime(data.get("renewalDate")),
            cancelAtPeriodEnd=bool(data.get("cancelAtPeriodEnd") or False),
            canceledAt=to_datetime(data.get("canceledAt")),
            manuallyUpdated=bool(data.get("manuallyUpdated") or False),
            lastManualUpdate=to_datetime(data.get("lastManualUpdate")),
            lastUpdated=to_datetime(data.get("lastUpdated")),
        )

    @property
    def is_premium(self) -> bool:
        return self.tier in PREMIUM_TIERS

    def is_admin_grant(self, prefix: str) -> bool:
        return bool(self.billingSubscriptionId and self.billingSubscriptionId.startswith(prefix))

    def end_date_in_future(self, now: datetime) -> bool:
        return self.endDate is not None and self.endDate > now

    def stamped(self, when: datetime) -> "SubscriptionRecord":
        return self.model_copy(update={"lastUpdated": truncate_ms(when)})

    def comparable(self, ignore: Sequence[str] = ()) -> Dict[str, Any]:
        """Field values that define the entitlement, excluding write bookkeeping."""
        data = self.model_dump()
        for name in ("lastUpdated", *ignore):
            data.pop(name, None)
        return data

    def to_firestore(self) -> Dict[str, Any]:
        """Present fields for the Firestore ``subscription`` map.

        Absent timestamps are left out; the writer removes them explicitly.
        """
        payload: Dict[str, Any] = {
            "status": self.status,
            "tier": self.tier,
            "currentPlan": self.tier,
            "billingSubscriptionId": self.billingSubscriptionId,
            "cancelAtPeriodEnd": self.cancelAtPeriodEnd,
            "manuallyUpdated": self.manuallyUpdated,
        }
        for name in TIMESTAMP_FIELDS:
            value = getattr(self, name)
            if value is not None:
                payload[name] = value
        return payload

    def to_realtime(self) -> Dict[str, Any]:
        """Realtime Database form: epoch millis, absent values omitted."""
        payload: Dict[str, Any] = {
            "status": self.status,
            "tier": self.tier,
            "cancelAtPeriodEnd": self.cancelAtPeriodEnd,
            "manuallyUpdated": self.manuallyUpdated,
        }
        if self.billingSubscriptionId:
            payload["billingSubscriptionId"] = self.billingSubscriptionId
        for name in TIMESTAMP_FIELDS:
            value = getattr(self, name)
            if value is not None:
                payload[name] = to_epoch_ms(value)
        return payload

    def to_response(self) -> Dict[str, Any]:
        payload = self.model_dump()
        for name in TIMESTAMP_FIELDS:
            value = payload.get(name)
            payload[name] = value.isoformat().replace("+00:00", "Z") if value else None
        return payload


@dataclass
class BillingSubscription:
    id: str
    status: str
    customer_id: Optional[str] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    canceled_at: Optional[datetime] = None

    @classmethod
    def from_stripe(cls, payload: Dict[str, Any]) -> "BillingSubscription":
        # Newer Stripe API versions report the period on the subscription item.
        period_start = payload.get("current_period_start")
        period_end = payload.get("current_period_end")
        if period_start is None or period_end is None:
            items = ((payload.get("items") or {}).get("data") or [])
            first_item = items[0] if items and isinstance(items[0], dict) else {}
            period_start = period_start if period_start is not None else first_item.get("current_period_start")
            period_end = period_end if period_end is not None else first_item.get("current_period_end")

        customer = payload.get("customer")
        if isinstance(customer, dict):
            customer = customer.get("id")
        return cls(
            id=str(payload.get("id") or ""),
            status=str(payload.get("status") or "").strip().lower(),
            customer_id=str(customer) if customer else None,
            current_period_start=to_datetime(period_start),
            current_period_end=to_datetime(period_end),
            cancel_at_period_end=bool(payload.get("cancel_at_period_end") or False),
            canceled_at=to_datetime(payload.get("canceled_at")),
        )

    def to_response(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "status": self.status,
            "customerId": self.customer_id,
            "currentPeriodStart": self.current_period_start.isoformat() if self.current_period_start else None,
            "currentPeriodEnd": self.current_period_end.isoformat() if self.current_period_end else None,
            "cancelAtPeriodEnd": self.cancel_at_period_end,
            "canceledAt": self.canceled_at.isoformat() if self.canceled_at else None,
        }


@dataclass
class BillingCustomer:
    id: str
    subscriptions: List[BillingSubscription] = field(default_factory=list)


@dataclass
class BillingLookup:
    """Everything the billing provider reported for one email, in lookup order."""

    email: Optional[str]
    customers: List[BillingCustomer] = field(default_factory=list)

    @property
    def customer_ids(self) -> List[str]:
        return [customer.id for customer in self.customers]

    @property
    def subscriptions(self) -> List[BillingSubscription]:
        return [sub for customer in self.customers for sub in customer.subscriptions]

    @property
    def has_customers(self) -> bool:
        return bool(self.customers)

    @property
    def has_subscriptions(self) -> bool:
        return any(customer.subscriptions for customer in self.customers)

    def to_response(self) -> Dict[str, Any]:
        return {
            "email": self.email,
            "customers": [
                {"id": c.id, "subscriptions": [s.to_response() for s in c.subscriptions]}
                for c in self.customers
            ],
        }


@dataclass
class StoreSnapshots:
    """Subscription records as currently held by each internal store."""

    firestore: SubscriptionRecord
    realtime: SubscriptionRecord
    firestore_exists: bool = False
    realtime_exists: bool = False

    @property
    def any_exists(self) -> bool:
        return self.firestore_exists or self.realtime_exists

    def records(self) -> List[SubscriptionRecord]:
        return [self.firestore, self.realtime]

    def to_response(self) -> Dict[str, Any]:
        return {
            "firestore": self.firestore.to_response() if self.firestore_exists else None,
            "realtime": self.realtime.to_response() if self.realtime_exists else None,
        }
