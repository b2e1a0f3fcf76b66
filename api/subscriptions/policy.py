"""Reconciliation policy: billing signals + stored snapshots -> canonical record.

Pure functions only; no I/O and no clock reads. ``now`` is always passed in so
that two runs against unchanged inputs produce identical output.

Priority (first match wins):

1. any active/trialing billing subscription -> active premium
2. a canceled subscription still inside its paid period -> canceled premium (grace)
3. billing subscriptions exist but none qualify -> cancel the stray ones, then rule 5
4. no billing subscription anywhere and a stored active admin grant -> re-stamped admin premium
5. free

The billing provider is authoritative whenever it reports any subscription at
all; an admin grant only fills the gap when billing is silent.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Literal, Optional

from . import config
from .records import (
    BillingLookup,
    BillingSubscription,
    StoreSnapshots,
    SubscriptionRecord,
    truncate_ms,
)

Rule = Literal["billing_active", "billing_grace", "admin_override", "none"]

QUALIFYING_ACTIVE_STATUSES = ("active", "trialing")


@dataclass
class ReconciliationDecision:
    record: SubscriptionRecord
    rule: Rule
    matched_subscription_id: Optional[str] = None
    matched_customer_id: Optional[str] = None
    stale_billing: bool = False
    subscriptions_to_cancel: List[str] = field(default_factory=list)
    customers_to_purge: List[str] = field(default_factory=list)

    def to_response(self) -> dict:
        return {
            "rule": self.rule,
            "matchedSubscriptionId": self.matched_subscription_id,
            "matchedCustomerId": self.matched_customer_id,
            "staleBilling": self.stale_billing,
            "subscriptionsToCancel": list(self.subscriptions_to_cancel),
            "customersToPurge": list(self.customers_to_purge),
        }


def _first_active(lookup: BillingLookup) -> Optional[BillingSubscription]:
    for sub in lookup.subscriptions:
        if sub.status in QUALIFYING_ACTIVE_STATUSES:
            return sub
    return None


def _first_in_grace(lookup: BillingLookup, now: datetime) -> Optional[BillingSubscription]:
    for sub in lookup.subscriptions:
        if sub.status == "canceled" and sub.current_period_end is not None and sub.current_period_end > now:
            return sub
    return None


def _stored_admin_grant(snapshots: StoreSnapshots, prefix: str) -> Optional[SubscriptionRecord]:
    candidates = []
    if snapshots.firestore_exists:
        candidates.append(snapshots.firestore)
    if snapshots.realtime_exists:
        candidates.append(snapshots.realtime)
    for record in candidates:
        if record.status == "active" and record.is_admin_grant(prefix):
            return record
    return None


def record_from_active(sub: BillingSubscription) -> SubscriptionRecord:
    return SubscriptionRecord(
        status="active",
        tier="premium",
        billingSubscriptionId=sub.id,
        startDate=sub.current_period_start,
        endDate=sub.current_period_end,
        renewalDate=sub.current_period_end,
        cancelAtPeriodEnd=sub.cancel_at_period_end,
        canceledAt=sub.canceled_at,
    )


def record_from_grace(sub: BillingSubscription) -> SubscriptionRecord:
    return SubscriptionRecord(
        status="canceled",
        tier="premium",
        billingSubscriptionId=sub.id,
        startDate=sub.current_period_start,
        endDate=sub.current_period_end,
        renewalDate=sub.current_period_end,
        cancelAtPeriodEnd=True,
        canceledAt=sub.canceled_at,
    )


def record_from_admin_grant(grant: SubscriptionRecord, now: datetime, grant_days: int) -> SubscriptionRecord:
    now = truncate_ms(now)
    expires = now + timedelta(days=grant_days)
    return SubscriptionRecord(
        status="active",
        tier="premium",
        billingSubscriptionId=grant.billingSubscriptionId,
        startDate=grant.startDate or now,
        endDate=expires,
        renewalDate=expires,
        cancelAtPeriodEnd=False,
        manuallyUpdated=True,
        lastManualUpdate=grant.lastManualUpdate or now,
    )


def reconcile(
    lookup: BillingLookup,
    snapshots: StoreSnapshots,
    now: datetime,
    *,
    admin_prefix: str = config.ADMIN_SUBSCRIPTION_PREFIX,
    admin_grant_days: int = config.ADMIN_GRANT_DAYS,
) -> ReconciliationDecision:
    now = truncate_ms(now)

    active = _first_active(lookup)
    if active is not None:
        return ReconciliationDecision(
            record=record_from_active(active),
            rule="billing_active",
            matched_subscription_id=active.id,
            matched_customer_id=active.customer_id,
        )

    grace = _first_in_grace(lookup, now)
    if grace is not None:
        return ReconciliationDecision(
            record=record_from_grace(grace),
            rule="billing_grace",
            matched_subscription_id=grace.id,
            matched_customer_id=grace.customer_id,
        )

    if lookup.has_subscriptions:
        # Rule 3: stray billing state, cancel it and fall through to free.
        decision = ReconciliationDecision(
            record=SubscriptionRecord.free(),
            rule="none",
            stale_billing=True,
            subscriptions_to_cancel=[s.id for s in lookup.subscriptions if s.status != "canceled"],
        )
    else:
        grant = _stored_admin_grant(snapshots, admin_prefix)
        if grant is not None:
            return ReconciliationDecision(
                record=record_from_admin_grant(grant, now, admin_grant_days),
                rule="admin_override",
            )
        decision = ReconciliationDecision(record=SubscriptionRecord.free(), rule="none")

    if lookup.has_customers:
        decision.customers_to_purge = lookup.customer_ids
    return decision


def find_inconsistencies(snapshots: StoreSnapshots, now: datetime) -> List[str]:
    """Return the reasons two stored snapshots are considered inconsistent.

    Grace-period records (canceled, premium, end date ahead) are valid under
    the tier invariant and are not flagged.
    """
    now = truncate_ms(now)
    firestore, realtime = snapshots.firestore, snapshots.realtime
    issues: List[str] = []
    if firestore.tier != realtime.tier:
        issues.append("tier_mismatch")
    if firestore.status != realtime.status:
        issues.append("status_mismatch")
    if firestore.billingSubscriptionId != realtime.billingSubscriptionId:
        issues.append("billing_subscription_id_mismatch")

    for store, record in (("firestore", firestore), ("realtime", realtime)):
        valid_end = record.end_date_in_future(now)
        if record.is_premium and record.status not in ("active", "canceled") and valid_end:
            issues.append(f"{store}:premium_without_active_status")
        if record.tier == "free" and valid_end:
            issues.append(f"{store}:free_with_future_end_date")
    return issues

