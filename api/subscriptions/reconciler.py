"""Single-identity reconciliation pipeline.

read snapshots -> billing lookup -> policy -> dual-store write -> billing cleanup

Destructive billing cleanup (cancel stray subscriptions, delete dead customers)
only runs after both internal stores were written. A billing lookup failure
aborts the run with ``ProviderError``; it is never read as "no subscription".
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from . import config
from .billing_client import StripeBillingClient
from .errors import NotFoundError, ProviderError, ValidationError
from .leases import ReconcileLease
from .policy import ReconciliationDecision, find_inconsistencies, reconcile
from .records import BillingLookup, StoreSnapshots, SubscriptionRecord, utc_now
from .snapshots import SubscriptionSnapshotReader
from .writer import DualStoreWriter, WriteResult

logger = logging.getLogger("api.subscriptions.reconciler")

ADMIN_RESTAMPED_FIELDS = ("endDate", "renewalDate")


@dataclass
class BillingAction:
    action: str
    target_id: str
    ok: bool
    error: Optional[str] = None

    def to_response(self) -> Dict[str, Any]:
        return {"action": self.action, "id": self.target_id, "ok": self.ok, "error": self.error}


@dataclass
class ReconciliationResult:
    uid: str
    email: Optional[str]
    before: StoreSnapshots
    lookup: BillingLookup
    decision: ReconciliationDecision
    write: WriteResult
    inconsistencies: List[str] = field(default_factory=list)
    changed: bool = False
    billing_actions: List[BillingAction] = field(default_factory=list)
    after: Optional[StoreSnapshots] = None
    verified: Optional[bool] = None
    correlation_id: Optional[str] = None

    @property
    def record(self) -> SubscriptionRecord:
        return self.write.record or self.decision.record

    @property
    def status(self) -> str:
        return "fixed" if (self.inconsistencies or self.changed) else "consistent"

    def to_response(self) -> Dict[str, Any]:
        return {
            "userId": self.uid,
            "status": self.status,
            "rule": self.decision.rule,
            "canonical": self.record.to_response(),
            "before": self.before.to_response(),
            "after": self.after.to_response() if self.after is not None else None,
            "inconsistencies": list(self.inconsistencies),
            "changed": self.changed,
            "billingActions": [a.to_response() for a in self.billing_actions],
            "verified": self.verified,
            "correlationId": self.correlation_id,
        }


class SubscriptionReconciler:
    def __init__(
        self,
        reader: SubscriptionSnapshotReader,
        billing: StripeBillingClient,
        writer: DualStoreWriter,
        *,
        lease: Optional[ReconcileLease] = None,
        email_resolver: Optional[Callable[[str], Optional[str]]] = None,
        clock: Callable[[], datetime] = utc_now,
        admin_prefix: str = config.ADMIN_SUBSCRIPTION_PREFIX,
        admin_grant_days: int = config.ADMIN_GRANT_DAYS,
        verify_writes: bool = True,
    ) -> None:
        self.reader = reader
        self.billing = billing
        self.writer = writer
        self.lease = lease
        self.email_resolver = email_resolver or reader.user_email
        self.clock = clock
        self.admin_prefix = admin_prefix
        self.admin_grant_days = admin_grant_days
        self.verify_writes = verify_writes

    @classmethod
    def for_clients(
        cls,
        firestore_client,
        realtime_db,
        billing: Optional[StripeBillingClient] = None,
        *,
        email_resolver: Optional[Callable[[str], Optional[str]]] = None,
        use_lease: bool = config.RECONCILE_LEASES_ENABLED,
    ) -> "SubscriptionReconciler":
        """Wire the reader, writer and lease on top of live store clients."""
        return cls(
            SubscriptionSnapshotReader(firestore_client, realtime_db),
            billing or StripeBillingClient(),
            DualStoreWriter(firestore_client, realtime_db),
            lease=ReconcileLease(firestore_client) if use_lease else None,
            email_resolver=email_resolver,
        )

    def reconcile_identity(
        self,
        uid: str,
        email: Optional[str] = None,
        *,
        require_existing: bool = False,
        correlation_id: Optional[str] = None,
    ) -> ReconciliationResult:
        uid = str(uid or "").strip()
        if not uid:
            raise ValidationError("User ID is required", code="IDENTITY_REQUIRED")

        if self.lease is None:
            return self._run(uid, email, require_existing=require_existing, correlation_id=correlation_id)
        with self.lease.hold(uid):
            return self._run(uid, email, require_existing=require_existing, correlation_id=correlation_id)

    def preview(self, uid: str, email: Optional[str] = None) -> Dict[str, Any]:
        """What reconciliation would do for ``uid``, without writing anything."""
        before = self.reader.read(uid)
        email = self._require_email(uid, email)
        lookup = self.billing.lookup(email)
        now = self.clock()
        decision = reconcile(
            lookup,
            before,
            now,
            admin_prefix=self.admin_prefix,
            admin_grant_days=self.admin_grant_days,
        )
        return {
            "userId": uid,
            "email": email,
            "snapshots": before.to_response(),
            "billing": lookup.to_response(),
            "inconsistencies": find_inconsistencies(before, now),
            "proposed": decision.record.to_response(),
            "decision": decision.to_response(),
        }

    def _require_email(self, uid: str, email: Optional[str]) -> str:
        email = str(email or self.email_resolver(uid) or "").strip()
        if not email:
            # Without an email the billing state is unknown, not empty.
            raise ValidationError(
                "No email on record for user; billing state cannot be determined",
                code="EMAIL_REQUIRED",
                details={"userId": uid},
            )
        return email

    @staticmethod
    def _not_found(uid: str) -> NotFoundError:
        return NotFoundError(
            "No subscription data or billing customer found for user",
            details={"userId": uid},
        )

    def _run(
        self,
        uid: str,
        email: Optional[str],
        *,
        require_existing: bool,
        correlation_id: Optional[str],
    ) -> ReconciliationResult:
        before = self.reader.read(uid)
        try:
            email = self._require_email(uid, email)
        except ValidationError:
            if require_existing and not before.any_exists:
                raise self._not_found(uid)
            raise
        lookup = self.billing.lookup(email)

        if require_existing and not before.any_exists and not lookup.has_customers:
            raise self._not_found(uid)

        now = self.clock()
        decision = reconcile(
            lookup,
            before,
            now,
            admin_prefix=self.admin_prefix,
            admin_grant_days=self.admin_grant_days,
        )
        inconsistencies = find_inconsistencies(before, now)
        # Admin grants get fresh dates every run; only a different entitlement counts.
        ignore = ADMIN_RESTAMPED_FIELDS if decision.rule == "admin_override" else ()
        canonical = decision.record.comparable(ignore)
        changed = any(record.comparable(ignore) != canonical for record in before.records())

        write = self.writer.write(uid, decision.record, now=now)
        write.raise_for_failure()

        result = ReconciliationResult(
            uid=uid,
            email=email,
            before=before,
            lookup=lookup,
            decision=decision,
            write=write,
            inconsistencies=inconsistencies,
            changed=changed,
            correlation_id=correlation_id,
        )
        result.billing_actions = self._billing_cleanup(uid, decision)
        if self.verify_writes:
            result.after, result.verified = self._verify(uid, result.record)

        logger.info(
            "Reconcile uid=%s rule=%s status=%s tier=%s result=%s issues=%s actions=%s corr=%s",
            uid,
            decision.rule,
            result.record.status,
            result.record.tier,
            result.status,
            ",".join(inconsistencies) or "-",
            len(result.billing_actions),
            correlation_id,
        )
        return result

    def _billing_cleanup(self, uid: str, decision: ReconciliationDecision) -> List[BillingAction]:
        actions: List[BillingAction] = []
        for subscription_id in decision.subscriptions_to_cancel:
            try:
                self.billing.cancel_subscription(subscription_id)
                actions.append(BillingAction("cancel_subscription", subscription_id, ok=True))
            except ProviderError as exc:
                logger.error("Cancel of stray subscription %s failed uid=%s: %s", subscription_id, uid, exc)
                actions.append(BillingAction("cancel_subscription", subscription_id, ok=False, error=exc.code))

        for customer_id in decision.customers_to_purge:
            try:
                self.billing.delete_customer(customer_id)
                actions.append(BillingAction("delete_customer", customer_id, ok=True))
            except ProviderError as exc:
                logger.error("Purge of billing customer %s failed uid=%s: %s", customer_id, uid, exc)
                actions.append(BillingAction("delete_customer", customer_id, ok=False, error=exc.code))
        return actions

    def _verify(self, uid: str, record: SubscriptionRecord) -> Tuple[Optional[StoreSnapshots], Optional[bool]]:
        try:
            after = self.reader.read(uid)
        except Exception as exc:
            logger.warning("Post-write verification read failed uid=%s: %s", uid, exc)
            return None, None
        expected = record.comparable()
        verified = after.firestore.comparable() == expected and after.realtime.comparable() == expected
        if not verified:
            logger.warning("Post-write verification mismatch uid=%s; next batch pass will repair", uid)
        return after, verified
