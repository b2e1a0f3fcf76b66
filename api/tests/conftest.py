"""Shared fixtures: in-memory Firestore, Realtime Database and billing fakes."""

import copy
import os
import tempfile
from datetime import datetime, timedelta, timezone

os.environ.setdefault("SECURITY_LOG_DIR", tempfile.mkdtemp(prefix="security-logs-"))

import pytest
from google.cloud import firestore

from api.subscriptions.errors import ProviderError
from api.subscriptions.records import BillingCustomer, BillingLookup, BillingSubscription
from api.subscriptions.reconciler import SubscriptionReconciler
from api.subscriptions.snapshots import SubscriptionSnapshotReader
from api.subscriptions.writer import DualStoreWriter

NOW = datetime(2026, 1, 15, 12, 0, 0, tzinfo=timezone.utc)


# =============================================================================
# FIRESTORE
# =============================================================================

def _get_path(data, dotted):
    node = data
    for part in dotted.split("."):
        if not isinstance(node, dict) or part not in node:
            return None, False
        node = node[part]
    return node, True


def _merge(target, updates):
    for key, value in updates.items():
        if value is firestore.DELETE_FIELD:
            target.pop(key, None)
        elif isinstance(value, dict) and isinstance(target.get(key), dict):
            _merge(target[key], value)
        elif isinstance(value, dict):
            target[key] = {}
            _merge(target[key], value)
        else:
            target[key] = copy.deepcopy(value)


def _apply_update(target, updates):
    for path, value in updates.items():
        parts = path.split(".")
        node = target
        for part in parts[:-1]:
            node = node.setdefault(part, {})
        if value is firestore.DELETE_FIELD:
            node.pop(parts[-1], None)
        else:
            node[parts[-1]] = copy.deepcopy(value)


class FakeSnapshot:
    def __init__(self, ref, data):
        self.reference = ref
        self.id = ref.id
        self._data = data

    @property
    def exists(self):
        return self._data is not None

    def to_dict(self):
        return copy.deepcopy(self._data) if self._data is not None else None


class FakeDocumentRef:
    def __init__(self, store, collection, doc_id):
        self._store = store
        self._collection = collection
        self.id = doc_id

    @property
    def _docs(self):
        return self._store.data.setdefault(self._collection, {})

    def get(self, transaction=None):
        if self._store.fail_reads:
            raise RuntimeError("firestore unavailable")
        return FakeSnapshot(self, self._docs.get(self.id))

    def set(self, data, merge=False):
        if self._store.fail_writes:
            raise RuntimeError("firestore write failed")
        self._store.writes.append((self._collection, self.id, "set", data))
        if merge and self.id in self._docs:
            _merge(self._docs[self.id], data)
        else:
            fresh = {}
            _merge(fresh, data)
            self._docs[self.id] = fresh

    def update(self, data):
        if self._store.fail_writes:
            raise RuntimeError("firestore write failed")
        if self.id not in self._docs:
            raise KeyError(f"No document to update: {self._collection}/{self.id}")
        self._store.writes.append((self._collection, self.id, "update", data))
        _apply_update(self._docs[self.id], data)

    def delete(self):
        self._docs.pop(self.id, None)


class FakeQuery:
    def __init__(self, store, collection, filters=None, limit=None):
        self._store = store
        self._collection = collection
        self._filters = list(filters or [])
        self._limit = limit

    def where(self, filter=None):
        return FakeQuery(self._store, self._collection, self._filters + [filter], self._limit)

    def limit(self, count):
        return FakeQuery(self._store, self._collection, self._filters, count)

    def _matches(self, data):
        for f in self._filters:
            value, present = _get_path(data, f.field_path)
            if f.op_string == "!=":
                # Firestore excludes documents missing the field
                if not present or value == f.value:
                    return False
            elif f.op_string == "==":
                if not present or value != f.value:
                    return False
            else:
                raise NotImplementedError(f.op_string)
        return True

    def stream(self):
        docs = self._store.data.get(self._collection, {})
        count = 0
        for doc_id in sorted(docs):
            if self._limit is not None and count >= self._limit:
                return
            if self._matches(docs[doc_id]):
                count += 1
                yield FakeSnapshot(FakeDocumentRef(self._store, self._collection, doc_id), docs[doc_id])


class FakeCollection(FakeQuery):
    def __init__(self, store, name):
        super().__init__(store, name)

    def document(self, doc_id):
        return FakeDocumentRef(self._store, self._collection, doc_id)


class FakeTransaction:
    def set(self, ref, data, merge=False):
        ref.set(data, merge=merge)

    def delete(self, ref):
        ref.delete()


class FakeFirestore:
    def __init__(self):
        self.data = {}
        self.writes = []
        self.fail_reads = False
        self.fail_writes = False

    def collection(self, name):
        return FakeCollection(self, name)

    def transaction(self):
        return FakeTransaction()

    def doc(self, collection, doc_id):
        return self.data.get(collection, {}).get(doc_id)


# =============================================================================
# REALTIME DATABASE
# =============================================================================

class FakeRealtimeRef:
    def __init__(self, db, path):
        self._db = db
        self._parts = [p for p in path.split("/") if p]

    def get(self):
        if self._db.fail_reads:
            raise RuntimeError("realtime database unavailable")
        node = self._db.tree
        for part in self._parts:
            if not isinstance(node, dict) or part not in node:
                return None
            node = node[part]
        return copy.deepcopy(node)

    def update(self, value):
        if self._db.fail_writes:
            raise RuntimeError("realtime database write failed")
        for child, child_value in value.items():
            if child_value is None:
                raise ValueError("Realtime Database update with null child")
        node = self._db.tree
        for part in self._parts:
            node = node.setdefault(part, {})
        # Each child named in an update is replaced as a whole
        for child, child_value in value.items():
            node[child] = copy.deepcopy(child_value)
        self._db.writes.append(("/".join(self._parts), value))

    def set(self, value):
        node = self._db.tree
        for part in self._parts[:-1]:
            node = node.setdefault(part, {})
        node[self._parts[-1]] = copy.deepcopy(value)


class FakeRealtimeDb:
    def __init__(self):
        self.tree = {}
        self.writes = []
        self.fail_reads = False
        self.fail_writes = False

    def reference(self, path="/"):
        return FakeRealtimeRef(self, path)

    def account(self, uid):
        return self.reference(f"users/{uid}/account").get()


# =============================================================================
# BILLING
# =============================================================================

def billing_sub(
    sub_id,
    status="active",
    *,
    period_start=None,
    period_end=None,
    customer_id=None,
    cancel_at_period_end=False,
    canceled_at=None,
):
    return BillingSubscription(
        id=sub_id,
        status=status,
        customer_id=customer_id,
        current_period_start=period_start or NOW - timedelta(days=1),
        current_period_end=period_end or NOW + timedelta(days=30),
        cancel_at_period_end=cancel_at_period_end,
        canceled_at=canceled_at,
    )


class FakeBillingClient:
    """Stands in for StripeBillingClient; customers keyed by email."""

    configured = True

    def __init__(self):
        self.customers = {}
        self.calls = []
        self.fail_lookup = False
        self.fail_cancel = False
        self.fail_delete = False

    def add_customer(self, email, customer_id, *subscriptions):
        for sub in subscriptions:
            sub.customer_id = sub.customer_id or customer_id
        self.customers.setdefault(email, []).append(BillingCustomer(id=customer_id, subscriptions=list(subscriptions)))

    def lookup(self, email):
        self.calls.append(("lookup", email))
        if self.fail_lookup:
            raise ProviderError("Unable to reach Stripe API", code="BILLING_PROVIDER_UNREACHABLE", retryable=True)
        if not email:
            return BillingLookup(email=None)
        return BillingLookup(email=email, customers=copy.deepcopy(self.customers.get(email, [])))

    def cancel_subscription(self, subscription_id):
        self.calls.append(("cancel_subscription", subscription_id))
        if self.fail_cancel:
            raise ProviderError("Stripe API request failed", details={"httpStatus": 500})
        for customers in self.customers.values():
            for customer in customers:
                for sub in customer.subscriptions:
                    if sub.id == subscription_id:
                        sub.status = "canceled"

    def delete_customer(self, customer_id):
        self.calls.append(("delete_customer", customer_id))
        if self.fail_delete:
            raise ProviderError("Stripe API request failed", details={"httpStatus": 500})
        for email, customers in self.customers.items():
            self.customers[email] = [c for c in customers if c.id != customer_id]

    def destructive_calls(self):
        return [c for c in self.calls if c[0] != "lookup"]


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def fake_firestore():
    return FakeFirestore()


@pytest.fixture
def fake_rtdb():
    return FakeRealtimeDb()


@pytest.fixture
def fake_billing():
    return FakeBillingClient()


@pytest.fixture
def clock():
    return lambda: NOW


@pytest.fixture
def reconciler(fake_firestore, fake_rtdb, fake_billing, clock):
    reader = SubscriptionSnapshotReader(fake_firestore, fake_rtdb)
    return SubscriptionReconciler(
        reader,
        fake_billing,
        DualStoreWriter(fake_firestore, fake_rtdb),
        clock=clock,
    )


def seed_user(fake_firestore, fake_rtdb, uid, *, email=None, firestore_sub=None, realtime_sub=None):
    """Put a user into both stores; ``None`` leaves that store without a subscription."""
    doc = {}
    if email:
        doc["email"] = email
    if firestore_sub is not None:
        doc["subscription"] = copy.deepcopy(firestore_sub)
    if doc:
        fake_firestore.data.setdefault("users", {})[uid] = doc
    if realtime_sub is not None:
        fake_rtdb.reference(f"users/{uid}/account").set({"subscription": copy.deepcopy(realtime_sub)})
