"""Short-lived per-identity lease for reconciliation runs.

Stops a user-triggered cleanup and a scheduled batch pass from reconciling the
same identity at the same time. Lease documents live in
``subscriptionReconcileLeases/{uid}``; ``lockedUntil`` doubles as the Firestore
TTL field so abandoned leases are eventually removed by the store itself.
"""

from __future__ import annotations

import logging
import os
import socket
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Iterator, Optional
from uuid import uuid4

from google.cloud import firestore as gcf_firestore

from . import config
from .errors import LeaseUnavailableError
from .records import to_datetime, utc_now
from .ttl_fields import build_ttl_update

logger = logging.getLogger("api.subscriptions.leases")

WORKER_ID = f"subs-{socket.gethostname()}-{os.getpid()}"


class ReconcileLease:
    def __init__(self, firestore_client, *, seconds: int = config.RECONCILE_LEASE_SECONDS) -> None:
        self.firestore = firestore_client
        self.seconds = seconds

    def _ref(self, uid: str):
        return self.firestore.collection(config.LEASE_COLLECTION).document(uid)

    def acquire(self, uid: str, *, now: Optional[datetime] = None) -> Optional[str]:
        """Claim the lease for ``uid``. Returns the holder token, or None if held elsewhere."""
        now = now or utc_now()
        token = f"{WORKER_ID}-{uuid4().hex[:12]}"
        lease_data = build_ttl_update(
            set_fields={"lockedAt": now, "lockedUntil": now + timedelta(seconds=self.seconds)}
        )
        lease_data.update({"uid": uid, "holder": token})

        tx = self.firestore.transaction()

        @gcf_firestore.transactional
        def _claim(transaction, doc_ref) -> bool:
            snap = doc_ref.get(transaction=transaction)
            if snap.exists:
                data = snap.to_dict() or {}
                locked_until = to_datetime(data.get("lockedUntil"))
                if locked_until is not None and locked_until > now:
                    return False
            transaction.set(doc_ref, lease_data)
            return True

        if _claim(tx, self._ref(uid)):
            logger.debug("Lease acquired uid=%s holder=%s", uid, token)
            return token
        logger.info("Lease busy uid=%s", uid)
        return None

    def release(self, uid: str, token: str) -> None:
        tx = self.firestore.transaction()

        @gcf_firestore.transactional
        def _delete_if_owned(transaction, doc_ref) -> None:
            snap = doc_ref.get(transaction=transaction)
            if not snap.exists:
                return
            data = snap.to_dict() or {}
            if str(data.get("holder") or "") != token:
                return
            transaction.delete(doc_ref)

        try:
            _delete_if_owned(tx, self._ref(uid))
        except Exception as exc:
            # Expiry covers a lease we failed to delete.
            logger.warning("Failed releasing reconcile lease uid=%s: %s", uid, exc)

    @contextmanager
    def hold(self, uid: str) -> Iterator[str]:
        token = self.acquire(uid)
        if token is None:
            raise LeaseUnavailableError(
                "Subscription reconciliation already in progress for this user",
                details={"userId": uid},
            )
        try:
            yield token
        finally:
            self.release(uid, token)
