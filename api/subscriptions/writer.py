"""Write the canonical subscription record to Firestore and the Realtime Database.

The two writes are not atomic. Firestore goes first; if the Realtime Database
write then fails the result says so, and the next reconciliation pass repairs
the divergence.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from google.cloud import firestore

from . import config
from .errors import PersistenceError, TTLFieldError
from .records import SubscriptionRecord, to_epoch_ms, truncate_ms, utc_now
from .ttl_fields import SUBSCRIPTION_TTL_FIELDS, safe_ttl_set, subscription_ttl_update, validate_ttl_update

logger = logging.getLogger("api.subscriptions.writer")

# Keys older writers left in the Firestore subscription map.
LEGACY_SUBSCRIPTION_FIELDS = ("stripeSubscriptionId", "currentPeriodEnd")


@dataclass
class WriteResult:
    ok: bool
    firestore_written: bool = False
    realtime_written: bool = False
    record: Optional[SubscriptionRecord] = None
    error: Optional[str] = None

    def raise_for_failure(self) -> None:
        if not self.ok:
            raise PersistenceError(
                self.error or "Failed to write subscription data",
                firestore_written=self.firestore_written,
                realtime_written=self.realtime_written,
            )

    def to_response(self) -> Dict[str, Any]:
        return {
            "ok": self.ok,
            "firestoreWritten": self.firestore_written,
            "realtimeWritten": self.realtime_written,
            "error": self.error,
        }


class DualStoreWriter:
    def __init__(self, firestore_client, realtime_db) -> None:
        self.firestore = firestore_client
        self.realtime_db = realtime_db

    def firestore_payload(self, record: SubscriptionRecord, now: datetime) -> Dict[str, Any]:
        present = record.to_firestore()
        subscription: Dict[str, Any] = {
            key: value for key, value in present.items() if key not in SUBSCRIPTION_TTL_FIELDS
        }
        subscription.update(subscription_ttl_update(record.model_dump()))
        for legacy in LEGACY_SUBSCRIPTION_FIELDS:
            subscription[legacy] = firestore.DELETE_FIELD
        return {
            "accountTier": record.tier,
            "updatedAt": now,
            "subscription": subscription,
        }

    def realtime_payload(self, record: SubscriptionRecord, now: datetime) -> Dict[str, Any]:
        # "subscription" is replaced as a whole so absent fields disappear
        # without writing nulls.
        return {
            "tier": record.tier,
            "status": record.status,
            "lastUpdated": to_epoch_ms(now),
            "subscription": record.to_realtime(),
        }

    def write(self, uid: str, record: SubscriptionRecord, *, now: Optional[datetime] = None) -> WriteResult:
        now = truncate_ms(now) if now is not None else utc_now()
        stamped = record.stamped(now)

        firestore_data = self.firestore_payload(stamped, now)
        realtime_data = self.realtime_payload(stamped, now)
        # Both payloads are checked before either store is touched.
        validate_ttl_update(firestore_data)
        validate_ttl_update(realtime_data)

        result = WriteResult(ok=False, record=stamped)
        doc_ref = self.firestore.collection(config.USERS_COLLECTION).document(uid)
        try:
            safe_ttl_set(doc_ref, firestore_data, merge=True)
            result.firestore_written = True
            logger.info("Updated Firestore subscription uid=%s status=%s tier=%s", uid, stamped.status, stamped.tier)
        except TTLFieldError:
            raise
        except Exception as exc:
            logger.exception("Firestore subscription write failed uid=%s", uid)
            result.error = f"Firestore write failed: {exc}"
            return result

        path = config.RTDB_ACCOUNT_PATH.format(uid=uid)
        try:
            self.realtime_db.reference(path).update(realtime_data)
            result.realtime_written = True
            logger.info("Updated Realtime Database subscription uid=%s status=%s tier=%s", uid, stamped.status, stamped.tier)
        except Exception as exc:
            logger.exception("Realtime Database subscription write failed uid=%s", uid)
            result.error = f"Realtime Database write failed: {exc}"
            return result

        result.ok = True
        return result
