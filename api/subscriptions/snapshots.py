"""Read the stored subscription record from Firestore and the Realtime Database."""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Optional, Tuple

from firebase_admin import auth

from . import config
from .errors import SubscriptionError
from .records import StoreSnapshots, SubscriptionRecord

logger = logging.getLogger("api.subscriptions.snapshots")


class SubscriptionSnapshotReader:
    """Reads each store independently; absence is the free record, never an error.

    Args:
        firestore_client: ``google.cloud.firestore.Client``
        realtime_db: object exposing ``reference(path)`` (``firebase_admin.db``)
    """

    def __init__(self, firestore_client, realtime_db) -> None:
        self.firestore = firestore_client
        self.realtime_db = realtime_db

    def read_firestore(self, uid: str) -> Tuple[SubscriptionRecord, bool, Dict[str, Any]]:
        try:
            doc = self.firestore.collection(config.USERS_COLLECTION).document(uid).get()
        except Exception as exc:
            logger.exception("Firestore read failed uid=%s", uid)
            raise SubscriptionError(
                "Failed to read subscription from Firestore",
                code="STORE_READ_FAILED",
                status_code=503,
                details={"store": "firestore"},
            ) from exc

        data = (doc.to_dict() or {}) if doc.exists else {}
        subscription = data.get("subscription")
        if not isinstance(subscription, dict) or not subscription:
            return SubscriptionRecord.free(), False, data
        record = SubscriptionRecord.from_store(subscription, fallback_tier=data.get("accountTier"))
        return record, True, data

    def read_realtime(self, uid: str) -> Tuple[SubscriptionRecord, bool, Dict[str, Any]]:
        path = config.RTDB_ACCOUNT_PATH.format(uid=uid)
        try:
            account = self.realtime_db.reference(path).get()
        except Exception as exc:
            logger.exception("Realtime Database read failed uid=%s", uid)
            raise SubscriptionError(
                "Failed to read subscription from Realtime Database",
                code="STORE_READ_FAILED",
                status_code=503,
                details={"store": "realtime"},
            ) from exc

        account = account if isinstance(account, dict) else {}
        subscription = account.get("subscription")
        if not isinstance(subscription, dict) or not subscription:
            return SubscriptionRecord.free(), False, account
        record = SubscriptionRecord.from_store(subscription, fallback_tier=account.get("tier"))
        return record, True, account

    def read(self, uid: str) -> StoreSnapshots:
        firestore_record, firestore_exists, _ = self.read_firestore(uid)
        realtime_record, realtime_exists, _ = self.read_realtime(uid)
        logger.debug(
            "Snapshots uid=%s firestore=%s/%s realtime=%s/%s",
            uid,
            firestore_record.status,
            firestore_record.tier,
            realtime_record.status,
            realtime_record.tier,
        )
        return StoreSnapshots(
            firestore=firestore_record,
            realtime=realtime_record,
            firestore_exists=firestore_exists,
            realtime_exists=realtime_exists,
        )

    def user_email(self, uid: str) -> Optional[str]:
        """Email stored on the Firestore user document, if any."""
        _, _, data = self.read_firestore(uid)
        email = str(data.get("email") or "").strip()
        return email or None


def make_email_resolver(firestore_client) -> Callable[[str], Optional[str]]:
    """Email for a uid: Firebase Auth first, then the Firestore user document."""
    reader = SubscriptionSnapshotReader(firestore_client, None)

    def _resolve(uid: str) -> Optional[str]:
        try:
            user = auth.get_user(uid)
            if user.email:
                return user.email
        except auth.UserNotFoundError:
            logger.info("No Firebase Auth user uid=%s; falling back to user document", uid)
        except Exception as exc:
            logger.warning("Firebase Auth lookup failed uid=%s: %s", uid, exc)
        return reader.user_email(uid)

    return _resolve
