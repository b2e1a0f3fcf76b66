"""Batch consistency scan over users carrying subscription state.

Users are processed one at a time. A failure for one identity is recorded in
the summary and never stops the pass.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Optional
from uuid import uuid4

from google.cloud.firestore_v1.base_query import FieldFilter

from . import config
from .errors import SubscriptionError
from .reconciler import SubscriptionReconciler

logger = logging.getLogger("api.subscriptions.scanner")


class BatchScanner:
    def __init__(
        self,
        reconciler: SubscriptionReconciler,
        firestore_client,
        *,
        email_resolver: Optional[Callable[[str], Optional[str]]] = None,
        limit: int = config.BATCH_SCAN_LIMIT,
    ) -> None:
        self.reconciler = reconciler
        self.firestore = firestore_client
        self.email_resolver = email_resolver
        self.limit = min(config.MAX_BATCH_SCAN_LIMIT, max(1, int(limit)))

    def candidates(self) -> List[Dict[str, Any]]:
        """Users whose stored subscription status is anything but ``none``."""
        query = (
            self.firestore.collection(config.USERS_COLLECTION)
            .where(filter=FieldFilter("subscription.status", "!=", "none"))
            .limit(self.limit)
        )
        out: List[Dict[str, Any]] = []
        for doc in query.stream():
            data = doc.to_dict() or {}
            out.append({"uid": doc.id, "email": str(data.get("email") or "").strip() or None})
        return out

    def _email_for(self, uid: str, stored_email: Optional[str]) -> Optional[str]:
        if self.email_resolver is not None:
            try:
                resolved = self.email_resolver(uid)
            except Exception as exc:
                logger.warning("Email lookup failed uid=%s: %s", uid, exc)
                resolved = None
            if resolved:
                return resolved
        return stored_email

    def run(self, *, correlation_id: Optional[str] = None) -> Dict[str, Any]:
        correlation_id = correlation_id or f"scan-{uuid4().hex[:12]}"
        candidates = self.candidates()
        summary: Dict[str, Any] = {
            "total": len(candidates),
            "fixed": 0,
            "consistent": 0,
            "errors": 0,
            "details": [],
        }
        logger.info("Subscription scan started corr=%s candidates=%s limit=%s", correlation_id, len(candidates), self.limit)

        for candidate in candidates:
            uid = candidate["uid"]
            try:
                email = self._email_for(uid, candidate["email"])
                result = self.reconciler.reconcile_identity(uid, email, correlation_id=correlation_id)
            except SubscriptionError as exc:
                summary["errors"] += 1
                summary["details"].append({"userId": uid, "status": "error", "error": exc.error, "code": exc.code})
                logger.warning("Scan failed uid=%s code=%s: %s", uid, exc.code, exc.error)
                continue
            except Exception as exc:
                summary["errors"] += 1
                summary["details"].append({"userId": uid, "status": "error", "error": str(exc), "code": "INTERNAL_ERROR"})
                logger.exception("Scan failed uid=%s", uid)
                continue

            summary[result.status] += 1
            if result.status == "fixed":
                summary["details"].append(
                    {
                        "userId": uid,
                        "status": "fixed",
                        "rule": result.decision.rule,
                        "inconsistencies": result.inconsistencies,
                        "tier": result.record.tier,
                        "subscriptionStatus": result.record.status,
                    }
                )

        logger.info(
            "Subscription scan finished corr=%s total=%s fixed=%s consistent=%s errors=%s",
            correlation_id,
            summary["total"],
            summary["fixed"],
            summary["consistent"],
            summary["errors"],
        )
        return summary
