"""TTL field hygiene for Firestore documents.

Firestore's TTL policy deletes a document once its TTL timestamp field is in
the past, and a field that is present but null still counts as set. Removing a
TTL field therefore has to go through ``DELETE_FIELD``; assigning ``None`` is
rejected here before any write is issued.

All writes that add or remove a TTL-bearing field (listing archive/restore,
offer expire/restore, subscription end dates, reconcile leases) are built and
validated through this module.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Mapping, Optional

from google.cloud import firestore

from .errors import TTLFieldError
from .records import utc_now

logger = logging.getLogger("api.subscriptions.ttl_fields")

# Listing / offer TTL bookkeeping
DELETE_AT = "deleteAt"
TTL_SET_AT = "ttlSetAt"
TTL_REASON = "ttlReason"
ARCHIVED_AT = "archivedAt"
EXPIRATION_REASON = "expirationReason"
EXPIRED_AT = "expiredAt"

LISTING_TTL_FIELDS = (DELETE_AT, TTL_SET_AT, TTL_REASON, ARCHIVED_AT, EXPIRATION_REASON)
OFFER_TTL_FIELDS = (DELETE_AT, TTL_SET_AT, TTL_REASON, EXPIRED_AT)

# Subscription bookkeeping: end/grace-period dates and their companions.
SUBSCRIPTION_TTL_FIELDS = ("startDate", "endDate", "renewalDate", "canceledAt", "lastManualUpdate", "lastUpdated")

LEASE_TTL_FIELDS = ("lockedUntil",)

TTL_FIELDS = frozenset(
    LISTING_TTL_FIELDS + OFFER_TTL_FIELDS + SUBSCRIPTION_TTL_FIELDS + LEASE_TTL_FIELDS
)

LISTING_VALIDATION_TTL_DAYS = 7
OFFER_VALIDATION_TTL_HOURS = 24


def _field_name(path: str) -> str:
    return path.rsplit(".", 1)[-1]


def _null_ttl_paths(update: Mapping[str, Any], prefix: str = "") -> List[str]:
    found: List[str] = []
    for key, value in update.items():
        path = f"{prefix}{key}"
        if value is None and _field_name(str(key)) in TTL_FIELDS:
            found.append(path)
        elif isinstance(value, Mapping):
            found.extend(_null_ttl_paths(value, prefix=f"{path}."))
    return found


def validate_ttl_update(update: Mapping[str, Any]) -> None:
    """Reject an update that would persist a TTL field as null.

    Checks top-level keys, dotted field paths and nested maps.
    """
    offending = _null_ttl_paths(update)
    if offending:
        logger.error("Rejected write setting TTL fields to null: %s", offending)
        raise TTLFieldError(
            f"TTL field '{offending[0]}' is set to null; remove it with DELETE_FIELD instead",
            details={"fields": offending},
        )


def find_null_ttl_fields(data: Optional[Mapping[str, Any]]) -> List[str]:
    """Return paths of TTL fields stored as null in an existing document."""
    if not data:
        return []
    return _null_ttl_paths(data)


def build_ttl_update(
    *,
    set_fields: Optional[Mapping[str, Any]] = None,
    remove: Iterable[str] = (),
) -> Dict[str, Any]:
    update: Dict[str, Any] = {}
    for name, value in (set_fields or {}).items():
        if value is None:
            raise TTLFieldError(
                f"TTL field '{name}' cannot be set to null",
                details={"fields": [name]},
            )
        update[name] = value
    for name in remove:
        update[name] = firestore.DELETE_FIELD
    return update


def safe_ttl_update(doc_ref, update: Mapping[str, Any]) -> None:
    validate_ttl_update(update)
    doc_ref.update(dict(update))


def safe_ttl_set(doc_ref, data: Mapping[str, Any], *, merge: bool = True) -> None:
    validate_ttl_update(data)
    doc_ref.set(dict(data), merge=merge)


def listing_archive_update(
    delete_at: datetime,
    reason: str = "automated_archive",
    *,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    now = now or utc_now()
    update = build_ttl_update(
        set_fields={DELETE_AT: delete_at, TTL_SET_AT: now, TTL_REASON: reason, ARCHIVED_AT: now}
    )
    update.update({"status": "archived", "updatedAt": now})
    return update


def listing_restore_update(
    new_status: str = "active",
    expires_at: Optional[datetime] = None,
    *,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    now = now or utc_now()
    update = build_ttl_update(remove=LISTING_TTL_FIELDS)
    update.update(
        {
            "status": new_status,
            "updatedAt": now,
            "restoredAt": now,
            "restoredReason": "manual_restoration",
        }
    )
    if expires_at is not None:
        update["expiresAt"] = expires_at
    return update


def offer_expire_update(
    delete_at: datetime,
    reason: str = "automated_expiration",
    *,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    now = now or utc_now()
    update = build_ttl_update(
        set_fields={DELETE_AT: delete_at, TTL_SET_AT: now, TTL_REASON: reason, EXPIRED_AT: now}
    )
    update.update({"status": "expired", "updatedAt": now})
    return update


def offer_restore_update(
    new_status: str = "pending",
    expires_at: Optional[datetime] = None,
    *,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    now = now or utc_now()
    update = build_ttl_update(remove=OFFER_TTL_FIELDS)
    update.update(
        {
            "status": new_status,
            "updatedAt": now,
            "restoredAt": now,
            "restoredReason": "manual_restoration",
        }
    )
    if expires_at is not None:
        update["expiresAt"] = expires_at
    return update


def subscription_ttl_update(record_fields: Mapping[str, Any], *, prefix: str = "") -> Dict[str, Any]:
    """Firestore update for subscription timestamps: present ones set, absent ones deleted."""
    present = {
        f"{prefix}{name}": record_fields[name]
        for name in SUBSCRIPTION_TTL_FIELDS
        if record_fields.get(name) is not None
    }
    absent = [f"{prefix}{name}" for name in SUBSCRIPTION_TTL_FIELDS if record_fields.get(name) is None]
    return build_ttl_update(set_fields=present, remove=absent)


def validation_fix_for(collection: str, data: Mapping[str, Any], *, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Describe TTL problems in one listing/offer document and the update that fixes them.

    Returns ``{"issues": [...], "update": {...}}``; ``update`` is empty when
    there is nothing to fix.
    """
    now = now or utc_now()
    issues: List[str] = []
    removals = find_null_ttl_fields({k: v for k, v in data.items() if not isinstance(v, Mapping)})
    for name in removals:
        issues.append(f"Field '{name}' is set to null instead of being deleted")
    update = build_ttl_update(remove=removals)

    status = str(data.get("status") or "")
    if collection == "listings" and status == "archived" and not data.get(DELETE_AT) and not data.get(ARCHIVED_AT):
        issues.append("Archived document missing both deleteAt TTL and archivedAt timestamp")
        update.update(
            build_ttl_update(
                set_fields={
                    ARCHIVED_AT: now,
                    DELETE_AT: now + timedelta(days=LISTING_VALIDATION_TTL_DAYS),
                    TTL_SET_AT: now,
                    TTL_REASON: "validation_fix",
                }
            )
        )
    elif collection == "offers" and status == "expired" and not data.get(DELETE_AT) and not data.get(EXPIRED_AT):
        issues.append("Expired offer missing both deleteAt TTL and expiredAt timestamp")
        update.update(
            build_ttl_update(
                set_fields={
                    EXPIRED_AT: now,
                    DELETE_AT: now + timedelta(hours=OFFER_VALIDATION_TTL_HOURS),
                    TTL_SET_AT: now,
                    TTL_REASON: "validation_fix",
                }
            )
        )
    return {"issues": issues, "update": update}


MAX_REPORTED_ISSUES = 50


def sweep_collection(
    firestore_client,
    collection: str,
    *,
    dry_run: bool = True,
    limit: int = 500,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Scan up to ``limit`` documents of ``listings`` or ``offers`` for TTL problems.

    Unless ``dry_run`` is set, each problem document is repaired through
    ``safe_ttl_update``. A failed repair is reported on that document and the
    sweep continues.
    """
    now = now or utc_now()
    checked = 0
    fixed = 0
    issues: List[Dict[str, Any]] = []

    for doc in firestore_client.collection(collection).limit(limit).stream():
        checked += 1
        data = doc.to_dict() or {}
        result = validation_fix_for(collection, data, now=now)
        if not result["issues"]:
            continue

        entry: Dict[str, Any] = {"docId": doc.id, "issues": result["issues"], "fixed": False}
        if not dry_run and result["update"]:
            try:
                safe_ttl_update(doc.reference, result["update"])
                entry["fixed"] = True
                fixed += 1
            except Exception as exc:
                logger.error("TTL fix failed %s/%s: %s", collection, doc.id, exc)
                entry["issues"] = entry["issues"] + [f"Fix failed: {exc}"]
        issues.append(entry)

    logger.info(
        "TTL sweep collection=%s checked=%s issues=%s fixed=%s dryRun=%s",
        collection,
        checked,
        len(issues),
        fixed,
        dry_run,
    )
    return {
        "summary": {
            "collection": collection,
            "totalChecked": checked,
            "totalIssues": len(issues),
            "totalFixed": fixed,
            "dryRun": dry_run,
        },
        "issues": issues[:MAX_REPORTED_ISSUES],
        "hasMoreIssues": len(issues) > MAX_REPORTED_ISSUES,
    }
