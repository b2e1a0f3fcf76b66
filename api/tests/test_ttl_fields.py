"""TTL field hygiene: the null ban, update builders and the validation sweep."""

from datetime import timedelta

import pytest
from google.cloud import firestore

from api.subscriptions.errors import TTLFieldError
from api.subscriptions.ttl_fields import (
    build_ttl_update,
    find_null_ttl_fields,
    listing_archive_update,
    listing_restore_update,
    offer_expire_update,
    offer_restore_update,
    safe_ttl_set,
    safe_ttl_update,
    subscription_ttl_update,
    sweep_collection,
    validate_ttl_update,
    validation_fix_for,
)

from .conftest import NOW


"""
1. Null ban
"""

@pytest.mark.parametrize(
    "update",
    [
        {"deleteAt": None},
        {"subscription.endDate": None},
        {"subscription": {"status": "none", "endDate": None}},
        {"lockedUntil": None},
    ],
)
def test_null_ttl_field_is_rejected(update):
    with pytest.raises(TTLFieldError) as exc_info:
        validate_ttl_update(update)
    assert exc_info.value.code == "TTL_FIELD_NULL"
    assert exc_info.value.status_code == 400


def test_non_ttl_nulls_and_delete_sentinel_pass():
    validate_ttl_update({"notes": None, "deleteAt": firestore.DELETE_FIELD, "subscription": {"billingSubscriptionId": None}})


def test_rejected_update_never_reaches_the_store(mocker):
    doc_ref = mocker.MagicMock()

    with pytest.raises(TTLFieldError):
        safe_ttl_update(doc_ref, {"status": "active", "deleteAt": None})
    with pytest.raises(TTLFieldError):
        safe_ttl_set(doc_ref, {"subscription": {"endDate": None}})

    doc_ref.update.assert_not_called()
    doc_ref.set.assert_not_called()


def test_safe_writes_pass_through(mocker):
    doc_ref = mocker.MagicMock()

    safe_ttl_update(doc_ref, {"deleteAt": firestore.DELETE_FIELD})
    safe_ttl_set(doc_ref, {"status": "x"}, merge=True)

    doc_ref.update.assert_called_once_with({"deleteAt": firestore.DELETE_FIELD})
    doc_ref.set.assert_called_once_with({"status": "x"}, merge=True)


def test_build_refuses_none_value():
    with pytest.raises(TTLFieldError):
        build_ttl_update(set_fields={"deleteAt": None})


def test_find_null_ttl_fields_in_nested_document():
    data = {"deleteAt": None, "title": None, "subscription": {"endDate": None, "status": "none"}}
    assert sorted(find_null_ttl_fields(data)) == ["deleteAt", "subscription.endDate"]


"""
2. Builders
"""

def test_listing_archive_and_restore():
    archive = listing_archive_update(NOW + timedelta(days=7), now=NOW)
    assert archive["deleteAt"] == NOW + timedelta(days=7)
    assert archive["archivedAt"] == NOW
    assert archive["ttlReason"] == "automated_archive"
    assert archive["status"] == "archived"

    restore = listing_restore_update(now=NOW)
    for name in ("deleteAt", "ttlSetAt", "ttlReason", "archivedAt", "expirationReason"):
        assert restore[name] is firestore.DELETE_FIELD
    assert restore["status"] == "active"
    assert "expiresAt" not in restore


def test_offer_expire_and_restore():
    expire = offer_expire_update(NOW + timedelta(hours=24), now=NOW)
    assert expire["expiredAt"] == NOW
    assert expire["status"] == "expired"

    restore = offer_restore_update(expires_at=NOW + timedelta(days=2), now=NOW)
    assert restore["expiredAt"] is firestore.DELETE_FIELD
    assert restore["deleteAt"] is firestore.DELETE_FIELD
    assert restore["status"] == "pending"
    assert restore["expiresAt"] == NOW + timedelta(days=2)


def test_subscription_ttl_update_sets_present_and_deletes_absent():
    update = subscription_ttl_update({"endDate": NOW, "startDate": None}, prefix="subscription.")

    assert update["subscription.endDate"] == NOW
    assert update["subscription.startDate"] is firestore.DELETE_FIELD
    assert update["subscription.canceledAt"] is firestore.DELETE_FIELD
    validate_ttl_update(update)


"""
3. Validation sweep
"""

def test_validation_fix_for_archived_listing_without_ttl():
    result = validation_fix_for("listings", {"status": "archived", "deleteAt": None}, now=NOW)

    assert len(result["issues"]) == 2
    assert result["update"]["deleteAt"] == NOW + timedelta(days=7)
    assert result["update"]["archivedAt"] == NOW
    assert result["update"]["ttlReason"] == "validation_fix"


def test_validation_fix_for_expired_offer_without_ttl():
    result = validation_fix_for("offers", {"status": "expired"}, now=NOW)

    assert result["update"]["deleteAt"] == NOW + timedelta(hours=24)
    assert result["update"]["expiredAt"] == NOW


def test_healthy_document_needs_nothing():
    data = {"status": "archived", "deleteAt": NOW, "archivedAt": NOW}
    assert validation_fix_for("listings", data, now=NOW) == {"issues": [], "update": {}}


def test_sweep_dry_run_reports_without_writing(fake_firestore):
    fake_firestore.data["listings"] = {
        "l1": {"status": "active", "ttlReason": None},
        "l2": {"status": "archived"},
        "l3": {"status": "active"},
    }

    result = sweep_collection(fake_firestore, "listings", dry_run=True, now=NOW)

    assert result["summary"] == {
        "collection": "listings",
        "totalChecked": 3,
        "totalIssues": 2,
        "totalFixed": 0,
        "dryRun": True,
    }
    assert [i["docId"] for i in result["issues"]] == ["l1", "l2"]
    assert result["hasMoreIssues"] is False
    assert fake_firestore.writes == []


def test_sweep_repairs_documents(fake_firestore):
    fake_firestore.data["offers"] = {
        "o1": {"status": "expired", "deleteAt": None},
        "o2": {"status": "pending", "expiredAt": None},
    }

    result = sweep_collection(fake_firestore, "offers", dry_run=False, now=NOW)

    assert result["summary"]["totalFixed"] == 2
    assert fake_firestore.doc("offers", "o1")["deleteAt"] == NOW + timedelta(hours=24)
    assert "expiredAt" not in fake_firestore.doc("offers", "o2")


def test_sweep_caps_reported_issues(fake_firestore):
    fake_firestore.data["listings"] = {f"l{i:03d}": {"status": "archived"} for i in range(60)}

    result = sweep_collection(fake_firestore, "listings", dry_run=True, now=NOW)

    assert result["summary"]["totalIssues"] == 60
    assert len(result["issues"]) == 50
    assert result["hasMoreIssues"] is True
