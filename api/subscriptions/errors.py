"""Error taxonomy for subscription reconciliation.

Every error carries the HTTP status, a human message, a stable machine code
and optional details so routers can serialize it without inspecting the type.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class SubscriptionError(Exception):
    status_code = 500
    default_code = "SUBSCRIPTION_ERROR"

    def __init__(
        self,
        error: str,
        *,
        code: Optional[str] = None,
        status_code: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(error)
        self.error = error
        self.code = code or self.default_code
        if status_code is not None:
            self.status_code = status_code
        self.details = details or {}

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"error": self.error, "code": self.code}
        if self.details:
            payload["details"] = self.details
        return payload


class AuthenticationError(SubscriptionError):
    status_code = 401
    default_code = "AUTH_TOKEN_INVALID"


class ValidationError(SubscriptionError):
    status_code = 400
    default_code = "VALIDATION_ERROR"


class NotFoundError(SubscriptionError):
    status_code = 404
    default_code = "SUBSCRIPTION_NOT_FOUND"


class ProviderError(SubscriptionError):
    """A billing provider call failed; the billing state is unknown."""

    status_code = 502
    default_code = "BILLING_PROVIDER_ERROR"

    def __init__(self, error: str, *, retryable: bool = False, **kwargs: Any) -> None:
        super().__init__(error, **kwargs)
        self.retryable = retryable


class PersistenceError(SubscriptionError):
    """A write to one of the internal stores failed.

    ``firestore_written`` / ``realtime_written`` tell the caller whether nothing
    was stored or only one side was.
    """

    status_code = 500

    def __init__(
        self,
        error: str,
        *,
        firestore_written: bool = False,
        realtime_written: bool = False,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        partial = firestore_written or realtime_written
        merged = dict(details or {})
        merged.update({"firestoreWritten": firestore_written, "realtimeWritten": realtime_written})
        super().__init__(
            error,
            code="PERSISTENCE_PARTIAL_WRITE" if partial else "PERSISTENCE_NOTHING_STORED",
            details=merged,
        )
        self.firestore_written = firestore_written
        self.realtime_written = realtime_written


class TTLFieldError(ValidationError):
    default_code = "TTL_FIELD_NULL"


class LeaseUnavailableError(SubscriptionError):
    status_code = 409
    default_code = "RECONCILE_IN_PROGRESS"
