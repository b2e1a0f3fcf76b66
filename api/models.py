"""Pydantic models for the subscription reconciliation API.

Field names are camelCase to match what the web and mobile clients already
read from the user documents.
"""

from __future__ import annotations

from typing import List, Literal, Optional, Dict, Any
from pydantic import BaseModel, Field, field_validator
import re


# =============================================================================
# INPUT VALIDATION PATTERNS
# =============================================================================

USER_ID_PATTERN = re.compile(r'^[A-Za-z0-9_\-]{1,128}$')


# =============================================================================
# REQUEST MODELS (Input Validation)
# =============================================================================

class FixRequest(BaseModel):
    """Admin fix: one identity, or the whole batch when userId is omitted."""
    userId: Optional[str] = Field(default=None, description="Firebase uid to repair")

    @field_validator('userId')
    @classmethod
    def validate_user_id(cls, v):
        if v is None:
            return v
        v = v.strip()
        if not v:
            return None
        if not USER_ID_PATTERN.match(v):
            raise ValueError('userId must be 1-128 characters of [A-Za-z0-9_-]')
        return v


class DiagnoseRequest(BaseModel):
    """Read-only diagnosis of one identity."""
    userId: str = Field(..., min_length=1, max_length=128, pattern=r'^[A-Za-z0-9_\-]+$')


class TTLValidateRequest(BaseModel):
    """TTL field validation sweep over one collection."""
    collection: Literal["listings", "offers"]
    dryRun: bool = True
    limit: int = Field(default=500, ge=1, le=5000)


# =============================================================================
# RESPONSE MODELS
# =============================================================================

class SubscriptionRecordOut(BaseModel):
    """Canonical subscription record as returned to clients (ISO timestamps)."""
    status: str
    tier: str
    billingSubscriptionId: Optional[str] = None
    startDate: Optional[str] = None
    endDate: Optional[str] = None
    renewalDate: Optional[str] = None
    cancelAtPeriodEnd: bool = False
    canceledAt: Optional[str] = None
    manuallyUpdated: bool = False
    lastManualUpdate: Optional[str] = None
    lastUpdated: Optional[str] = None


class StoreSnapshotsOut(BaseModel):
    firestore: Optional[SubscriptionRecordOut] = None
    realtime: Optional[SubscriptionRecordOut] = None


class BillingActionOut(BaseModel):
    action: str
    id: str
    ok: bool
    error: Optional[str] = None


class CleanupResponse(BaseModel):
    """Result of the caller's own reconciliation."""
    ok: bool = True
    subscription: SubscriptionRecordOut
    rule: str
    changed: bool
    correlationId: str


class SubscriptionStatusResponse(BaseModel):
    userId: str
    snapshots: StoreSnapshotsOut
    inconsistencies: List[str]
    consistent: bool


class FixIdentityResponse(BaseModel):
    """Admin fix for one identity: before/after diff."""
    ok: bool = True
    userId: str
    before: StoreSnapshotsOut
    after: Optional[StoreSnapshotsOut] = None
    changed: bool
    canonical: SubscriptionRecordOut
    rule: str
    inconsistencies: List[str]
    billingActions: List[BillingActionOut]
    correlationId: str


class BatchDetail(BaseModel):
    userId: str
    status: str
    rule: Optional[str] = None
    inconsistencies: Optional[List[str]] = None
    tier: Optional[str] = None
    subscriptionStatus: Optional[str] = None
    error: Optional[str] = None
    code: Optional[str] = None


class BatchSummaryResponse(BaseModel):
    total: int
    fixed: int
    consistent: int
    errors: int
    details: List[BatchDetail]


class DiagnoseResponse(BaseModel):
    userId: str
    email: Optional[str] = None
    snapshots: StoreSnapshotsOut
    billing: Dict[str, Any]
    inconsistencies: List[str]
    proposed: SubscriptionRecordOut
    decision: Dict[str, Any]


class TTLValidationSummary(BaseModel):
    collection: str
    totalChecked: int
    totalIssues: int
    totalFixed: int
    dryRun: bool


class TTLValidationIssue(BaseModel):
    docId: str
    issues: List[str]
    fixed: bool = False


class TTLValidateResponse(BaseModel):
    summary: TTLValidationSummary
    issues: List[TTLValidationIssue]
    hasMoreIssues: bool


class ErrorResponse(BaseModel):
    """Standard error response format."""
    error: str
    code: str
    details: Optional[Dict[str, Any]] = None
