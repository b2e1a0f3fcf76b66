"""Subscription reconciliation engine.

Keeps the subscription record mirrored in Firestore and the Realtime Database
consistent with the billing provider (Stripe).
"""

from .errors import (
    AuthenticationError,
    LeaseUnavailableError,
    NotFoundError,
    PersistenceError,
    ProviderError,
    SubscriptionError,
    TTLFieldError,
    ValidationError,
)
from .policy import ReconciliationDecision, find_inconsistencies, reconcile
from .reconciler import ReconciliationResult, SubscriptionReconciler
from .records import BillingLookup, BillingSubscription, StoreSnapshots, SubscriptionRecord
from .scanner import BatchScanner

__all__ = [
    'AuthenticationError',
    'BatchScanner',
    'BillingLookup',
    'BillingSubscription',
    'LeaseUnavailableError',
    'NotFoundError',
    'PersistenceError',
    'ProviderError',
    'ReconciliationDecision',
    'ReconciliationResult',
    'StoreSnapshots',
    'SubscriptionError',
    'SubscriptionReconciler',
    'SubscriptionRecord',
    'TTLFieldError',
    'ValidationError',
    'find_inconsistencies',
    'reconcile',
]
