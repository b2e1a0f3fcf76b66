"""Subscription Reconciliation API.

FastAPI-based backend that reconciles each user's subscription entitlement,
providing:
- Self-service cleanup of the caller's subscription (Firebase Auth)
- Admin repair, diagnosis and TTL validation (admin secret)
- Scheduled batch consistency scans (cron secret)
- Health and store connectivity
"""
