#!/usr/bin/env python3
"""Scheduled subscription consistency worker.

Runs the batch scan on a fixed interval so that a torn dual-store write or a
billing change that arrived without a cleanup call is repaired within one poll
period.

Usage:
    python scripts/subscription_reconcile_worker.py --serviceAccount /path/to/sa.json
    python scripts/subscription_reconcile_worker.py --once --limit 25
"""

from __future__ import annotations

import argparse
import logging
import os
import time
from pathlib import Path
from typing import Any, Dict
from uuid import uuid4

from firebase_admin import credentials, db as admin_db, firestore as admin_firestore, initialize_app

from api.subscriptions import config
from api.subscriptions.leases import WORKER_ID
from api.subscriptions.reconciler import SubscriptionReconciler
from api.subscriptions.scanner import BatchScanner
from api.subscriptions.snapshots import make_email_resolver

POLL_SECONDS = int(os.environ.get("SUBSCRIPTION_RECONCILE_POLL_SECONDS", "3600"))
SUBSCRIPTION_RECONCILE_ENABLED = os.environ.get("SUBSCRIPTION_RECONCILE_ENABLED", "true").lower() == "true"

logger = logging.getLogger("subscription_reconcile_worker")


def configure_logging() -> None:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(name)s] %(levelname)s: %(message)s")


def _ensure_firebase(sa_path: str) -> None:
    database_url = str(os.environ.get("FIREBASE_DATABASE_URL") or "").strip()
    if not database_url:
        raise RuntimeError("FIREBASE_DATABASE_URL is required for the reconcile worker")
    try:
        initialize_app(credentials.Certificate(sa_path), options={"databaseURL": database_url})
    except ValueError:
        pass


def build_scanner(limit: int) -> BatchScanner:
    firestore_client = admin_firestore.client()
    email_resolver = make_email_resolver(firestore_client)
    reconciler = SubscriptionReconciler.for_clients(
        firestore_client,
        admin_db,
        email_resolver=email_resolver,
    )
    return BatchScanner(reconciler, firestore_client, email_resolver=email_resolver, limit=limit)


def run_cycle(scanner: BatchScanner) -> Dict[str, Any]:
    correlation_id = f"worker-{uuid4().hex[:12]}"
    summary = scanner.run(correlation_id=correlation_id)
    for detail in summary["details"]:
        if detail.get("status") == "error":
            logger.warning("Reconcile error uid=%s code=%s: %s", detail["userId"], detail.get("code"), detail.get("error"))
    return summary


def run_worker(sa_path: str, *, poll_seconds: int, limit: int, run_once: bool = False) -> None:
    _ensure_firebase(sa_path)
    scanner = build_scanner(limit)

    logger.info(
        "Subscription reconcile worker started: worker=%s poll=%ss limit=%s enabled=%s billingConfigured=%s",
        WORKER_ID,
        poll_seconds,
        limit,
        SUBSCRIPTION_RECONCILE_ENABLED,
        scanner.reconciler.billing.configured,
    )

    while True:
        try:
            if not SUBSCRIPTION_RECONCILE_ENABLED:
                logger.info("SUBSCRIPTION_RECONCILE_ENABLED=false; reconcile cycle skipped")
            else:
                summary = run_cycle(scanner)
                logger.info(
                    "Reconcile cycle completed: total=%s fixed=%s consistent=%s errors=%s",
                    summary["total"],
                    summary["fixed"],
                    summary["consistent"],
                    summary["errors"],
                )

            if run_once:
                return
            time.sleep(poll_seconds)

        except KeyboardInterrupt:
            logger.info("Subscription reconcile worker interrupted, shutting down")
            return
        except Exception:
            logger.exception("Subscription reconcile worker cycle failure")
            if run_once:
                raise
            time.sleep(poll_seconds)


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Scheduled subscription consistency worker")
    parser.add_argument(
        "--serviceAccount",
        default=os.environ.get("GOOGLE_APPLICATION_CREDENTIALS", ""),
        help="Path to Firebase service account JSON",
    )
    parser.add_argument(
        "--poll-seconds",
        type=int,
        default=POLL_SECONDS,
        help="Polling interval in seconds",
    )
    parser.add_argument(
        "--limit",
        type=int,
        default=config.BATCH_SCAN_LIMIT,
        help="Max users scanned per cycle (capped at 100)",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run one cycle and exit",
    )
    return parser.parse_args()


def main() -> int:
    configure_logging()
    args = parse_args()

    sa_path = str(args.serviceAccount or "").strip()
    if not sa_path:
        logger.error("--serviceAccount (or GOOGLE_APPLICATION_CREDENTIALS) is required")
        return 2
    if not Path(sa_path).exists():
        logger.error("Service account path does not exist: %s", sa_path)
        return 2

    run_worker(
        sa_path,
        poll_seconds=max(60, int(args.poll_seconds)),
        limit=min(config.MAX_BATCH_SCAN_LIMIT, max(1, int(args.limit))),
        run_once=bool(args.once),
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
