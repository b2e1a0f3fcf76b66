"""Security audit logging for the subscription API.

Provides structured logging for security-relevant events:
- Authentication failures
- Admin / scheduler secret mismatches
- Rate limit violations
- Destructive billing cleanup (subscription cancel, customer delete)

Logs are structured JSON for easy parsing and alerting.
"""

from __future__ import annotations

import json
import logging
import os
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Dict, Any, Optional

LOG_DIR = Path(os.environ.get("SECURITY_LOG_DIR", str(Path(__file__).parent.parent.parent / "logs")))
SECURITY_LOG_FILE = LOG_DIR / "security.log"

# Log rotation settings
MAX_LOG_SIZE = 10 * 1024 * 1024  # 10MB per file
BACKUP_COUNT = 5  # Keep 5 rotated files (50MB total)


class SecurityLogger:
    """Structured security event logger with rotation."""

    def __init__(self):
        self.logger = logging.getLogger("security")
        self._setup_handler()

    def _setup_handler(self):
        """Set up rotating file handler for security logs."""
        # Avoid duplicate handlers
        if self.logger.handlers:
            return
        try:
            LOG_DIR.mkdir(parents=True, exist_ok=True)
            handler = RotatingFileHandler(
                SECURITY_LOG_FILE,
                maxBytes=MAX_LOG_SIZE,
                backupCount=BACKUP_COUNT
            )
        except OSError as exc:
            logging.getLogger("api.security_logger").warning(
                "Security log file unavailable (%s); using stderr", exc
            )
            handler = logging.StreamHandler()
        handler.setLevel(logging.WARNING)
        handler.setFormatter(logging.Formatter('%(message)s'))
        self.logger.addHandler(handler)
        self.logger.setLevel(logging.INFO)

    def log_event(
        self,
        event_type: str,
        severity: str,  # 'low', 'medium', 'high', 'critical'
        details: Dict[str, Any],
        ip: Optional[str] = None,
        uid: Optional[str] = None,
        path: Optional[str] = None
    ):
        """Log a security event.

        Args:
            event_type: Type of event (auth_failure, rate_limit, billing_cleanup, etc.)
            severity: low, medium, high, critical
            details: Event-specific details
            ip: Client IP address
            uid: User ID if known
            path: Request path
        """
        event = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "event": event_type,
            "severity": severity,
            "ip": ip,
            "uid": uid,
            "path": path,
            **details
        }

        event = {k: v for k, v in event.items() if v is not None}

        self.logger.warning(json.dumps(event, default=str))

    def rate_limit_exceeded(
        self,
        ip: str,
        path: str,
        limit: str
    ):
        """Log rate limit violation."""
        self.log_event(
            event_type="rate_limit_exceeded",
            severity="medium",
            details={
                "limit": limit
            },
            ip=ip,
            path=path
        )

    def admin_action(
        self,
        action: str,
        ip: Optional[str],
        path: str,
        uid: Optional[str] = None,
        **details: Any
    ):
        """Log a privileged operation (admin fix, batch run, TTL repair)."""
        self.log_event(
            event_type="admin_action",
            severity="medium",
            details={"action": action, **details},
            ip=ip,
            uid=uid,
            path=path
        )

    def billing_cleanup(
        self,
        uid: str,
        actions: list,
        correlation_id: Optional[str] = None
    ):
        """Log destructive billing cleanup performed for an identity."""
        self.log_event(
            event_type="billing_cleanup",
            severity="high",
            details={
                "actions": actions,
                "correlation_id": correlation_id
            },
            uid=uid
        )


# Singleton instance
security_logger = SecurityLogger()
