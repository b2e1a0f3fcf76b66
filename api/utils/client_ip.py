"""Caller address for rate-limit keys and the security log.

Proxy headers are ignored unless ``TRUST_PROXY`` is on. The reconciliation
endpoints sit behind either Cloudflare or the Cloud Run / load balancer front
end, so the header to trust is configurable:

    TRUST_PROXY=1
    TRUSTED_PROXY_HEADER=CF-Connecting-IP   # or X-Forwarded-For (default)
"""

from __future__ import annotations

import ipaddress
import logging
import os
from typing import Optional

from fastapi import Request

logger = logging.getLogger("api.client_ip")

TRUST_PROXY = os.environ.get("TRUST_PROXY", "").lower() in ("1", "true")
TRUSTED_PROXY_HEADER = os.environ.get("TRUSTED_PROXY_HEADER", "X-Forwarded-For").strip() or "X-Forwarded-For"


def _valid_ip(value: str) -> Optional[str]:
    candidate = value.strip()
    try:
        ipaddress.ip_address(candidate)
    except ValueError:
        return None
    return candidate


def _from_proxy_header(request: Request) -> Optional[str]:
    raw = request.headers.get(TRUSTED_PROXY_HEADER)
    if not raw:
        return None
    # X-Forwarded-For lists the original client first
    ip = _valid_ip(raw.split(",")[0])
    if ip is None:
        logger.debug("Ignoring malformed %s header", TRUSTED_PROXY_HEADER)
    return ip


def get_client_ip(request: Request) -> str:
    """Client address; the trusted proxy header wins only when TRUST_PROXY is set."""
    if TRUST_PROXY:
        forwarded = _from_proxy_header(request)
        if forwarded:
            return forwarded

    if request.client:
        return request.client.host
    return "unknown"
