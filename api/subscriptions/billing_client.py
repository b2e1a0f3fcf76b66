"""Stripe billing provider client.

Pure I/O: finds customers by email, lists their subscriptions, cancels
subscriptions and deletes customers. No entitlement policy lives here.

Calls are retried with exponential backoff and full jitter on network errors,
HTTP 429 and 5xx. Anything that still fails raises ``ProviderError``; callers
must treat that as "billing state unknown".
"""

from __future__ import annotations

import json
import logging
import random
import time
from typing import Any, Callable, Dict, List, Optional
from urllib import error as url_error
from urllib import parse as url_parse
from urllib import request as url_request

from . import config
from .errors import ProviderError
from .records import BillingCustomer, BillingLookup, BillingSubscription

logger = logging.getLogger("api.subscriptions.billing_client")

RETRYABLE_HTTP_STATUSES = (409, 429, 500, 502, 503, 504)


class StripeBillingClient:
    def __init__(
        self,
        secret_key: Optional[str] = None,
        *,
        api_base: Optional[str] = None,
        timeout: Optional[float] = None,
        max_retries: Optional[int] = None,
        base_delay: Optional[float] = None,
        max_delay: Optional[float] = None,
        sleep: Callable[[float], None] = time.sleep,
        rand: Callable[[], float] = random.random,
    ) -> None:
        self.secret_key = (secret_key if secret_key is not None else config.STRIPE_SECRET_KEY).strip()
        self.api_base = (api_base or config.STRIPE_API_BASE).rstrip("/")
        self.timeout = timeout if timeout is not None else config.STRIPE_API_TIMEOUT_SEC
        self.max_retries = max_retries if max_retries is not None else config.STRIPE_MAX_RETRIES
        self.base_delay = base_delay if base_delay is not None else config.STRIPE_RETRY_BASE_DELAY_SEC
        self.max_delay = max_delay if max_delay is not None else config.STRIPE_RETRY_MAX_DELAY_SEC
        self._sleep = sleep
        self._rand = rand

    @property
    def configured(self) -> bool:
        return bool(self.secret_key)

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _retry_delay(self, attempt: int) -> float:
        # Full jitter: uniform in [0, min(cap, base * 2^attempt)].
        ceiling = min(self.max_delay, self.base_delay * (2 ** attempt))
        return ceiling * self._rand()

    def _build_request(self, method: str, path: str, params: Dict[str, Any]) -> url_request.Request:
        method = method.upper()
        encoded = url_parse.urlencode(
            {k: str(v) for k, v in params.items() if v is not None},
            quote_via=url_parse.quote,
        )
        url = f"{self.api_base}/{path.lstrip('/')}"
        data = None
        if method in ("POST", "PUT", "PATCH"):
            data = encoded.encode("utf-8")
        elif encoded:
            url = f"{url}?{encoded}"
        return url_request.Request(
            url=url,
            method=method,
            data=data,
            headers={
                "Authorization": f"Bearer {self.secret_key}",
                "Content-Type": "application/x-www-form-urlencoded",
                "Accept": "application/json",
                "User-Agent": "marketplace-subscriptions/1.0",
            },
        )

    def _request(self, method: str, path: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        if not self.configured:
            raise ProviderError(
                "Stripe billing is not configured",
                code="BILLING_NOT_CONFIGURED",
                status_code=501,
                details={"required": ["STRIPE_SECRET_KEY"]},
            )

        params = params or {}
        attempt = 0
        while True:
            req = self._build_request(method, path, params)
            try:
                with url_request.urlopen(req, timeout=self.timeout) as resp:
                    body_text = resp.read().decode("utf-8")
                    parsed = json.loads(body_text) if body_text else {}
                    return parsed if isinstance(parsed, dict) else {}
            except url_error.HTTPError as http_exc:
                error = self._http_error(method, path, http_exc)
            except (url_error.URLError, TimeoutError, OSError) as net_exc:
                error = ProviderError(
                    "Unable to reach Stripe API",
                    code="BILLING_PROVIDER_UNREACHABLE",
                    details={"reason": str(net_exc), "method": method.upper(), "path": path},
                    retryable=True,
                )
                error.__cause__ = net_exc

            if not error.retryable or attempt >= self.max_retries:
                error.details["attempts"] = attempt + 1
                raise error

            delay = self._retry_delay(attempt)
            logger.warning(
                "Stripe %s %s failed (%s); retry %s/%s in %.2fs",
                method.upper(),
                path,
                error.code,
                attempt + 1,
                self.max_retries,
                delay,
            )
            self._sleep(delay)
            attempt += 1

    def _http_error(self, method: str, path: str, http_exc: url_error.HTTPError) -> ProviderError:
        details: Dict[str, Any] = {"httpStatus": http_exc.code, "method": method.upper(), "path": path}
        response_body = ""
        try:
            response_body = http_exc.read().decode("utf-8")
        except Exception:
            response_body = ""
        if response_body:
            try:
                parsed_error = json.loads(response_body)
            except ValueError:
                parsed_error = None
            if isinstance(parsed_error, dict) and isinstance(parsed_error.get("error"), dict):
                stripe_error = parsed_error["error"]
                details["stripeCode"] = stripe_error.get("code")
                details["stripeMessage"] = stripe_error.get("message")
                details["stripeType"] = stripe_error.get("type")
        error = ProviderError(
            "Stripe API request failed",
            code="BILLING_PROVIDER_ERROR",
            details=details,
            retryable=http_exc.code in RETRYABLE_HTTP_STATUSES,
        )
        error.__cause__ = http_exc
        return error

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def find_customers_by_email(self, email: str, limit: int = config.CUSTOMER_LOOKUP_LIMIT) -> List[str]:
        limit = min(max(int(limit), 1), 5)
        payload = self._request("GET", "customers", {"email": email, "limit": limit})
        return [str(c["id"]) for c in payload.get("data") or [] if isinstance(c, dict) and c.get("id")]

    def list_subscriptions(
        self,
        customer_id: str,
        limit: int = config.SUBSCRIPTION_LIST_LIMIT,
    ) -> List[BillingSubscription]:
        limit = min(max(int(limit), 1), 10)
        # status=all: Stripe omits canceled subscriptions by default.
        payload = self._request(
            "GET",
            "subscriptions",
            {"customer": customer_id, "limit": limit, "status": "all"},
        )
        subscriptions = []
        for raw in payload.get("data") or []:
            if not isinstance(raw, dict) or not raw.get("id"):
                continue
            sub = BillingSubscription.from_stripe(raw)
            if not sub.customer_id:
                sub.customer_id = customer_id
            subscriptions.append(sub)
        return subscriptions

    def cancel_subscription(self, subscription_id: str) -> None:
        try:
            self._request("DELETE", f"subscriptions/{url_parse.quote(subscription_id, safe='')}")
        except ProviderError as exc:
            if _is_resource_missing(exc):
                logger.info("Stripe subscription %s already gone", subscription_id)
                return
            raise
        logger.info("Canceled Stripe subscription %s", subscription_id)

    def delete_customer(self, customer_id: str) -> None:
        try:
            self._request("DELETE", f"customers/{url_parse.quote(customer_id, safe='')}")
        except ProviderError as exc:
            if _is_resource_missing(exc):
                logger.info("Stripe customer %s already gone", customer_id)
                return
            raise
        logger.info("Deleted Stripe customer %s", customer_id)

    def lookup(self, email: Optional[str]) -> BillingLookup:
        """Collect every customer and subscription Stripe holds for ``email``.

        Raises ``ProviderError`` if any call fails; a partial answer is never
        returned because it could hide a paying subscription.
        """
        email = str(email or "").strip()
        if not email:
            return BillingLookup(email=None)

        lookup = BillingLookup(email=email)
        for customer_id in self.find_customers_by_email(email):
            lookup.customers.append(
                BillingCustomer(id=customer_id, subscriptions=self.list_subscriptions(customer_id))
            )
        logger.debug(
            "Billing lookup email=%s customers=%s subscriptions=%s",
            email,
            len(lookup.customers),
            len(lookup.subscriptions),
        )
        return lookup


def _is_resource_missing(exc: ProviderError) -> bool:
    return exc.details.get("httpStatus") == 404 or exc.details.get("stripeCode") == "resource_missing"
