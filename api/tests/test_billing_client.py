"""Stripe billing client: request shape, retries and error mapping."""

import io
import json
from urllib import error as url_error
from urllib import parse as url_parse

import pytest

from api.subscriptions.billing_client import StripeBillingClient
from api.subscriptions.errors import ProviderError


class _Response:
    def __init__(self, payload):
        self._body = json.dumps(payload).encode("utf-8")

    def read(self):
        return self._body

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


def _http_error(status, payload=None):
    body = io.BytesIO(json.dumps(payload or {}).encode("utf-8"))
    return url_error.HTTPError("https://api.stripe.com/v1/x", status, "error", {}, body)


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def client(sleeps):
    return StripeBillingClient(
        "sk_test_123",
        max_retries=2,
        base_delay=0.5,
        max_delay=8,
        sleep=sleeps.append,
        rand=lambda: 1.0,
    )


@pytest.fixture
def urlopen(mocker):
    return mocker.patch("api.subscriptions.billing_client.url_request.urlopen")


"""
1. Request shape
"""

def test_find_customers_sends_bearer_get(client, urlopen):
    urlopen.return_value = _Response({"data": [{"id": "cus_1"}, {"id": "cus_2"}, {"object": "junk"}]})

    assert client.find_customers_by_email("a+b@example.com", limit=50) == ["cus_1", "cus_2"]

    req = urlopen.call_args[0][0]
    parsed = url_parse.urlparse(req.full_url)
    query = url_parse.parse_qs(parsed.query)
    assert req.get_method() == "GET"
    assert parsed.path.endswith("/customers")
    assert query == {"email": ["a+b@example.com"], "limit": ["5"]}
    assert req.get_header("Authorization") == "Bearer sk_test_123"
    assert req.data is None


def test_list_subscriptions_parses_periods(client, urlopen):
    urlopen.return_value = _Response(
        {
            "data": [
                {
                    "id": "sub_1",
                    "status": "active",
                    "current_period_start": 1767225600,
                    "current_period_end": 1769904000,
                    "cancel_at_period_end": False,
                },
                {
                    "id": "sub_2",
                    "status": "canceled",
                    "customer": "cus_9",
                    "items": {"data": [{"current_period_start": 1767225600, "current_period_end": 1769904000}]},
                    "canceled_at": 1768000000,
                },
            ]
        }
    )

    subs = client.list_subscriptions("cus_1", limit=25)

    query = url_parse.parse_qs(url_parse.urlparse(urlopen.call_args[0][0].full_url).query)
    assert query["status"] == ["all"]
    assert query["limit"] == ["10"]
    assert [s.id for s in subs] == ["sub_1", "sub_2"]
    assert subs[0].customer_id == "cus_1"
    assert subs[1].customer_id == "cus_9"
    assert int(subs[0].current_period_end.timestamp()) == 1769904000
    assert int(subs[1].current_period_end.timestamp()) == 1769904000
    assert subs[1].canceled_at is not None


def test_lookup_collects_all_customers(client, mocker):
    mocker.patch.object(StripeBillingClient, "find_customers_by_email", return_value=["cus_1", "cus_2"])
    list_subs = mocker.patch.object(StripeBillingClient, "list_subscriptions", side_effect=[[], []])

    lookup = client.lookup(" user@example.com ")

    assert lookup.email == "user@example.com"
    assert lookup.customer_ids == ["cus_1", "cus_2"]
    assert list_subs.call_count == 2


def test_lookup_without_email_makes_no_calls(client, urlopen):
    lookup = client.lookup("")

    assert lookup.email is None
    assert not lookup.has_customers
    urlopen.assert_not_called()


"""
2. Retries and errors
"""

def test_retries_server_errors_with_jitter(client, urlopen, sleeps):
    urlopen.side_effect = [_http_error(503), _http_error(429), _Response({"data": []})]

    assert client.find_customers_by_email("user@example.com") == []
    assert urlopen.call_count == 3
    assert sleeps == [0.5, 1.0]


def test_gives_up_after_max_retries(client, urlopen, sleeps):
    urlopen.side_effect = url_error.URLError("connection reset")

    with pytest.raises(ProviderError) as exc_info:
        client.find_customers_by_email("user@example.com")

    assert exc_info.value.code == "BILLING_PROVIDER_UNREACHABLE"
    assert exc_info.value.details["attempts"] == 3
    assert urlopen.call_count == 3
    assert len(sleeps) == 2


def test_client_errors_are_not_retried(client, urlopen, sleeps):
    urlopen.side_effect = _http_error(400, {"error": {"code": "parameter_invalid", "message": "bad", "type": "invalid_request_error"}})

    with pytest.raises(ProviderError) as exc_info:
        client.list_subscriptions("cus_1")

    assert exc_info.value.status_code == 502
    assert exc_info.value.details["httpStatus"] == 400
    assert exc_info.value.details["stripeCode"] == "parameter_invalid"
    assert urlopen.call_count == 1
    assert sleeps == []


def test_lookup_failure_propagates(client, urlopen):
    urlopen.side_effect = [_Response({"data": [{"id": "cus_1"}]}), _http_error(500), _http_error(500), _http_error(500)]

    with pytest.raises(ProviderError):
        client.lookup("user@example.com")


def test_missing_key_is_not_configured(urlopen):
    client = StripeBillingClient("")

    with pytest.raises(ProviderError) as exc_info:
        client.find_customers_by_email("user@example.com")

    assert exc_info.value.code == "BILLING_NOT_CONFIGURED"
    assert exc_info.value.status_code == 501
    urlopen.assert_not_called()


"""
3. Destructive calls
"""

def test_cancel_and_delete_use_delete_method(client, urlopen):
    urlopen.return_value = _Response({"id": "x", "deleted": True})

    client.cancel_subscription("sub_1")
    client.delete_customer("cus_1")

    methods = [(c[0][0].get_method(), url_parse.urlparse(c[0][0].full_url).path) for c in urlopen.call_args_list]
    assert methods == [("DELETE", "/v1/subscriptions/sub_1"), ("DELETE", "/v1/customers/cus_1")]


def test_already_deleted_resources_are_ignored(client, urlopen):
    urlopen.side_effect = _http_error(404, {"error": {"code": "resource_missing"}})

    client.cancel_subscription("sub_gone")
    urlopen.side_effect = _http_error(404, {"error": {"code": "resource_missing"}})
    client.delete_customer("cus_gone")


def test_delete_failure_raises(client, urlopen):
    urlopen.side_effect = _http_error(401, {"error": {"type": "invalid_request_error"}})

    with pytest.raises(ProviderError):
        client.delete_customer("cus_1")
