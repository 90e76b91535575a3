from __future__ import annotations

import json

import httpx
import pytest

from renewals.clients.billing import YouniumClient, fetch_all_charges, normalize_list_payload
from renewals.errors import FailureKind, UpstreamError


END_OF_CHARGES = {"errors": {"message": ["No order product charge could be found"]}}


def _client(handler) -> YouniumClient:  # type: ignore[no-untyped-def]
    return YouniumClient(
        base_url="https://billing.test/",
        client_id="client-1",
        secret="s3cret",
        legal_entity="LE-1",
        api_version="2.1",
        charges_page_size=2,
        transport=httpx.MockTransport(handler),
    )


def test_access_token_accepts_either_key() -> None:
    seen: list[dict[str, str]] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(json.loads(request.content))
        assert request.url.path == "/auth/v2/token"
        return httpx.Response(200, json={"accessToken": "tok-1"})

    assert _client(handler).get_access_token() == "tok-1"
    assert seen == [{"clientId": "client-1", "secret": "s3cret"}]


def test_access_token_without_token_is_a_validation_failure() -> None:
    client = _client(lambda request: httpx.Response(200, json={"expires_in": 3600}))

    with pytest.raises(UpstreamError) as exc_info:
        client.get_access_token()
    assert exc_info.value.kind is FailureKind.VALIDATION


def test_fetch_all_charges_stops_at_end_of_pages_error() -> None:
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        page = int(request.url.params["PageNumber"])
        if page == 1:
            return httpx.Response(200, json=[{"chargeId": "c-1"}, {"chargeId": "c-2"}])
        if page == 2:
            return httpx.Response(200, json={"items": [{"chargeId": "c-3"}]})
        return httpx.Response(400, json=END_OF_CHARGES)

    charges = fetch_all_charges(_client(handler), "tok-1", "ord-1")

    assert [charge["chargeId"] for charge in charges] == ["c-1", "c-2", "c-3"]
    assert len(requests) == 3
    first = requests[0]
    assert first.url.path == "/Orders/ord-1/charges"
    assert first.url.params["PageSize"] == "2"
    assert first.headers["authorization"] == "Bearer tok-1"
    assert first.headers["legal-entity"] == "LE-1"
    assert first.headers["api-version"] == "2.1"


@pytest.mark.parametrize(
    ("status_code", "kind"),
    [(404, FailureKind.NOT_FOUND), (400, FailureKind.VALIDATION), (503, FailureKind.TRANSPORT)],
)
def test_charge_page_errors_are_classified(status_code: int, kind: FailureKind) -> None:
    client = _client(lambda request: httpx.Response(status_code, json={"errors": {"message": "nope"}}))

    with pytest.raises(UpstreamError) as exc_info:
        client.fetch_charges_page("tok-1", "ord-1", 1)
    assert exc_info.value.kind is kind
    assert exc_info.value.status_code == status_code
    assert f"Charges request failed ({status_code}) for order ord-1, page 1" in exc_info.value.message


def test_network_errors_are_transport_failures() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(UpstreamError) as exc_info:
        _client(handler).fetch_subscriptions_page("tok-1", 1)
    assert exc_info.value.kind is FailureKind.TRANSPORT
    assert exc_info.value.status_code is None


def test_subscription_pages_end_on_known_message() -> None:
    client = _client(
        lambda request: httpx.Response(
            400,
            json={"errors": {"message": "No subscriptions of latest version could be found"}},
        )
    )

    assert client.fetch_subscriptions_page("tok-1", 7) == []


def test_normalize_list_payload() -> None:
    assert normalize_list_payload([{"a": 1}, "x"]) == [{"a": 1}]
    assert normalize_list_payload({"data": [{"a": 1}]}) == [{"a": 1}]
    assert normalize_list_payload({"value": [{"a": 2}]}) == [{"a": 2}]
    assert normalize_list_payload({"unexpected": []}) == []
    assert normalize_list_payload(None) == []
