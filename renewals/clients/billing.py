from __future__ import annotations

import logging
from typing import Any, Protocol
from urllib.parse import quote

import httpx
from opentelemetry import trace

from renewals.context import get_correlation_id
from renewals.errors import FailureKind, UpstreamError


tracer = trace.get_tracer("renewals.clients.billing")
logger = logging.getLogger("renewals.clients.billing")

# 400 responses the provider uses instead of an empty page
END_OF_PAGES_MESSAGES = (
    "No order product charge could be found",
    "No subscriptions of latest version could be found",
)
MAX_CHARGE_PAGES = 500


def normalize_list_payload(payload: Any) -> list[dict[str, Any]]:
    """Accept a bare list or a list wrapped under ``items``, ``data`` or ``value``."""
    if isinstance(payload, dict):
        for key in ("items", "data", "value"):
            if isinstance(payload.get(key), list):
                payload = payload[key]
                break
        else:
            return []
    if not isinstance(payload, list):
        return []
    return [item for item in payload if isinstance(item, dict)]


def _error_messages(response: httpx.Response) -> list[str]:
    try:
        body = response.json()
    except ValueError:
        return [response.text]
    errors = body.get("errors") if isinstance(body, dict) else None
    if isinstance(errors, dict):
        message = errors.get("message")
        if isinstance(message, list):
            return [item for item in message if isinstance(item, str)]
        if isinstance(message, str):
            return [message]
    return [response.text]


def is_end_of_pages(response: httpx.Response) -> bool:
    if response.status_code != 400:
        return False
    return any(known in message for message in _error_messages(response) for known in END_OF_PAGES_MESSAGES)


class BillingClient(Protocol):
    def get_access_token(self) -> str: ...

    def fetch_charges_page(self, access_token: str, order_id: str, page_number: int) -> list[dict[str, Any]]: ...

    def fetch_subscriptions_page(self, access_token: str, page_number: int) -> list[dict[str, Any]]: ...


def fetch_all_charges(client: BillingClient, access_token: str, order_id: str) -> list[dict[str, Any]]:
    charges: list[dict[str, Any]] = []
    page_number = 1
    while True:
        page = client.fetch_charges_page(access_token, order_id, page_number)
        if not page:
            return charges
        charges.extend(page)
        if page_number >= MAX_CHARGE_PAGES:
            raise UpstreamError(
                FailureKind.VALIDATION,
                f"Charges for order {order_id} did not end after {MAX_CHARGE_PAGES} pages",
            )
        page_number += 1


class YouniumClient:
    def __init__(
        self,
        *,
        base_url: str,
        client_id: str,
        secret: str,
        legal_entity: str,
        api_version: str = "2.1",
        charges_page_size: int = 100,
        subscriptions_page_size: int = 200,
        timeout: float = 10.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.client_id = client_id
        self.secret = secret
        self.legal_entity = legal_entity
        self.api_version = api_version
        self.charges_page_size = charges_page_size
        self.subscriptions_page_size = subscriptions_page_size
        self._client = httpx.Client(base_url=base_url.rstrip("/"), timeout=timeout, transport=transport)

    def close(self) -> None:
        self._client.close()

    def get_access_token(self) -> str:
        with tracer.start_as_current_span("billing.get_access_token") as span:
            span.set_attribute("correlation_id", get_correlation_id() or "")
            response = self._send(
                "POST",
                "/auth/v2/token",
                json={"clientId": self.client_id, "secret": self.secret},
                headers={"Accept": "application/json"},
            )
            if response.is_error:
                raise UpstreamError.from_status(
                    response.status_code,
                    f"Token request failed ({response.status_code}): {response.text[:500]}",
                )
            body = self._json(response, "token response")
            token = None
            if isinstance(body, dict):
                token = body.get("access_token") or body.get("accessToken")
            if not isinstance(token, str) or not token:
                raise UpstreamError(FailureKind.VALIDATION, "Token response did not include access_token or accessToken")
            return token

    def fetch_charges_page(self, access_token: str, order_id: str, page_number: int) -> list[dict[str, Any]]:
        with tracer.start_as_current_span("billing.fetch_charges_page") as span:
            span.set_attribute("order_id", order_id)
            span.set_attribute("page_number", page_number)
            response = self._send(
                "GET",
                f"/Orders/{quote(order_id, safe='')}/charges",
                params={"PageSize": self.charges_page_size, "PageNumber": page_number},
                headers=self._headers(access_token),
            )
            if response.is_error:
                if is_end_of_pages(response):
                    return []
                raise UpstreamError.from_status(
                    response.status_code,
                    f"Charges request failed ({response.status_code}) for order {order_id}, "
                    f"page {page_number}: {response.text[:500]}",
                )
            charges = normalize_list_payload(self._json(response, f"charges for order {order_id}, page {page_number}"))
            span.set_attribute("charge_count", len(charges))
            return charges

    def fetch_subscriptions_page(self, access_token: str, page_number: int) -> list[dict[str, Any]]:
        with tracer.start_as_current_span("billing.fetch_subscriptions_page") as span:
            span.set_attribute("page_number", page_number)
            response = self._send(
                "GET",
                "/Subscriptions",
                params={"PageSize": self.subscriptions_page_size, "PageNumber": page_number},
                headers=self._headers(access_token),
            )
            if response.is_error:
                if is_end_of_pages(response):
                    return []
                raise UpstreamError.from_status(
                    response.status_code,
                    f"Subscriptions request failed ({response.status_code}) for page {page_number}: {response.text[:500]}",
                )
            return normalize_list_payload(self._json(response, f"subscriptions page {page_number}"))

    def _headers(self, access_token: str) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {access_token}",
            "Accept": "application/json",
            "api-version": self.api_version,
            "legal-entity": self.legal_entity,
        }

    def _send(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            return self._client.request(method, path, **kwargs)
        except httpx.HTTPError as exc:
            logger.warning("billing.request_failed", extra={"method": method, "path": path, "error": str(exc)})
            raise UpstreamError(FailureKind.TRANSPORT, f"{method} {path} failed: {exc}") from exc

    @staticmethod
    def _json(response: httpx.Response, what: str) -> Any:
        try:
            return response.json()
        except ValueError as exc:
            raise UpstreamError(
                FailureKind.VALIDATION,
                f"Failed to parse {what}: {response.text[:200]}",
                response.status_code,
            ) from exc


class InMemoryBillingClient:
    """Billing source backed by dictionaries, for local runs and tests."""

    def __init__(
        self,
        charges_by_order: dict[str, list[dict[str, Any]]] | None = None,
        subscriptions: list[dict[str, Any]] | None = None,
        page_size: int = 100,
    ) -> None:
        self.charges_by_order = charges_by_order if charges_by_order is not None else {}
        self.subscriptions = subscriptions if subscriptions is not None else []
        self.page_size = page_size
        self.failing_orders: dict[str, UpstreamError] = {}
        self.token_requests = 0
        self.page_requests: list[tuple[str, int]] = []

    def get_access_token(self) -> str:
        self.token_requests += 1
        return f"in-memory-token-{self.token_requests}"

    def fetch_charges_page(self, access_token: str, order_id: str, page_number: int) -> list[dict[str, Any]]:
        self.page_requests.append((order_id, page_number))
        failure = self.failing_orders.get(order_id)
        if failure is not None:
            raise failure
        return self._page(self.charges_by_order.get(order_id, []), page_number)

    def fetch_subscriptions_page(self, access_token: str, page_number: int) -> list[dict[str, Any]]:
        return self._page(self.subscriptions, page_number)

    def _page(self, rows: list[dict[str, Any]], page_number: int) -> list[dict[str, Any]]:
        start = (page_number - 1) * self.page_size
        return [dict(row) for row in rows[start : start + self.page_size]]
