from __future__ import annotations

import itertools
import logging
from collections.abc import Sequence
from decimal import Decimal
from typing import Any, Protocol
from urllib.parse import quote

import httpx
from opentelemetry import trace

from renewals.context import get_correlation_id
from renewals.errors import FailureKind, UpstreamError


tracer = trace.get_tracer("renewals.clients.crm")
logger = logging.getLogger("renewals.clients.crm")


class CrmClient(Protocol):
    def get_deal(self, deal_id: str, properties: Sequence[str]) -> dict[str, Any]: ...

    def get_associated_company_id(self, deal_id: str) -> str | None: ...

    def get_company_property(self, company_id: str, property_name: str) -> str | None: ...

    def search_deal_ids(self, property_name: str, value: str, limit: int = 10) -> list[str]: ...

    def create_deal(self, properties: dict[str, str]) -> str: ...

    def update_deal_amount(self, deal_id: str, amount: Decimal) -> None: ...

    def search_line_item_by_fingerprint(self, property_name: str, fingerprint: str) -> str | None: ...

    def create_line_item(self, properties: dict[str, str]) -> str: ...

    def associate_line_item(self, deal_id: str, line_item_id: str) -> None: ...


def _first_id(body: Any) -> str | None:
    if not isinstance(body, dict) or not isinstance(body.get("results"), list):
        return None
    for row in body["results"]:
        if isinstance(row, dict):
            value = _as_str(row.get("id"))
            if value:
                return value
    return None


def _as_str(value: Any) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    if isinstance(value, int) and not isinstance(value, bool) and value >= 0:
        return str(value)
    return None


class HubSpotClient:
    def __init__(
        self,
        *,
        token: str,
        base_url: str = "https://api.hubapi.com",
        timeout: float = 10.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._client = httpx.Client(
            base_url=base_url.rstrip("/"),
            timeout=timeout,
            transport=transport,
            headers={"Authorization": f"Bearer {token}", "Accept": "application/json"},
        )

    def close(self) -> None:
        self._client.close()

    def get_deal(self, deal_id: str, properties: Sequence[str]) -> dict[str, Any]:
        with tracer.start_as_current_span("crm.get_deal") as span:
            span.set_attribute("deal_id", deal_id)
            span.set_attribute("correlation_id", get_correlation_id() or "")
            body = self._request(
                "GET",
                f"/crm/v3/objects/deals/{quote(deal_id, safe='')}",
                f"Failed to fetch deal {deal_id}",
                params={"properties": ",".join(properties)},
            )
            found_id = _as_str(body.get("id")) if isinstance(body, dict) else None
            if not found_id:
                raise UpstreamError(FailureKind.VALIDATION, f"Deal {deal_id} response missing id")
            raw_properties = body.get("properties")
            return {"id": found_id, "properties": raw_properties if isinstance(raw_properties, dict) else {}}

    def get_associated_company_id(self, deal_id: str) -> str | None:
        with tracer.start_as_current_span("crm.get_associated_company") as span:
            span.set_attribute("deal_id", deal_id)
            body = self._request(
                "GET",
                f"/crm/v3/objects/deals/{quote(deal_id, safe='')}/associations/companies",
                f"Failed to fetch associated company for deal {deal_id}",
            )
            return _first_id(body)

    def get_company_property(self, company_id: str, property_name: str) -> str | None:
        with tracer.start_as_current_span("crm.get_company") as span:
            span.set_attribute("company_id", company_id)
            body = self._request(
                "GET",
                f"/crm/v3/objects/companies/{quote(company_id, safe='')}",
                f"Failed to fetch company {company_id}",
                params={"properties": property_name},
            )
            if not isinstance(body, dict) or not isinstance(body.get("properties"), dict):
                return None
            return _as_str(body["properties"].get(property_name))

    def search_deal_ids(self, property_name: str, value: str, limit: int = 10) -> list[str]:
        with tracer.start_as_current_span("crm.search_deals") as span:
            span.set_attribute("property_name", property_name)
            body = self._request(
                "POST",
                "/crm/v3/objects/deals/search",
                f"Failed to search deals by {property_name}",
                json=self._eq_search(property_name, value, limit),
            )
            if not isinstance(body, dict) or not isinstance(body.get("results"), list):
                return []
            found = [_as_str(row.get("id")) for row in body["results"] if isinstance(row, dict)]
            return [item for item in found if item]

    def create_deal(self, properties: dict[str, str]) -> str:
        with tracer.start_as_current_span("crm.create_deal") as span:
            body = self._request("POST", "/crm/v3/objects/deals", "Failed to create deal", json={"properties": properties})
            deal_id = _as_str(body.get("id")) if isinstance(body, dict) else None
            if not deal_id:
                raise UpstreamError(FailureKind.VALIDATION, "Create deal response missing id")
            span.set_attribute("deal_id", deal_id)
            return deal_id

    def update_deal_amount(self, deal_id: str, amount: Decimal) -> None:
        with tracer.start_as_current_span("crm.update_deal_amount") as span:
            span.set_attribute("deal_id", deal_id)
            self._request(
                "PATCH",
                f"/crm/v3/objects/deals/{quote(deal_id, safe='')}",
                f"Failed to update amount of deal {deal_id}",
                json={"properties": {"amount": str(amount)}},
            )

    def search_line_item_by_fingerprint(self, property_name: str, fingerprint: str) -> str | None:
        with tracer.start_as_current_span("crm.search_line_item") as span:
            span.set_attribute("fingerprint", fingerprint)
            body = self._request(
                "POST",
                "/crm/v3/objects/line_items/search",
                "Line item search failed",
                json=self._eq_search(property_name, fingerprint, 1),
            )
            return _first_id(body)

    def create_line_item(self, properties: dict[str, str]) -> str:
        with tracer.start_as_current_span("crm.create_line_item") as span:
            body = self._request(
                "POST",
                "/crm/v3/objects/line_items",
                "Line item create failed",
                json={"properties": properties},
            )
            line_item_id = _as_str(body.get("id")) if isinstance(body, dict) else None
            if not line_item_id:
                raise UpstreamError(FailureKind.VALIDATION, "Line item create response missing id")
            span.set_attribute("line_item_id", line_item_id)
            return line_item_id

    def associate_line_item(self, deal_id: str, line_item_id: str) -> None:
        with tracer.start_as_current_span("crm.associate_line_item") as span:
            span.set_attribute("deal_id", deal_id)
            span.set_attribute("line_item_id", line_item_id)
            path = (
                f"/crm/v4/objects/deals/{quote(deal_id, safe='')}"
                f"/associations/default/line_items/{quote(line_item_id, safe='')}"
            )
            response = self._send("PUT", path)
            if response.is_success or response.status_code == 409:
                return
            raise UpstreamError.from_status(
                response.status_code,
                f"Association failed: {self._message(response)}",
            )

    @staticmethod
    def _eq_search(property_name: str, value: str, limit: int) -> dict[str, Any]:
        return {
            "filterGroups": [{"filters": [{"propertyName": property_name, "operator": "EQ", "value": value}]}],
            "properties": [property_name],
            "limit": limit,
        }

    def _request(self, method: str, path: str, failure_prefix: str, **kwargs: Any) -> Any:
        response = self._send(method, path, **kwargs)
        if response.is_error:
            raise UpstreamError.from_status(response.status_code, f"{failure_prefix}: {self._message(response)}")
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as exc:
            raise UpstreamError(
                FailureKind.VALIDATION,
                f"{failure_prefix}: unparseable response body",
                response.status_code,
            ) from exc

    def _send(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            return self._client.request(method, path, **kwargs)
        except httpx.HTTPError as exc:
            logger.warning("crm.request_failed", extra={"method": method, "path": path, "error": str(exc)})
            raise UpstreamError(FailureKind.TRANSPORT, f"{method} {path} failed: {exc}") from exc

    @staticmethod
    def _message(response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            body = None
        if isinstance(body, dict):
            message = _as_str(body.get("message"))
            if message:
                return message
        return response.text or f"HTTP {response.status_code}"


class InMemoryCrmClient:
    """CRM backed by dictionaries, for local runs and tests.

    ``fail(operation, error)`` queues an error for the next call of that operation.
    """

    def __init__(self) -> None:
        self.deals: dict[str, dict[str, Any]] = {}
        self.companies: dict[str, dict[str, str]] = {}
        self.deal_companies: dict[str, list[str]] = {}
        self.line_items: dict[str, dict[str, str]] = {}
        self.associations: set[tuple[str, str]] = set()
        self.calls: list[str] = []
        self._failures: dict[str, list[UpstreamError]] = {}
        self._ids = itertools.count(1000)

    def add_deal(self, deal_id: str, properties: dict[str, Any] | None = None, company_id: str | None = None) -> None:
        self.deals[deal_id] = {"id": deal_id, "properties": dict(properties or {})}
        if company_id is not None:
            self.deal_companies.setdefault(deal_id, []).append(company_id)

    def add_company(self, company_id: str, properties: dict[str, str]) -> None:
        self.companies[company_id] = dict(properties)

    def fail(self, operation: str, error: UpstreamError, times: int = 1) -> None:
        self._failures.setdefault(operation, []).extend([error] * times)

    def created_deals(self) -> list[dict[str, Any]]:
        return [deal for deal in self.deals.values() if deal.get("created")]

    def get_deal(self, deal_id: str, properties: Sequence[str]) -> dict[str, Any]:
        self._call("get_deal")
        deal = self.deals.get(deal_id)
        if deal is None:
            raise UpstreamError(FailureKind.NOT_FOUND, f"Failed to fetch deal {deal_id}: resource not found", 404)
        selected = {name: deal["properties"].get(name) for name in properties if name in deal["properties"]}
        return {"id": deal_id, "properties": selected}

    def get_associated_company_id(self, deal_id: str) -> str | None:
        self._call("get_associated_company_id")
        companies = self.deal_companies.get(deal_id) or []
        return companies[0] if companies else None

    def get_company_property(self, company_id: str, property_name: str) -> str | None:
        self._call("get_company_property")
        company = self.companies.get(company_id)
        if company is None:
            raise UpstreamError(FailureKind.NOT_FOUND, f"Failed to fetch company {company_id}: resource not found", 404)
        return _as_str(company.get(property_name))

    def search_deal_ids(self, property_name: str, value: str, limit: int = 10) -> list[str]:
        self._call("search_deal_ids")
        matches = [deal_id for deal_id, deal in self.deals.items() if deal["properties"].get(property_name) == value]
        return matches[:limit]

    def create_deal(self, properties: dict[str, str]) -> str:
        self._call("create_deal")
        deal_id = str(next(self._ids))
        self.deals[deal_id] = {"id": deal_id, "properties": dict(properties), "created": True}
        return deal_id

    def update_deal_amount(self, deal_id: str, amount: Decimal) -> None:
        self._call("update_deal_amount")
        deal = self.deals.get(deal_id)
        if deal is None:
            raise UpstreamError(FailureKind.NOT_FOUND, f"Failed to update amount of deal {deal_id}", 404)
        deal["properties"]["amount"] = str(amount)

    def search_line_item_by_fingerprint(self, property_name: str, fingerprint: str) -> str | None:
        self._call("search_line_item_by_fingerprint")
        for line_item_id, properties in self.line_items.items():
            if properties.get(property_name) == fingerprint:
                return line_item_id
        return None

    def create_line_item(self, properties: dict[str, str]) -> str:
        self._call("create_line_item")
        line_item_id = str(next(self._ids))
        self.line_items[line_item_id] = dict(properties)
        return line_item_id

    def associate_line_item(self, deal_id: str, line_item_id: str) -> None:
        self._call("associate_line_item")
        self.associations.add((deal_id, line_item_id))

    def _call(self, operation: str) -> None:
        self.calls.append(operation)
        queued = self._failures.get(operation)
        if queued:
            raise queued.pop(0)
