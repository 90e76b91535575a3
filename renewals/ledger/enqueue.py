from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any

from fastapi import HTTPException
from opentelemetry import trace
from sqlalchemy import select
from sqlalchemy.orm import Session

from renewals.clients.billing import BillingClient
from renewals.clients.crm import CrmClient
from renewals.core.config import Settings, get_settings
from renewals.errors import FailureKind, UpstreamError
from renewals.ledger.line_items import as_non_empty_string
from renewals.ledger.models import BillingSubscription, RenewalLedgerEntry, utcnow
from renewals.ledger.orchestrator import CreateRunOptions, RenewalCreateRunner, SnapshotRunner
from renewals.ledger.state import LedgerKey, LedgerStateMachine, PlanOutcome, ledger_state_machine


logger = logging.getLogger("renewals.ledger.enqueue")
tracer = trace.get_tracer("renewals.ledger.enqueue")

DEAL_ID_FIELDS = (
    "source_deal_id",
    "source_hubspot_deal_id",
    "sourceDealId",
    "deal_id",
    "dealId",
    "hs_object_id",
    "objectId",
)
ANCHOR_DATE_PROPERTIES = (
    "younium_order_effective_start_date",
    "contract_start_date__c",
    "contract_end_date__c",
    "closedate",
)
SOURCE_DEAL_PROPERTIES = ("dealname", *ANCHOR_DATE_PROPERTIES)
ORIGINAL_DEAL_PROPERTY = "original_deal_id"

ALREADY_CREATED_MESSAGE = "Renewal already exists. No duplicate was created."
PLAN_MESSAGES = {
    PlanOutcome.QUEUED_NEW: "Renewal queued successfully.",
    PlanOutcome.ALREADY_QUEUED: "Renewal was already queued. No duplicate was created.",
    PlanOutcome.REQUEUED_FROM_ERROR: "Renewal was previously in error and has been re-queued.",
    PlanOutcome.ALREADY_CREATED: ALREADY_CREATED_MESSAGE,
}

_DIGITS_RE = re.compile(r"^\d+$")


def as_deal_id(value: Any) -> str | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int) and value >= 0:
        return str(value)
    if isinstance(value, float) and value.is_integer() and value >= 0:
        return str(int(value))
    return as_non_empty_string(value)


def parse_deal_id(payload: Any) -> str | None:
    if not isinstance(payload, dict):
        return None
    for name in DEAL_ID_FIELDS:
        deal_id = as_deal_id(payload.get(name))
        if deal_id:
            return deal_id
    return None


def parse_anchor_value(value: Any) -> datetime | None:
    """Accept epoch-millisecond strings and ISO dates or datetimes."""
    raw = as_deal_id(value) if isinstance(value, int) else as_non_empty_string(value)
    if raw is None:
        return None
    if _DIGITS_RE.match(raw):
        try:
            return datetime.fromtimestamp(int(raw) / 1000, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    try:
        parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def pick_anchor_date(properties: dict[str, Any]) -> date | None:
    for name in ANCHOR_DATE_PROPERTIES:
        parsed = parse_anchor_value(properties.get(name))
        if parsed is not None:
            return parsed.astimezone(timezone.utc).date()
    return None


def choose_subscription(rows: list[BillingSubscription], anchor: date | None) -> BillingSubscription | None:
    """Pick the subscription a source deal renews.

    Prefers the latest-ending subscription whose term contains the anchor,
    then the one ending closest to the anchor. Without an anchor the
    latest-ending subscription wins.
    """
    valid = [row for row in rows if row.subscription_id and row.effective_end_date is not None]
    if not valid:
        return None
    latest_first = sorted(valid, key=lambda row: row.effective_end_date, reverse=True)
    if anchor is None:
        return latest_first[0]

    containing = [
        row
        for row in latest_first
        if row.effective_start_date is not None and row.effective_start_date <= anchor <= row.effective_end_date
    ]
    if containing:
        return containing[0]
    return min(valid, key=lambda row: abs((row.effective_end_date - anchor).days))


@dataclass(slots=True)
class EnqueueResult:
    result: str
    message: str
    source_deal_id: str | None = None
    company_id: str | None = None
    customer_id: str | None = None
    subscription_id: str | None = None
    term_end_date: str | None = None
    existing_deal_id: str | None = None
    immediate_run: dict[str, Any] | None = None
    timestamp: str = field(default_factory=lambda: utcnow().isoformat())

    def to_dict(self) -> dict[str, Any]:
        data = {
            "result": self.result,
            "message": self.message,
            "source_deal_id": self.source_deal_id,
            "company_id": self.company_id,
            "customer_id": self.customer_id,
            "subscription_id": self.subscription_id,
            "term_end_date": self.term_end_date,
            "existing_deal_id": self.existing_deal_id,
            "immediate_run": self.immediate_run,
            "timestamp": self.timestamp,
        }
        return {key: value for key, value in data.items() if value is not None}


@dataclass(slots=True)
class RenewalEnqueuer:
    """Queues the renewal of one CRM deal on demand and tries to create it right away."""

    settings: Settings = field(default_factory=get_settings)
    state: LedgerStateMachine = field(default_factory=lambda: ledger_state_machine)

    def enqueue(
        self,
        session: Session,
        crm: CrmClient,
        billing: BillingClient,
        payload: Any,
        trigger_source: str = "webhook",
    ) -> EnqueueResult:
        source_deal_id = parse_deal_id(payload)
        if source_deal_id is None:
            return EnqueueResult("invalid_request", "Missing source_deal_id in request body.")

        with tracer.start_as_current_span("renewal.enqueue") as span:
            span.set_attribute("source_deal_id", source_deal_id)
            result = self._resolve_and_queue(session, crm, source_deal_id)
            span.set_attribute("result", result.result)
            logger.info("enqueue.resolved", extra={"source_deal_id": source_deal_id, "status": result.result})
            if result.result not in {
                PlanOutcome.QUEUED_NEW.value,
                PlanOutcome.ALREADY_QUEUED.value,
                PlanOutcome.REQUEUED_FROM_ERROR.value,
            }:
                return result

            self._run_immediately(session, crm, billing, result, trigger_source)
            return result

    def _resolve_and_queue(self, session: Session, crm: CrmClient, source_deal_id: str) -> EnqueueResult:
        try:
            source_deal = crm.get_deal(source_deal_id, SOURCE_DEAL_PROPERTIES)
        except UpstreamError as exc:
            if exc.kind is FailureKind.NOT_FOUND:
                return EnqueueResult("not_found", "Source deal not found.", source_deal_id=source_deal_id)
            raise

        company_id = crm.get_associated_company_id(source_deal_id)
        if not company_id:
            return EnqueueResult(
                "not_found",
                "No associated company found on source deal.",
                source_deal_id=source_deal_id,
            )

        custid_property = self.settings.hubspot_company_custid_property
        customer_id = crm.get_company_property(company_id, custid_property)
        if not customer_id:
            return EnqueueResult(
                "not_found",
                f"Company is missing {custid_property}.",
                source_deal_id=source_deal_id,
                company_id=company_id,
            )

        anchor = pick_anchor_date(source_deal.get("properties") or {})
        subscriptions = list(
            session.scalars(select(BillingSubscription).where(BillingSubscription.account_number == customer_id))
        )
        selected = choose_subscription(subscriptions, anchor)
        if selected is None:
            return EnqueueResult(
                "not_found",
                "No matching billing subscription found for this company account.",
                source_deal_id=source_deal_id,
                company_id=company_id,
                customer_id=customer_id,
            )

        key = LedgerKey(selected.subscription_id, selected.effective_end_date)
        base = {
            "source_deal_id": source_deal_id,
            "company_id": company_id,
            "customer_id": customer_id,
            "subscription_id": key.subscription_id,
            "term_end_date": key.term_end_date.isoformat(),
        }

        existing = self.state.get(session, key)
        if existing is not None and existing.created_deal_id:
            return EnqueueResult("already_created", ALREADY_CREATED_MESSAGE, existing_deal_id=existing.created_deal_id, **base)

        created_by_source = session.scalar(
            select(RenewalLedgerEntry)
            .where(
                RenewalLedgerEntry.source_deal_id == source_deal_id,
                RenewalLedgerEntry.created_deal_id.is_not(None),
            )
            .order_by(RenewalLedgerEntry.updated_at.desc())
            .limit(1)
        )
        if created_by_source is not None:
            return EnqueueResult(
                "already_created",
                ALREADY_CREATED_MESSAGE,
                existing_deal_id=created_by_source.created_deal_id,
                **{
                    **base,
                    "subscription_id": created_by_source.subscription_id,
                    "term_end_date": created_by_source.term_end_date.isoformat(),
                },
            )

        existing_deal_id = next(
            (found for found in crm.search_deal_ids(ORIGINAL_DEAL_PROPERTY, source_deal_id) if found != source_deal_id),
            None,
        )
        if existing_deal_id:
            self.state.record_existing_deal(
                session,
                key,
                existing_deal_id,
                source_deal_id,
                {"source_deal_id": source_deal_id, "discovered_at": utcnow().isoformat()},
            )
            return EnqueueResult("already_created", ALREADY_CREATED_MESSAGE, existing_deal_id=existing_deal_id, **base)

        outcome = self.state.upsert_planned(
            session,
            key,
            {
                "source_deal_id": source_deal_id,
                "company_id": company_id,
                "customer_id": customer_id,
                "enqueued_at": utcnow().isoformat(),
            },
            source_deal_id=source_deal_id,
            created_source="manual",
        )
        return EnqueueResult(outcome.value, PLAN_MESSAGES[outcome], **base)

    def _run_immediately(
        self,
        session: Session,
        crm: CrmClient,
        billing: BillingClient,
        result: EnqueueResult,
        trigger_source: str,
    ) -> None:
        source_deal_id = result.source_deal_id
        snapshot = SnapshotRunner(self.settings).run(session, billing, source_deal_id, trigger_source)

        create_status = 200
        create_response: dict[str, Any]
        try:
            summary = RenewalCreateRunner(self.settings, self.state).run(
                session,
                crm,
                CreateRunOptions(
                    limit=self.settings.create_default_limit,
                    create_line_items=True,
                    source_deal_id=source_deal_id,
                ),
                trigger_source,
            )
            create_response = summary.to_dict()
        except HTTPException as exc:
            create_status = exc.status_code
            create_response = {"error": exc.detail}

        created = int(create_response.get("created", 0) or 0)
        processed = int(create_response.get("processed", 0) or 0)
        errors = int(create_response.get("errors", 0) or 0)
        created_deal_id = next(
            (item.get("created_deal_id") for item in create_response.get("results", []) if item.get("created_deal_id")),
            None,
        )

        if create_status == 200 and created > 0:
            result.message = "Renewal queued and created immediately."
        elif create_status == 200 and processed == 0:
            result.message = (
                "Renewal queued, but no ready row was found for immediate creation. "
                "It will run in scheduled automation."
            )
        elif create_status != 200 or errors > 0:
            result.message = "Renewal queued, but immediate creation hit an error. It will retry in scheduled automation."

        result.immediate_run = {
            "snapshot_status": 200,
            "snapshot_response": snapshot.to_dict(),
            "create_status": create_status,
            "create_response": create_response,
            "created_count": created,
            "processed_count": processed,
            "errors_count": errors,
            "created_deal_id": created_deal_id,
        }
