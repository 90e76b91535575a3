from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass
from datetime import date
from typing import Any

from opentelemetry import trace
from sqlalchemy import select
from sqlalchemy.orm import Session

from renewals.clients.billing import BillingClient
from renewals.ledger.line_items import ChargeRejected, as_non_empty_string, parse_date_like
from renewals.ledger.models import BillingSubscription, utcnow
from renewals.metrics import observe_run
from renewals.otel import tag_run_span
from renewals.services import ops_log


logger = logging.getLogger("renewals.ledger.ingest")
tracer = trace.get_tracer("renewals.ledger.ingest")

INGEST_FUNCTION = "billing-ingest"


@dataclass(slots=True)
class IngestSummary:
    pages: int = 0
    fetched_total: int = 0
    active_total: int = 0
    upserted_total: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def is_active_subscription(subscription: dict[str, Any]) -> bool:
    subscription_id = subscription.get("id")
    return subscription.get("status") == "Active" and isinstance(subscription_id, str) and bool(subscription_id)


def resolve_account_number(subscription: dict[str, Any]) -> str | None:
    direct = as_non_empty_string(subscription.get("accountNumber"))
    if direct:
        return direct
    account = subscription.get("account")
    if isinstance(account, list):
        for item in account:
            if isinstance(item, dict):
                nested = as_non_empty_string(item.get("accountNumber"))
                if nested:
                    return nested
        return None
    if isinstance(account, dict):
        return as_non_empty_string(account.get("accountNumber"))
    return None


def _optional_date(value: Any) -> date | None:
    raw = as_non_empty_string(value)
    if raw is None:
        return None
    try:
        return parse_date_like(raw, "subscription date")
    except ChargeRejected:
        return None


def upsert_subscriptions(session: Session, subscriptions: list[dict[str, Any]]) -> int:
    ids = [subscription["id"] for subscription in subscriptions]
    existing = {
        row.subscription_id: row
        for row in session.scalars(select(BillingSubscription).where(BillingSubscription.subscription_id.in_(ids)))
    }
    now = utcnow()
    for subscription in subscriptions:
        row = existing.get(subscription["id"])
        if row is None:
            row = BillingSubscription(subscription_id=subscription["id"])
            session.add(row)
            existing[subscription["id"]] = row
        row.account_number = resolve_account_number(subscription)
        row.status = subscription.get("status")
        row.effective_start_date = _optional_date(subscription.get("effectiveStartDate"))
        row.effective_end_date = _optional_date(subscription.get("effectiveEndDate"))
        row.cancellation_date = _optional_date(subscription.get("cancellationDate"))
        row.raw_json = subscription
        row.updated_at = now
    session.commit()
    return len(subscriptions)


def ingest_subscriptions(session: Session, billing: BillingClient, trigger_source: str = "cron") -> IngestSummary:
    """Page through billing subscriptions and upsert the active ones."""
    summary = IngestSummary()
    run_id = ops_log.start_run(session, INGEST_FUNCTION, trigger_source)
    started = time.perf_counter()
    logger.info("run.started", extra={"function_name": INGEST_FUNCTION, "trigger_source": trigger_source})
    try:
        with tracer.start_as_current_span("renewal.ingest.run") as span:
            tag_run_span(span, INGEST_FUNCTION, trigger_source, run_id)
            access_token = billing.get_access_token()
            page_number = 1
            while True:
                page = billing.fetch_subscriptions_page(access_token, page_number)
                if not page:
                    break
                summary.pages += 1
                summary.fetched_total += len(page)
                active = [subscription for subscription in page if is_active_subscription(subscription)]
                summary.active_total += len(active)
                if active:
                    summary.upserted_total += upsert_subscriptions(session, active)
                page_number += 1
            span.set_attribute("upserted_total", summary.upserted_total)
    except Exception as exc:
        session.rollback()
        ops_log.finish_run(
            session,
            run_id,
            "error",
            500,
            processed_count=summary.fetched_total,
            created_count=summary.upserted_total,
            error_count=1,
            error_message=str(exc),
            metadata=summary.to_dict(),
        )
        observe_run(INGEST_FUNCTION, "error", time.perf_counter() - started)
        logger.exception("run.failed", extra={"function_name": INGEST_FUNCTION, "error": str(exc)})
        raise

    ops_log.finish_run(
        session,
        run_id,
        "success",
        200,
        processed_count=summary.fetched_total,
        created_count=summary.upserted_total,
        metadata=summary.to_dict(),
    )
    observe_run(INGEST_FUNCTION, "success", time.perf_counter() - started)
    logger.info(
        "run.finished",
        extra={"function_name": INGEST_FUNCTION, "status": "success", "processed": summary.fetched_total},
    )
    return summary
