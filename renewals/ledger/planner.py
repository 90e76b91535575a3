from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Any

from opentelemetry import trace
from sqlalchemy import and_, exists, select
from sqlalchemy.orm import Session

from renewals.core.config import Settings, get_settings
from renewals.ledger.models import BillingSubscription, RenewalLedgerEntry, utcnow
from renewals.ledger.state import LedgerKey, LedgerStateMachine, PlanOutcome, ledger_state_machine
from renewals.metrics import observe_run
from renewals.otel import tag_run_span
from renewals.services import ops_log


logger = logging.getLogger("renewals.ledger.planner")
tracer = trace.get_tracer("renewals.ledger.planner")

PLAN_FUNCTION = "renewal-plan"


@dataclass(slots=True)
class PlanSummary:
    candidates_found: int = 0
    planned_inserted: int = 0
    timestamp: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "candidates_found": self.candidates_found,
            "planned_inserted": self.planned_inserted,
            "timestamp": self.timestamp,
        }


def find_candidates(session: Session, today: date, horizon_days: int) -> list[LedgerKey]:
    """Active, non-cancelled subscriptions ending within the horizon that have no ledger row yet."""
    has_ledger_row = exists().where(
        and_(
            RenewalLedgerEntry.subscription_id == BillingSubscription.subscription_id,
            RenewalLedgerEntry.term_end_date == BillingSubscription.effective_end_date,
        )
    )
    rows = session.execute(
        select(BillingSubscription.subscription_id, BillingSubscription.effective_end_date)
        .where(
            BillingSubscription.status == "Active",
            BillingSubscription.cancellation_date.is_(None),
            BillingSubscription.effective_end_date.is_not(None),
            BillingSubscription.effective_end_date >= today,
            BillingSubscription.effective_end_date <= today + timedelta(days=horizon_days),
            ~has_ledger_row,
        )
        .order_by(BillingSubscription.effective_end_date, BillingSubscription.subscription_id)
    )
    candidates: dict[LedgerKey, None] = {}
    for subscription_id, term_end_date in rows:
        if subscription_id and term_end_date is not None:
            candidates[LedgerKey(subscription_id, term_end_date)] = None
    return list(candidates)


def plan_renewals(
    session: Session,
    *,
    today: date | None = None,
    trigger_source: str = "cron",
    settings: Settings | None = None,
    state: LedgerStateMachine = ledger_state_machine,
) -> PlanSummary:
    settings = settings or get_settings()
    today = today or utcnow().date()
    summary = PlanSummary()
    run_id = ops_log.start_run(session, PLAN_FUNCTION, trigger_source)
    started = time.perf_counter()
    logger.info("run.started", extra={"function_name": PLAN_FUNCTION, "trigger_source": trigger_source})

    try:
        with tracer.start_as_current_span("renewal.plan.run") as span:
            tag_run_span(span, PLAN_FUNCTION, trigger_source, run_id)
            candidates = find_candidates(session, today, settings.planning_horizon_days)
            summary.candidates_found = len(candidates)
            for key in candidates:
                outcome = state.upsert_planned(
                    session,
                    key,
                    {"planned_at": utcnow().isoformat(), "planning_horizon_days": settings.planning_horizon_days},
                    created_source="auto",
                )
                if outcome is PlanOutcome.QUEUED_NEW:
                    summary.planned_inserted += 1
            span.set_attribute("candidates_found", summary.candidates_found)
            span.set_attribute("planned_inserted", summary.planned_inserted)
    except Exception as exc:
        session.rollback()
        detail = {"error": str(exc), **summary.to_dict()}
        ops_log.insert_events(
            session,
            [ops_log.AutomationEventInput(PLAN_FUNCTION, "run_failed", run_id=run_id, status="error", detail=detail)],
        )
        ops_log.finish_run(
            session,
            run_id,
            "error",
            500,
            processed_count=summary.candidates_found,
            created_count=summary.planned_inserted,
            error_count=1,
            error_message=str(exc),
        )
        observe_run(PLAN_FUNCTION, "error", time.perf_counter() - started)
        logger.exception("run.failed", extra={"function_name": PLAN_FUNCTION, "error": str(exc)})
        raise

    summary.timestamp = utcnow().isoformat()
    event_type = "planned_upsert_summary" if summary.candidates_found else "no_candidates"
    ops_log.insert_events(
        session,
        [
            ops_log.AutomationEventInput(
                PLAN_FUNCTION,
                event_type,
                run_id=run_id,
                status="success",
                detail={"candidates_found": summary.candidates_found, "planned_inserted": summary.planned_inserted},
            )
        ],
    )
    ops_log.finish_run(
        session,
        run_id,
        "success",
        200,
        processed_count=summary.candidates_found,
        created_count=summary.planned_inserted,
    )
    observe_run(PLAN_FUNCTION, "success", time.perf_counter() - started)
    logger.info(
        "run.finished",
        extra={"function_name": PLAN_FUNCTION, "status": "success", "processed": summary.candidates_found},
    )
    return summary
