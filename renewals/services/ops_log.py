"""Best-effort automation run log.

Every write commits on its own. A failed write is rolled back, logged and
counted; it never propagates into the run that is being recorded.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import date
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from renewals.context import get_correlation_id
from renewals.ledger.models import AutomationEvent, AutomationRun, utcnow
from renewals.metrics import observe_ops_log_failure


logger = logging.getLogger("renewals.ops_log")

TRIGGER_SOURCES = ("cron", "manual", "webhook")
MAX_ERROR_MESSAGE_LENGTH = 2000


@dataclass(slots=True)
class AutomationEventInput:
    function_name: str
    event_type: str
    run_id: uuid.UUID | None = None
    subscription_id: str | None = None
    term_end_date: date | str | None = None
    source_deal_id: str | None = None
    status: str | None = None
    detail: dict[str, Any] = field(default_factory=dict)


def _as_count(value: int | None) -> int:
    if value is None:
        return 0
    return max(0, int(value))


def _as_date(value: date | str | None) -> date | None:
    if value is None or isinstance(value, date):
        return value
    try:
        return date.fromisoformat(value)
    except ValueError:
        return None


def _write_failed(session: Session, operation: str, exc: SQLAlchemyError) -> None:
    session.rollback()
    observe_ops_log_failure(operation)
    logger.error("ops_log.write_failed", extra={"reason": operation, "error": str(exc)})


def start_run(
    session: Session,
    function_name: str,
    trigger_source: str,
    *,
    run_mode: str | None = None,
    source_deal_id: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> uuid.UUID | None:
    run = AutomationRun(
        function_name=function_name,
        trigger_source=trigger_source if trigger_source in TRIGGER_SOURCES else "manual",
        run_mode=run_mode,
        status="running",
        correlation_id=get_correlation_id(),
        source_deal_id=source_deal_id,
        run_metadata=dict(metadata or {}),
    )
    try:
        session.add(run)
        session.commit()
    except SQLAlchemyError as exc:
        _write_failed(session, "start_run", exc)
        return None
    return run.id


def finish_run(
    session: Session,
    run_id: uuid.UUID | None,
    status: str,
    http_status: int,
    *,
    processed_count: int | None = None,
    created_count: int | None = None,
    error_count: int | None = None,
    error_message: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> None:
    if run_id is None:
        return
    try:
        run = session.get(AutomationRun, run_id)
        if run is None:
            logger.warning("ops_log.run_missing", extra={"reason": str(run_id)})
            return
        run.status = status
        run.http_status = http_status
        run.processed_count = _as_count(processed_count)
        run.created_count = _as_count(created_count)
        run.error_count = _as_count(error_count)
        run.error_message = error_message[:MAX_ERROR_MESSAGE_LENGTH] if error_message else None
        run.run_metadata = {**(run.run_metadata or {}), **(metadata or {})}
        run.finished_at = utcnow()
        session.commit()
    except SQLAlchemyError as exc:
        _write_failed(session, "finish_run", exc)


def insert_events(session: Session, events: list[AutomationEventInput]) -> None:
    if not events:
        return
    try:
        session.add_all(
            [
                AutomationEvent(
                    run_id=event.run_id,
                    function_name=event.function_name,
                    event_type=event.event_type,
                    subscription_id=event.subscription_id,
                    term_end_date=_as_date(event.term_end_date),
                    source_deal_id=event.source_deal_id,
                    status=event.status,
                    detail=dict(event.detail),
                )
                for event in events
            ]
        )
        session.commit()
    except SQLAlchemyError as exc:
        _write_failed(session, "insert_events", exc)


def list_runs(session: Session, *, function_name: str | None = None, limit: int = 50) -> list[AutomationRun]:
    stmt = select(AutomationRun).order_by(AutomationRun.started_at.desc()).limit(limit)
    if function_name:
        stmt = stmt.where(AutomationRun.function_name == function_name)
    return list(session.scalars(stmt))


def list_events(session: Session, run_id: uuid.UUID) -> list[AutomationEvent]:
    return list(
        session.scalars(
            select(AutomationEvent).where(AutomationEvent.run_id == run_id).order_by(AutomationEvent.created_at)
        )
    )
