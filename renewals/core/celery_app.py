import logging
import uuid
from collections.abc import Callable
from typing import Any

from celery import Celery
from celery.schedules import crontab

from renewals.clients import build_billing_client, build_crm_client
from renewals.context import reset_correlation_id, set_correlation_id
from renewals.core.config import get_settings
from renewals.core.database import SessionLocal
from renewals.ledger.ingest import ingest_subscriptions
from renewals.ledger.orchestrator import CreateRunOptions, RenewalCreateRunner, SnapshotRunner
from renewals.ledger.planner import plan_renewals
from renewals.logging import configure_logging


configure_logging()
logger = logging.getLogger("renewals.tasks")

settings = get_settings()

celery_app = Celery("renewals", broker=settings.redis_url, backend=settings.redis_url)
celery_app.conf.timezone = "UTC"
celery_app.conf.beat_schedule = {
    "renewals-ingest": {"task": "renewals.ingest", "schedule": crontab(minute=0, hour=2)},
    "renewals-plan": {"task": "renewals.plan", "schedule": crontab(minute=30, hour=2)},
    "renewals-snapshot": {"task": "renewals.snapshot", "schedule": crontab(minute=0, hour="*/2")},
    "renewals-create": {"task": "renewals.create", "schedule": crontab(minute=30, hour="*/2")},
}


def _with_session(function_name: str, work: Callable[[Any], dict[str, Any]]) -> dict[str, Any]:
    token = set_correlation_id(f"{function_name}-{uuid.uuid4()}")
    session = SessionLocal()
    try:
        return work(session)
    finally:
        session.close()
        reset_correlation_id(token)


def _closing(client: Any) -> None:
    close = getattr(client, "close", None)
    if callable(close):
        close()


@celery_app.task(name="renewals.ingest")
def ingest_task() -> dict[str, Any]:
    billing = build_billing_client()
    try:
        return _with_session("ingest", lambda session: ingest_subscriptions(session, billing, "cron").to_dict())
    finally:
        _closing(billing)


@celery_app.task(name="renewals.plan")
def plan_task() -> dict[str, Any]:
    return _with_session("plan", lambda session: plan_renewals(session, trigger_source="cron").to_dict())


@celery_app.task(name="renewals.snapshot")
def snapshot_task(source_deal_id: str | None = None) -> dict[str, Any]:
    billing = build_billing_client()
    runner = SnapshotRunner(get_settings())
    try:
        return _with_session("snapshot", lambda session: runner.run(session, billing, source_deal_id, "cron").to_dict())
    finally:
        _closing(billing)


@celery_app.task(name="renewals.create")
def create_task(limit: int | None = None, create_line_items: bool = True) -> dict[str, Any]:
    current = get_settings()
    crm = build_crm_client()
    runner = RenewalCreateRunner(current)
    options = CreateRunOptions(
        limit=min(limit or current.create_default_limit, current.create_max_limit),
        create_line_items=create_line_items,
        max_batches=current.create_max_batches,
    )
    try:
        return _with_session("create", lambda session: runner.run(session, crm, options, "cron").to_dict())
    finally:
        _closing(crm)
