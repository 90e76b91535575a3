from __future__ import annotations

import logging
import uuid
from collections.abc import Generator

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from renewals.context import reset_correlation_id, set_correlation_id
from renewals.core.database import Base
from renewals.ledger.models import AutomationEvent, AutomationRun
from renewals.services import ops_log


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


def _broken_commit() -> None:
    raise OperationalError("COMMIT", {}, Exception("database is locked"))


def test_run_lifecycle_is_recorded(db_session: Session) -> None:
    token = set_correlation_id("corr-ops-1")
    try:
        run_id = ops_log.start_run(
            db_session,
            "renewal-create",
            "cron",
            run_mode="test",
            source_deal_id="deal-1",
            metadata={"limit": 5},
        )
    finally:
        reset_correlation_id(token)
    assert run_id is not None

    ops_log.insert_events(
        db_session,
        [
            ops_log.AutomationEventInput(
                "renewal-create",
                "entry_created",
                run_id=run_id,
                subscription_id="sub-1",
                term_end_date="2025-06-30",
                status="created",
                detail={"created_deal_id": "d-1"},
            ),
            ops_log.AutomationEventInput("renewal-create", "entry_error", run_id=run_id, term_end_date="not-a-date"),
        ],
    )
    ops_log.finish_run(
        db_session,
        run_id,
        "partial",
        200,
        processed_count=2,
        created_count=1,
        error_count=-3,
        error_message="x" * 3000,
        metadata={"batches_processed": 1},
    )

    run = db_session.get(AutomationRun, run_id)
    assert run.status == "partial"
    assert run.http_status == 200
    assert run.correlation_id == "corr-ops-1"
    assert run.run_mode == "test"
    assert run.error_count == 0
    assert len(run.error_message) == ops_log.MAX_ERROR_MESSAGE_LENGTH
    assert run.run_metadata == {"limit": 5, "batches_processed": 1}
    assert run.finished_at is not None

    events = {event.event_type: event for event in ops_log.list_events(db_session, run_id)}
    assert set(events) == {"entry_created", "entry_error"}
    assert events["entry_created"].term_end_date.isoformat() == "2025-06-30"
    assert events["entry_error"].term_end_date is None


def test_unknown_trigger_source_is_recorded_as_manual(db_session: Session) -> None:
    run_id = ops_log.start_run(db_session, "renewal-plan", "scheduler")

    assert db_session.get(AutomationRun, run_id).trigger_source == "manual"


def test_list_runs_filters_by_function(db_session: Session) -> None:
    ops_log.start_run(db_session, "renewal-plan", "cron")
    ops_log.start_run(db_session, "renewal-create", "cron")
    ops_log.start_run(db_session, "renewal-create", "manual")

    runs = ops_log.list_runs(db_session, function_name="renewal-create", limit=10)

    assert len(runs) == 2
    assert {run.function_name for run in runs} == {"renewal-create"}
    assert len(ops_log.list_runs(db_session, limit=1)) == 1


def test_failed_writes_never_raise(
    db_session: Session,
    monkeypatch: pytest.MonkeyPatch,
    caplog: pytest.LogCaptureFixture,
) -> None:
    caplog.set_level(logging.ERROR)
    monkeypatch.setattr(db_session, "commit", _broken_commit)

    run_id = ops_log.start_run(db_session, "renewal-snapshot", "cron")
    ops_log.insert_events(db_session, [ops_log.AutomationEventInput("renewal-snapshot", "snapshot_summary")])

    assert run_id is None
    monkeypatch.undo()
    assert db_session.scalars(select(AutomationRun)).all() == []
    assert db_session.scalars(select(AutomationEvent)).all() == []
    failures = [record for record in caplog.records if record.getMessage() == "ops_log.write_failed"]
    assert [getattr(record, "reason", None) for record in failures] == ["start_run", "insert_events"]


def test_finish_without_run_id_is_a_no_op(db_session: Session) -> None:
    ops_log.finish_run(db_session, None, "success", 200)
    ops_log.finish_run(db_session, uuid.uuid4(), "success", 200)

    assert db_session.scalars(select(AutomationRun)).all() == []
