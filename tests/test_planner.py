from __future__ import annotations

from collections.abc import Generator
from datetime import date

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from renewals.core.config import Settings
from renewals.core.database import Base
from renewals.ledger.models import AutomationEvent, AutomationRun, BillingSubscription, RenewalLedgerEntry
from renewals.ledger.planner import PLAN_FUNCTION, find_candidates, plan_renewals
from renewals.ledger.state import LedgerKey


TODAY = date(2025, 6, 1)


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


def _subscription(
    session: Session,
    subscription_id: str,
    end: date | None,
    status: str = "Active",
    cancellation_date: date | None = None,
) -> None:
    session.add(
        BillingSubscription(
            subscription_id=subscription_id,
            account_number="CUST-1",
            status=status,
            effective_end_date=end,
            cancellation_date=cancellation_date,
            raw_json={"id": subscription_id},
        )
    )
    session.commit()


def test_find_candidates_applies_the_horizon_and_filters(db_session: Session) -> None:
    _subscription(db_session, "sub-late", date(2025, 8, 30))
    _subscription(db_session, "sub-early", date(2025, 6, 1))
    _subscription(db_session, "sub-outside", date(2025, 8, 31))
    _subscription(db_session, "sub-past", date(2025, 5, 31))
    _subscription(db_session, "sub-inactive", date(2025, 7, 1), status="Expired")
    _subscription(db_session, "sub-cancelled", date(2025, 7, 1), cancellation_date=date(2025, 5, 1))
    _subscription(db_session, "sub-open", None)

    candidates = find_candidates(db_session, TODAY, 90)

    assert candidates == [LedgerKey("sub-early", date(2025, 6, 1)), LedgerKey("sub-late", date(2025, 8, 30))]


def test_plan_inserts_planned_rows_once(db_session: Session) -> None:
    _subscription(db_session, "sub-1", date(2025, 6, 30))
    _subscription(db_session, "sub-2", date(2025, 7, 31))
    settings = Settings(planning_horizon_days=90)

    summary = plan_renewals(db_session, today=TODAY, settings=settings)

    assert summary.candidates_found == 2
    assert summary.planned_inserted == 2
    entries = db_session.scalars(select(RenewalLedgerEntry).order_by(RenewalLedgerEntry.subscription_id)).all()
    assert [(entry.subscription_id, entry.status, entry.created_source) for entry in entries] == [
        ("sub-1", "planned", "auto"),
        ("sub-2", "planned", "auto"),
    ]
    assert entries[0].entry_metadata["planning_horizon_days"] == 90

    second = plan_renewals(db_session, today=TODAY, settings=settings)
    assert second.candidates_found == 0
    assert second.planned_inserted == 0


def test_plan_records_run_and_summary_events(db_session: Session) -> None:
    _subscription(db_session, "sub-1", date(2025, 6, 30))
    settings = Settings(planning_horizon_days=90)

    plan_renewals(db_session, today=TODAY, settings=settings, trigger_source="manual")
    plan_renewals(db_session, today=TODAY, settings=settings, trigger_source="manual")

    runs = db_session.scalars(select(AutomationRun).where(AutomationRun.function_name == PLAN_FUNCTION)).all()
    assert [run.status for run in runs] == ["success", "success"]
    event_types = sorted(event.event_type for event in db_session.scalars(select(AutomationEvent)))
    assert event_types == ["no_candidates", "planned_upsert_summary"]


def test_plan_leaves_existing_rows_alone(db_session: Session) -> None:
    _subscription(db_session, "sub-1", date(2025, 6, 30))
    db_session.add(
        RenewalLedgerEntry(
            subscription_id="sub-1",
            term_end_date=date(2025, 6, 30),
            status="created",
            created_deal_id="deal-9",
            entry_metadata={},
        )
    )
    db_session.commit()

    summary = plan_renewals(db_session, today=TODAY, settings=Settings(planning_horizon_days=90))

    assert summary.candidates_found == 0
    entry = db_session.scalars(select(RenewalLedgerEntry)).one()
    assert entry.status == "created"
    assert entry.created_deal_id == "deal-9"
