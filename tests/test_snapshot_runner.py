from __future__ import annotations

import logging
from collections.abc import Generator
from datetime import date

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from renewals.clients.billing import InMemoryBillingClient
from renewals.core.config import Settings
from renewals.core.database import Base
from renewals.errors import FailureKind, UpstreamError
from renewals.ledger.models import AutomationEvent, AutomationRun, BillingSubscription, RenewalLedgerEntry, RenewalSnapshot
from renewals.ledger.orchestrator import SnapshotRunner, resolve_order_id


TERM_END = date(2025, 6, 30)


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


@pytest.fixture()
def settings() -> Settings:
    return Settings(snapshot_batch_size=10, snapshot_max_batches=3)


def _seed(
    session: Session,
    subscription_id: str,
    raw_json: dict[str, object] | None,
    source_deal_id: str | None = None,
) -> None:
    session.add(
        RenewalLedgerEntry(
            subscription_id=subscription_id,
            term_end_date=TERM_END,
            status="planned",
            source_deal_id=source_deal_id,
            entry_metadata={},
        )
    )
    if raw_json is not None:
        session.add(
            BillingSubscription(
                subscription_id=subscription_id,
                account_number="CUST-1",
                status="Active",
                effective_end_date=TERM_END,
                raw_json=raw_json,
            )
        )
    session.commit()


def _charges(count: int) -> list[dict[str, object]]:
    return [{"chargeId": f"c-{index}", "chargeType": "Recurring"} for index in range(count)]


def test_snapshot_run_copies_all_charge_pages(db_session: Session, settings: Settings) -> None:
    _seed(db_session, "sub-1", {"id": "ord-1"})
    _seed(db_session, "sub-2", {"orderId": "ord-2"})
    billing = InMemoryBillingClient({"ord-1": _charges(3), "ord-2": _charges(1)}, page_size=2)

    summary = SnapshotRunner(settings).run(db_session, billing)

    assert summary.processed_rows == 2
    assert summary.snapshots_upserted == 2
    assert summary.errors == 0
    assert billing.token_requests == 1
    assert billing.page_requests == [("ord-1", 1), ("ord-1", 2), ("ord-1", 3), ("ord-2", 1), ("ord-2", 2)]
    snapshot = db_session.scalar(select(RenewalSnapshot).where(RenewalSnapshot.subscription_id == "sub-1"))
    assert [charge["chargeId"] for charge in snapshot.charges_json] == ["c-0", "c-1", "c-2"]

    events = db_session.scalars(select(AutomationEvent).where(AutomationEvent.run_id == summary.run_id)).all()
    assert [event.event_type for event in events] == ["snapshot_summary"]
    run = db_session.get(AutomationRun, summary.run_id)
    assert run.status == "success"
    assert run.created_count == 2


def test_snapshotted_entries_are_not_selected_again(db_session: Session, settings: Settings) -> None:
    _seed(db_session, "sub-1", {"id": "ord-1"})
    billing = InMemoryBillingClient({"ord-1": _charges(1)})

    SnapshotRunner(settings).run(db_session, billing)
    second = SnapshotRunner(settings).run(db_session, billing)

    assert second.processed_rows == 0
    assert second.batches_processed == 0


def test_snapshot_errors_never_touch_the_ledger(db_session: Session, settings: Settings) -> None:
    _seed(db_session, "sub-missing", None)
    _seed(db_session, "sub-no-order", {"accountNumber": "CUST-1"})
    _seed(db_session, "sub-down", {"id": "ord-down"})
    billing = InMemoryBillingClient()
    billing.failing_orders["ord-down"] = UpstreamError(FailureKind.TRANSPORT, "Charges request failed (503)", 503)

    summary = SnapshotRunner(settings).run(db_session, billing)

    assert summary.errors == 3
    assert {(sample.subscription_id, sample.message) for sample in summary.error_samples} == {
        ("sub-missing", "Subscription not found"),
        ("sub-no-order", "Missing raw_json.orderId"),
        ("sub-down", "Charges request failed (503)"),
    }
    statuses = db_session.scalars(select(RenewalLedgerEntry.status)).all()
    assert statuses == ["planned", "planned", "planned"]
    assert db_session.scalars(select(RenewalSnapshot)).all() == []
    assert db_session.get(AutomationRun, summary.run_id).status == "partial"


def test_source_filtered_snapshot_runs_one_batch(db_session: Session, settings: Settings) -> None:
    _seed(db_session, "sub-1", {"id": "ord-1"}, source_deal_id="deal-1")
    _seed(db_session, "sub-2", {"id": "ord-2"}, source_deal_id="deal-2")
    billing = InMemoryBillingClient({"ord-1": _charges(1), "ord-2": _charges(1)})

    summary = SnapshotRunner(settings).run(db_session, billing, source_deal_id="deal-1", trigger_source="webhook")

    assert summary.snapshots_upserted == 1
    assert summary.to_dict()["requested_source_deal_id"] == "deal-1"
    assert db_session.scalars(select(RenewalSnapshot.subscription_id)).all() == ["sub-1"]
    assert db_session.get(AutomationRun, summary.run_id).trigger_source == "webhook"


def test_previous_term_snapshot_does_not_block_current_term(db_session: Session, settings: Settings) -> None:
    _seed(db_session, "sub-1", {"id": "ord-1"})
    db_session.add(RenewalSnapshot(subscription_id="sub-1", term_end_date=date(2024, 6, 30), charges_json=[]))
    db_session.commit()
    billing = InMemoryBillingClient({"ord-1": _charges(2)})

    summary = SnapshotRunner(settings).run(db_session, billing)

    assert summary.snapshots_upserted == 1
    assert len(db_session.scalars(select(RenewalSnapshot)).all()) == 2


def test_resolve_order_id() -> None:
    assert resolve_order_id({"id": "ord-1", "orderId": "ord-2"}) == "ord-1"
    assert resolve_order_id({"orderId": "ord-2"}) == "ord-2"
    assert resolve_order_id({"id": "  "}) is None
    assert resolve_order_id(None) is None


def test_snapshot_summary_is_logged_with_info_enabled(
    db_session: Session,
    settings: Settings,
    caplog: pytest.LogCaptureFixture,
) -> None:
    caplog.set_level(logging.INFO)
    _seed(db_session, "sub-1", {"id": "ord-1"})

    summary = SnapshotRunner(settings).run(db_session, InMemoryBillingClient({"ord-1": _charges(2)}))

    assert summary.snapshots_upserted == 1
    finished = [record for record in caplog.records if record.getMessage() == "run.finished"]
    assert len(finished) == 1
    assert getattr(finished[0], "function_name", None) == "renewal-snapshot"
    assert getattr(finished[0], "created_count", None) == 1
    assert getattr(finished[0], "processed", None) == 1
