from __future__ import annotations

from collections.abc import Generator
from datetime import date

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from renewals.clients.billing import InMemoryBillingClient
from renewals.clients.crm import InMemoryCrmClient
from renewals.core.config import LINE_ITEM_PROPERTY_FIELDS, Settings
from renewals.core.database import Base
from renewals.ledger.enqueue import RenewalEnqueuer, choose_subscription, parse_deal_id, pick_anchor_date
from renewals.ledger.models import BillingSubscription, RenewalLedgerEntry


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
    return Settings(
        run_mode="test",
        forecast_pipeline_id="pipe-1",
        forecast_dealstage_id="stage-1",
        **{name: name.removeprefix("hs_li_").removesuffix("_prop") for name in LINE_ITEM_PROPERTY_FIELDS},
    )


@pytest.fixture()
def crm() -> InMemoryCrmClient:
    client = InMemoryCrmClient()
    client.add_deal("deal-1", {"dealname": "Acme 2024", "closedate": "2024-07-15", "hubspot_owner_id": "owner-7"}, "co-1")
    client.add_company("co-1", {"younium_custid": "CUST-1"})
    return client


@pytest.fixture()
def billing() -> InMemoryBillingClient:
    return InMemoryBillingClient(
        {
            "ord-1": [
                {
                    "chargeId": "c-1",
                    "id": "oc-1",
                    "chargeNumber": "CN-1",
                    "name": "Platform License",
                    "chargeType": "Recurring",
                    "quantity": 1,
                    "displayPrice": "1200",
                    "effectiveStartDate": "2024-07-01",
                    "effectiveEndDate": "2025-06-30",
                    "billingPeriod": "Annual",
                }
            ]
        }
    )


def _subscription(
    subscription_id: str,
    start: date,
    end: date,
    account_number: str = "CUST-1",
) -> BillingSubscription:
    return BillingSubscription(
        subscription_id=subscription_id,
        account_number=account_number,
        status="Active",
        effective_start_date=start,
        effective_end_date=end,
        raw_json={"id": f"ord-{subscription_id.removeprefix('sub-')}"},
    )


@pytest.fixture(autouse=True)
def seed_subscriptions(db_session: Session) -> None:
    db_session.add(_subscription("sub-1", date(2024, 7, 1), date(2025, 6, 30)))
    db_session.add(_subscription("sub-9", date(2024, 1, 1), date(2024, 12, 31), account_number="CUST-9"))
    db_session.commit()


def test_enqueue_queues_and_creates_immediately(
    db_session: Session,
    settings: Settings,
    crm: InMemoryCrmClient,
    billing: InMemoryBillingClient,
) -> None:
    result = RenewalEnqueuer(settings).enqueue(db_session, crm, billing, {"dealId": "deal-1"})

    assert result.result == "queued_new"
    assert result.message == "Renewal queued and created immediately."
    assert result.subscription_id == "sub-1"
    assert result.term_end_date == "2025-06-30"
    assert result.customer_id == "CUST-1"
    immediate = result.immediate_run
    assert immediate["snapshot_status"] == 200
    assert immediate["create_status"] == 200
    assert immediate["created_count"] == 1
    assert immediate["created_deal_id"] == crm.created_deals()[0]["id"]
    assert crm.created_deals()[0]["properties"]["amount"] == "1200"

    entry = db_session.scalars(select(RenewalLedgerEntry)).one()
    assert entry.status == "created"
    assert entry.created_source == "manual"
    assert entry.source_deal_id == "deal-1"


def test_second_enqueue_reports_the_existing_deal(
    db_session: Session,
    settings: Settings,
    crm: InMemoryCrmClient,
    billing: InMemoryBillingClient,
) -> None:
    enqueuer = RenewalEnqueuer(settings)
    first = enqueuer.enqueue(db_session, crm, billing, {"source_deal_id": "deal-1"})

    second = enqueuer.enqueue(db_session, crm, billing, {"source_deal_id": "deal-1"})

    assert second.result == "already_created"
    assert second.message == "Renewal already exists. No duplicate was created."
    assert second.existing_deal_id == first.immediate_run["created_deal_id"]
    assert second.immediate_run is None
    assert len(crm.created_deals()) == 1


def test_enqueue_without_deal_id_is_invalid(
    db_session: Session,
    settings: Settings,
    crm: InMemoryCrmClient,
    billing: InMemoryBillingClient,
) -> None:
    result = RenewalEnqueuer(settings).enqueue(db_session, crm, billing, {"unrelated": True})

    assert result.to_dict()["result"] == "invalid_request"
    assert result.message == "Missing source_deal_id in request body."
    assert crm.calls == []


@pytest.mark.parametrize(
    ("deal_id", "message"),
    [
        ("deal-missing", "Source deal not found."),
        ("deal-orphan", "No associated company found on source deal."),
        ("deal-nocust", "Company is missing younium_custid."),
        ("deal-nosub", "No matching billing subscription found for this company account."),
    ],
)
def test_enqueue_not_found_outcomes(
    db_session: Session,
    settings: Settings,
    crm: InMemoryCrmClient,
    billing: InMemoryBillingClient,
    deal_id: str,
    message: str,
) -> None:
    crm.add_deal("deal-orphan", {"dealname": "No company"})
    crm.add_deal("deal-nocust", {"dealname": "No customer id"}, "co-2")
    crm.add_company("co-2", {"name": "Globex"})
    crm.add_deal("deal-nosub", {"dealname": "Unknown account"}, "co-3")
    crm.add_company("co-3", {"younium_custid": "CUST-404"})

    result = RenewalEnqueuer(settings).enqueue(db_session, crm, billing, {"deal_id": deal_id})

    assert result.result == "not_found"
    assert result.message == message
    assert db_session.scalars(select(RenewalLedgerEntry)).all() == []


def test_enqueue_records_a_renewal_already_in_the_crm(
    db_session: Session,
    settings: Settings,
    crm: InMemoryCrmClient,
    billing: InMemoryBillingClient,
) -> None:
    crm.add_deal("deal-5", {"dealname": "Acme Renewal", "original_deal_id": "deal-1"})

    result = RenewalEnqueuer(settings).enqueue(db_session, crm, billing, {"objectId": "deal-1"})

    assert result.result == "already_created"
    assert result.existing_deal_id == "deal-5"
    entry = db_session.scalars(select(RenewalLedgerEntry)).one()
    assert entry.status == "created"
    assert entry.created_deal_id == "deal-5"
    assert "create_deal" not in crm.calls


def test_enqueue_outside_test_mode_reports_the_create_error(
    db_session: Session,
    crm: InMemoryCrmClient,
    billing: InMemoryBillingClient,
) -> None:
    settings = Settings(run_mode="production", forecast_pipeline_id="pipe-1", forecast_dealstage_id="stage-1")

    result = RenewalEnqueuer(settings).enqueue(db_session, crm, billing, {"dealId": "deal-1"})

    assert result.result == "queued_new"
    assert result.message == "Renewal queued, but immediate creation hit an error. It will retry in scheduled automation."
    assert result.immediate_run["create_status"] == 403
    assert result.immediate_run["create_response"] == {"error": "RUN_MODE must be 'test' to run this function"}
    assert db_session.scalars(select(RenewalLedgerEntry.status)).one() == "planned"


def test_requeue_after_error(
    db_session: Session,
    settings: Settings,
    crm: InMemoryCrmClient,
    billing: InMemoryBillingClient,
) -> None:
    db_session.add(
        RenewalLedgerEntry(
            subscription_id="sub-1",
            term_end_date=date(2025, 6, 30),
            status="error",
            created_source="auto",
            entry_metadata={"error_reason": "boom"},
        )
    )
    db_session.commit()

    result = RenewalEnqueuer(settings).enqueue(db_session, crm, billing, {"dealId": "deal-1"})

    assert result.result == "requeued_from_error"
    assert result.immediate_run["created_count"] == 1


def test_parse_deal_id_accepts_aliases() -> None:
    assert parse_deal_id({"source_hubspot_deal_id": " 123 "}) == "123"
    assert parse_deal_id({"hs_object_id": 456}) == "456"
    assert parse_deal_id({"objectId": 7.0}) == "7"
    assert parse_deal_id({"dealId": True}) is None
    assert parse_deal_id(["deal-1"]) is None


def test_pick_anchor_date_prefers_order_start() -> None:
    properties = {
        "younium_order_effective_start_date": "1719792000000",
        "closedate": "2024-01-01T10:00:00Z",
    }

    assert pick_anchor_date(properties) == date(2024, 7, 1)
    assert pick_anchor_date({"closedate": "2024-01-01T10:00:00Z"}) == date(2024, 1, 1)
    assert pick_anchor_date({"closedate": "soon"}) is None


def test_choose_subscription() -> None:
    current = _subscription("sub-a", date(2024, 7, 1), date(2025, 6, 30))
    previous = _subscription("sub-b", date(2023, 7, 1), date(2024, 6, 30))
    later = _subscription("sub-c", date(2026, 1, 1), date(2026, 12, 31))

    assert choose_subscription([previous, current, later], date(2024, 8, 1)) is current
    assert choose_subscription([previous, current, later], None) is later
    assert choose_subscription([previous, later], date(2025, 1, 1)) is previous
    assert choose_subscription([], date(2025, 1, 1)) is None


def test_enqueue_from_a_new_source_deal_takes_over_the_queued_row(
    db_session: Session,
    settings: Settings,
    crm: InMemoryCrmClient,
    billing: InMemoryBillingClient,
) -> None:
    db_session.add(
        RenewalLedgerEntry(
            subscription_id="sub-1",
            term_end_date=date(2025, 6, 30),
            status="planned",
            source_deal_id="deal-old",
            entry_metadata={"planned_at": "2025-05-01"},
        )
    )
    db_session.commit()

    result = RenewalEnqueuer(settings).enqueue(db_session, crm, billing, {"dealId": "deal-1"})

    assert result.result == "already_queued"
    assert result.message == "Renewal queued and created immediately."
    assert result.immediate_run["created_count"] == 1
    entry = db_session.scalars(select(RenewalLedgerEntry)).one()
    assert entry.source_deal_id == "deal-1"
    assert entry.status == "created"
    assert entry.entry_metadata["planned_at"] == "2025-05-01"
