from __future__ import annotations

import os
from collections.abc import Generator
from datetime import date

import pytest
from fastapi.testclient import TestClient
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from opentelemetry.trace import StatusCode
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

os.environ.setdefault("OTEL_ENABLED", "true")

from renewals.clients.crm import InMemoryCrmClient
from renewals.core.config import get_settings
from renewals.core.database import Base, get_db
from renewals.errors import FailureKind, UpstreamError
from renewals.ledger.api import get_crm_client
from renewals.ledger.models import RenewalLedgerEntry, RenewalSnapshot
from renewals.main import app
from renewals.otel import setup_inmemory_otel


SECRET_HEADERS = {"x-ingest-secret": "otel-secret"}


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


@pytest.fixture(autouse=True)
def setup_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("INGEST_SECRET", "otel-secret")
    monkeypatch.setenv("FORECAST_PIPELINE_ID", "pipe-1")
    monkeypatch.setenv("FORECAST_DEALSTAGE_ID", "stage-1")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def span_exporter() -> InMemorySpanExporter:
    exporter = setup_inmemory_otel("renewals")
    exporter.clear()
    return exporter


@pytest.fixture()
def crm() -> InMemoryCrmClient:
    return InMemoryCrmClient()


@pytest.fixture()
def client(db_session: Session, crm: InMemoryCrmClient) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_crm_client] = lambda: crm
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _seed(session: Session) -> None:
    session.add(RenewalLedgerEntry(subscription_id="sub-1", term_end_date=date(2025, 6, 30), status="planned"))
    session.add(RenewalSnapshot(subscription_id="sub-1", term_end_date=date(2025, 6, 30), charges_json=[]))
    session.commit()


def test_request_span_contains_correlation_id(client: TestClient, span_exporter: InMemorySpanExporter) -> None:
    response = client.post("/renewals/plan", headers={**SECRET_HEADERS, "X-Correlation-Id": "otel-corr-1"})
    assert response.status_code == 200

    spans = span_exporter.get_finished_spans()
    assert spans
    assert any(span.attributes.get("correlation_id") == "otel-corr-1" for span in spans)
    assert any(span.name == "renewal.plan.run" for span in spans)


def test_create_run_spans_carry_the_ledger_key(
    client: TestClient,
    db_session: Session,
    span_exporter: InMemorySpanExporter,
) -> None:
    _seed(db_session)

    response = client.post("/renewals/create", json={}, headers=SECRET_HEADERS)
    assert response.status_code == 200
    assert response.json()["created"] == 1

    spans = span_exporter.get_finished_spans()
    run_spans = [span for span in spans if span.name == "renewal.create.run"]
    assert run_spans
    assert run_spans[-1].attributes.get("created") == 1
    entry_spans = [span for span in spans if span.name == "renewal.entry.process"]
    assert any(
        span.attributes.get("subscription_id") == "sub-1"
        and span.attributes.get("term_end_date") == "2025-06-30"
        and span.attributes.get("deal_id")
        for span in entry_spans
    )


def test_failed_entry_span_records_the_call_site(
    client: TestClient,
    db_session: Session,
    crm: InMemoryCrmClient,
    span_exporter: InMemorySpanExporter,
) -> None:
    _seed(db_session)
    crm.fail("create_deal", UpstreamError(FailureKind.TRANSPORT, "Failed to create deal: timeout"))

    response = client.post("/renewals/create", json={}, headers=SECRET_HEADERS)
    assert response.status_code == 200
    assert response.json()["results"][0]["outcome"] == "released"

    entry_spans = [span for span in span_exporter.get_finished_spans() if span.name == "renewal.entry.process"]
    assert any(
        span.attributes.get("call_site") == "create_deal" and span.status.status_code is StatusCode.ERROR
        for span in entry_spans
    )


def test_run_spans_are_tagged_with_the_run(client: TestClient, span_exporter: InMemorySpanExporter) -> None:
    response = client.post("/renewals/create", json={}, headers={**SECRET_HEADERS, "X-Correlation-Id": "otel-run-1"})
    assert response.status_code == 200
    run_id = response.json()["run_id"]

    spans = span_exporter.get_finished_spans()
    [run_span] = [span for span in spans if span.name == "renewal.create.run"]
    assert run_span.attributes.get("function_name") == "renewal-create"
    assert run_span.attributes.get("trigger_source") == "manual"
    assert run_span.attributes.get("run_id") == run_id
    assert run_span.attributes.get("correlation_id") == "otel-run-1"
    assert any(span.attributes.get("renewals.operation") == "create" for span in spans)
