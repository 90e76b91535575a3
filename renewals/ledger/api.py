from __future__ import annotations

import logging
from collections.abc import Callable, Generator
from datetime import date
from typing import Any, TypeVar

from fastapi import APIRouter, Body, Depends, HTTPException, Query, status
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from sqlalchemy.orm import Session

from renewals.clients import build_billing_client, build_crm_client
from renewals.clients.billing import BillingClient
from renewals.clients.crm import CrmClient
from renewals.core.auth import require_ingest_secret
from renewals.core.config import get_settings
from renewals.core.database import get_db
from renewals.ledger.enqueue import RenewalEnqueuer
from renewals.ledger.ingest import ingest_subscriptions
from renewals.ledger.orchestrator import RenewalCreateRunner, SnapshotRunner
from renewals.ledger.planner import plan_renewals
from renewals.ledger.schemas import AutomationRunRead, CreateRunRequest, LedgerEntryRead, SnapshotRunRequest
from renewals.ledger.state import LedgerKey, ledger_state_machine
from renewals.services import ops_log


logger = logging.getLogger("renewals.ledger.api")

router = APIRouter(prefix="/renewals", tags=["renewals"], dependencies=[Depends(require_ingest_secret)])

T = TypeVar("T")


def get_crm_client() -> Generator[CrmClient, None, None]:
    client = build_crm_client()
    try:
        yield client
    finally:
        close = getattr(client, "close", None)
        if callable(close):
            close()


def get_billing_client() -> Generator[BillingClient, None, None]:
    client = build_billing_client()
    try:
        yield client
    finally:
        close = getattr(client, "close", None)
        if callable(close):
            close()


def _parse(model: type[T], payload: dict[str, Any] | None) -> T:
    try:
        return model.model_validate(payload or {})  # type: ignore[attr-defined]
    except ValidationError as exc:
        first = exc.errors()[0] if exc.errors() else {"msg": str(exc)}
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invalid request body: {first.get('msg')}",
        ) from exc


def _run(operation: str, fn: Callable[[], dict[str, Any]]) -> Any:
    try:
        return fn()
    except HTTPException:
        raise
    except Exception as exc:
        logger.exception("run.http_failed", extra={"function_name": operation, "error": str(exc)})
        return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content={"error": str(exc)})


def _trigger_source(source_deal_id: str | None) -> str:
    return "webhook" if source_deal_id else "manual"


@router.post("/ingest")
def ingest(db: Session = Depends(get_db), billing: BillingClient = Depends(get_billing_client)) -> Any:
    return _run("ingest", lambda: ingest_subscriptions(db, billing, trigger_source="manual").to_dict())


@router.post("/plan")
def plan(db: Session = Depends(get_db)) -> Any:
    return _run("plan", lambda: plan_renewals(db, trigger_source="manual").to_dict())


@router.post("/snapshot")
def snapshot(
    payload: dict[str, Any] | None = Body(default=None),
    db: Session = Depends(get_db),
    billing: BillingClient = Depends(get_billing_client),
) -> Any:
    request = _parse(SnapshotRunRequest, payload)
    runner = SnapshotRunner(get_settings())
    return _run(
        "snapshot",
        lambda: runner.run(db, billing, request.source_deal_id, _trigger_source(request.source_deal_id)).to_dict(),
    )


@router.post("/create")
def create(
    payload: dict[str, Any] | None = Body(default=None),
    db: Session = Depends(get_db),
    crm: CrmClient = Depends(get_crm_client),
) -> Any:
    settings = get_settings()
    request = _parse(CreateRunRequest, payload)
    options = request.to_options(settings)
    runner = RenewalCreateRunner(settings)
    return _run(
        "create",
        lambda: runner.run(db, crm, options, _trigger_source(options.source_deal_id)).to_dict(),
    )


@router.post("/enqueue")
def enqueue(
    payload: Any = Body(default=None),
    db: Session = Depends(get_db),
    crm: CrmClient = Depends(get_crm_client),
    billing: BillingClient = Depends(get_billing_client),
) -> Any:
    enqueuer = RenewalEnqueuer(get_settings())
    return _run("enqueue", lambda: enqueuer.enqueue(db, crm, billing, payload).to_dict())


@router.get("/runs", response_model=list[AutomationRunRead])
def list_runs(
    function_name: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    db: Session = Depends(get_db),
) -> list[AutomationRunRead]:
    runs = ops_log.list_runs(db, function_name=function_name, limit=limit)
    return [AutomationRunRead.model_validate(run) for run in runs]


@router.get("/ledger/{subscription_id}/{term_end_date}", response_model=LedgerEntryRead)
def get_ledger_entry(subscription_id: str, term_end_date: date, db: Session = Depends(get_db)) -> LedgerEntryRead:
    entry = ledger_state_machine.get(db, LedgerKey(subscription_id, term_end_date))
    if entry is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="ledger entry not found")
    return LedgerEntryRead.model_validate(entry)
