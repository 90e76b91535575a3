from __future__ import annotations

import logging
import time
import uuid
from dataclasses import asdict, dataclass, field
from datetime import date
from typing import Any

from fastapi import HTTPException, status
from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from renewals.clients.billing import BillingClient, fetch_all_charges
from renewals.clients.crm import CrmClient
from renewals.context import reset_run_id, set_run_id
from renewals.core.config import Settings, get_settings
from renewals.errors import FailureKind, UpstreamError
from renewals.ledger.errors import (
    AFTER_DEAL_CREATED,
    BUILD_DEAL_PAYLOAD,
    CREATE_DEAL,
    FETCH_SOURCE_DEAL,
    Disposition,
    disposition_for,
)
from renewals.ledger.line_items import as_non_empty_string, date_to_epoch_ms, forecast_start_date
from renewals.ledger.materializer import LineItemMaterializer
from renewals.ledger.models import BillingSubscription, RenewalLedgerEntry, RenewalSnapshot, utcnow
from renewals.ledger.selector import select_due, select_ready_for_creation
from renewals.ledger.state import LedgerKey, LedgerStateMachine, LedgerWriteConflict, ledger_state_machine
from renewals.metrics import observe_run
from renewals.otel import tag_run_span
from renewals.services import ops_log


logger = logging.getLogger("renewals.ledger.orchestrator")
tracer = trace.get_tracer("renewals.ledger.orchestrator")

CREATE_FUNCTION = "renewal-create"
SNAPSHOT_FUNCTION = "renewal-snapshot"
SOURCE_DEAL_PROPERTIES = ("dealname", "dealstage", "pipeline", "amount", "closedate", "hubspot_owner_id")
MAX_ERROR_SAMPLES = 10


def build_deal_payload(
    term_end_date: date,
    pipeline_id: str,
    dealstage_id: str,
    owner_id: str | None = None,
) -> dict[str, str]:
    start = forecast_start_date(term_end_date)
    payload = {
        "dealname": f"{{COMPANY DOMAIN}} Renewal {start.strftime('%m/%d/%Y')}",
        "pipeline": pipeline_id,
        "dealstage": dealstage_id,
        "closedate": str(date_to_epoch_ms(term_end_date)),
    }
    if owner_id:
        payload["hubspot_owner_id"] = owner_id
    return payload


def _run_status(errors: int) -> str:
    return "partial" if errors > 0 else "success"


@dataclass(slots=True)
class CreateRunOptions:
    limit: int = 5
    dry_run: bool = False
    create_line_items: bool = False
    source_deal_id: str | None = None
    max_batches: int = 1


@dataclass(slots=True)
class CreateEntryResult:
    subscription_id: str
    term_end_date: str
    source_deal_id: str | None
    outcome: str = "pending"
    created_deal_id: str | None = None
    line_items_created_count: int = 0
    line_items_deduped_count: int = 0
    line_items_error_count: int = 0
    line_item_ids: list[str] = field(default_factory=list)
    line_item_error_samples: list[str] = field(default_factory=list)
    error: str | None = None
    would_create: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        return {key: value for key, value in data.items() if value is not None or key == "source_deal_id"}


@dataclass(slots=True)
class CreateRunSummary:
    requested_limit: int
    dry_run: bool
    batches_processed: int = 0
    processed: int = 0
    created: int = 0
    skipped_claim_failed: int = 0
    errors: int = 0
    results: list[CreateEntryResult] = field(default_factory=list)
    run_id: uuid.UUID | None = None
    timestamp: str = ""

    def record(self, result: CreateEntryResult) -> None:
        self.processed += 1
        self.results.append(result)
        if result.outcome == "created":
            self.created += 1
        elif result.outcome == "skipped_claim_failed":
            self.skipped_claim_failed += 1
        elif result.error is not None:
            self.errors += 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "requested_limit": self.requested_limit,
            "dry_run": self.dry_run,
            "batches_processed": self.batches_processed,
            "processed": self.processed,
            "created": self.created,
            "skipped_claim_failed": self.skipped_claim_failed,
            "errors": self.errors,
            "results": [result.to_dict() for result in self.results],
            "run_id": str(self.run_id) if self.run_id else None,
            "timestamp": self.timestamp,
        }


@dataclass(slots=True)
class RenewalCreateRunner:
    """Turns snapshotted ledger entries into CRM forecast deals.

    Every entry is claimed before any CRM write, so a concurrent run working
    the same queue skips it. Failures are routed through the call-site
    disposition table: before a deal exists the entry is either released or
    parked in ``error``; after a deal exists it is always parked in ``error``
    with the orphan deal id in its metadata.
    """

    settings: Settings = field(default_factory=get_settings)
    state: LedgerStateMachine = field(default_factory=lambda: ledger_state_machine)

    def validate(self, options: CreateRunOptions) -> dict[str, str] | None:
        if self.settings.run_mode != "test":
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="RUN_MODE must be 'test' to run this function")
        if not self.settings.forecast_pipeline_id:
            raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Missing FORECAST_PIPELINE_ID")
        if not self.settings.forecast_dealstage_id:
            raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Missing FORECAST_DEALSTAGE_ID")
        if not options.create_line_items:
            return None
        missing = self.settings.missing_line_item_properties()
        if missing:
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail=f"Missing required line item env vars: {', '.join(missing)}",
            )
        return self.settings.line_item_property_names()

    def run(
        self,
        session: Session,
        crm: CrmClient,
        options: CreateRunOptions,
        trigger_source: str = "manual",
    ) -> CreateRunSummary:
        property_names = self.validate(options)
        limit = max(1, min(options.limit, self.settings.create_max_limit))
        summary = CreateRunSummary(requested_limit=limit, dry_run=options.dry_run)
        summary.run_id = ops_log.start_run(
            session,
            CREATE_FUNCTION,
            trigger_source,
            run_mode=self.settings.run_mode,
            source_deal_id=options.source_deal_id,
            metadata={"limit": limit, "dry_run": options.dry_run, "create_line_items": options.create_line_items},
        )
        run_token = set_run_id(str(summary.run_id) if summary.run_id else None)
        started = time.perf_counter()
        logger.info("run.started", extra={"function_name": CREATE_FUNCTION, "trigger_source": trigger_source})

        attempted: set[LedgerKey] = set()
        try:
            with tracer.start_as_current_span("renewal.create.run") as span:
                tag_run_span(span, CREATE_FUNCTION, trigger_source, summary.run_id)
                span.set_attribute("limit", limit)
                span.set_attribute("dry_run", options.dry_run)
                try:
                    while summary.batches_processed < options.max_batches:
                        batch = select_ready_for_creation(session, limit, options.source_deal_id, attempted)
                        if not batch:
                            break
                        summary.batches_processed += 1
                        for entry, snapshot in batch:
                            attempted.add(LedgerKey.of(entry))
                            summary.record(self._process_entry(session, crm, entry, snapshot, options, property_names))
                        if len(batch) < limit or options.source_deal_id is not None:
                            break
                except Exception as exc:
                    span.record_exception(exc)
                    span.set_status(Status(StatusCode.ERROR))
                    raise
                span.set_attribute("processed", summary.processed)
                span.set_attribute("created", summary.created)
        except Exception as exc:
            session.rollback()
            self._finish(session, summary, "error", 500, started, error_message=str(exc))
            logger.exception("run.failed", extra={"function_name": CREATE_FUNCTION, "error": str(exc)})
            raise
        finally:
            reset_run_id(run_token)

        summary.timestamp = utcnow().isoformat()
        if not options.dry_run:
            ops_log.insert_events(
                session,
                [
                    ops_log.AutomationEventInput(
                        function_name=CREATE_FUNCTION,
                        event_type=f"entry_{result.outcome}",
                        run_id=summary.run_id,
                        subscription_id=result.subscription_id,
                        term_end_date=result.term_end_date,
                        source_deal_id=result.source_deal_id,
                        status=result.outcome,
                        detail={"created_deal_id": result.created_deal_id, "error": result.error},
                    )
                    for result in summary.results
                ],
            )
        self._finish(session, summary, _run_status(summary.errors), 200, started)
        return summary

    def _finish(
        self,
        session: Session,
        summary: CreateRunSummary,
        run_status: str,
        http_status: int,
        started: float,
        error_message: str | None = None,
    ) -> None:
        ops_log.finish_run(
            session,
            summary.run_id,
            run_status,
            http_status,
            processed_count=summary.processed,
            created_count=summary.created,
            error_count=max(summary.errors, 1) if run_status == "error" else summary.errors,
            error_message=error_message,
            metadata={
                "batches_processed": summary.batches_processed,
                "skipped_claim_failed": summary.skipped_claim_failed,
            },
        )
        observe_run(CREATE_FUNCTION, run_status, time.perf_counter() - started)
        logger.info(
            "run.finished",
            extra={
                "function_name": CREATE_FUNCTION,
                "status": run_status,
                "processed": summary.processed,
                "created_count": summary.created,
                "errors": summary.errors,
            },
        )

    def _process_entry(
        self,
        session: Session,
        crm: CrmClient,
        entry: RenewalLedgerEntry,
        snapshot: RenewalSnapshot,
        options: CreateRunOptions,
        property_names: dict[str, str] | None,
    ) -> CreateEntryResult:
        key = LedgerKey.of(entry)
        source_deal_id = entry.source_deal_id
        charges = list(snapshot.charges_json or [])
        result = CreateEntryResult(
            subscription_id=key.subscription_id,
            term_end_date=key.term_end_date.isoformat(),
            source_deal_id=source_deal_id,
        )

        with tracer.start_as_current_span("renewal.entry.process") as span:
            span.set_attribute("subscription_id", key.subscription_id)
            span.set_attribute("term_end_date", key.term_end_date.isoformat())

            if not options.dry_run and not self.state.claim(session, key):
                result.outcome = "skipped_claim_failed"
                return result

            owner_id = None
            if source_deal_id:
                try:
                    source_deal = crm.get_deal(source_deal_id, SOURCE_DEAL_PROPERTIES)
                except UpstreamError as exc:
                    if exc.kind is FailureKind.NOT_FOUND:
                        message = f"Source deal {source_deal_id} not found ({exc.message})"
                    else:
                        message = f"Failed to fetch source deal: {exc.message}"
                    return self._fail(session, key, result, FETCH_SOURCE_DEAL, exc.kind, message, options.dry_run)
                owner_id = as_non_empty_string(source_deal.get("properties", {}).get("hubspot_owner_id"))

            try:
                deal_payload = build_deal_payload(
                    key.term_end_date,
                    self.settings.forecast_pipeline_id,
                    self.settings.forecast_dealstage_id,
                    owner_id,
                )
            except (ValueError, OverflowError) as exc:
                message = f"Invalid deal payload: {exc}"
                return self._fail(session, key, result, BUILD_DEAL_PAYLOAD, FailureKind.VALIDATION, message, options.dry_run)

            materializer = LineItemMaterializer(crm)
            if options.dry_run:
                would_create: dict[str, Any] = {"deal_payload": deal_payload}
                if property_names is not None:
                    preview = materializer.materialize(entry, charges, "dry-run", property_names=property_names, dry_run=True)
                    result.line_items_error_count = preview.error_count
                    result.line_item_error_samples = preview.error_samples
                    would_create["line_item_property_payloads_sample"] = preview.payload_samples
                    would_create["fingerprint_examples"] = preview.fingerprint_samples
                result.outcome = "dry_run"
                result.would_create = would_create
                return result

            try:
                deal_id = crm.create_deal(deal_payload)
            except UpstreamError as exc:
                message = f"Failed to create forecast deal: {exc.message}"
                return self._fail(session, key, result, CREATE_DEAL, exc.kind, message, options.dry_run)
            result.created_deal_id = deal_id
            span.set_attribute("deal_id", deal_id)

            now = utcnow().isoformat()
            metadata: dict[str, Any] = {
                "source_deal_id": source_deal_id,
                "created_deal_id": deal_id,
                "run_mode": self.settings.run_mode,
                "timestamp": now,
            }
            try:
                if property_names is not None:
                    materialized = materializer.materialize(entry, charges, deal_id, property_names=property_names)
                    result.line_items_created_count = materialized.created_count
                    result.line_items_deduped_count = materialized.deduped_count
                    result.line_items_error_count = materialized.error_count
                    result.line_item_ids = list(materialized.artifact_ids)
                    result.line_item_error_samples = list(materialized.error_samples)
                    metadata.update(materialized.metadata_patch())
                    metadata["last_line_item_run_at"] = now
                    if materialized.artifact_ids:
                        crm.update_deal_amount(deal_id, materialized.amount_total)
                        metadata["deal_amount"] = str(materialized.amount_total)
            except UpstreamError as exc:
                message = f"Deal {deal_id} created but follow-up failed: {exc.message}"
                return self._fail(
                    session,
                    key,
                    result,
                    AFTER_DEAL_CREATED,
                    exc.kind,
                    message,
                    options.dry_run,
                    {**metadata, "orphan_deal_id": deal_id},
                )

            try:
                applied = self.state.mark_created(session, key, deal_id, metadata)
            except LedgerWriteConflict:
                applied = False
            if not applied:
                message = f"Deal {deal_id} created but renewal ledger update was not applied"
                self.state.mark_error(session, key, message, {"orphan_deal_id": deal_id})
                result.outcome = "error"
                result.error = message
                return result

            result.outcome = "created"
            return result

    def _fail(
        self,
        session: Session,
        key: LedgerKey,
        result: CreateEntryResult,
        call_site: str,
        kind: FailureKind,
        message: str,
        dry_run: bool,
        metadata_patch: dict[str, Any] | None = None,
    ) -> CreateEntryResult:
        result.error = message
        span = trace.get_current_span()
        span.set_attribute("call_site", call_site)
        span.set_status(Status(StatusCode.ERROR))
        if dry_run:
            result.outcome = "error"
            return result

        if disposition_for(call_site, kind) is Disposition.RELEASE:
            self.state.release_for_retry(session, key, message)
            result.outcome = "released"
        else:
            self.state.mark_error(session, key, message, metadata_patch)
            result.outcome = "error"
        return result


@dataclass(slots=True)
class SnapshotError:
    subscription_id: str
    term_end_date: str
    message: str


@dataclass(slots=True)
class SnapshotRunSummary:
    batch_size: int
    max_batches: int
    source_deal_id: str | None = None
    batches_processed: int = 0
    processed_rows: int = 0
    snapshots_upserted: int = 0
    errors: int = 0
    error_samples: list[SnapshotError] = field(default_factory=list)
    run_id: uuid.UUID | None = None
    timestamp: str = ""

    def add_error(self, key: LedgerKey, message: str) -> None:
        self.errors += 1
        if len(self.error_samples) < MAX_ERROR_SAMPLES:
            self.error_samples.append(SnapshotError(key.subscription_id, key.term_end_date.isoformat(), message))

    def to_dict(self) -> dict[str, Any]:
        return {
            "batch_size": self.batch_size,
            "max_batches": self.max_batches,
            "requested_source_deal_id": self.source_deal_id,
            "batches_processed": self.batches_processed,
            "processed_rows": self.processed_rows,
            "snapshots_upserted": self.snapshots_upserted,
            "errors": self.errors,
            "error_samples": [asdict(sample) for sample in self.error_samples],
            "run_id": str(self.run_id) if self.run_id else None,
            "timestamp": self.timestamp,
        }


def resolve_order_id(raw_json: Any) -> str | None:
    if not isinstance(raw_json, dict):
        return None
    return as_non_empty_string(raw_json.get("id")) or as_non_empty_string(raw_json.get("orderId"))


def upsert_snapshot(session: Session, key: LedgerKey, charges: list[dict[str, Any]]) -> None:
    """Insert or overwrite the charge snapshot for ``key`` and commit."""
    for _ in range(2):
        snapshot = session.scalar(
            select(RenewalSnapshot).where(
                RenewalSnapshot.subscription_id == key.subscription_id,
                RenewalSnapshot.term_end_date == key.term_end_date,
            )
        )
        now = utcnow()
        if snapshot is None:
            session.add(
                RenewalSnapshot(
                    subscription_id=key.subscription_id,
                    term_end_date=key.term_end_date,
                    charges_json=charges,
                    snapshot_at=now,
                    updated_at=now,
                )
            )
        else:
            snapshot.charges_json = charges
            snapshot.snapshot_at = now
            snapshot.updated_at = now
        try:
            session.commit()
            return
        except IntegrityError:
            session.rollback()
    raise RuntimeError(f"Could not upsert snapshot for {key.subscription_id}/{key.term_end_date.isoformat()}")


@dataclass(slots=True)
class SnapshotRunner:
    """Copies the current billing charges of due ledger entries into snapshots.

    Snapshot failures are per entry and never touch the ledger status; the
    entry simply stays due for the next run.
    """

    settings: Settings = field(default_factory=get_settings)

    def run(
        self,
        session: Session,
        billing: BillingClient,
        source_deal_id: str | None = None,
        trigger_source: str = "cron",
    ) -> SnapshotRunSummary:
        summary = SnapshotRunSummary(
            batch_size=self.settings.snapshot_batch_size,
            max_batches=self.settings.snapshot_max_batches,
            source_deal_id=source_deal_id,
        )
        summary.run_id = ops_log.start_run(session, SNAPSHOT_FUNCTION, trigger_source, source_deal_id=source_deal_id)
        run_token = set_run_id(str(summary.run_id) if summary.run_id else None)
        started = time.perf_counter()
        logger.info("run.started", extra={"function_name": SNAPSHOT_FUNCTION, "trigger_source": trigger_source})

        attempted: set[LedgerKey] = set()
        access_token: str | None = None
        try:
            with tracer.start_as_current_span("renewal.snapshot.run") as span:
                tag_run_span(span, SNAPSHOT_FUNCTION, trigger_source, summary.run_id)
                span.set_attribute("batch_size", summary.batch_size)
                while summary.batches_processed < summary.max_batches:
                    batch = select_due(session, summary.batch_size, source_deal_id, attempted)
                    if not batch:
                        break
                    summary.batches_processed += 1
                    summary.processed_rows += len(batch)
                    keys = [LedgerKey.of(entry) for entry in batch]
                    attempted.update(keys)
                    subscriptions = self._subscriptions_by_id(session, {key.subscription_id for key in keys})

                    for key in keys:
                        subscription = subscriptions.get(key.subscription_id)
                        if subscription is None:
                            summary.add_error(key, "Subscription not found")
                            continue
                        order_id = resolve_order_id(subscription.raw_json)
                        if order_id is None:
                            summary.add_error(key, "Missing raw_json.orderId")
                            continue
                        try:
                            if access_token is None:
                                access_token = billing.get_access_token()
                            charges = fetch_all_charges(billing, access_token, order_id)
                        except UpstreamError as exc:
                            summary.add_error(key, exc.message)
                            continue
                        upsert_snapshot(session, key, charges)
                        summary.snapshots_upserted += 1

                    if len(batch) < summary.batch_size or source_deal_id is not None:
                        break
                span.set_attribute("snapshots_upserted", summary.snapshots_upserted)
        except Exception as exc:
            session.rollback()
            ops_log.insert_events(
                session,
                [
                    ops_log.AutomationEventInput(
                        function_name=SNAPSHOT_FUNCTION,
                        event_type="run_failed",
                        run_id=summary.run_id,
                        source_deal_id=source_deal_id,
                        status="error",
                        detail={"error": str(exc), **self._detail(summary)},
                    )
                ],
            )
            self._finish(session, summary, "error", 500, started, error_message=str(exc))
            logger.exception("run.failed", extra={"function_name": SNAPSHOT_FUNCTION, "error": str(exc)})
            raise
        finally:
            reset_run_id(run_token)

        summary.timestamp = utcnow().isoformat()
        run_status = _run_status(summary.errors)
        ops_log.insert_events(
            session,
            [
                ops_log.AutomationEventInput(
                    function_name=SNAPSHOT_FUNCTION,
                    event_type="snapshot_summary",
                    run_id=summary.run_id,
                    source_deal_id=source_deal_id,
                    status=run_status,
                    detail=self._detail(summary),
                )
            ],
        )
        self._finish(session, summary, run_status, 200, started)
        return summary

    @staticmethod
    def _detail(summary: SnapshotRunSummary) -> dict[str, Any]:
        return {
            "batch_size": summary.batch_size,
            "max_batches": summary.max_batches,
            "batches_processed": summary.batches_processed,
            "processed_rows": summary.processed_rows,
            "snapshots_upserted": summary.snapshots_upserted,
            "errors": summary.errors,
            "error_samples": [asdict(sample) for sample in summary.error_samples],
        }

    def _finish(
        self,
        session: Session,
        summary: SnapshotRunSummary,
        run_status: str,
        http_status: int,
        started: float,
        error_message: str | None = None,
    ) -> None:
        ops_log.finish_run(
            session,
            summary.run_id,
            run_status,
            http_status,
            processed_count=summary.processed_rows,
            created_count=summary.snapshots_upserted,
            error_count=max(summary.errors, 1) if run_status == "error" else summary.errors,
            error_message=error_message,
            metadata={"batches_processed": summary.batches_processed, "source_deal_id": summary.source_deal_id},
        )
        observe_run(SNAPSHOT_FUNCTION, run_status, time.perf_counter() - started)
        logger.info(
            "run.finished",
            extra={
                "function_name": SNAPSHOT_FUNCTION,
                "status": run_status,
                "processed": summary.processed_rows,
                "created_count": summary.snapshots_upserted,
                "errors": summary.errors,
            },
        )

    @staticmethod
    def _subscriptions_by_id(session: Session, subscription_ids: set[str]) -> dict[str, BillingSubscription]:
        if not subscription_ids:
            return {}
        rows = session.scalars(
            select(BillingSubscription).where(BillingSubscription.subscription_id.in_(sorted(subscription_ids)))
        )
        return {row.subscription_id: row for row in rows}
