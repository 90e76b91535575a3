from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any

from opentelemetry import trace

from renewals.clients.crm import CrmClient
from renewals.errors import UpstreamError
from renewals.ledger.errors import ASSOCIATE_LINE_ITEM, CREATE_LINE_ITEM, Disposition, disposition_for
from renewals.ledger.line_items import ChargeRejected, LineItemDraft, build_line_item, is_recurring_and_active
from renewals.ledger.models import RenewalLedgerEntry
from renewals.metrics import observe_line_items


logger = logging.getLogger("renewals.ledger.materializer")
tracer = trace.get_tracer("renewals.ledger.materializer")

MAX_ERROR_SAMPLES = 10
MAX_ARTIFACT_IDS = 50
MAX_DRY_RUN_SAMPLES = 5


@dataclass(slots=True)
class MaterializeResult:
    created_count: int = 0
    deduped_count: int = 0
    error_count: int = 0
    artifact_ids: list[str] = field(default_factory=list)
    error_samples: list[str] = field(default_factory=list)
    payload_samples: list[dict[str, str]] = field(default_factory=list)
    fingerprint_samples: list[str] = field(default_factory=list)
    amount_total: Decimal = Decimal(0)
    _seen_ids: set[str] = field(default_factory=set, repr=False)

    def add_error(self, message: str) -> None:
        self.error_count += 1
        if len(self.error_samples) < MAX_ERROR_SAMPLES:
            self.error_samples.append(message)

    def add_artifact(self, artifact_id: str) -> bool:
        if artifact_id in self._seen_ids:
            return False
        self._seen_ids.add(artifact_id)
        if len(self.artifact_ids) < MAX_ARTIFACT_IDS:
            self.artifact_ids.append(artifact_id)
        return True

    def metadata_patch(self) -> dict[str, Any]:
        return {
            "line_items_created_count": self.created_count,
            "line_items_deduped_count": self.deduped_count,
            "line_items_error_count": self.error_count,
            "line_item_ids": list(self.artifact_ids),
        }


@dataclass(slots=True)
class LineItemMaterializer:
    """Creates or reuses one CRM line item per eligible charge and ties it to a deal.

    The fingerprint search runs before every create, so calling ``materialize``
    again for the same entry and charges only fills in what is missing.
    """

    crm: CrmClient

    def materialize(
        self,
        entry: RenewalLedgerEntry,
        charges: list[dict[str, Any]],
        deal_id: str,
        *,
        property_names: dict[str, str],
        dry_run: bool = False,
    ) -> MaterializeResult:
        result = MaterializeResult()
        fingerprint_property = property_names["hs_li_fingerprint_prop"]

        with tracer.start_as_current_span("renewal.line_items.materialize") as span:
            span.set_attribute("subscription_id", entry.subscription_id)
            span.set_attribute("deal_id", deal_id)
            span.set_attribute("dry_run", dry_run)

            for charge in charges:
                if not isinstance(charge, dict) or not is_recurring_and_active(charge):
                    continue
                try:
                    draft = build_line_item(charge, entry.subscription_id, entry.term_end_date, property_names)
                except ChargeRejected as exc:
                    result.add_error(str(exc))
                    continue

                if dry_run:
                    if len(result.payload_samples) < MAX_DRY_RUN_SAMPLES:
                        result.payload_samples.append(draft.properties)
                    if len(result.fingerprint_samples) < MAX_DRY_RUN_SAMPLES:
                        result.fingerprint_samples.append(draft.fingerprint)
                    continue

                try:
                    line_item_id = self.crm.search_line_item_by_fingerprint(fingerprint_property, draft.fingerprint)
                    created = False
                    if not line_item_id:
                        line_item_id, created = self._create(deal_id, fingerprint_property, draft)
                    if created:
                        result.created_count += 1
                    else:
                        result.deduped_count += 1
                    self._associate(deal_id, line_item_id)
                except UpstreamError as exc:
                    result.add_error(f"Charge {draft.charge_identifier}: {exc.message}")
                    continue

                if result.add_artifact(line_item_id):
                    result.amount_total += draft.amount

            span.set_attribute("created_count", result.created_count)
            span.set_attribute("deduped_count", result.deduped_count)
            span.set_attribute("error_count", result.error_count)

        if not dry_run:
            observe_line_items(result.created_count, result.deduped_count, result.error_count)
        return result

    def _associate(self, deal_id: str, line_item_id: str) -> None:
        try:
            self.crm.associate_line_item(deal_id, line_item_id)
        except UpstreamError as exc:
            if disposition_for(ASSOCIATE_LINE_ITEM, exc.kind) is Disposition.IGNORE:
                logger.debug("crm.association_exists", extra={"deal_id": deal_id})
                return
            raise

    def _create(self, deal_id: str, fingerprint_property: str, draft: LineItemDraft) -> tuple[str, bool]:
        try:
            return self.crm.create_line_item(draft.properties), True
        except UpstreamError as exc:
            if disposition_for(CREATE_LINE_ITEM, exc.kind) is not Disposition.IGNORE:
                raise
            existing = self.crm.search_line_item_by_fingerprint(fingerprint_property, draft.fingerprint)
            if not existing:
                raise
            logger.info("crm.line_item_exists", extra={"deal_id": deal_id})
            return existing, False
