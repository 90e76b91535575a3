from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import date
from enum import Enum
from typing import Any, NamedTuple

from sqlalchemy import and_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from renewals.ledger.models import RenewalLedgerEntry, utcnow
from renewals.metrics import observe_ledger_transition


logger = logging.getLogger("renewals.ledger.state")

MAX_UPSERT_ATTEMPTS = 3


class LedgerKey(NamedTuple):
    subscription_id: str
    term_end_date: date

    @classmethod
    def of(cls, entry: RenewalLedgerEntry) -> LedgerKey:
        return cls(entry.subscription_id, entry.term_end_date)

    def log_fields(self) -> dict[str, str]:
        return {"subscription_id": self.subscription_id, "term_end_date": self.term_end_date.isoformat()}


class PlanOutcome(str, Enum):
    QUEUED_NEW = "queued_new"
    ALREADY_QUEUED = "already_queued"
    REQUEUED_FROM_ERROR = "requeued_from_error"
    ALREADY_CREATED = "already_created"


class LedgerWriteConflict(RuntimeError):
    pass


def merge_metadata(current: dict[str, Any] | None, patch: dict[str, Any] | None) -> dict[str, Any]:
    merged = dict(current or {})
    merged.update(patch or {})
    return merged


def _key_clause(key: LedgerKey):
    return and_(
        RenewalLedgerEntry.subscription_id == key.subscription_id,
        RenewalLedgerEntry.term_end_date == key.term_end_date,
    )


def _conflict(key: LedgerKey, attempts: int) -> LedgerWriteConflict:
    return LedgerWriteConflict(
        f"Ledger row {key.subscription_id}/{key.term_end_date.isoformat()} kept changing; "
        f"gave up after {attempts} attempts"
    )


@dataclass(slots=True)
class LedgerStateMachine:
    """Owns every ``status`` and ``created_deal_id`` write on the renewal ledger.

    Each status-affecting write is a single conditional UPDATE carrying a
    predicate on the expected status, committed immediately. ``rowcount``
    tells whether this caller won. Writes that merge metadata also carry the
    ``row_version`` they read, so a concurrent merge forces a re-read.
    """

    max_upsert_attempts: int = MAX_UPSERT_ATTEMPTS

    def get(self, session: Session, key: LedgerKey) -> RenewalLedgerEntry | None:
        return session.scalar(
            select(RenewalLedgerEntry).where(_key_clause(key)).execution_options(populate_existing=True)
        )

    def claim(self, session: Session, key: LedgerKey) -> bool:
        result = session.execute(
            update(RenewalLedgerEntry)
            .where(
                _key_clause(key),
                RenewalLedgerEntry.status == "planned",
                RenewalLedgerEntry.created_deal_id.is_(None),
            )
            .values(
                {
                    RenewalLedgerEntry.status: "processing",
                    RenewalLedgerEntry.row_version: RenewalLedgerEntry.row_version + 1,
                    RenewalLedgerEntry.updated_at: utcnow(),
                }
            )
            .execution_options(synchronize_session=False)
        )
        session.commit()
        claimed = result.rowcount == 1
        observe_ledger_transition("claim", claimed)
        logger.info("ledger.claimed" if claimed else "ledger.claim_skipped", extra=key.log_fields())
        return claimed

    def mark_created(
        self,
        session: Session,
        key: LedgerKey,
        deal_id: str,
        metadata_patch: dict[str, Any] | None = None,
    ) -> bool:
        applied = self._merge_write(
            session,
            key,
            lambda entry: entry.status == "processing" and entry.created_deal_id is None,
            lambda entry: {
                RenewalLedgerEntry.status: "created",
                RenewalLedgerEntry.created_deal_id: deal_id,
                RenewalLedgerEntry.entry_metadata: merge_metadata(entry.entry_metadata, metadata_patch),
            },
            RenewalLedgerEntry.status == "processing",
            RenewalLedgerEntry.created_deal_id.is_(None),
        )
        observe_ledger_transition("mark_created", applied)
        if applied:
            logger.info("ledger.created", extra={**key.log_fields(), "deal_id": deal_id})
        else:
            logger.warning("ledger.create_not_applied", extra={**key.log_fields(), "deal_id": deal_id})
        return applied

    def release_for_retry(self, session: Session, key: LedgerKey, reason: str) -> bool:
        patch = {"last_release_reason": reason, "last_released_at": utcnow().isoformat()}
        applied = self._merge_write(
            session,
            key,
            lambda entry: entry.status == "processing",
            lambda entry: {
                RenewalLedgerEntry.status: "planned",
                RenewalLedgerEntry.entry_metadata: merge_metadata(entry.entry_metadata, patch),
            },
            RenewalLedgerEntry.status == "processing",
        )
        observe_ledger_transition("release", applied)
        logger.info("ledger.released", extra={**key.log_fields(), "reason": reason, "status": "applied" if applied else "skipped"})
        return applied

    def mark_error(
        self,
        session: Session,
        key: LedgerKey,
        reason: str,
        metadata_patch: dict[str, Any] | None = None,
    ) -> bool:
        patch = merge_metadata({"error_reason": reason, "error_at": utcnow().isoformat()}, metadata_patch)
        applied = self._merge_write(
            session,
            key,
            lambda entry: entry.status != "created",
            lambda entry: {
                RenewalLedgerEntry.status: "error",
                RenewalLedgerEntry.entry_metadata: merge_metadata(entry.entry_metadata, patch),
            },
            RenewalLedgerEntry.status != "created",
        )
        observe_ledger_transition("mark_error", applied)
        logger.warning("ledger.errored", extra={**key.log_fields(), "reason": reason})
        return applied

    def upsert_planned(
        self,
        session: Session,
        key: LedgerKey,
        source_metadata: dict[str, Any] | None = None,
        *,
        source_deal_id: str | None = None,
        created_source: str = "auto",
    ) -> PlanOutcome:
        for _ in range(self.max_upsert_attempts):
            entry = self.get(session, key)
            if entry is None:
                session.add(
                    RenewalLedgerEntry(
                        subscription_id=key.subscription_id,
                        term_end_date=key.term_end_date,
                        status="planned",
                        created_source=created_source,
                        source_deal_id=source_deal_id,
                        entry_metadata=dict(source_metadata or {}),
                    )
                )
                try:
                    session.commit()
                except IntegrityError:
                    session.rollback()
                    continue
                observe_ledger_transition("plan", True)
                logger.info("ledger.planned", extra={**key.log_fields(), "status": PlanOutcome.QUEUED_NEW.value})
                return PlanOutcome.QUEUED_NEW

            observed = entry.status
            if observed == "created" or entry.created_deal_id:
                observe_ledger_transition("plan", False)
                return PlanOutcome.ALREADY_CREATED

            values: dict[Any, Any] = {
                RenewalLedgerEntry.entry_metadata: merge_metadata(entry.entry_metadata, source_metadata),
                RenewalLedgerEntry.row_version: RenewalLedgerEntry.row_version + 1,
                RenewalLedgerEntry.updated_at: utcnow(),
            }
            if source_deal_id is not None:
                values[RenewalLedgerEntry.source_deal_id] = source_deal_id
            if observed == "error":
                outcome = PlanOutcome.REQUEUED_FROM_ERROR
                values[RenewalLedgerEntry.status] = "planned"
                values[RenewalLedgerEntry.created_source] = created_source
            else:
                outcome = PlanOutcome.ALREADY_QUEUED

            result = session.execute(
                update(RenewalLedgerEntry)
                .where(
                    _key_clause(key),
                    RenewalLedgerEntry.status == observed,
                    RenewalLedgerEntry.created_deal_id.is_(None),
                    RenewalLedgerEntry.row_version == entry.row_version,
                )
                .values(values)
                .execution_options(synchronize_session=False)
            )
            session.commit()
            if result.rowcount == 1:
                observe_ledger_transition("plan", outcome != PlanOutcome.ALREADY_QUEUED)
                logger.info("ledger.planned", extra={**key.log_fields(), "status": outcome.value})
                return outcome

        raise _conflict(key, self.max_upsert_attempts)

    def record_existing_deal(
        self,
        session: Session,
        key: LedgerKey,
        deal_id: str,
        source_deal_id: str | None,
        metadata_patch: dict[str, Any] | None = None,
    ) -> None:
        """Record a renewal deal that already exists in the CRM."""
        patch = merge_metadata(metadata_patch, {"created_deal_id": deal_id})
        for _ in range(self.max_upsert_attempts):
            entry = self.get(session, key)
            if entry is None:
                session.add(
                    RenewalLedgerEntry(
                        subscription_id=key.subscription_id,
                        term_end_date=key.term_end_date,
                        status="created",
                        created_source="manual",
                        source_deal_id=source_deal_id,
                        created_deal_id=deal_id,
                        entry_metadata=patch,
                    )
                )
                try:
                    session.commit()
                except IntegrityError:
                    session.rollback()
                    continue
                observe_ledger_transition("record_existing", True)
                return
            if entry.created_deal_id:
                observe_ledger_transition("record_existing", False)
                return

            values: dict[Any, Any] = {
                RenewalLedgerEntry.status: "created",
                RenewalLedgerEntry.created_deal_id: deal_id,
                RenewalLedgerEntry.entry_metadata: merge_metadata(entry.entry_metadata, patch),
                RenewalLedgerEntry.row_version: RenewalLedgerEntry.row_version + 1,
                RenewalLedgerEntry.updated_at: utcnow(),
            }
            if source_deal_id is not None and entry.source_deal_id is None:
                values[RenewalLedgerEntry.source_deal_id] = source_deal_id
            result = session.execute(
                update(RenewalLedgerEntry)
                .where(
                    _key_clause(key),
                    RenewalLedgerEntry.status == entry.status,
                    RenewalLedgerEntry.created_deal_id.is_(None),
                    RenewalLedgerEntry.row_version == entry.row_version,
                )
                .values(values)
                .execution_options(synchronize_session=False)
            )
            session.commit()
            if result.rowcount == 1:
                observe_ledger_transition("record_existing", True)
                logger.info("ledger.created", extra={**key.log_fields(), "deal_id": deal_id})
                return

        raise _conflict(key, self.max_upsert_attempts)

    def _merge_write(
        self,
        session: Session,
        key: LedgerKey,
        allowed: Callable[[RenewalLedgerEntry], bool],
        build: Callable[[RenewalLedgerEntry], dict[Any, Any]],
        *conditions: Any,
    ) -> bool:
        for _ in range(self.max_upsert_attempts):
            entry = self.get(session, key)
            if entry is None or not allowed(entry):
                session.commit()
                return False
            values = build(entry)
            values[RenewalLedgerEntry.row_version] = RenewalLedgerEntry.row_version + 1
            values[RenewalLedgerEntry.updated_at] = utcnow()
            result = session.execute(
                update(RenewalLedgerEntry)
                .where(_key_clause(key), RenewalLedgerEntry.row_version == entry.row_version, *conditions)
                .values(values)
                .execution_options(synchronize_session=False)
            )
            session.commit()
            if result.rowcount == 1:
                return True

        raise _conflict(key, self.max_upsert_attempts)


ledger_state_machine = LedgerStateMachine()
