from __future__ import annotations

from collections.abc import Collection, Iterable

from sqlalchemy import and_, select
from sqlalchemy.orm import Session

from renewals.ledger.models import RenewalLedgerEntry, RenewalSnapshot
from renewals.ledger.state import LedgerKey


def _ordered_planned():
    return (
        select(RenewalLedgerEntry)
        .where(RenewalLedgerEntry.status == "planned")
        .order_by(RenewalLedgerEntry.term_end_date, RenewalLedgerEntry.subscription_id)
    )


def _snapshotted_keys(session: Session, entries: Iterable[RenewalLedgerEntry]) -> set[LedgerKey]:
    subscription_ids = {entry.subscription_id for entry in entries if entry.subscription_id}
    if not subscription_ids:
        return set()
    rows = session.execute(
        select(RenewalSnapshot.subscription_id, RenewalSnapshot.term_end_date).where(
            RenewalSnapshot.subscription_id.in_(sorted(subscription_ids))
        )
    )
    return {LedgerKey(subscription_id, term_end_date) for subscription_id, term_end_date in rows}


def select_due(
    session: Session,
    batch_size: int,
    source_deal_id: str | None = None,
    exclude: Collection[LedgerKey] = (),
) -> list[RenewalLedgerEntry]:
    """Return up to ``batch_size`` planned entries that have no charge snapshot yet.

    Unfiltered selection scans planned rows in chunks of ``batch_size * 3`` so
    already-snapshotted rows at the head of the queue cannot starve the batch.
    Before returning, the selection is checked against the snapshot table once
    more, so writes landing between chunks never leak a snapshotted key.
    """
    if batch_size <= 0:
        return []

    excluded = set(exclude)
    if source_deal_id is not None:
        rows = list(session.scalars(_ordered_planned().where(RenewalLedgerEntry.source_deal_id == source_deal_id)))
        snapshotted = _snapshotted_keys(session, rows)
        due = [row for row in rows if LedgerKey.of(row) not in snapshotted and LedgerKey.of(row) not in excluded]
        return due[:batch_size]

    chunk_size = max(batch_size * 3, batch_size)
    selected: list[RenewalLedgerEntry] = []
    seen: set[LedgerKey] = set()
    offset = 0
    while len(selected) < batch_size:
        chunk = list(session.scalars(_ordered_planned().offset(offset).limit(chunk_size)))
        offset += chunk_size

        candidates: list[RenewalLedgerEntry] = []
        for row in chunk:
            if not row.subscription_id or row.term_end_date is None:
                continue
            key = LedgerKey.of(row)
            if key in seen or key in excluded:
                continue
            seen.add(key)
            candidates.append(row)

        snapshotted = _snapshotted_keys(session, candidates)
        for row in candidates:
            if LedgerKey.of(row) in snapshotted:
                continue
            selected.append(row)
            if len(selected) >= batch_size:
                break

        if len(chunk) < chunk_size:
            break

    if not selected:
        return selected
    snapshotted = _snapshotted_keys(session, selected)
    return [row for row in selected if LedgerKey.of(row) not in snapshotted]


def select_ready_for_creation(
    session: Session,
    limit: int,
    source_deal_id: str | None = None,
    exclude: Collection[LedgerKey] = (),
) -> list[tuple[RenewalLedgerEntry, RenewalSnapshot]]:
    """Planned entries with a snapshot and no deal, oldest term end first."""
    if limit <= 0:
        return []
    excluded = set(exclude)
    stmt = (
        select(RenewalLedgerEntry, RenewalSnapshot)
        .join(
            RenewalSnapshot,
            and_(
                RenewalSnapshot.subscription_id == RenewalLedgerEntry.subscription_id,
                RenewalSnapshot.term_end_date == RenewalLedgerEntry.term_end_date,
            ),
        )
        .where(RenewalLedgerEntry.status == "planned", RenewalLedgerEntry.created_deal_id.is_(None))
        .order_by(RenewalLedgerEntry.term_end_date, RenewalLedgerEntry.subscription_id)
        .limit(limit + len(excluded))
    )
    if source_deal_id is not None:
        stmt = stmt.where(RenewalLedgerEntry.source_deal_id == source_deal_id)

    ready: list[tuple[RenewalLedgerEntry, RenewalSnapshot]] = []
    for entry, snapshot in session.execute(stmt):
        if LedgerKey.of(entry) in excluded:
            continue
        ready.append((entry, snapshot))
        if len(ready) >= limit:
            break
    return ready
