from __future__ import annotations

import uuid
from datetime import date, datetime, timezone
from typing import Any

from sqlalchemy import (
    JSON,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column

from renewals.core.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RenewalLedgerEntry(Base):
    __tablename__ = "renewal_ledger"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    subscription_id: Mapped[str] = mapped_column(String(128), nullable=False)
    term_end_date: Mapped[date] = mapped_column(Date(), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="planned", server_default="planned")
    created_source: Mapped[str] = mapped_column(String(16), nullable=False, default="auto", server_default="auto")
    source_deal_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_deal_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    entry_metadata: Mapped[dict[str, Any]] = mapped_column("metadata", JSON, nullable=False, default=dict)
    row_version: Mapped[int] = mapped_column(Integer, nullable=False, default=1, server_default="1")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("subscription_id", "term_end_date", name="uq_renewal_ledger_key"),
        CheckConstraint(
            "status IN ('planned', 'processing', 'created', 'error')",
            name="ck_renewal_ledger_status",
        ),
        Index("ix_renewal_ledger_status_term", "status", "term_end_date", "subscription_id"),
        Index("ix_renewal_ledger_source_deal", "source_deal_id"),
    )


class RenewalSnapshot(Base):
    __tablename__ = "renewal_snapshot"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    subscription_id: Mapped[str] = mapped_column(String(128), nullable=False)
    term_end_date: Mapped[date] = mapped_column(Date(), nullable=False)
    charges_json: Mapped[list[dict[str, Any]]] = mapped_column(JSON, nullable=False, default=list)
    snapshot_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (UniqueConstraint("subscription_id", "term_end_date", name="uq_renewal_snapshot_key"),)


class BillingSubscription(Base):
    __tablename__ = "billing_subscription"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    subscription_id: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    account_number: Mapped[str | None] = mapped_column(String(128), nullable=True)
    status: Mapped[str | None] = mapped_column(String(32), nullable=True)
    effective_start_date: Mapped[date | None] = mapped_column(Date(), nullable=True)
    effective_end_date: Mapped[date | None] = mapped_column(Date(), nullable=True)
    cancellation_date: Mapped[date | None] = mapped_column(Date(), nullable=True)
    raw_json: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("ix_billing_subscription_account", "account_number"),
        Index("ix_billing_subscription_end", "status", "effective_end_date"),
    )


class AutomationRun(Base):
    __tablename__ = "automation_run"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    function_name: Mapped[str] = mapped_column(String(64), nullable=False)
    trigger_source: Mapped[str] = mapped_column(String(16), nullable=False)
    run_mode: Mapped[str | None] = mapped_column(String(32), nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="running", server_default="running")
    http_status: Mapped[int | None] = mapped_column(Integer, nullable=True)
    correlation_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    source_deal_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    processed_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    created_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    error_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    run_metadata: Mapped[dict[str, Any]] = mapped_column("metadata", JSON, nullable=False, default=dict)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (Index("ix_automation_run_function_started", "function_name", "started_at"),)


class AutomationEvent(Base):
    __tablename__ = "automation_event"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    run_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("automation_run.id", ondelete="CASCADE"),
        nullable=True,
    )
    function_name: Mapped[str] = mapped_column(String(64), nullable=False)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    subscription_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    term_end_date: Mapped[date | None] = mapped_column(Date(), nullable=True)
    source_deal_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    status: Mapped[str | None] = mapped_column(String(32), nullable=True)
    detail: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (Index("ix_automation_event_run", "run_id"),)
