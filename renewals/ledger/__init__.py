from renewals.ledger.api import router
from renewals.ledger.models import (
    AutomationEvent,
    AutomationRun,
    BillingSubscription,
    RenewalLedgerEntry,
    RenewalSnapshot,
)
from renewals.ledger.orchestrator import CreateRunOptions, RenewalCreateRunner, SnapshotRunner
from renewals.ledger.state import LedgerKey, LedgerStateMachine, PlanOutcome, ledger_state_machine

__all__ = [
    "router",
    "AutomationEvent",
    "AutomationRun",
    "BillingSubscription",
    "RenewalLedgerEntry",
    "RenewalSnapshot",
    "CreateRunOptions",
    "RenewalCreateRunner",
    "SnapshotRunner",
    "LedgerKey",
    "LedgerStateMachine",
    "PlanOutcome",
    "ledger_state_machine",
]
