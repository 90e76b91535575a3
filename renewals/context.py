from __future__ import annotations

from contextvars import ContextVar, Token

correlation_id_var: ContextVar[str | None] = ContextVar("correlation_id", default=None)
run_id_var: ContextVar[str | None] = ContextVar("run_id", default=None)


def set_correlation_id(value: str | None) -> Token[str | None]:
    return correlation_id_var.set(value)


def reset_correlation_id(token: Token[str | None]) -> None:
    correlation_id_var.reset(token)


def get_correlation_id() -> str | None:
    return correlation_id_var.get()


def set_run_id(value: str | None) -> Token[str | None]:
    return run_id_var.set(value)


def reset_run_id(token: Token[str | None]) -> None:
    run_id_var.reset(token)


def get_run_id() -> str | None:
    return run_id_var.get()
