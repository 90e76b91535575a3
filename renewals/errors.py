from __future__ import annotations

from enum import Enum


class FailureKind(str, Enum):
    TRANSPORT = "transport"
    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"


def failure_kind_for_status(status_code: int | None) -> FailureKind:
    if status_code == 404:
        return FailureKind.NOT_FOUND
    if status_code == 409:
        return FailureKind.CONFLICT
    if status_code in {400, 422}:
        return FailureKind.VALIDATION
    return FailureKind.TRANSPORT


class UpstreamError(RuntimeError):
    """A billing or CRM call failed.

    ``kind`` drives the ledger disposition at the call site; ``status_code`` is
    ``None`` for network failures and malformed responses.
    """

    def __init__(self, kind: FailureKind, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.status_code = status_code

    @classmethod
    def from_status(cls, status_code: int, message: str) -> UpstreamError:
        return cls(failure_kind_for_status(status_code), message, status_code)
