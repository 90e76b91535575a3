from __future__ import annotations

from enum import Enum

from renewals.errors import FailureKind


class Disposition(str, Enum):
    RELEASE = "release"
    MARK_ERROR = "mark_error"
    IGNORE = "ignore"


FETCH_SOURCE_DEAL = "fetch_source_deal"
BUILD_DEAL_PAYLOAD = "build_deal_payload"
CREATE_DEAL = "create_deal"
AFTER_DEAL_CREATED = "after_deal_created"
CREATE_LINE_ITEM = "create_line_item"
ASSOCIATE_LINE_ITEM = "associate_line_item"


# Rows whose deal already exists are never released back to planned.
CALL_SITE_DISPOSITIONS: dict[str, dict[FailureKind, Disposition]] = {
    FETCH_SOURCE_DEAL: {
        FailureKind.TRANSPORT: Disposition.RELEASE,
        FailureKind.VALIDATION: Disposition.RELEASE,
        FailureKind.NOT_FOUND: Disposition.MARK_ERROR,
        FailureKind.CONFLICT: Disposition.RELEASE,
    },
    BUILD_DEAL_PAYLOAD: {kind: Disposition.MARK_ERROR for kind in FailureKind},
    CREATE_DEAL: {kind: Disposition.RELEASE for kind in FailureKind},
    AFTER_DEAL_CREATED: {kind: Disposition.MARK_ERROR for kind in FailureKind},
    CREATE_LINE_ITEM: {FailureKind.CONFLICT: Disposition.IGNORE},
    ASSOCIATE_LINE_ITEM: {FailureKind.CONFLICT: Disposition.IGNORE},
}


def disposition_for(call_site: str, kind: FailureKind) -> Disposition:
    """Look up what the ledger should do with a failure raised at ``call_site``.

    Unknown combinations are terminal so an unclassified failure never loops.
    """
    return CALL_SITE_DISPOSITIONS.get(call_site, {}).get(kind, Disposition.MARK_ERROR)
