"""
Request status state machine.

Statuses fall into two disjoint groups. Upstream-derived statuses mirror
what the request manager reports and may be overwritten by reconciliation
or webhook ingestion. Locally-managed statuses are owned by the selection,
completion and rejection workflows and are never overwritten from upstream.
"""

from enum import Enum
from typing import Optional


class RequestStatus(str, Enum):
    """Lifecycle status of a local request."""
    PENDING = "pending"
    SEARCHING = "searching"
    AWAITING_SELECTION = "awaiting_selection"
    SELECTED = "selected"
    PROCESSING = "processing"
    DOWNLOADING = "downloading"
    AVAILABLE = "available"
    DONE = "done"
    DECLINED = "declined"
    FAILED = "failed"


UPSTREAM_DERIVED = frozenset({
    RequestStatus.PENDING,
    RequestStatus.SEARCHING,
    RequestStatus.AWAITING_SELECTION,
    RequestStatus.PROCESSING,
    RequestStatus.AVAILABLE,
    RequestStatus.DECLINED,
})

LOCALLY_MANAGED = frozenset({
    RequestStatus.SELECTED,
    RequestStatus.DOWNLOADING,
    RequestStatus.DONE,
    RequestStatus.FAILED,
})

INITIAL_STATUS = RequestStatus.AWAITING_SELECTION

# Upstream request.status codes
UPSTREAM_REQUEST_PENDING = 1
UPSTREAM_REQUEST_APPROVED = 2
UPSTREAM_REQUEST_DECLINED = 3

# Upstream media.status codes
MEDIA_UNKNOWN = 1
MEDIA_PENDING = 2
MEDIA_PROCESSING = 3
MEDIA_PARTIALLY_AVAILABLE = 4
MEDIA_AVAILABLE = 5


def is_locally_managed(status) -> bool:
    """True when only local workflows may change this status."""
    return RequestStatus(status) in LOCALLY_MANAGED


def derive_status(
    request_status: Optional[int],
    media_status: Optional[int],
) -> RequestStatus:
    """
    Map an upstream request/media status pair to a local status.

    Pure and deterministic: shared by webhook ingestion and reconciliation.
    """
    if request_status == UPSTREAM_REQUEST_DECLINED:
        return RequestStatus.DECLINED
    media_status = media_status or MEDIA_UNKNOWN
    if media_status >= MEDIA_PARTIALLY_AVAILABLE:
        return RequestStatus.AVAILABLE
    if media_status == MEDIA_PROCESSING:
        return RequestStatus.PROCESSING
    return RequestStatus.AWAITING_SELECTION
