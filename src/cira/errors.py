"""Typed failures surfaced by the sync engine."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .models.reports import SyncReport


class CiraSyncError(Exception):
    """Base class for every failure the sync engine raises."""

    reason = "error"


class NotAuthenticated(CiraSyncError):
    """No current identity; blocks any sync activity."""

    reason = "not-authenticated"


class TransportFailure(CiraSyncError):
    """Network, timeout or non-success response from a remote store."""

    reason = "transport-failure"

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class NetworkUnavailable(TransportFailure):
    """The device is offline; the operation was not attempted."""

    reason = "network-unavailable"


class DecodeFailure(CiraSyncError):
    """A server payload could not be decoded into a known shape."""

    reason = "decode-error"

    def __init__(self, message: str, payload: Any = None):
        super().__init__(message)
        self.payload = payload


class NotFound(CiraSyncError):
    """The requested local entity does not exist."""

    reason = "not-found"


class StoreUnavailable(CiraSyncError):
    """The local store could not be opened or written."""

    reason = "store-unavailable"


class PartialBatchFailure(CiraSyncError):
    """Some entities in a drain failed; the rest were still synced."""

    reason = "partial-batch-failure"

    def __init__(self, report: "SyncReport"):
        failed = report.failed_count
        total = len(report.outcomes)
        super().__init__(f"{failed} of {total} entities failed to sync")
        self.report = report
