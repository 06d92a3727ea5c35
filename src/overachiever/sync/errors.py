"""Error taxonomy for the sync engine.

Per-game failures are collected on the scan result; only ``ScanFailed``
and ``ScanCancelled`` end a ticket.
"""

from __future__ import annotations


class SyncError(Exception):
    """Base class for sync engine errors."""

    kind = "sync_error"


class QuotaExceeded(SyncError):
    """The provider quota could not be acquired within the configured wait bound."""

    kind = "quota_exceeded"


class ProviderUnavailable(SyncError):
    """A transient provider failure that persisted through every retry."""

    kind = "provider_unavailable"


class ProviderRejected(SyncError):
    """The provider refused the call (auth, not found, malformed). Never retried."""

    kind = "provider_rejected"


class PersistenceFailure(SyncError):
    """Writing state or history failed. The ticket may be retried."""

    kind = "persistence_failure"


class ScanCancelled(SyncError):
    kind = "cancelled"


class ScanFailed(SyncError):
    """A ticket-fatal failure at a given stage."""

    kind = "scan_failed"

    def __init__(self, stage: str, cause: SyncError) -> None:
        super().__init__(f"{stage}: {cause}")
        self.stage = stage
        self.cause = cause

    @property
    def cause_kind(self) -> str:
        return self.cause.kind

    @property
    def retryable(self) -> bool:
        return self.stage == "persisting" and isinstance(self.cause, PersistenceFailure)
