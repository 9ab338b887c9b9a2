"""Error taxonomy for the sync engine.

Recovery happens at three levels:

- per record: ``RecordValidationError`` (and any error raised while writing one
  record) is appended to the run's issue list and the run continues.
- per clinic: ``CredentialError``, ``PMSRequestError``, ``UnsupportedVendorError``
  and exhausted ``TransientNetworkError`` retries fail the SyncRun for that
  clinic; the orchestrator moves on to the next clinic.
- per invocation: ``SecretDecryptionError`` and ``StoreUnavailableError`` are
  fatal and propagate to the caller.
"""

from __future__ import annotations


class SyncError(Exception):
    """Base class for sync engine errors."""

    fatal: bool = False


class CredentialError(SyncError):
    """The PMS rejected the stored credential (HTTP 401/403)."""


class TransientNetworkError(SyncError):
    """Timeout, connection failure, rate limit or 5xx from the PMS."""

    def __init__(self, message: str, *, retry_after: float | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class PMSRequestError(SyncError):
    """Non-retryable PMS response (other 4xx, malformed body)."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class RecordValidationError(SyncError):
    """A single remote record could not be normalized."""

    def __init__(self, message: str, *, record_id: str | None = None) -> None:
        super().__init__(message)
        self.record_id = record_id


class QuotaCalculationError(SyncError):
    """Counting sessions for a patient failed."""


class UnsupportedVendorError(SyncError):
    """No adapter is registered for the requested vendor type."""


class SecretDecryptionError(SyncError):
    """A stored credential secret could not be decrypted."""

    fatal = True


class StoreUnavailableError(SyncError):
    """The relational store cannot be reached."""

    fatal = True


class RunLockLost(SyncError):
    """The run was marked abandoned and no longer holds the clinic+vendor lock."""
