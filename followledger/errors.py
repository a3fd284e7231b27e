"""Error kinds raised by the capture pipeline.

Every error carries the tracked account and the capture timestamp that was
being attempted so operators can correlate log lines with stored chains.
``retryable`` marks the kinds a caller may simply re-run (the whole cycle,
never a partial one).
"""
from __future__ import annotations

from typing import Optional


class FollowLedgerError(Exception):
    """Base class for all ledger failures."""

    retryable = False

    def __init__(
        self,
        message: str,
        *,
        account_id: Optional[int] = None,
        timestamp: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.account_id = account_id
        self.timestamp = timestamp

    def __str__(self) -> str:
        message = super().__str__()
        context = []
        if self.account_id is not None:
            context.append(f"account={self.account_id}")
        if self.timestamp is not None:
            context.append(f"timestamp={self.timestamp}")
        if context:
            return f"{message} ({', '.join(context)})"
        return message


class FetchIncomplete(FollowLedgerError):
    """The collector could not produce a complete membership set."""

    retryable = True

    def __init__(self, message: str, *, side: Optional[str] = None, **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.side = side


class OutOfOrderCapture(FollowLedgerError):
    """Capture timestamp is not strictly after the chain's latest batch."""

    def __init__(self, message: str, *, latest_timestamp: Optional[int] = None, **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.latest_timestamp = latest_timestamp


class ChainConflict(FollowLedgerError):
    """Another writer extended the chain first."""

    def __init__(
        self,
        message: str,
        *,
        expected_previous_id: Optional[int] = None,
        actual_previous_id: Optional[int] = None,
        **kwargs,
    ) -> None:
        super().__init__(message, **kwargs)
        self.expected_previous_id = expected_previous_id
        self.actual_previous_id = actual_previous_id


class StorageUnavailable(FollowLedgerError):
    """Persistence layer unreachable or failing."""

    retryable = True


class CorruptChain(FollowLedgerError):
    """Stored batches violate the chain or fold invariants."""

    def __init__(self, message: str, *, batch_id: Optional[int] = None, **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.batch_id = batch_id


class InvalidBatch(FollowLedgerError, ValueError):
    """Diff sets handed to the store are inconsistent."""


class InvalidIdentifier(ValueError):
    """Account ID does not fit a signed 64-bit column."""

    def __init__(self, value: object) -> None:
        super().__init__(f"Invalid account ID: {value!r}")
        self.value = value
