"""Delta storage for follower / followed membership of tracked accounts."""

from __future__ import annotations

from .chain import AccountState, BatchChainManager, CaptureResult, MaterializedState, fold
from .collector import Collector, Registry, fetch_memberships
from .diff import CaptureDiff, Side, SideDiff, apply, diff
from .errors import (
    ChainConflict,
    CorruptChain,
    FetchIncomplete,
    FollowLedgerError,
    InvalidBatch,
    InvalidIdentifier,
    OutOfOrderCapture,
    StorageUnavailable,
)
from .identifiers import IdentifierSet
from .reverse_index import BatchMention, BatchMentions, ReverseIndex
from .store import Batch, BatchStore, BatchSummary, ChainReport, DiffRole, TrackedAccount, get_batch_store

__all__ = [
    "AccountState",
    "Batch",
    "BatchChainManager",
    "BatchMention",
    "BatchMentions",
    "BatchStore",
    "BatchSummary",
    "CaptureDiff",
    "CaptureResult",
    "ChainConflict",
    "ChainReport",
    "Collector",
    "CorruptChain",
    "DiffRole",
    "FetchIncomplete",
    "FollowLedgerError",
    "IdentifierSet",
    "InvalidBatch",
    "InvalidIdentifier",
    "MaterializedState",
    "OutOfOrderCapture",
    "Registry",
    "ReverseIndex",
    "Side",
    "SideDiff",
    "StorageUnavailable",
    "TrackedAccount",
    "apply",
    "diff",
    "fetch_memberships",
    "fold",
    "get_batch_store",
]
