"""Capture cycle orchestration and materialized follower / followed state.

The manager owns the read-diff-append sequence for each tracked account and
keeps the latest materialized sets in memory so a new capture only has to be
compared against the cache instead of refolding the whole chain. The cache is
a convenience: storage stays authoritative and :meth:`BatchChainManager.refold`
rebuilds the same state from the first batch.
"""
from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, Optional, Sequence, Union

from .collector import Collector, Registry, fetch_memberships
from .config import LedgerSettings, get_ledger_settings
from .diff import CaptureDiff, Side, apply, diff
from .errors import (
    ChainConflict,
    CorruptChain,
    FetchIncomplete,
    FollowLedgerError,
    OutOfOrderCapture,
    StorageUnavailable,
)
from .identifiers import IdentifierInput, IdentifierSet
from .store import Batch, BatchId, BatchStore, Timestamp, epoch_seconds

LOGGER = logging.getLogger(__name__)


class AccountState(Enum):
    """Lifecycle of a tracked account's chain. There is no terminal state."""

    UNINITIALIZED = "uninitialized"  # no batch stored yet
    INITIALIZED = "initialized"  # initial snapshot stored
    UPDATED = "updated"  # at least one diff batch after the snapshot


@dataclass(frozen=True)
class MaterializedState:
    """Full follower / followed sets as of a given batch."""

    account_id: int
    followers: IdentifierSet
    followed: IdentifierSet
    last_batch_id: BatchId
    last_timestamp: int
    sequence: int

    def advance(self, batch: Batch) -> "MaterializedState":
        return self.advance_with(batch.diff, batch.id, batch.timestamp)

    def advance_with(
        self, change: CaptureDiff, batch_id: BatchId, timestamp: int
    ) -> "MaterializedState":
        return MaterializedState(
            account_id=self.account_id,
            followers=apply(
                self.followers,
                change.follower,
                account_id=self.account_id,
                batch_id=batch_id,
                timestamp=timestamp,
            ),
            followed=apply(
                self.followed,
                change.followed,
                account_id=self.account_id,
                batch_id=batch_id,
                timestamp=timestamp,
            ),
            last_batch_id=batch_id,
            last_timestamp=timestamp,
            sequence=self.sequence + 1,
        )

    def members(self, side: Side) -> IdentifierSet:
        return self.followers if side is Side.FOLLOWER else self.followed


@dataclass(frozen=True)
class CaptureResult:
    """Outcome of one committed capture cycle."""

    account_id: int
    batch_id: BatchId
    timestamp: int
    diff: CaptureDiff
    state: MaterializedState
    attempts: int = 1

    @property
    def is_initial(self) -> bool:
        return self.state.sequence == 1


def _empty_state(account_id: int) -> MaterializedState:
    return MaterializedState(
        account_id=account_id,
        followers=IdentifierSet(),
        followed=IdentifierSet(),
        last_batch_id=0,
        last_timestamp=0,
        sequence=0,
    )


def fold(
    account_id: int,
    batches: Iterable[Batch],
    start: Optional[MaterializedState] = None,
) -> Optional[MaterializedState]:
    """Apply batches in chain order on top of ``start`` (or an empty account)."""

    state = start
    for batch in batches:
        if batch.tracked_account_id != account_id:
            raise CorruptChain(
                f"Batch {batch.id} belongs to account {batch.tracked_account_id}",
                account_id=account_id,
                batch_id=batch.id,
            )
        state = (state or _empty_state(account_id)).advance(batch)
    return state


class BatchChainManager:
    """Runs capture cycles and maintains per-account materialized state.

    Cycles for different accounts run independently; cycles for one account
    are serialized by a per-account lock. Writers in other processes are
    fenced by the store's optimistic ``expected_previous_id`` check.
    """

    def __init__(
        self,
        store: BatchStore,
        *,
        collector: Optional[Collector] = None,
        registry: Optional[Registry] = None,
        settings: Optional[LedgerSettings] = None,
    ) -> None:
        self._store = store
        self._collector = collector
        self._registry = registry
        self._settings = settings or get_ledger_settings()
        self._cache: Dict[int, MaterializedState] = {}
        self._locks: Dict[int, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    @property
    def store(self) -> BatchStore:
        return self._store

    def _account_lock(self, account_id: int) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(account_id)
            if lock is None:
                lock = self._locks[account_id] = threading.Lock()
            return lock

    # ------------------------------------------------------------------
    # Materialized state
    # ------------------------------------------------------------------
    def _materialize_locked(self, account_id: int) -> Optional[MaterializedState]:
        tail = self._store.chain_tail(account_id)
        cached = self._cache.get(account_id)
        if tail is None:
            self._cache.pop(account_id, None)
            return None
        if cached is not None and cached.last_batch_id == tail.id:
            return cached

        if cached is not None and cached.sequence < tail.sequence:
            LOGGER.info(
                "Catching up account %s from sequence %s to %s",
                account_id,
                cached.sequence,
                tail.sequence,
            )
            state = fold(
                account_id,
                self._store.iter_chain(
                    account_id,
                    after_sequence=cached.sequence,
                    until_sequence=tail.sequence,
                ),
                start=cached,
            )
        else:
            state = fold(
                account_id,
                self._store.iter_chain(account_id, until_sequence=tail.sequence),
            )

        if state is None or state.last_batch_id != tail.id:
            raise CorruptChain(
                f"Chain walk ended at {state.last_batch_id if state else None}, "
                f"expected tail {tail.id}",
                account_id=account_id,
            )
        self._cache[account_id] = state
        return state

    def materialize(self, account_id: int) -> Optional[MaterializedState]:
        """Current follower / followed sets, or ``None`` for an untracked account."""

        with self._account_lock(account_id):
            try:
                return self._materialize_locked(account_id)
            except CorruptChain as exc:
                LOGGER.error("Cannot materialize account %s: %s", account_id, exc)
                raise

    def materialize_at(
        self,
        account_id: int,
        *,
        timestamp: Optional[Timestamp] = None,
        batch_id: Optional[BatchId] = None,
    ) -> Optional[MaterializedState]:
        """Follower / followed sets as they were at a past capture.

        Pass either ``batch_id`` or ``timestamp``; a timestamp selects the latest
        batch captured at or before it. Returns ``None`` if the account had no
        batch by then. The cache is used as a starting point when it is not
        ahead of the requested capture, and is never modified.
        """

        if (timestamp is None) == (batch_id is None):
            raise ValueError("materialize_at needs exactly one of timestamp or batch_id")

        if batch_id is not None:
            batch = self._store.get_batch(batch_id)
            if batch is None or batch.tracked_account_id != account_id:
                raise ValueError(f"Batch {batch_id} is not in the chain of account {account_id}")
            sequence = batch.sequence
        else:
            sequence = self._store.sequence_at(account_id, timestamp)
            if sequence is None:
                return None

        cached = self._cache.get(account_id)
        if cached is not None and cached.sequence <= sequence:
            batches = self._store.iter_chain(
                account_id, after_sequence=cached.sequence, until_sequence=sequence
            )
            state = fold(account_id, batches, start=cached)
        else:
            state = fold(account_id, self._store.iter_chain(account_id, until_sequence=sequence))

        if state is None or state.sequence != sequence:
            raise CorruptChain(
                f"Chain walk stopped before sequence {sequence}", account_id=account_id
            )
        return state

    def refold(self, account_id: int) -> Optional[MaterializedState]:
        """Rebuild state from the first batch, ignoring and leaving the cache untouched."""

        with self._account_lock(account_id):
            return fold(account_id, self._store.iter_chain(account_id))

    def cached_state(self, account_id: int) -> Optional[MaterializedState]:
        return self._cache.get(account_id)

    def state_of(self, account_id: int) -> AccountState:
        count = self._store.batch_count(account_id)
        if count == 0:
            return AccountState.UNINITIALIZED
        if count == 1:
            return AccountState.INITIALIZED
        return AccountState.UPDATED

    def invalidate(self, account_id: int) -> bool:
        with self._account_lock(account_id):
            return self._cache.pop(account_id, None) is not None

    def invalidate_all(self) -> int:
        with self._locks_guard:
            count = len(self._cache)
            self._cache.clear()
            return count

    # ------------------------------------------------------------------
    # Capture cycles
    # ------------------------------------------------------------------
    def record(
        self,
        account_id: int,
        timestamp: Timestamp,
        followers: IdentifierInput,
        followed: IdentifierInput,
    ) -> CaptureResult:
        """Diff complete membership sets against stored state and append a batch.

        A lost append race is retried once against refreshed state; a second
        conflict is surfaced to the caller.
        """

        ts = epoch_seconds(timestamp)
        followers = IdentifierSet(followers)
        followed = IdentifierSet(followed)

        with self._account_lock(account_id):
            for attempt in (1, 2):
                try:
                    previous = self._materialize_locked(account_id)
                except CorruptChain as exc:
                    LOGGER.error("Cannot record capture for account %s at %s: %s", account_id, ts, exc)
                    raise
                base = previous or _empty_state(account_id)
                change = CaptureDiff(
                    follower=diff(base.followers, followers),
                    followed=diff(base.followed, followed),
                )
                try:
                    batch_id = self._store.append(
                        account_id,
                        ts,
                        change.follower.additions,
                        change.follower.removals,
                        change.followed.additions,
                        change.followed.removals,
                        expected_previous_id=previous.last_batch_id if previous else None,
                    )
                except ChainConflict as exc:
                    self._cache.pop(account_id, None)
                    if attempt == 2:
                        LOGGER.error(
                            "Unresolved chain conflict for account %s at %s: %s",
                            account_id,
                            ts,
                            exc,
                        )
                        raise
                    LOGGER.warning(
                        "Chain conflict for account %s at %s; retrying with refreshed predecessor",
                        account_id,
                        ts,
                    )
                    continue
                except OutOfOrderCapture as exc:
                    LOGGER.error("Rejected out-of-order capture: %s", exc)
                    raise
                except StorageUnavailable as exc:
                    LOGGER.warning("Storage unavailable, capture aborted: %s", exc)
                    raise

                state = base.advance_with(change, batch_id, ts)
                self._cache[account_id] = state
                LOGGER.info(
                    "Stored batch %s for account %s: followers +%s/-%s, followed +%s/-%s",
                    batch_id,
                    account_id,
                    len(change.follower.additions),
                    len(change.follower.removals),
                    len(change.followed.additions),
                    len(change.followed.removals),
                )
                return CaptureResult(
                    account_id=account_id,
                    batch_id=batch_id,
                    timestamp=ts,
                    diff=change,
                    state=state,
                    attempts=attempt,
                )

        raise AssertionError("unreachable")

    def capture(
        self,
        account_id: int,
        timestamp: Optional[Timestamp] = None,
        *,
        cancel_event: Optional[threading.Event] = None,
    ) -> CaptureResult:
        """Fetch both sides through the collector and record them.

        The fetch happens outside the account lock and is bounded by the
        configured timeout. Without an explicit ``timestamp`` the capture is
        stamped when the fetch completes.
        """

        if self._collector is None:
            raise RuntimeError("BatchChainManager.capture requires a collector")

        requested_ts = epoch_seconds(timestamp) if timestamp is not None else None
        try:
            memberships = fetch_memberships(
                self._collector,
                account_id,
                timeout_seconds=self._settings.fetch_timeout_seconds,
                cancel_event=cancel_event,
                timestamp=requested_ts,
            )
        except FetchIncomplete as exc:
            LOGGER.warning("Fetch incomplete, capture aborted: %s", exc)
            raise

        ts = requested_ts if requested_ts is not None else int(time.time())
        if cancel_event is not None and cancel_event.is_set():
            exc = FetchIncomplete(
                "Capture cancelled after fetch", account_id=account_id, timestamp=ts
            )
            LOGGER.warning("Fetch incomplete, capture aborted: %s", exc)
            raise exc

        result = self.record(
            account_id, ts, memberships[Side.FOLLOWER], memberships[Side.FOLLOWED]
        )
        self._refresh_screen_name(account_id)
        return result

    def capture_all(
        self,
        account_ids: Sequence[int],
        *,
        max_workers: int = 4,
        cancel_event: Optional[threading.Event] = None,
    ) -> Dict[int, Union[CaptureResult, FollowLedgerError]]:
        """Capture several accounts in parallel; failures are returned, not raised."""

        outcomes: Dict[int, Union[CaptureResult, FollowLedgerError]] = {}
        if not account_ids:
            return outcomes

        def _run(account_id: int):
            try:
                return self.capture(account_id, cancel_event=cancel_event)
            except FollowLedgerError as exc:
                return exc

        with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="capture") as pool:
            for account_id, outcome in zip(account_ids, pool.map(_run, account_ids)):
                outcomes[account_id] = outcome

        failed = [aid for aid, outcome in outcomes.items() if isinstance(outcome, FollowLedgerError)]
        retryable = sum(1 for aid in failed if outcomes[aid].retryable)
        LOGGER.info(
            "Capture run COMPLETE: %s stored, %s failed (%s retryable)",
            len(outcomes) - len(failed),
            len(failed),
            retryable,
        )
        return outcomes

    def _refresh_screen_name(self, account_id: int) -> None:
        if self._registry is None:
            return
        try:
            screen_name = self._registry.resolve_screen_name(account_id)
        except Exception as exc:  # registry is best effort
            LOGGER.warning("Screen name lookup failed for account %s: %s", account_id, exc)
            return
        try:
            self._store.update_screen_name(account_id, screen_name)
        except StorageUnavailable as exc:
            LOGGER.warning("Could not store screen name for account %s: %s", account_id, exc)
