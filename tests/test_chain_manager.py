"""Tests for BatchChainManager capture cycles and materialized state."""
from __future__ import annotations

import logging
import tempfile
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

import pytest
from hypothesis import given, settings, strategies as st
from sqlalchemy import text

from followledger.chain import AccountState, BatchChainManager, CaptureResult, fold
from followledger.config import LedgerSettings, create_ledger_engine
from followledger.diff import Side
from followledger.errors import (
    ChainConflict,
    CorruptChain,
    FetchIncomplete,
    InvalidIdentifier,
    OutOfOrderCapture,
)
from followledger.store import BatchStore
from tests.helpers.collectors import FailingCollector


ACCOUNT = 42


@pytest.fixture
def manager(ledger_store, ledger_settings, static_collector, mock_registry) -> BatchChainManager:
    return BatchChainManager(
        ledger_store,
        collector=static_collector,
        registry=mock_registry,
        settings=ledger_settings,
    )


# ==============================================================================
# Recording
# ==============================================================================

@pytest.mark.integration
def test_first_record_initializes_account(manager: BatchChainManager):
    assert manager.state_of(ACCOUNT) is AccountState.UNINITIALIZED
    assert manager.materialize(ACCOUNT) is None

    result = manager.record(ACCOUNT, 100, [1, 2, 3], [10])

    assert result.is_initial
    assert result.attempts == 1
    assert result.diff.follower.additions == {1, 2, 3}
    assert result.state.followers == {1, 2, 3}
    assert result.state.followed == {10}
    assert manager.state_of(ACCOUNT) is AccountState.INITIALIZED


@pytest.mark.integration
def test_follower_change_is_stored_as_delta(manager: BatchChainManager):
    manager.record(ACCOUNT, 100, [1, 2, 3], [])
    result = manager.record(ACCOUNT, 200, [2, 3, 4], [])

    assert result.diff.follower.additions == {4}
    assert result.diff.follower.removals == {1}
    assert result.diff.followed.is_empty
    assert result.state.followers == {2, 3, 4}
    assert result.state.sequence == 2
    assert manager.state_of(ACCOUNT) is AccountState.UPDATED

    stored = manager.store.get_batch(result.batch_id)
    assert stored.follower_additions == {4}
    assert stored.follower_removals == {1}


@pytest.mark.integration
def test_unchanged_capture_still_appends_empty_batch(manager: BatchChainManager):
    manager.record(ACCOUNT, 100, [1], [2])
    result = manager.record(ACCOUNT, 200, [1], [2])

    assert result.diff.is_empty
    assert manager.store.batch_count(ACCOUNT) == 2


@pytest.mark.integration
def test_empty_capture_removes_everyone(manager: BatchChainManager):
    manager.record(ACCOUNT, 100, [1, 2], [3])
    result = manager.record(ACCOUNT, 200, [], [])

    assert result.diff.follower.removals == {1, 2}
    assert result.diff.followed.removals == {3}
    assert len(result.state.followers) == 0


@pytest.mark.integration
def test_cached_state_matches_full_refold(manager: BatchChainManager):
    snapshots = [([1, 2, 3], [7]), ([2, 3, 4], [7, 8]), ([4], []), ([4, 5, 1], [9])]
    for offset, (followers, followed) in enumerate(snapshots):
        manager.record(ACCOUNT, 100 + offset, followers, followed)

    cached = manager.cached_state(ACCOUNT)
    assert cached == manager.refold(ACCOUNT)
    assert cached.followers == {1, 4, 5}
    assert cached.followed == {9}
    assert manager.cached_state(ACCOUNT) is cached


@pytest.mark.integration
def test_out_of_order_record_leaves_state_untouched(manager: BatchChainManager):
    first = manager.record(ACCOUNT, 100, [1], [])

    with pytest.raises(OutOfOrderCapture):
        manager.record(ACCOUNT, 100, [1, 2], [])
    with pytest.raises(OutOfOrderCapture):
        manager.record(ACCOUNT, 50, [1, 2], [])

    assert manager.store.batch_count(ACCOUNT) == 1
    assert manager.materialize(ACCOUNT) == first.state


@pytest.mark.integration
def test_invalid_identifier_is_rejected_before_storage(manager: BatchChainManager):
    with pytest.raises(InvalidIdentifier):
        manager.record(ACCOUNT, 100, [1, -5], [])

    assert manager.store.batch_count(ACCOUNT) == 0


# ==============================================================================
# Cache Maintenance
# ==============================================================================

@pytest.mark.integration
def test_cache_catches_up_with_other_writers(ledger_store, ledger_settings, caplog):
    writer = BatchChainManager(ledger_store, settings=ledger_settings)
    reader = BatchChainManager(ledger_store, settings=ledger_settings)

    writer.record(ACCOUNT, 100, [1, 2], [5])
    assert reader.materialize(ACCOUNT).followers == {1, 2}

    writer.record(ACCOUNT, 200, [2, 3], [])
    with caplog.at_level(logging.INFO, logger="followledger.chain"):
        state = reader.materialize(ACCOUNT)

    assert "Catching up" in caplog.text
    assert state.followers == {2, 3}
    assert state.followed == set()
    assert state == reader.refold(ACCOUNT)


@pytest.mark.integration
def test_invalidate_drops_cached_state(manager: BatchChainManager):
    manager.record(1, 100, [1], [])
    manager.record(2, 100, [2], [])

    assert manager.invalidate(1) is True
    assert manager.invalidate(1) is False
    assert manager.cached_state(1) is None
    assert manager.invalidate_all() == 1
    assert manager.materialize(2).followers == {2}


@pytest.mark.integration
def test_materialize_reports_corrupt_chain(manager: BatchChainManager):
    manager.record(ACCOUNT, 100, [1, 2], [])
    second = manager.record(ACCOUNT, 200, [1, 2, 3], [])
    manager.invalidate(ACCOUNT)

    with manager.store.engine.begin() as conn:
        conn.execute(
            text("UPDATE batch SET follower_additions = :blob WHERE id = :id"),
            {"blob": (2).to_bytes(8, "little", signed=True), "id": second.batch_id},
        )

    with pytest.raises(CorruptChain) as excinfo:
        manager.materialize(ACCOUNT)

    assert excinfo.value.batch_id == second.batch_id


# ==============================================================================
# Historical State
# ==============================================================================

HISTORY = [
    (100, [1, 2, 3], [10]),
    (200, [2, 3, 4], [10, 11]),
    (300, [], [11]),
    (400, [4, 5], []),
]


@pytest.fixture
def recorded_history(manager: BatchChainManager):
    return [
        manager.record(ACCOUNT, timestamp, followers, followed)
        for timestamp, followers, followed in HISTORY
    ]


@pytest.mark.integration
@pytest.mark.parametrize("warm_cache", [False, True], ids=["cold", "warm"])
def test_materialize_at_rebuilds_each_capture(
    manager: BatchChainManager, recorded_history, warm_cache
):
    if not warm_cache:
        manager.invalidate(ACCOUNT)

    for result, (timestamp, followers, followed) in zip(recorded_history, HISTORY):
        by_batch = manager.materialize_at(ACCOUNT, batch_id=result.batch_id)
        by_time = manager.materialize_at(ACCOUNT, timestamp=timestamp)
        between = manager.materialize_at(ACCOUNT, timestamp=timestamp + 50)

        assert by_batch.followers == set(followers)
        assert by_batch.followed == set(followed)
        assert by_batch.last_batch_id == result.batch_id
        assert by_time == by_batch
        assert between == by_batch


@pytest.mark.integration
def test_materialize_at_leaves_cache_untouched(
    manager: BatchChainManager, recorded_history, ledger_settings
):
    cached = manager.cached_state(ACCOUNT)
    other = BatchChainManager(manager.store, settings=ledger_settings)
    latest = other.record(ACCOUNT, 500, [5, 6], [12])

    ahead = manager.materialize_at(ACCOUNT, timestamp=500)
    behind = manager.materialize_at(ACCOUNT, batch_id=recorded_history[1].batch_id)

    assert ahead == latest.state
    assert behind.followers == {2, 3, 4}
    assert behind.sequence == 2
    assert manager.cached_state(ACCOUNT) is cached

    manager.invalidate(ACCOUNT)
    manager.materialize_at(ACCOUNT, timestamp=200)
    assert manager.cached_state(ACCOUNT) is None


@pytest.mark.integration
def test_materialize_at_before_first_capture(manager: BatchChainManager, recorded_history):
    assert manager.materialize_at(ACCOUNT, timestamp=99) is None
    assert manager.materialize_at(7, timestamp=1000) is None


@pytest.mark.integration
def test_materialize_at_rejects_foreign_or_missing_batch(manager: BatchChainManager, recorded_history):
    other = manager.record(7, 100, [1], [])

    with pytest.raises(ValueError):
        manager.materialize_at(ACCOUNT, batch_id=other.batch_id)
    with pytest.raises(ValueError):
        manager.materialize_at(ACCOUNT, batch_id=10_000)


@pytest.mark.unit
def test_materialize_at_needs_exactly_one_selector(ledger_store, ledger_settings):
    manager = BatchChainManager(ledger_store, settings=ledger_settings)

    with pytest.raises(ValueError):
        manager.materialize_at(ACCOUNT)
    with pytest.raises(ValueError):
        manager.materialize_at(ACCOUNT, timestamp=100, batch_id=1)


# ==============================================================================
# Concurrent Writers
# ==============================================================================

@pytest.mark.integration
def test_lost_race_is_retried_against_refreshed_state(manager: BatchChainManager, monkeypatch):
    store = manager.store
    manager.record(ACCOUNT, 100, [1, 2, 3], [])
    real_append = store.append
    calls = {"count": 0}

    def racing_append(account_id, timestamp, *sets, **kwargs):
        calls["count"] += 1
        if calls["count"] == 1:
            # Another process extends the chain between our read and our write.
            real_append(account_id, 150, [9])
        return real_append(account_id, timestamp, *sets, **kwargs)

    monkeypatch.setattr(store, "append", racing_append)

    result = manager.record(ACCOUNT, 200, [2, 3, 4], [])

    assert result.attempts == 2
    assert result.diff.follower.additions == {4}
    assert result.diff.follower.removals == {1, 9}
    assert result.state == manager.refold(ACCOUNT)
    assert store.batch_count(ACCOUNT) == 3


@pytest.mark.integration
@pytest.mark.parametrize("stale_cache", [False, True], ids=["full-fold", "catch-up"])
def test_writer_landing_after_tail_read_is_retried(
    manager: BatchChainManager, ledger_settings, monkeypatch, stale_cache
):
    store = manager.store
    other = BatchChainManager(store, settings=ledger_settings)
    manager.record(ACCOUNT, 100, [1, 2, 3], [])
    if stale_cache:
        other.record(ACCOUNT, 120, [1, 2, 3, 7], [])
    else:
        manager.invalidate(ACCOUNT)
    real_chain_tail = store.chain_tail
    calls = {"count": 0}

    def racing_chain_tail(account_id):
        calls["count"] += 1
        tail = real_chain_tail(account_id)
        if calls["count"] == 1:
            # Another writer extends the chain after the tail has been read.
            store.append(account_id, 150, [9])
        return tail

    monkeypatch.setattr(store, "chain_tail", racing_chain_tail)

    result = manager.record(ACCOUNT, 200, [2, 3, 4], [])

    assert result.attempts == 2
    assert result.diff.follower.additions == {4}
    assert result.diff.follower.removals == ({1, 7, 9} if stale_cache else {1, 9})
    assert result.state == manager.refold(ACCOUNT)
    assert store.batch_count(ACCOUNT) == (4 if stale_cache else 3)
    assert store.validate_chain(ACCOUNT).ok


@pytest.mark.integration
def test_repeated_conflict_is_surfaced(manager: BatchChainManager, monkeypatch):
    store = manager.store
    manager.record(ACCOUNT, 100, [1], [])
    real_append = store.append
    competitor_ts = iter([150, 160])

    def always_racing(account_id, timestamp, *sets, **kwargs):
        real_append(account_id, next(competitor_ts), [])
        return real_append(account_id, timestamp, *sets, **kwargs)

    monkeypatch.setattr(store, "append", always_racing)

    with pytest.raises(ChainConflict):
        manager.record(ACCOUNT, 200, [1, 2], [])

    assert manager.cached_state(ACCOUNT) is None
    assert store.batch_count(ACCOUNT) == 3
    assert store.count_mentions(2) == 0


@pytest.mark.integration
def test_accounts_record_concurrently(manager: BatchChainManager):
    accounts = list(range(1, 9))

    def run(account_id: int) -> None:
        manager.record(account_id, 100, [account_id, 1000], [])
        manager.record(account_id, 200, [1000, 2000 + account_id], [account_id])
        manager.record(account_id, 300, [2000 + account_id], [account_id, 3000])

    with ThreadPoolExecutor(max_workers=4) as pool:
        list(pool.map(run, accounts))

    for account_id in accounts:
        state = manager.materialize(account_id)
        assert state.followers == {2000 + account_id}
        assert state.followed == {account_id, 3000}
        assert state == manager.refold(account_id)
        assert manager.store.validate_chain(account_id).ok


# ==============================================================================
# Capture Cycles
# ==============================================================================

@pytest.mark.integration
def test_capture_fetches_both_sides_and_records(manager: BatchChainManager, static_collector):
    static_collector.set(ACCOUNT, followers=[1, 2, 3], followed=[10])
    manager.capture(ACCOUNT, 100)

    static_collector.set(ACCOUNT, followers=[2, 3, 4], followed=[10])
    result = manager.capture(ACCOUNT, 200)

    assert result.diff.follower.additions == {4}
    assert result.diff.follower.removals == {1}
    assert sorted(static_collector.calls) == sorted(
        [(ACCOUNT, Side.FOLLOWER), (ACCOUNT, Side.FOLLOWED)] * 2
    )
    assert manager.store.get_tracked_account(ACCOUNT).screen_name == f"user{ACCOUNT}"


@pytest.mark.integration
def test_capture_defaults_timestamp_to_fetch_completion(manager: BatchChainManager, static_collector):
    static_collector.set(ACCOUNT, followers=[1], followed=[])
    before = int(time.time())

    result = manager.capture(ACCOUNT)

    assert before <= result.timestamp <= int(time.time())


@pytest.mark.integration
def test_incomplete_fetch_writes_nothing(ledger_store, ledger_settings):
    collector = FailingCollector(Side.FOLLOWED)
    collector.set(ACCOUNT, followers=[1], followed=[2])
    manager = BatchChainManager(ledger_store, collector=collector, settings=ledger_settings)

    with pytest.raises(FetchIncomplete) as excinfo:
        manager.capture(ACCOUNT, 100)

    assert excinfo.value.side == Side.FOLLOWED.value
    assert excinfo.value.retryable
    assert ledger_store.batch_count(ACCOUNT) == 0
    assert manager.state_of(ACCOUNT) is AccountState.UNINITIALIZED


@pytest.mark.unit
def test_capture_requires_collector(ledger_store, ledger_settings):
    manager = BatchChainManager(ledger_store, settings=ledger_settings)

    with pytest.raises(RuntimeError):
        manager.capture(ACCOUNT, 100)


@pytest.mark.integration
def test_cancelled_capture_writes_nothing(manager: BatchChainManager, static_collector):
    static_collector.set(ACCOUNT, followers=[1], followed=[2])
    cancel = threading.Event()
    cancel.set()

    with pytest.raises(FetchIncomplete):
        manager.capture(ACCOUNT, 100, cancel_event=cancel)

    assert static_collector.calls == []
    assert manager.store.batch_count(ACCOUNT) == 0


@pytest.mark.integration
def test_registry_failure_does_not_fail_capture(manager: BatchChainManager, static_collector, mock_registry):
    static_collector.set(ACCOUNT, followers=[1], followed=[])
    mock_registry.resolve_screen_name.side_effect = RuntimeError("registry down")

    result = manager.capture(ACCOUNT, 100)

    assert result.is_initial
    assert manager.store.get_tracked_account(ACCOUNT).screen_name is None


@pytest.mark.integration
def test_capture_all_collects_results_and_failures(manager: BatchChainManager, static_collector, caplog):
    static_collector.set(1, followers=[10], followed=[])
    static_collector.set(2, followers=[20], followed=[21])

    with caplog.at_level(logging.INFO, logger="followledger.chain"):
        outcomes = manager.capture_all([1, 2, 3], max_workers=2)

    assert isinstance(outcomes[1], CaptureResult)
    assert isinstance(outcomes[2], CaptureResult)
    assert isinstance(outcomes[3], FetchIncomplete)
    assert "Capture run COMPLETE: 2 stored, 1 failed (1 retryable)" in caplog.text
    assert manager.capture_all([]) == {}


# ==============================================================================
# Fold Properties
# ==============================================================================

snapshot_pairs = st.tuples(
    st.frozensets(st.integers(min_value=0, max_value=30), max_size=15),
    st.frozensets(st.integers(min_value=0, max_value=30), max_size=15),
)


@pytest.mark.property
@settings(max_examples=25, deadline=None)
@given(snapshots=st.lists(snapshot_pairs, min_size=1, max_size=6))
def test_stored_chain_folds_to_last_capture(snapshots):
    with tempfile.TemporaryDirectory() as tmp:
        ledger_settings = LedgerSettings(database_url=f"sqlite:///{Path(tmp) / 'ledger.db'}")
        engine = create_ledger_engine(ledger_settings)
        try:
            store = BatchStore(engine, base_delay_seconds=0.0)
            manager = BatchChainManager(store, settings=ledger_settings)
            for offset, (followers, followed) in enumerate(snapshots):
                manager.record(ACCOUNT, 1000 + offset, followers, followed)

            refolded = fold(ACCOUNT, store.iter_chain(ACCOUNT))
            assert refolded == manager.cached_state(ACCOUNT)
            assert refolded.followers == snapshots[-1][0]
            assert refolded.followed == snapshots[-1][1]
            assert refolded.sequence == len(snapshots)
        finally:
            engine.dispose()
