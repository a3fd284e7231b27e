"""Persistence for capture batches, tracked accounts and the reverse index."""
from __future__ import annotations

import calendar
import logging
import numbers
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Dict, Iterator, List, Optional, Set, Tuple, TypeVar, Union

from sqlalchemy import (
    BigInteger,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    LargeBinary,
    MetaData,
    PrimaryKeyConstraint,
    String,
    Table,
    UniqueConstraint,
    func,
    insert,
    select,
    tuple_,
    update,
)
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError, OperationalError

from .diff import CaptureDiff, Side, SideDiff, apply
from .errors import (
    ChainConflict,
    CorruptChain,
    InvalidBatch,
    OutOfOrderCapture,
    StorageUnavailable,
)
from .identifiers import MAX_ACCOUNT_ID, IdentifierInput, IdentifierSet

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

BatchId = int
Timestamp = Union[int, datetime]

_UNSET = object()
_ENTRY_CHUNK_SIZE = 10_000


class DiffRole(str, Enum):
    """The diff set of a batch an ID appears in."""

    FOLLOWER_ADDITION = "follower-addition"
    FOLLOWER_REMOVAL = "follower-removal"
    FOLLOWED_ADDITION = "followed-addition"
    FOLLOWED_REMOVAL = "followed-removal"

    @property
    def side(self) -> Side:
        return Side.FOLLOWER if self.value.startswith("follower-") else Side.FOLLOWED

    @property
    def is_addition(self) -> bool:
        return self.value.endswith("-addition")

    @property
    def column(self) -> str:
        return self.value.replace("-", "_") + "s"


def epoch_seconds(value: Timestamp) -> int:
    """Normalize a capture time to integer epoch seconds (naive datetimes are UTC)."""

    if isinstance(value, datetime):
        return calendar.timegm(value.utctimetuple())
    if isinstance(value, bool) or not isinstance(value, numbers.Integral):
        raise TypeError(f"timestamp must be int seconds or datetime, got {type(value)!r}")
    return int(value)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _storable_id(value: object) -> bool:
    # IDs outside the signed 64-bit range cannot be bound as SQLite integers.
    if isinstance(value, bool) or not isinstance(value, numbers.Integral):
        return False
    return 0 <= value <= MAX_ACCOUNT_ID


@dataclass(frozen=True)
class TrackedAccount:
    """A captured account and its last known screen name."""

    account_id: int
    screen_name: Optional[str]
    first_seen_at: datetime
    updated_at: datetime


@dataclass(frozen=True)
class Batch:
    """One persisted capture: the four diff sets against the previous capture."""

    id: BatchId
    tracked_account_id: int
    sequence: int
    timestamp: int
    next_id: Optional[BatchId]
    follower_additions: IdentifierSet = field(default_factory=IdentifierSet)
    follower_removals: IdentifierSet = field(default_factory=IdentifierSet)
    followed_additions: IdentifierSet = field(default_factory=IdentifierSet)
    followed_removals: IdentifierSet = field(default_factory=IdentifierSet)

    @property
    def captured_at(self) -> datetime:
        return datetime.fromtimestamp(self.timestamp, tz=timezone.utc)

    @property
    def is_initial(self) -> bool:
        return self.sequence == 1

    @property
    def follower_diff(self) -> SideDiff:
        return SideDiff(self.follower_additions, self.follower_removals)

    @property
    def followed_diff(self) -> SideDiff:
        return SideDiff(self.followed_additions, self.followed_removals)

    @property
    def diff(self) -> CaptureDiff:
        return CaptureDiff(follower=self.follower_diff, followed=self.followed_diff)

    def diff_set(self, role: DiffRole) -> IdentifierSet:
        return getattr(self, role.column)


@dataclass(frozen=True)
class BatchSummary:
    """Batch metadata with diff set sizes, without loading the sets."""

    id: BatchId
    tracked_account_id: int
    sequence: int
    timestamp: int
    next_id: Optional[BatchId]
    counts: Dict[DiffRole, int]


@dataclass(frozen=True)
class MentionRow:
    """One reverse-index entry."""

    batch_id: BatchId
    role: DiffRole
    tracked_account_id: int
    timestamp: int

    @property
    def sort_key(self) -> Tuple[int, int, str]:
        return (self.timestamp, self.batch_id, self.role.value)


@dataclass
class ChainReport:
    """Outcome of validating one account's chain."""

    account_id: int
    batch_count: int = 0
    head_id: Optional[BatchId] = None
    tail_id: Optional[BatchId] = None
    follower_count: Optional[int] = None
    followed_count: Optional[int] = None
    problems: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.problems


class BatchStore:
    """Typed wrapper around the ledger database."""

    TRACKED_TABLE = "tracked_account"
    BATCH_TABLE = "batch"
    ENTRY_TABLE = "batch_entry"
    _RETRYABLE_SQLITE_ERRORS = ("disk i/o error", "database is locked")

    def __init__(
        self,
        engine: Engine,
        *,
        max_attempts: int = 3,
        base_delay_seconds: float = 1.0,
    ) -> None:
        self._engine = engine
        self._max_attempts = max_attempts
        self._base_delay_seconds = base_delay_seconds
        self._metadata = MetaData()
        self._tracked_table = Table(
            self.TRACKED_TABLE,
            self._metadata,
            Column("account_id", BigInteger, primary_key=True, autoincrement=False),
            Column("screen_name", String, nullable=True),
            Column("first_seen_at", DateTime(timezone=False), nullable=False),
            Column("updated_at", DateTime(timezone=False), nullable=False),
        )
        self._batch_table = Table(
            self.BATCH_TABLE,
            self._metadata,
            Column("id", Integer, primary_key=True, autoincrement=True),
            Column(
                "tracked_account_id",
                BigInteger,
                ForeignKey(f"{self.TRACKED_TABLE}.account_id"),
                nullable=False,
            ),
            Column("sequence", Integer, nullable=False),
            Column("timestamp", BigInteger, nullable=False),
            Column("next_id", Integer, ForeignKey(f"{self.BATCH_TABLE}.id"), nullable=True, unique=True),
            Column("follower_additions", LargeBinary, nullable=False, default=b""),
            Column("follower_removals", LargeBinary, nullable=False, default=b""),
            Column("followed_additions", LargeBinary, nullable=False, default=b""),
            Column("followed_removals", LargeBinary, nullable=False, default=b""),
            UniqueConstraint("tracked_account_id", "sequence", name="uq_batch_account_sequence"),
            Index("ix_batch_account_timestamp", "tracked_account_id", "timestamp"),
            Index("ix_batch_timestamp", "timestamp"),
            sqlite_autoincrement=True,
        )
        self._entry_table = Table(
            self.ENTRY_TABLE,
            self._metadata,
            Column("account_id", BigInteger, nullable=False),
            Column("batch_id", Integer, ForeignKey(f"{self.BATCH_TABLE}.id"), nullable=False),
            Column("role", String(20), nullable=False),
            Column("tracked_account_id", BigInteger, nullable=False),
            Column("timestamp", BigInteger, nullable=False),
            PrimaryKeyConstraint("account_id", "batch_id", "role", name="pk_batch_entry"),
            Index("ix_batch_entry_lookup", "account_id", "timestamp", "batch_id", "role"),
        )
        self._execute_with_retry(
            "create_schema",
            lambda engine: self._metadata.create_all(engine, checkfirst=True),
        )

    @property
    def engine(self) -> Engine:
        return self._engine

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _execute_with_retry(
        self,
        op_name: str,
        fn: Callable[[Engine], T],
        *,
        max_attempts: Optional[int] = None,
        base_delay_seconds: Optional[float] = None,
        account_id: Optional[int] = None,
        timestamp: Optional[int] = None,
    ) -> T:
        max_attempts = max_attempts or self._max_attempts
        if base_delay_seconds is None:
            base_delay_seconds = self._base_delay_seconds
        last_exc: Optional[OperationalError] = None
        for attempt in range(1, max_attempts + 1):
            try:
                return fn(self._engine)
            except OperationalError as exc:
                if getattr(exc, "orig", None) is not None:
                    message = str(exc.orig).lower()
                else:
                    message = str(exc).lower()

                if not any(token in message for token in self._RETRYABLE_SQLITE_ERRORS):
                    LOGGER.error("Storage failure during %s: %s", op_name, message or exc)
                    raise StorageUnavailable(
                        f"{op_name} failed: {message or exc}",
                        account_id=account_id,
                        timestamp=timestamp,
                    ) from exc

                last_exc = exc
                LOGGER.error(
                    "Retryable SQLite error during %s (attempt %s/%s): %s",
                    op_name,
                    attempt,
                    max_attempts,
                    message or exc,
                )
                self._engine.dispose()

                if attempt == max_attempts:
                    break

                sleep_for = base_delay_seconds * (2 ** (attempt - 1))
                time.sleep(sleep_for)

        assert last_exc is not None
        LOGGER.error(
            "Exhausted retries for %s after %s attempts; giving up.",
            op_name,
            max_attempts,
        )
        raise StorageUnavailable(
            f"{op_name} failed after {max_attempts} attempts",
            account_id=account_id,
            timestamp=timestamp,
        ) from last_exc

    def _tail_row(self, conn: Connection, account_id: int):
        table = self._batch_table
        stmt = (
            select(table.c.id, table.c.sequence, table.c.timestamp, table.c.next_id)
            .where(table.c.tracked_account_id == account_id)
            .order_by(table.c.sequence.desc())
            .limit(1)
        )
        return conn.execute(stmt).fetchone()

    def _batch_from_row(self, row) -> Batch:
        return Batch(
            id=row.id,
            tracked_account_id=row.tracked_account_id,
            sequence=row.sequence,
            timestamp=row.timestamp,
            next_id=row.next_id,
            follower_additions=IdentifierSet.from_bytes(row.follower_additions),
            follower_removals=IdentifierSet.from_bytes(row.follower_removals),
            followed_additions=IdentifierSet.from_bytes(row.followed_additions),
            followed_removals=IdentifierSet.from_bytes(row.followed_removals),
        )

    def _summary_from_row(self, row) -> BatchSummary:
        # Diff sets are stored as packed int64, so byte length / 8 is the set size.
        return BatchSummary(
            id=row.id,
            tracked_account_id=row.tracked_account_id,
            sequence=row.sequence,
            timestamp=row.timestamp,
            next_id=row.next_id,
            counts={role: (getattr(row, role.column) or 0) // 8 for role in DiffRole},
        )

    def _write_entries(
        self,
        conn: Connection,
        batch_id: BatchId,
        account_id: int,
        timestamp: int,
        diff_sets: Dict[DiffRole, IdentifierSet],
    ) -> int:
        written = 0
        for role, ids in diff_sets.items():
            values = ids.array.tolist()
            for start in range(0, len(values), _ENTRY_CHUNK_SIZE):
                chunk = values[start : start + _ENTRY_CHUNK_SIZE]
                conn.execute(
                    insert(self._entry_table),
                    [
                        {
                            "account_id": mentioned_id,
                            "batch_id": batch_id,
                            "role": role.value,
                            "tracked_account_id": account_id,
                            "timestamp": timestamp,
                        }
                        for mentioned_id in chunk
                    ],
                )
                written += len(chunk)
        return written

    # ------------------------------------------------------------------
    # Batch writes
    # ------------------------------------------------------------------
    def append(
        self,
        tracked_account_id: int,
        timestamp: Timestamp,
        follower_additions: IdentifierInput = (),
        follower_removals: IdentifierInput = (),
        followed_additions: IdentifierInput = (),
        followed_removals: IdentifierInput = (),
        *,
        expected_previous_id: object = _UNSET,
    ) -> BatchId:
        """Persist a batch and link it behind the account's current tail.

        ``expected_previous_id`` is the tail the caller diffed against
        (``None`` for an account believed to have no batches). When given, the
        append fails with :class:`ChainConflict` if another writer has moved
        the tail since.
        """

        ts = epoch_seconds(timestamp)
        diff_sets = {
            DiffRole.FOLLOWER_ADDITION: IdentifierSet(follower_additions),
            DiffRole.FOLLOWER_REMOVAL: IdentifierSet(follower_removals),
            DiffRole.FOLLOWED_ADDITION: IdentifierSet(followed_additions),
            DiffRole.FOLLOWED_REMOVAL: IdentifierSet(followed_removals),
        }
        for additions_role, removals_role in (
            (DiffRole.FOLLOWER_ADDITION, DiffRole.FOLLOWER_REMOVAL),
            (DiffRole.FOLLOWED_ADDITION, DiffRole.FOLLOWED_REMOVAL),
        ):
            overlap = diff_sets[additions_role].intersection(diff_sets[removals_role])
            if overlap:
                raise InvalidBatch(
                    f"{len(overlap)} IDs are both {additions_role.value} and "
                    f"{removals_role.value} (first: {next(iter(overlap))})",
                    account_id=tracked_account_id,
                    timestamp=ts,
                )

        def _op(engine: Engine) -> BatchId:
            with engine.begin() as conn:
                # Write first so SQLite grants the write lock before the tail is read.
                now = _utcnow()
                conn.execute(
                    sqlite_insert(self._tracked_table)
                    .values(
                        account_id=tracked_account_id,
                        screen_name=None,
                        first_seen_at=now,
                        updated_at=now,
                    )
                    .on_conflict_do_nothing(index_elements=[self._tracked_table.c.account_id])
                )

                previous = self._tail_row(conn, tracked_account_id)
                previous_id = previous.id if previous is not None else None

                if expected_previous_id is not _UNSET and expected_previous_id != previous_id:
                    raise ChainConflict(
                        f"Chain tail moved from {expected_previous_id} to {previous_id}",
                        account_id=tracked_account_id,
                        timestamp=ts,
                        expected_previous_id=expected_previous_id,
                        actual_previous_id=previous_id,
                    )
                if previous is not None and ts <= previous.timestamp:
                    raise OutOfOrderCapture(
                        f"Capture is not after latest batch {previous.id} at {previous.timestamp}",
                        account_id=tracked_account_id,
                        timestamp=ts,
                        latest_timestamp=previous.timestamp,
                    )
                if previous is None and (
                    diff_sets[DiffRole.FOLLOWER_REMOVAL] or diff_sets[DiffRole.FOLLOWED_REMOVAL]
                ):
                    raise InvalidBatch(
                        "First batch of a chain cannot contain removals",
                        account_id=tracked_account_id,
                        timestamp=ts,
                    )

                result = conn.execute(
                    insert(self._batch_table).values(
                        tracked_account_id=tracked_account_id,
                        sequence=(previous.sequence + 1) if previous is not None else 1,
                        timestamp=ts,
                        next_id=None,
                        **{role.column: ids.to_bytes() for role, ids in diff_sets.items()},
                    )
                )
                batch_id = result.inserted_primary_key[0]

                if previous is not None:
                    linked = conn.execute(
                        update(self._batch_table)
                        .where(
                            self._batch_table.c.id == previous_id,
                            self._batch_table.c.next_id.is_(None),
                        )
                        .values(next_id=batch_id)
                    )
                    if linked.rowcount != 1:
                        raise ChainConflict(
                            f"Batch {previous_id} is already linked to a successor",
                            account_id=tracked_account_id,
                            timestamp=ts,
                            expected_previous_id=previous_id,
                        )

                self._write_entries(conn, batch_id, tracked_account_id, ts, diff_sets)
            return batch_id

        try:
            batch_id = self._execute_with_retry(
                "append", _op, account_id=tracked_account_id, timestamp=ts
            )
        except IntegrityError as exc:
            raise ChainConflict(
                f"Concurrent append rejected by constraint: {exc.orig}",
                account_id=tracked_account_id,
                timestamp=ts,
            ) from exc

        LOGGER.debug(
            "Appended batch %s for account %s at %s (%s)",
            batch_id,
            tracked_account_id,
            ts,
            ", ".join(f"{role.value}={len(ids)}" for role, ids in diff_sets.items()),
        )
        return batch_id

    # ------------------------------------------------------------------
    # Batch reads
    # ------------------------------------------------------------------
    def get_batch(self, batch_id: BatchId) -> Optional[Batch]:
        def _op(engine: Engine):
            with engine.connect() as conn:
                stmt = select(self._batch_table).where(self._batch_table.c.id == batch_id)
                return conn.execute(stmt).fetchone()

        row = self._execute_with_retry("get_batch", _op)
        return self._batch_from_row(row) if row is not None else None

    def latest_batch(self, account_id: int) -> Optional[Batch]:
        def _op(engine: Engine):
            with engine.connect() as conn:
                stmt = (
                    select(self._batch_table)
                    .where(self._batch_table.c.tracked_account_id == account_id)
                    .order_by(self._batch_table.c.sequence.desc())
                    .limit(1)
                )
                return conn.execute(stmt).fetchone()

        row = self._execute_with_retry("latest_batch", _op, account_id=account_id)
        return self._batch_from_row(row) if row is not None else None

    def _batch_at_sequence(self, account_id: int, sequence: int):
        def _op(engine: Engine):
            with engine.connect() as conn:
                stmt = select(self._batch_table).where(
                    self._batch_table.c.tracked_account_id == account_id,
                    self._batch_table.c.sequence == sequence,
                )
                return conn.execute(stmt).fetchone()

        return self._execute_with_retry("batch_at_sequence", _op, account_id=account_id)

    def iter_chain(
        self,
        account_id: int,
        *,
        after_sequence: int = 0,
        until_sequence: Optional[int] = None,
    ) -> Iterator[Batch]:
        """Walk an account's chain through ``next_id`` links, oldest first.

        With ``after_sequence`` the walk starts at the successor of that batch,
        which lets a cached fold catch up without rereading the whole chain.
        With ``until_sequence`` it stops after that batch, so a walk bounded by a
        previously read tail never runs into batches appended since.
        """

        if until_sequence is not None and until_sequence <= after_sequence:
            return

        if after_sequence:
            anchor = self._batch_at_sequence(account_id, after_sequence)
            if anchor is None:
                raise CorruptChain(
                    f"No batch at sequence {after_sequence}", account_id=account_id
                )
            next_id = anchor.next_id
            expected_sequence = after_sequence + 1
        else:
            head = self._batch_at_sequence(account_id, 1)
            if head is None:
                return
            next_id = head.id
            expected_sequence = 1

        visited = set()
        while next_id is not None:
            if next_id in visited:
                raise CorruptChain(
                    f"Cycle detected at batch {next_id}", account_id=account_id, batch_id=next_id
                )
            visited.add(next_id)
            batch = self.get_batch(next_id)
            if batch is None:
                raise CorruptChain(
                    f"Dangling link to batch {next_id}", account_id=account_id, batch_id=next_id
                )
            if batch.tracked_account_id != account_id or batch.sequence != expected_sequence:
                raise CorruptChain(
                    f"Batch {batch.id} (account {batch.tracked_account_id}, sequence "
                    f"{batch.sequence}) does not belong at sequence {expected_sequence}",
                    account_id=account_id,
                    batch_id=batch.id,
                )
            yield batch
            if until_sequence is not None and batch.sequence >= until_sequence:
                return
            next_id = batch.next_id
            expected_sequence += 1

    def list_batches(self, account_id: int) -> List[BatchSummary]:
        table = self._batch_table
        roles = list(DiffRole)

        def _op(engine: Engine):
            with engine.connect() as conn:
                stmt = (
                    select(
                        table.c.id,
                        table.c.tracked_account_id,
                        table.c.sequence,
                        table.c.timestamp,
                        table.c.next_id,
                        *[func.length(table.c[role.column]).label(role.column) for role in roles],
                    )
                    .where(table.c.tracked_account_id == account_id)
                    .order_by(table.c.sequence)
                )
                return conn.execute(stmt).fetchall()

        rows = self._execute_with_retry("list_batches", _op, account_id=account_id)
        return [self._summary_from_row(row) for row in rows]

    def chain_tail(self, account_id: int) -> Optional[BatchSummary]:
        """Latest batch of an account without loading its diff sets."""

        table = self._batch_table
        roles = list(DiffRole)

        def _op(engine: Engine):
            with engine.connect() as conn:
                stmt = (
                    select(
                        table.c.id,
                        table.c.tracked_account_id,
                        table.c.sequence,
                        table.c.timestamp,
                        table.c.next_id,
                        *[func.length(table.c[role.column]).label(role.column) for role in roles],
                    )
                    .where(table.c.tracked_account_id == account_id)
                    .order_by(table.c.sequence.desc())
                    .limit(1)
                )
                return conn.execute(stmt).fetchone()

        row = self._execute_with_retry("chain_tail", _op, account_id=account_id)
        return self._summary_from_row(row) if row is not None else None

    def batch_count(self, account_id: int) -> int:
        def _op(engine: Engine) -> int:
            with engine.connect() as conn:
                stmt = select(func.count()).select_from(self._batch_table).where(
                    self._batch_table.c.tracked_account_id == account_id
                )
                return conn.execute(stmt).scalar() or 0

        return self._execute_with_retry("batch_count", _op, account_id=account_id)

    def sequence_at(self, account_id: int, timestamp: Timestamp) -> Optional[int]:
        """Sequence of the latest batch captured at or before ``timestamp``."""

        ts = epoch_seconds(timestamp)
        table = self._batch_table

        def _op(engine: Engine) -> Optional[int]:
            with engine.connect() as conn:
                stmt = select(func.max(table.c.sequence)).where(
                    table.c.tracked_account_id == account_id,
                    table.c.timestamp <= ts,
                )
                return conn.execute(stmt).scalar()

        return self._execute_with_retry("sequence_at", _op, account_id=account_id, timestamp=ts)

    # ------------------------------------------------------------------
    # Tracked accounts
    # ------------------------------------------------------------------
    def tracked_account_ids(self) -> List[int]:
        def _op(engine: Engine) -> List[int]:
            with engine.connect() as conn:
                stmt = select(self._tracked_table.c.account_id).order_by(
                    self._tracked_table.c.account_id
                )
                return [row.account_id for row in conn.execute(stmt)]

        return self._execute_with_retry("tracked_account_ids", _op)

    def get_tracked_account(self, account_id: int) -> Optional[TrackedAccount]:
        def _op(engine: Engine):
            with engine.connect() as conn:
                stmt = select(self._tracked_table).where(
                    self._tracked_table.c.account_id == account_id
                )
                return conn.execute(stmt).fetchone()

        row = self._execute_with_retry("get_tracked_account", _op, account_id=account_id)
        if row is None:
            return None
        return TrackedAccount(
            account_id=row.account_id,
            screen_name=row.screen_name,
            first_seen_at=row.first_seen_at,
            updated_at=row.updated_at,
        )

    def update_screen_name(self, account_id: int, screen_name: Optional[str]) -> bool:
        """Record a fresher screen name; ``None`` never erases a known one."""

        if not screen_name:
            return False

        def _op(engine: Engine) -> bool:
            with engine.begin() as conn:
                result = conn.execute(
                    update(self._tracked_table)
                    .where(
                        self._tracked_table.c.account_id == account_id,
                        func.coalesce(self._tracked_table.c.screen_name, "") != screen_name,
                    )
                    .values(screen_name=screen_name, updated_at=_utcnow())
                )
                return result.rowcount == 1

        return self._execute_with_retry("update_screen_name", _op, account_id=account_id)

    def known_account_ids(self) -> IdentifierSet:
        """Every tracked account plus every ID mentioned by any batch."""

        def _op(engine: Engine) -> List[int]:
            with engine.connect() as conn:
                mentioned = select(self._entry_table.c.account_id).distinct()
                tracked = select(self._tracked_table.c.account_id)
                ids = [row[0] for row in conn.execute(mentioned)]
                ids.extend(row[0] for row in conn.execute(tracked))
                return ids

        return IdentifierSet(self._execute_with_retry("known_account_ids", _op))

    # ------------------------------------------------------------------
    # Reverse index
    # ------------------------------------------------------------------
    def fetch_mentions(
        self,
        account_id: int,
        *,
        after: Optional[Tuple[int, int, str]] = None,
        limit: int = 1000,
    ) -> List[MentionRow]:
        """Return one page of index entries for ``account_id`` in timestamp order.

        ``after`` is the ``sort_key`` of the last entry of the previous page.
        """

        if not _storable_id(account_id):
            return []

        table = self._entry_table

        def _op(engine: Engine) -> List[MentionRow]:
            with engine.connect() as conn:
                stmt = select(
                    table.c.batch_id, table.c.role, table.c.tracked_account_id, table.c.timestamp
                ).where(table.c.account_id == account_id)
                if after is not None:
                    stmt = stmt.where(
                        tuple_(table.c.timestamp, table.c.batch_id, table.c.role) > tuple_(*after)
                    )
                stmt = stmt.order_by(table.c.timestamp, table.c.batch_id, table.c.role).limit(limit)
                return [
                    MentionRow(
                        batch_id=row.batch_id,
                        role=DiffRole(row.role),
                        tracked_account_id=row.tracked_account_id,
                        timestamp=row.timestamp,
                    )
                    for row in conn.execute(stmt)
                ]

        return self._execute_with_retry("fetch_mentions", _op)

    def count_mentions(self, account_id: int) -> int:
        if not _storable_id(account_id):
            return 0

        def _op(engine: Engine) -> int:
            with engine.connect() as conn:
                stmt = select(func.count()).select_from(self._entry_table).where(
                    self._entry_table.c.account_id == account_id
                )
                return conn.execute(stmt).scalar() or 0

        return self._execute_with_retry("count_mentions", _op)

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------
    def validate_chain(self, account_id: int) -> ChainReport:
        """Check link structure, ordering and fold consistency of a chain."""

        summaries = self.list_batches(account_id)
        report = ChainReport(account_id=account_id, batch_count=len(summaries))
        if not summaries:
            return report

        by_id = {summary.id: summary for summary in summaries}
        targets = [summary.next_id for summary in summaries if summary.next_id is not None]
        target_set = set(targets)
        heads = [summary for summary in summaries if summary.id not in target_set]
        tails = [summary for summary in summaries if summary.next_id is None]
        if len(heads) != 1:
            report.problems.append(f"expected one chain head, found {len(heads)}")
        if len(tails) != 1:
            report.problems.append(f"expected one chain tail, found {len(tails)}")
        for target in targets:
            if target not in by_id:
                report.problems.append(f"link to batch {target} leaves the chain")
        if report.problems:
            return report

        visited: Set[BatchId] = set()
        previous: Optional[BatchSummary] = None
        current: Optional[BatchSummary] = heads[0]
        report.head_id = current.id
        while current is not None:
            if current.id in visited:
                report.problems.append(f"cycle through batch {current.id}")
                return report
            expected_sequence = len(visited) + 1
            if current.sequence != expected_sequence:
                report.problems.append(
                    f"batch {current.id} has sequence {current.sequence}, expected {expected_sequence}"
                )
            if previous is not None and current.timestamp <= previous.timestamp:
                report.problems.append(f"batch {current.id} is not after its predecessor")
            visited.add(current.id)
            previous = current
            report.tail_id = current.id
            current = by_id.get(current.next_id) if current.next_id is not None else None

        if len(visited) != len(summaries):
            report.problems.append(
                f"walk visited {len(visited)} of {len(summaries)} batches"
            )
            return report

        followers = IdentifierSet()
        followed = IdentifierSet()
        try:
            for batch in self.iter_chain(account_id):
                for side_diff in (batch.follower_diff, batch.followed_diff):
                    if not side_diff.additions.isdisjoint(side_diff.removals):
                        report.problems.append(f"batch {batch.id} adds and removes the same IDs")
                if batch.is_initial and (batch.follower_removals or batch.followed_removals):
                    report.problems.append(f"initial batch {batch.id} contains removals")
                followers = apply(
                    followers,
                    batch.follower_diff,
                    account_id=account_id,
                    batch_id=batch.id,
                    timestamp=batch.timestamp,
                )
                followed = apply(
                    followed,
                    batch.followed_diff,
                    account_id=account_id,
                    batch_id=batch.id,
                    timestamp=batch.timestamp,
                )
        except CorruptChain as exc:
            report.problems.append(str(exc))
            return report

        report.follower_count = len(followers)
        report.followed_count = len(followed)
        return report


def get_batch_store(engine: Engine, **kwargs) -> BatchStore:
    """Helper for one-line store construction."""

    return BatchStore(engine, **kwargs)
