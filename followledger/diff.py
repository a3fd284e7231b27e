"""Snapshot differencing for follower / followed membership sets."""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from .errors import CorruptChain
from .identifiers import IdentifierInput, IdentifierSet


class Side(str, Enum):
    """Which membership list of a tracked account a set describes."""

    FOLLOWER = "follower"  # accounts following the tracked account
    FOLLOWED = "followed"  # accounts the tracked account follows


@dataclass(frozen=True)
class SideDiff:
    """Changes on one side between two captures."""

    additions: IdentifierSet = field(default_factory=IdentifierSet)
    removals: IdentifierSet = field(default_factory=IdentifierSet)

    @property
    def is_empty(self) -> bool:
        return not self.additions and not self.removals

    @property
    def total(self) -> int:
        return len(self.additions) + len(self.removals)


@dataclass(frozen=True)
class CaptureDiff:
    """Follower and followed changes for one capture."""

    follower: SideDiff
    followed: SideDiff

    @property
    def is_empty(self) -> bool:
        return self.follower.is_empty and self.followed.is_empty

    @property
    def total(self) -> int:
        return self.follower.total + self.followed.total

    def side(self, side: Side) -> SideDiff:
        return self.follower if side is Side.FOLLOWER else self.followed


def diff(previous: IdentifierInput, current: IdentifierInput) -> SideDiff:
    """Return what was added to and removed from ``previous`` to reach ``current``.

    Both inputs must be complete membership sets; an empty ``current`` means
    the account genuinely has no members on this side, so every previous
    member is reported as removed.
    """
    previous = IdentifierSet(previous)
    current = IdentifierSet(current)
    return SideDiff(
        additions=current.difference(previous),
        removals=previous.difference(current),
    )


def apply(
    state: IdentifierSet,
    change: SideDiff,
    *,
    account_id: Optional[int] = None,
    batch_id: Optional[int] = None,
    timestamp: Optional[int] = None,
) -> IdentifierSet:
    """Apply a stored diff to a materialized set, rejecting inconsistent chains.

    Adding an ID that is already present, or removing one that is absent,
    means the stored chain does not describe a sequence of real snapshots.
    """
    duplicates = change.additions.intersection(state)
    if duplicates:
        raise CorruptChain(
            f"Batch {batch_id} adds {len(duplicates)} IDs already present "
            f"(first: {next(iter(duplicates))})",
            account_id=account_id,
            batch_id=batch_id,
            timestamp=timestamp,
        )
    missing = change.removals.difference(state)
    if missing:
        raise CorruptChain(
            f"Batch {batch_id} removes {len(missing)} IDs that are absent "
            f"(first: {next(iter(missing))})",
            account_id=account_id,
            batch_id=batch_id,
            timestamp=timestamp,
        )
    return state.difference(change.removals).union(change.additions)
