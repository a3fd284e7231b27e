"""Immutable sets of 64-bit account identifiers.

A capture can hold millions of IDs, so the set is a sorted, deduplicated,
read-only ``numpy.int64`` array rather than a Python ``frozenset``. Sorted
storage gives deterministic iteration, cheap binary membership tests and a
compact byte encoding for persistence.
"""
from __future__ import annotations

from typing import Iterable, Iterator, Optional, Union

import numpy as np

from .errors import InvalidIdentifier

MAX_ACCOUNT_ID = np.iinfo(np.int64).max
_WIRE_DTYPE = np.dtype("<i8")

IdentifierInput = Union["IdentifierSet", np.ndarray, Iterable[int]]


def _validated_array(values: IdentifierInput) -> np.ndarray:
    if isinstance(values, IdentifierSet):
        return values._ids
    if isinstance(values, np.ndarray):
        if values.ndim != 1:
            raise InvalidIdentifier(f"array with shape {values.shape}")
        if values.size == 0:
            return np.empty(0, dtype=np.int64)
        if values.dtype.kind == "u":
            if int(values.max()) > MAX_ACCOUNT_ID:
                raise InvalidIdentifier(int(values.max()))
            return values.astype(np.int64)
        if values.dtype.kind == "i":
            if int(values.min()) < 0:
                raise InvalidIdentifier(int(values.min()))
            return values.astype(np.int64, copy=False)
        if values.dtype.kind != "O":
            raise InvalidIdentifier(f"array of dtype {values.dtype}")
        values = values.tolist()

    ids = list(values)
    for value in ids:
        if isinstance(value, bool) or not isinstance(value, (int, np.integer)):
            raise InvalidIdentifier(value)
        if value < 0 or value > MAX_ACCOUNT_ID:
            raise InvalidIdentifier(value)
    return np.array(ids, dtype=np.int64)


class IdentifierSet:
    """Sorted, immutable collection of unique account IDs."""

    __slots__ = ("_ids", "_hash")

    def __init__(self, values: Optional[IdentifierInput] = None) -> None:
        if values is None:
            ids = np.empty(0, dtype=np.int64)
        elif isinstance(values, IdentifierSet):
            ids = values._ids
        else:
            ids = np.unique(_validated_array(values))
        ids.flags.writeable = False
        self._ids = ids
        self._hash: Optional[int] = None

    @classmethod
    def _from_sorted(cls, ids: np.ndarray) -> "IdentifierSet":
        """Wrap an array already known to be sorted, unique and in range."""
        instance = cls.__new__(cls)
        ids = ids.astype(np.int64, copy=False)
        ids.flags.writeable = False
        instance._ids = ids
        instance._hash = None
        return instance

    @classmethod
    def empty(cls) -> "IdentifierSet":
        return cls()

    @classmethod
    def from_bytes(cls, data: Optional[bytes]) -> "IdentifierSet":
        if not data:
            return cls()
        if len(data) % _WIRE_DTYPE.itemsize:
            raise InvalidIdentifier(f"{len(data)} byte payload is not a multiple of 8")
        ids = np.frombuffer(data, dtype=_WIRE_DTYPE).astype(np.int64)
        if ids.size > 1 and not bool(np.all(ids[1:] > ids[:-1])):
            return cls(ids)
        if ids.size and int(ids[0]) < 0:
            raise InvalidIdentifier(int(ids[0]))
        return cls._from_sorted(ids)

    def to_bytes(self) -> bytes:
        return self._ids.astype(_WIRE_DTYPE, copy=False).tobytes()

    @property
    def array(self) -> np.ndarray:
        """Read-only sorted view of the IDs."""
        return self._ids

    # ------------------------------------------------------------------
    # Container protocol
    # ------------------------------------------------------------------
    def __len__(self) -> int:
        return int(self._ids.size)

    def __iter__(self) -> Iterator[int]:
        return iter(self._ids.tolist())

    def __contains__(self, item: object) -> bool:
        if isinstance(item, bool) or not isinstance(item, (int, np.integer)):
            return False
        if item < 0 or item > MAX_ACCOUNT_ID:
            return False
        index = int(np.searchsorted(self._ids, item))
        return index < self._ids.size and int(self._ids[index]) == item

    def __eq__(self, other: object) -> bool:
        if isinstance(other, IdentifierSet):
            return bool(np.array_equal(self._ids, other._ids))
        if isinstance(other, (set, frozenset)):
            return len(other) == len(self) and all(item in self for item in other)
        return NotImplemented

    def __hash__(self) -> int:
        if self._hash is None:
            # Must agree with frozenset hashing since the two compare equal.
            self._hash = hash(frozenset(self._ids.tolist()))
        return self._hash

    def __repr__(self) -> str:
        head = self._ids[:8].tolist()
        suffix = ", ..." if self._ids.size > 8 else ""
        return f"IdentifierSet([{', '.join(str(i) for i in head)}{suffix}], size={len(self)})"

    # ------------------------------------------------------------------
    # Set algebra
    # ------------------------------------------------------------------
    def difference(self, other: IdentifierInput) -> "IdentifierSet":
        other_ids = _as_identifier_set(other)._ids
        if not self._ids.size or not other_ids.size:
            return self
        return IdentifierSet._from_sorted(np.setdiff1d(self._ids, other_ids, assume_unique=True))

    def union(self, other: IdentifierInput) -> "IdentifierSet":
        other_ids = _as_identifier_set(other)._ids
        if not other_ids.size:
            return self
        if not self._ids.size:
            return IdentifierSet._from_sorted(other_ids)
        return IdentifierSet._from_sorted(np.union1d(self._ids, other_ids))

    def intersection(self, other: IdentifierInput) -> "IdentifierSet":
        other_ids = _as_identifier_set(other)._ids
        return IdentifierSet._from_sorted(
            np.intersect1d(self._ids, other_ids, assume_unique=True)
        )

    def isdisjoint(self, other: IdentifierInput) -> bool:
        return len(self.intersection(other)) == 0

    def issubset(self, other: IdentifierInput) -> bool:
        return len(self.difference(other)) == 0

    __sub__ = difference
    __or__ = union
    __and__ = intersection


def _as_identifier_set(values: IdentifierInput) -> IdentifierSet:
    if isinstance(values, IdentifierSet):
        return values
    return IdentifierSet(values)
