"""Per-account lookups across every stored batch."""
from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass
from typing import Dict, Iterator, List, Optional

from .config import DEFAULT_INDEX_PAGE_SIZE
from .store import BatchId, BatchStore, DiffRole


@dataclass(frozen=True)
class BatchMention:
    """A batch in which an account appears, and in which diff set."""

    batch_id: BatchId
    role: DiffRole
    tracked_account_id: int
    timestamp: int


class BatchMentions:
    """Lazy, restartable sequence of mentions ordered by batch timestamp.

    Every ``iter()`` starts a fresh keyset-paginated walk of the index, so the
    sequence can be consumed several times and never loads more than one page
    of entries at once.
    """

    def __init__(self, store: BatchStore, account_id: int, page_size: int) -> None:
        self._store = store
        self.account_id = account_id
        self._page_size = page_size

    def __iter__(self) -> Iterator[BatchMention]:
        after = None
        while True:
            page = self._store.fetch_mentions(self.account_id, after=after, limit=self._page_size)
            for row in page:
                yield BatchMention(
                    batch_id=row.batch_id,
                    role=row.role,
                    tracked_account_id=row.tracked_account_id,
                    timestamp=row.timestamp,
                )
            if len(page) < self._page_size:
                return
            after = page[-1].sort_key

    def __repr__(self) -> str:
        return f"BatchMentions(account_id={self.account_id})"


class ReverseIndex:
    """Answers "which batches mention account X" from the indexed entry table."""

    def __init__(self, store: BatchStore, *, page_size: int = DEFAULT_INDEX_PAGE_SIZE) -> None:
        if page_size < 1:
            raise ValueError("page_size must be positive")
        self._store = store
        self._page_size = page_size

    def find_batches_mentioning(self, account_id: int) -> BatchMentions:
        return BatchMentions(self._store, account_id, self._page_size)

    def roles_by_batch(self, account_id: int) -> "OrderedDict[BatchId, List[DiffRole]]":
        grouped: "OrderedDict[BatchId, List[DiffRole]]" = OrderedDict()
        for mention in self.find_batches_mentioning(account_id):
            grouped.setdefault(mention.batch_id, []).append(mention.role)
        return grouped

    def count(self, account_id: int) -> int:
        return self._store.count_mentions(account_id)

    def first_seen(self, account_id: int) -> Optional[BatchMention]:
        """Earliest batch mentioning the account, if any."""
        return next(iter(self.find_batches_mentioning(account_id)), None)

    def tracked_accounts_by_role(self, account_id: int) -> Dict[DiffRole, List[int]]:
        """Tracked accounts whose batches mention ``account_id``, per role."""
        result: Dict[DiffRole, List[int]] = {}
        for mention in self.find_batches_mentioning(account_id):
            owners = result.setdefault(mention.role, [])
            if mention.tracked_account_id not in owners:
                owners.append(mention.tracked_account_id)
        return result
