"""Interfaces to the external collector and registry, and time-bounded fetching."""
from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import FIRST_EXCEPTION, Future, ThreadPoolExecutor, wait
from typing import Dict, Optional, Protocol

from .diff import Side
from .errors import FetchIncomplete, InvalidIdentifier
from .identifiers import IdentifierSet

LOGGER = logging.getLogger(__name__)

_CANCEL_POLL_SECONDS = 0.1


class Collector(Protocol):
    """Produces complete membership sets for a tracked account.

    Implementations must raise rather than return a partial set: a short
    result caused by rate limiting or pagination failure is indistinguishable
    from a genuine unfollow wave once it reaches the diff.
    """

    def fetch(self, account_id: int, side: Side) -> IdentifierSet:
        ...


class Registry(Protocol):
    """Maps account IDs to their current screen name."""

    def resolve_screen_name(self, account_id: int) -> Optional[str]:
        ...


def fetch_memberships(
    collector: Collector,
    account_id: int,
    *,
    timeout_seconds: Optional[float] = None,
    cancel_event: Optional[threading.Event] = None,
    timestamp: Optional[int] = None,
) -> Dict[Side, IdentifierSet]:
    """Fetch both sides concurrently, failing the whole cycle on any problem.

    Raises :class:`FetchIncomplete` on collector errors, on timeout and when
    ``cancel_event`` is set before both sides arrive. Late results from
    abandoned fetches are discarded.
    """

    if cancel_event is not None and cancel_event.is_set():
        raise FetchIncomplete(
            "Capture cancelled before fetch", account_id=account_id, timestamp=timestamp
        )

    executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix=f"fetch-{account_id}")
    futures: Dict[Side, Future] = {
        side: executor.submit(collector.fetch, account_id, side) for side in Side
    }
    deadline = time.monotonic() + timeout_seconds if timeout_seconds is not None else None
    try:
        pending = set(futures.values())
        while pending:
            if cancel_event is not None and cancel_event.is_set():
                raise FetchIncomplete(
                    "Capture cancelled during fetch", account_id=account_id, timestamp=timestamp
                )
            wait_for = _CANCEL_POLL_SECONDS if cancel_event is not None else None
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise FetchIncomplete(
                        f"Fetch exceeded {timeout_seconds}s",
                        account_id=account_id,
                        timestamp=timestamp,
                    )
                wait_for = remaining if wait_for is None else min(wait_for, remaining)
            done, pending = wait(pending, timeout=wait_for, return_when=FIRST_EXCEPTION)
            for future in done:
                if future.exception() is not None:
                    break
            else:
                continue
            break

        results: Dict[Side, IdentifierSet] = {}
        for side, future in futures.items():
            if not future.done():
                continue
            exc = future.exception()
            if isinstance(exc, FetchIncomplete):
                if exc.account_id is None:
                    exc.account_id = account_id
                if exc.timestamp is None:
                    exc.timestamp = timestamp
                if exc.side is None:
                    exc.side = side.value
                raise exc
            if exc is not None:
                raise FetchIncomplete(
                    f"Collector failed for {side.value} side: {exc}",
                    account_id=account_id,
                    timestamp=timestamp,
                    side=side.value,
                ) from exc
            result = future.result()
            if result is None:
                raise FetchIncomplete(
                    f"Collector returned nothing for {side.value} side",
                    account_id=account_id,
                    timestamp=timestamp,
                    side=side.value,
                )
            try:
                results[side] = IdentifierSet(result)
            except InvalidIdentifier as exc:
                raise FetchIncomplete(
                    f"Collector returned an invalid ID for {side.value} side: {exc.value!r}",
                    account_id=account_id,
                    timestamp=timestamp,
                    side=side.value,
                ) from exc
        return results
    finally:
        unfinished = [side.value for side, future in futures.items() if not future.done()]
        if unfinished:
            LOGGER.debug(
                "Abandoning %s fetch for account %s", "/".join(unfinished), account_id
            )
        executor.shutdown(wait=False, cancel_futures=True)
