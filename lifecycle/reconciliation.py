"""
mintsaga — Reconciliation

Two pieces:

  merge_snapshot()        the single pure merge used by both the push
                          channel and the poller: current item map +
                          authoritative snapshot → new item map
  ReconciliationPoller    bounded post-submission polling: an immediate
                          fetch, then a fixed interval, until the item
                          matches the expected status, the attempts run
                          out, or the action stops being current

Every fetch, converged or not, goes through the caller's snapshot hook so
the full item set (and with it the authorization record) stays current.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Iterable, Mapping

from lifecycle.errors import BackendUnavailable
from lifecycle.types import Item, ItemStatus

logger = logging.getLogger("mintsaga.reconciliation")


def merge_snapshot(current: Mapping[str, Item], snapshot: Iterable[Item]) -> dict[str, Item]:
    """
    Apply an authoritative snapshot to the local item map.

    A snapshot is the holder's full item set: ids it omits are no longer
    owned by this session and leave the map. Pure; ``current`` is not
    modified.
    """
    merged = {item.id: item for item in snapshot}
    for item_id in set(current) - set(merged):
        logger.debug("Item %s left the snapshot", item_id)
    return merged


def status_of(items: Iterable[Item], item_id: str) -> ItemStatus | None:
    for item in items:
        if item.id == item_id:
            return item.status
    return None


@dataclass
class PollOutcome:
    item_id: str
    converged: bool
    attempts: int
    elapsed_s: float
    last_status: ItemStatus | None = None
    abandoned: bool = False     # action resolved elsewhere (push, reset)
    fetch_errors: int = 0


class ReconciliationPoller:
    """
    Args:
        fetch: returns the holder's authoritative item snapshot; raises
               BackendUnavailable on transport failure
        on_snapshot: called with every fetched snapshot
    """

    def __init__(
        self,
        fetch: Callable[[], list[Item]],
        on_snapshot: Callable[[list[Item]], None],
        sleep_fn: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._fetch = fetch
        self._on_snapshot = on_snapshot
        self._sleep = sleep_fn
        self._clock = clock

    def wait_for(
        self,
        item_id: str,
        expected: frozenset,
        interval: float = 3.0,
        max_attempts: int = 60,
        is_pending: Callable[[], bool] | None = None,
        on_attempt: Callable[[int], None] | None = None,
    ) -> PollOutcome:
        """
        Poll until item_id's status is in ``expected`` (None = absent).

        Sleeps at most (max_attempts - 1) * interval. A failed fetch
        consumes an attempt.
        """
        started = self._clock()
        last_status: ItemStatus | None = None
        errors = 0

        for attempt in range(1, max_attempts + 1):
            if is_pending is not None and not is_pending():
                logger.debug("Item %s no longer pending after %d polls", item_id, attempt - 1)
                return PollOutcome(
                    item_id, False, attempt - 1, self._clock() - started,
                    last_status, abandoned=True, fetch_errors=errors,
                )

            try:
                items = self._fetch()
            except BackendUnavailable as e:
                errors += 1
                logger.warning("Poll %d/%d for item %s failed: %s", attempt, max_attempts, item_id, e)
            else:
                self._on_snapshot(items)
                last_status = status_of(items, item_id)
                if last_status in expected:
                    if on_attempt is not None:
                        on_attempt(attempt)
                    return PollOutcome(
                        item_id, True, attempt, self._clock() - started,
                        last_status, fetch_errors=errors,
                    )

            if on_attempt is not None:
                on_attempt(attempt)
            if attempt < max_attempts:
                self._sleep(interval)

        logger.warning("Item %s did not converge after %d polls", item_id, max_attempts)
        return PollOutcome(
            item_id, False, max_attempts, self._clock() - started,
            last_status, fetch_errors=errors,
        )
