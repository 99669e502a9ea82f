"""
mintsaga — Authorization Tracker

Per-item record of observed, item-scoped spending grants.

The record is an immutable frozenset. Every mutation derives a new set
from the previous one by union or difference and swaps it in under a
lock, so a reader always sees a whole snapshot and independent
completions can never overwrite each other's membership.

Invariants:
  - An id is in the record only while its last authoritative status is
    Eligible; any snapshot that moves it away removes it.
  - Granting for one item never changes any other item's membership.
  - reconcile() only ever filters.
"""

from __future__ import annotations

import logging
import threading
from typing import Iterable, Mapping

from lifecycle.types import Item, ItemStatus

logger = logging.getLogger("mintsaga.authorization")


def reconciled(previous: frozenset, items: Iterable[Item]) -> frozenset:
    """previous ∩ {ids whose status is Eligible}. Pure."""
    eligible = {item.id for item in items if item.status == ItemStatus.ELIGIBLE}
    return previous & eligible


class AuthorizationTracker:

    def __init__(self):
        self._record: frozenset = frozenset()
        self._lock = threading.Lock()

    def snapshot(self) -> frozenset:
        return self._record

    def __contains__(self, item_id: str) -> bool:
        return item_id in self._record

    def __len__(self) -> int:
        return len(self._record)

    def mark_granted(self, item_id: str, statuses: Mapping[str, ItemStatus]) -> bool:
        """
        Add one id after a ledger-confirmed grant.

        ``statuses`` is the current authoritative status map; the id is
        only added if its status there is Eligible. Returns True if added.
        """
        with self._lock:
            if statuses.get(item_id) != ItemStatus.ELIGIBLE:
                logger.info(
                    "Grant for item %s not recorded: status is %s",
                    item_id, getattr(statuses.get(item_id), "value", "absent"),
                )
                return False
            self._record = self._record | {item_id}
            return True

    def reconcile(self, items: Iterable[Item]) -> frozenset:
        """Drop every id the snapshot no longer shows as Eligible. Never grows."""
        items = list(items)
        with self._lock:
            before = self._record
            self._record = reconciled(before, items)
            dropped = before - self._record
        if dropped:
            logger.debug("Authorization dropped for %s", sorted(dropped))
        return self._record

    def clear(self, item_id: str) -> None:
        with self._lock:
            self._record = self._record - {item_id}

    def reset(self) -> None:
        with self._lock:
            self._record = frozenset()
