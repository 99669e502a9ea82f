"""
mintsaga — Authorization Tracker Tests

Tests:
  - reconcile only ever filters, never inserts
  - grants are per item and require Eligible
  - concurrent grants never lose each other's membership
"""

import os
import sys
import threading
import unittest

_base = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, _base)

from lifecycle.authorization import AuthorizationTracker, reconciled
from lifecycle.types import Item, ItemStatus


def _item(item_id, status):
    return Item(id=item_id, collected_units=1, total_units=1, status=status)


class TestReconciled(unittest.TestCase):

    def test_is_a_filter(self):
        previous = frozenset({"1", "2"})
        items = [_item("1", ItemStatus.ELIGIBLE), _item("3", ItemStatus.ELIGIBLE)]
        result = reconciled(previous, items)
        self.assertEqual(result, frozenset({"1"}))
        self.assertTrue(result <= previous)

    def test_empty_snapshot_clears(self):
        self.assertEqual(reconciled(frozenset({"1"}), []), frozenset())

    def test_every_status_but_eligible_drops(self):
        for status in ItemStatus:
            if status == ItemStatus.ELIGIBLE:
                continue
            self.assertEqual(reconciled(frozenset({"1"}), [_item("1", status)]), frozenset())


class TestTracker(unittest.TestCase):

    def setUp(self):
        self.tracker = AuthorizationTracker()

    def test_grant_requires_eligible(self):
        self.assertFalse(self.tracker.mark_granted("1", {"1": ItemStatus.COLLECTING}))
        self.assertFalse(self.tracker.mark_granted("2", {}))
        self.assertTrue(self.tracker.mark_granted("3", {"3": ItemStatus.ELIGIBLE}))
        self.assertEqual(self.tracker.snapshot(), frozenset({"3"}))

    def test_grant_leaves_others_untouched(self):
        statuses = {"1": ItemStatus.ELIGIBLE, "2": ItemStatus.ELIGIBLE}
        self.tracker.mark_granted("1", statuses)
        before = self.tracker.snapshot()
        self.tracker.mark_granted("2", statuses)
        self.assertIn("1", self.tracker)
        self.assertEqual(before, frozenset({"1"}))

    def test_reconcile_never_grows(self):
        self.tracker.mark_granted("1", {"1": ItemStatus.ELIGIBLE})
        result = self.tracker.reconcile([_item("1", ItemStatus.ELIGIBLE), _item("2", ItemStatus.ELIGIBLE)])
        self.assertEqual(result, frozenset({"1"}))
        self.assertEqual(len(self.tracker), 1)

    def test_clear_and_reset(self):
        statuses = {"1": ItemStatus.ELIGIBLE, "2": ItemStatus.ELIGIBLE}
        self.tracker.mark_granted("1", statuses)
        self.tracker.mark_granted("2", statuses)
        self.tracker.clear("1")
        self.assertEqual(self.tracker.snapshot(), frozenset({"2"}))
        self.tracker.reset()
        self.assertEqual(len(self.tracker), 0)

    def test_concurrent_grants(self):
        ids = [str(i) for i in range(200)]
        statuses = {i: ItemStatus.ELIGIBLE for i in ids}
        threads = [threading.Thread(target=self.tracker.mark_granted, args=(i, statuses)) for i in ids]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        self.assertEqual(self.tracker.snapshot(), frozenset(ids))


if __name__ == "__main__":
    unittest.main()
