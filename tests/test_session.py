"""
mintsaga — Session Tracker Tests

Tests:
  - chain id parsing (int, decimal, hex)
  - listeners fire only on actual changes
  - holder comparison ignores case
  - polling backup tolerates failed and empty reads
"""

import os
import sys
import unittest

_base = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, _base)

from fixtures.services import HOLDER, OTHER_HOLDER
from lifecycle.session import SessionTracker, parse_chain_id


class TestParseChainId(unittest.TestCase):

    def test_forms(self):
        self.assertEqual(parse_chain_id(50312), 50312)
        self.assertEqual(parse_chain_id("50312"), 50312)
        self.assertEqual(parse_chain_id("0xc488"), 50312)
        self.assertEqual(parse_chain_id(" 0XC488 "), 50312)

    def test_empty(self):
        self.assertIsNone(parse_chain_id(None))
        self.assertIsNone(parse_chain_id(""))

    def test_garbage(self):
        with self.assertRaises(ValueError):
            parse_chain_id("mainnet")


class TestSessionTracker(unittest.TestCase):

    def setUp(self):
        self.changes = []
        self.tracker = SessionTracker(50312)
        self.tracker.add_listener(lambda holder, chain: self.changes.append((holder, chain)))

    def test_holder_change_notifies(self):
        self.assertTrue(self.tracker.set_holder(HOLDER))
        self.assertEqual(self.changes, [(HOLDER, None)])
        self.assertTrue(self.tracker.set_holder(OTHER_HOLDER))
        self.assertEqual(len(self.changes), 2)

    def test_holder_case_insensitive(self):
        self.tracker.set_holder(HOLDER)
        self.assertFalse(self.tracker.set_holder(HOLDER.upper().replace("0X", "0x")))
        self.assertEqual(len(self.changes), 1)

    def test_disconnect(self):
        self.tracker.set_holder(HOLDER)
        self.assertTrue(self.tracker.set_holder(None))
        self.assertIsNone(self.tracker.holder)
        self.assertFalse(self.tracker.set_holder(""))

    def test_chain_change(self):
        self.assertTrue(self.tracker.on_chain_changed("0x1"))
        self.assertFalse(self.tracker.on_required_chain)
        self.assertTrue(self.tracker.on_chain_changed("0xc488"))
        self.assertTrue(self.tracker.on_required_chain)
        self.assertFalse(self.tracker.on_chain_changed(50312))
        self.assertEqual([c for _, c in self.changes], [1, 50312])

    def test_unparseable_chain_ignored(self):
        self.assertFalse(self.tracker.on_chain_changed("bogus"))
        self.assertEqual(self.changes, [])

    def test_ready(self):
        self.assertFalse(self.tracker.ready)
        self.tracker.set_holder(HOLDER)
        self.assertFalse(self.tracker.ready)
        self.tracker.on_chain_changed(50312)
        self.assertTrue(self.tracker.ready)

    def test_listener_failure_isolated(self):
        def broken(holder, chain):
            raise RuntimeError("boom")

        tracker = SessionTracker(50312)
        seen = []
        tracker.add_listener(broken)
        tracker.add_listener(lambda h, c: seen.append(h))
        tracker.set_holder(HOLDER)
        self.assertEqual(seen, [HOLDER])


class TestPolling(unittest.TestCase):

    def test_poll_reads_chain(self):
        tracker = SessionTracker(50312, chain_source=lambda: "0xc488")
        self.assertTrue(tracker.poll_once())
        self.assertEqual(tracker.chain_id, 50312)
        self.assertFalse(tracker.poll_once())

    def test_poll_without_source(self):
        self.assertFalse(SessionTracker(50312).poll_once())

    def test_poll_empty_read(self):
        tracker = SessionTracker(50312, chain_source=lambda: None)
        self.assertFalse(tracker.poll_once())
        self.assertIsNone(tracker.chain_id)

    def test_poll_failure(self):
        def down():
            raise ConnectionError("rpc down")

        tracker = SessionTracker(50312, chain_source=down)
        tracker.on_chain_changed(50312)
        self.assertFalse(tracker.poll_once())
        self.assertEqual(tracker.chain_id, 50312)

    def test_start_stop(self):
        tracker = SessionTracker(50312, chain_source=lambda: 50312, poll_interval_s=0.01)
        tracker.start()
        tracker.start()
        tracker.stop()
        tracker.stop()
        self.assertIsNone(tracker._thread)


if __name__ == "__main__":
    unittest.main()
