"""
mintsaga — Runtime Wiring Tests

Builds the production graph without starting it; nothing touches the
network until start().
"""

import json
import os
import sys
import unittest

_base = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, _base)

from fixtures.services import COLLECTION, HOLDER, TOKEN, wire_item
from gateway.config import LedgerSettings, Settings
from gateway.signer import Web3SigningAgent
from lifecycle.executors import InlineExecutor
from lifecycle.runtime import build_runtime

TEST_KEY = "0x" + "11" * 32


def settings():
    return Settings(ledger=LedgerSettings(token_address=TOKEN, collection_address=COLLECTION))


class TestBuildRuntime(unittest.TestCase):

    def build(self, **kw):
        runtime = build_runtime(settings(), executor=InlineExecutor(), db_path=":memory:", **kw)
        self.addCleanup(runtime.close)
        return runtime

    def test_read_only_without_key(self):
        runtime = self.build(signer_key="")
        self.assertIsNone(runtime.signer)
        self.assertIsNone(runtime.coordinator.signer)

    def test_local_signer(self):
        runtime = self.build(signer_key=TEST_KEY)
        self.assertIsInstance(runtime.signer, Web3SigningAgent)
        self.assertIs(runtime.coordinator.signer, runtime.signer)

    def test_signer_has_its_own_executor(self):
        runtime = self.build(signer_key=TEST_KEY)
        self.assertIsNot(runtime.signer._executor, runtime.coordinator._executor)
        self.assertIn(runtime.signer._executor, runtime.executors)
        self.assertIsNone(runtime.coordinator._wait_executor)

    def test_settings_flow_through(self):
        runtime = self.build()
        self.assertEqual(runtime.coordinator.max_polls, 60)
        self.assertEqual(runtime.coordinator.poll_interval_s, 3.0)
        self.assertEqual(runtime.coordinator.required_chain_id, 50312)
        self.assertEqual(runtime.channel.max_retries, 5)

    def test_session_drives_coordinator(self):
        runtime = self.build()
        runtime.session.set_holder(HOLDER)
        self.assertEqual(runtime.coordinator.holder, HOLDER)

    def test_push_reaches_coordinator(self):
        runtime = self.build()
        runtime.session.set_holder(HOLDER)
        frame = json.dumps({"type": "NFTUpdate", "data": {"user_address": HOLDER, "nfts": [wire_item("4")]}})
        runtime.channel._dispatch(frame)
        self.assertEqual(list(runtime.coordinator.items()), ["4"])

    def test_close_idempotent(self):
        runtime = build_runtime(settings(), executor=InlineExecutor(), db_path=":memory:")
        runtime.close()
        runtime.channel.disconnect()


if __name__ == "__main__":
    unittest.main()
