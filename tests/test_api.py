"""
mintsaga — API Server Tests

Runs the FastAPI app over a coordinator wired to the in-memory fixtures
with the inline executor, so each request returns after every background
step it triggers has run.

Tests:
  - item listing, single item with its pending action
  - action submission: 202, 409 in progress, 404 unknown, 422 bad kind
  - 400 when no wallet is connected, 409 on the wrong network
  - cancel, notices, recent conversions, session, health
"""

import os
import sys
import unittest

from fastapi.testclient import TestClient

_base = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, _base)

from api.server import create_app
from fixtures.services import (
    COLLECTION, HOLDER, PRICE, TOKEN,
    FakeBackend, FakeLedger, FakeSigner, wire_item,
)
from lifecycle.coordinator import LifecycleCoordinator
from lifecycle.eligibility import EligibilityVerifier
from lifecycle.executors import InlineExecutor


class ApiTestCase(unittest.TestCase):

    required_chain_id = None
    connect = True

    def setUp(self):
        self.backend = FakeBackend()
        self.ledger = FakeLedger(allowance=PRICE)
        self.signer = FakeSigner()
        self.coord = LifecycleCoordinator(
            self.backend,
            EligibilityVerifier(self.backend, self.ledger, TOKEN, COLLECTION),
            self.signer,
            self.ledger,
            executor=InlineExecutor(),
            wait_executor=InlineExecutor(),
            required_chain_id=self.required_chain_id,
            poll_sleep=lambda s: None,
        )
        self.addCleanup(self.coord.close)
        self.backend.set_items(HOLDER, [wire_item("1"), wire_item("2", owned=4, total=10), wire_item("10")])
        if self.connect:
            self.coord.set_holder(HOLDER)
            self.coord.refresh()
        self.client = TestClient(create_app(coordinator=self.coord))


class TestItems(ApiTestCase):

    def test_list(self):
        resp = self.client.get("/v1/items")
        self.assertEqual(resp.status_code, 200)
        body = resp.json()
        self.assertEqual(body["holder"], HOLDER)
        self.assertEqual(body["count"], 3)
        self.assertEqual([i["id"] for i in body["items"]], ["1", "2", "10"])
        self.assertEqual(body["items"][1]["status"], "collecting")
        self.assertEqual(body["items"][0]["phase"], "idle")

    def test_refresh(self):
        self.backend.remove_item(HOLDER, "10")
        body = self.client.get("/v1/items", params={"refresh": "true"}).json()
        self.assertEqual(body["count"], 2)

    def test_refresh_backend_down(self):
        self.backend.fail_queries = 1
        self.assertEqual(self.client.get("/v1/items?refresh=true").status_code, 503)

    def test_unknown_item(self):
        self.assertEqual(self.client.get("/v1/items/99").status_code, 404)

    def test_item_without_action(self):
        body = self.client.get("/v1/items/1").json()
        self.assertEqual(body["phase"], "idle")
        self.assertNotIn("action", body)


class TestActions(ApiTestCase):

    def test_accepted(self):
        resp = self.client.post("/v1/items/1/actions", json={"kind": "authorize"})
        self.assertEqual(resp.status_code, 202)
        self.assertEqual(resp.json()["phase"], "awaiting_signature")
        self.assertEqual(resp.json()["kind"], "authorize")
        self.assertEqual(self.signer.last.function, "approve")

        body = self.client.get("/v1/items/1").json()
        self.assertEqual(body["action"]["kind"], "authorize")
        self.assertIsNone(body["action"]["external_handle"])

    def test_in_progress(self):
        self.client.post("/v1/items/1/actions", json={"kind": "authorize"})
        resp = self.client.post("/v1/items/1/actions", json={"kind": "convert"})
        self.assertEqual(resp.status_code, 409)
        self.assertEqual(resp.json()["error"], "action_in_progress")

    def test_unknown_item(self):
        self.assertEqual(self.client.post("/v1/items/99/actions", json={"kind": "convert"}).status_code, 404)

    def test_bad_kind(self):
        resp = self.client.post("/v1/items/1/actions", json={"kind": "burn"})
        self.assertEqual(resp.status_code, 422)
        self.assertIn("kind must be one of", resp.json()["errors"][0])

    def test_not_json(self):
        resp = self.client.post("/v1/items/1/actions", content=b"kind=convert")
        self.assertEqual(resp.status_code, 422)

    def test_ineligible_recorded_as_notice(self):
        resp = self.client.post("/v1/items/2/actions", json={"kind": "convert"})
        self.assertEqual(resp.status_code, 202)
        self.assertEqual(resp.json()["phase"], "idle")
        notices = self.client.get("/v1/notices", params={"item_id": "2"}).json()["notices"]
        self.assertTrue(notices)
        self.assertEqual(self.signer.requests, [])

    def test_cancel(self):
        self.client.post("/v1/items/1/actions", json={"kind": "authorize"})
        resp = self.client.post("/v1/items/1/cancel")
        self.assertEqual(resp.json(), {"item_id": "1", "cancelled": True})
        codes = [n["code"] for n in self.client.get("/v1/notices").json()["notices"]]
        self.assertIn("cancelled", codes)

    def test_cancel_idle(self):
        self.assertEqual(self.client.post("/v1/items/1/cancel").json()["cancelled"], False)


class TestNoWallet(ApiTestCase):

    connect = False

    def test_ineligible(self):
        resp = self.client.post("/v1/items/1/actions", json={"kind": "convert"})
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json()["error"], "ineligible")


class TestWrongNetwork(ApiTestCase):

    required_chain_id = 50312

    def test_conflict(self):
        self.coord.set_chain(1)
        resp = self.client.post("/v1/items/1/actions", json={"kind": "authorize"})
        self.assertEqual(resp.status_code, 409)
        self.assertEqual(resp.json()["error"], "wrong_network")


class TestFeedsAndStatus(ApiTestCase):

    def test_recent_conversions(self):
        self.coord.on_recently_converted({"nfts": [{"nft_id": 5, "token_id": 11}]})
        body = self.client.get("/v1/recent-conversions").json()
        self.assertEqual(body["conversions"][0]["item_id"], "5")
        self.assertEqual(body["conversions"][0]["ledger_ref"], "11")

    def test_session(self):
        body = self.client.get("/v1/session").json()
        self.assertEqual(body["holder"], HOLDER)
        self.assertEqual(body["authorized"], [])
        self.assertEqual(body["channel_state"], "disabled")

    def test_health(self):
        body = self.client.get("/health").json()
        self.assertEqual(body["status"], "ok")


if __name__ == "__main__":
    unittest.main()
