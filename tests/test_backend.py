"""
mintsaga — Backend HTTP Client Tests

Runs BackendClient against httpx.MockTransport.

Tests:
  - request shapes for all four endpoints
  - query retries on 5xx, not on 4xx
  - rollback notification is never retried
  - malformed entries are skipped, not fatal
"""

import json
import os
import sys
import unittest

import httpx

_base = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, _base)

from fixtures.services import HOLDER, wire_item
from gateway.backend import BackendClient, parse_conversions, parse_items
from gateway.retry import BackoffPolicy
from lifecycle.errors import BackendUnavailable
from lifecycle.types import ItemStatus


class Recorder:
    """MockTransport handler: records requests and replays scripted responses."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        response = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(response, Exception):
            raise response
        return response


class BackendTestCase(unittest.TestCase):

    def client(self, recorder):
        self.sleeps = []
        return BackendClient(
            "http://backend.test/",
            auth_token="secret",
            transport=httpx.MockTransport(recorder),
            read_policy=BackoffPolicy(base=0.5, cap=4.0, max_attempts=3),
            sleep_fn=self.sleeps.append,
        )


class TestQueryItems(BackendTestCase):

    def test_query_items(self):
        rec = Recorder(httpx.Response(200, json={"user_address": HOLDER, "nfts": [
            wire_item("1", owned=3, total=10),
            wire_item("2", is_mint=2, token_id="5"),
        ]}))
        items = self.client(rec).query_items(HOLDER)

        self.assertEqual([i.status for i in items], [ItemStatus.COLLECTING, ItemStatus.RECLAIMABLE])
        req = rec.requests[0]
        self.assertEqual(req.method, "GET")
        self.assertEqual(req.url.path, "/api/query-mint")
        self.assertEqual(req.url.params["user_address"], HOLDER)
        self.assertEqual(req.headers["Authorization"], "Bearer secret")

    def test_retries_server_errors(self):
        rec = Recorder(
            httpx.Response(503),
            httpx.Response(200, json={"nfts": [wire_item("1")]}),
        )
        items = self.client(rec).query_items(HOLDER)
        self.assertEqual(len(items), 1)
        self.assertEqual(len(rec.requests), 2)
        self.assertEqual(self.sleeps, [0.5])

    def test_retries_transport_errors_then_gives_up(self):
        rec = Recorder(httpx.ConnectError("refused"))
        with self.assertRaises(BackendUnavailable):
            self.client(rec).query_items(HOLDER)
        self.assertEqual(len(rec.requests), 3)
        self.assertEqual(self.sleeps, [0.5, 1.0])

    def test_client_error_not_retried(self):
        rec = Recorder(httpx.Response(404))
        with self.assertRaises(BackendUnavailable) as ctx:
            self.client(rec).query_items(HOLDER)
        self.assertEqual(ctx.exception.status_code, 404)
        self.assertEqual(len(rec.requests), 1)

    def test_recent_conversions(self):
        rec = Recorder(httpx.Response(200, json={"total": 1, "nfts": [{"nft_id": 9, "token_id": 4}]}))
        records = self.client(rec).query_recent_conversions()
        self.assertEqual(records[0].item_id, "9")
        self.assertEqual(rec.requests[0].url.path, "/api/query-minted-nfts-for-limit")


class TestVerify(BackendTestCase):

    def test_verify_body(self):
        rec = Recorder(httpx.Response(200, json={"eligible": True, "token_id": "3.png"}))
        resp = self.client(rec).verify(HOLDER, "3")
        self.assertTrue(resp["eligible"])
        body = json.loads(rec.requests[0].content)
        self.assertEqual(body, {"user_address": HOLDER, "nft_id": "3"})
        self.assertEqual(rec.requests[0].url.path, "/api/verify-mint-eligibility")

    def test_invalid_json(self):
        rec = Recorder(httpx.Response(200, content=b"<html>"))
        with self.assertRaises(BackendUnavailable):
            self.client(rec).verify(HOLDER, "3")
        self.assertEqual(len(rec.requests), 1)


class TestNotifyRollback(BackendTestCase):

    def test_rollback_body(self):
        rec = Recorder(httpx.Response(200, json={"ok": True}))
        self.assertTrue(self.client(rec).notify_rollback(HOLDER, "3", "WalletTimeout"))
        body = json.loads(rec.requests[0].content)
        self.assertEqual(body, {"user_address": HOLDER, "nft_id": "3", "error": "WalletTimeout"})
        self.assertEqual(rec.requests[0].url.path, "/api/mint-failed")

    def test_rollback_not_retried(self):
        rec = Recorder(httpx.Response(503))
        with self.assertRaises(BackendUnavailable):
            self.client(rec).notify_rollback(HOLDER, "3", "UserRejected")
        self.assertEqual(len(rec.requests), 1)


class TestParsing(unittest.TestCase):

    def test_malformed_entries_skipped(self):
        items = parse_items({"nfts": [wire_item("1"), {"file_name": "x.png"}, wire_item("2")]})
        self.assertEqual([i.id for i in items], ["1", "2"])

    def test_items_key(self):
        items = parse_items({"items": [{"id": "a", "collected_units": 1, "total_units": 1, "status": "eligible"}]})
        self.assertEqual(items[0].status, ItemStatus.ELIGIBLE)

    def test_conversions_bare_list(self):
        self.assertEqual(len(parse_conversions([{"nft_id": 1}, {"nft_id": 2}])), 2)

    def test_conversions_empty(self):
        self.assertEqual(parse_conversions(None), [])


if __name__ == "__main__":
    unittest.main()
