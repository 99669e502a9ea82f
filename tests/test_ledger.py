"""
mintsaga — Ledger Reader Tests

Tests:
  - point reads return ints, failures return None (never zero)
  - transient read errors are retried
  - receipts: not-yet-mined is None, wait stops on request
  - Transfer / mint event association
"""

import os
import sys
import unittest
from unittest.mock import MagicMock

from web3.exceptions import TransactionNotFound

_base = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, _base)

from fixtures.services import COLLECTION, HOLDER, PRICE, TOKEN
from gateway.ledger import LedgerReader, associate_transfer
from gateway.retry import BackoffPolicy


class TestAssociateTransfer(unittest.TestCase):

    def setUp(self):
        self.transfer = {"from": HOLDER, "to": COLLECTION, "value": PRICE}

    def test_matching_mint(self):
        mint = {"from": HOLDER.upper().replace("0X", "0x"), "to": COLLECTION.lower(), "value": PRICE,
                "tokenId": 42, "remark": "7.png"}
        assoc = associate_transfer([self.transfer], [mint], tx_hash="0xaa", block_number=9)
        self.assertEqual(assoc.ledger_ref, "42")
        self.assertEqual(assoc.remark, "7.png")
        self.assertEqual(assoc.block_number, 9)

    def test_mismatched_mint(self):
        mint = {"from": HOLDER, "to": COLLECTION, "value": PRICE - 1, "tokenId": 42}
        assoc = associate_transfer([self.transfer], [mint])
        self.assertIsNotNone(assoc)
        self.assertIsNone(assoc.ledger_ref)
        self.assertEqual(assoc.value, PRICE)

    def test_no_transfer(self):
        self.assertIsNone(associate_transfer([], [{"from": HOLDER, "to": COLLECTION, "value": 1, "tokenId": 1}]))


class TestLedgerReader(unittest.TestCase):

    def setUp(self):
        self.w3 = MagicMock()
        self.sleeps = []
        self.reader = LedgerReader(
            TOKEN, COLLECTION,
            w3=self.w3,
            policy=BackoffPolicy(base=0.1, cap=1.0, max_attempts=3),
            sleep_fn=self.sleeps.append,
        )
        self.functions = self.w3.eth.contract.return_value.functions

    def test_allowance(self):
        self.functions.allowance.return_value.call.return_value = PRICE
        self.assertEqual(self.reader.allowance(HOLDER), PRICE)
        owner, spender = self.functions.allowance.call_args[0]
        self.assertEqual(spender, self.reader.collection_address)
        self.assertEqual(owner.lower(), HOLDER.lower())

    def test_price(self):
        self.functions.mintPrice.return_value.call.return_value = 5
        self.assertEqual(self.reader.conversion_price(), 5)

    def test_failed_read_is_unknown(self):
        self.functions.balanceOf.return_value.call.side_effect = ConnectionError("rpc down")
        self.assertIsNone(self.reader.balance(HOLDER))
        self.assertEqual(self.functions.balanceOf.return_value.call.call_count, 3)
        self.assertEqual(self.sleeps, [0.1, 0.2])

    def test_transient_then_success(self):
        self.functions.decimals.return_value.call.side_effect = [TimeoutError("slow"), 18]
        self.assertEqual(self.reader.decimals(), 18)

    def test_chain_id(self):
        self.w3.eth.chain_id = 50312
        self.assertEqual(self.reader.chain_id(), 50312)

    def test_receipt_not_found(self):
        self.w3.eth.get_transaction_receipt.side_effect = TransactionNotFound("not yet")
        self.assertIsNone(self.reader.get_receipt("0xaa"))

    def test_wait_for_receipt_polls(self):
        self.w3.eth.get_transaction_receipt.side_effect = [
            TransactionNotFound("not yet"),
            TransactionNotFound("not yet"),
            {"status": 1, "transactionHash": "0xaa", "blockNumber": 4},
        ]
        receipt = self.reader.wait_for_receipt("0xaa", poll_s=2.0)
        self.assertEqual(receipt["blockNumber"], 4)
        self.assertEqual(self.sleeps, [2.0, 2.0])

    def test_wait_for_receipt_stops(self):
        self.w3.eth.get_transaction_receipt.side_effect = TransactionNotFound("not yet")
        checks = iter([False, True])
        self.assertIsNone(self.reader.wait_for_receipt("0xaa", should_stop=lambda: next(checks)))
        self.assertEqual(self.w3.eth.get_transaction_receipt.call_count, 1)

    def test_associate_events(self):
        events = self.w3.eth.contract.return_value.events
        events.Transfer.return_value.process_receipt.return_value = [
            {"args": {"from": HOLDER, "to": COLLECTION, "value": PRICE}},
        ]
        events.HakuNFTMint.return_value.process_receipt.return_value = [
            {"args": {"from": HOLDER, "to": COLLECTION, "value": PRICE, "tokenId": 3, "remark": "3.png"}},
        ]
        assoc = self.reader.associate_events({"transactionHash": "0xaa", "blockNumber": 7})
        self.assertEqual(assoc.ledger_ref, "3")
        self.assertEqual(assoc.tx_hash, "0xaa")


if __name__ == "__main__":
    unittest.main()
