"""
mintsaga — Fixture Services

Deterministic in-memory stand-ins for the three external authorities,
with the same method signatures the production adapters expose:

    FakeBackend   → gateway.backend.BackendClient
                      verify(holder, item_id)          POST /api/verify-mint-eligibility
                      notify_rollback(holder, id, why) POST /api/mint-failed
                      query_items(holder)              GET  /api/query-mint
                      query_recent_conversions()       GET  /api/query-minted-nfts-for-limit
    FakeLedger    → gateway.ledger.LedgerReader
    FakeSigner    → gateway.signer.Web3SigningAgent (futures resolved by the test)

No network, no threads, no clocks. Tests drive every completion.

Usage:
    from fixtures.services import FakeBackend, FakeLedger, FakeSigner, HOLDER
    backend = FakeBackend()
    backend.set_items(HOLDER, [wire_item("1", owned=10, total=10)])
"""

from __future__ import annotations

import copy
from concurrent.futures import Future
from typing import Any, Callable

from gateway.backend import parse_conversions, parse_items
from gateway.ledger import AssociatedTransfer
from gateway.signer import TransactionRequest
from lifecycle.errors import BackendUnavailable, SignerError
from lifecycle.types import ConversionRecord, Item

HOLDER = "0x" + "ab" * 20
OTHER_HOLDER = "0x" + "cd" * 20
TOKEN = "0x41166CCe5C4C6673e7eF4c59169896d7e29c89f3"
COLLECTION = "0x8557aFC94164F53a0828EB4ca16afE7dE280BE34"
PRICE = 100 * 10 ** 18


def wire_item(
    item_id: str,
    owned: int = 10,
    total: int = 10,
    is_mint: int = 0,
    token_id: str | None = None,
) -> dict[str, Any]:
    """One item in the legacy backend wire format."""
    return {
        "nft_id": int(item_id) if str(item_id).isdigit() else item_id,
        "file_name": f"{item_id}.png",
        "all_chips_owned": owned == total,
        "owned_chips_count": owned,
        "total_chips_count": total,
        "is_mint": is_mint,
        "token_id": token_id,
    }


# ═══════════════════════════════════════════════════════════════════
# Backend
# ═══════════════════════════════════════════════════════════════════

class FakeBackend:

    def __init__(self):
        self._items: dict[str, list[dict[str, Any]]] = {}
        self.verify_responses: dict[str, dict[str, Any]] = {}
        self.recent: list[dict[str, Any]] = []
        self.verify_calls: list[tuple[str, str]] = []
        self.rollback_calls: list[tuple[str, str, str]] = []
        self.query_count = 0
        self.fail_verify = False
        self.fail_rollback = False
        self.fail_queries = 0            # next N queries raise BackendUnavailable
        self.on_query: Callable[[int], None] | None = None

    # ── State setup ─────────────────────────────────────────────

    def set_items(self, holder: str, items: list[dict[str, Any]]) -> None:
        self._items[holder.lower()] = copy.deepcopy(items)

    def update_item(self, holder: str, item_id: str, **fields) -> None:
        for raw in self._items.get(holder.lower(), []):
            if str(raw["nft_id"]) == str(item_id):
                raw.update(fields)
                return
        raise KeyError(item_id)

    def remove_item(self, holder: str, item_id: str) -> None:
        self._items[holder.lower()] = [
            raw for raw in self._items.get(holder.lower(), [])
            if str(raw["nft_id"]) != str(item_id)
        ]

    def payload(self, holder: str) -> dict[str, Any]:
        """What GET /api/query-mint (and an ItemUpdate push) would carry."""
        return {"user_address": holder, "nfts": copy.deepcopy(self._items.get(holder.lower(), []))}

    # ── Endpoints ───────────────────────────────────────────────

    def verify(self, holder: str, item_id: str) -> dict[str, Any]:
        self.verify_calls.append((holder, item_id))
        if self.fail_verify:
            raise BackendUnavailable("verify: connection refused")
        if item_id in self.verify_responses:
            return dict(self.verify_responses[item_id])
        return {
            "eligible": True,
            "message": "ok",
            "contract_address": COLLECTION,
            "token_id": f"{item_id}.png",
            "uint256_param": int(item_id) if item_id.isdigit() else 1,
        }

    def notify_rollback(self, holder: str, item_id: str, reason: str) -> bool:
        self.rollback_calls.append((holder, item_id, reason))
        if self.fail_rollback:
            raise BackendUnavailable("mint-failed: HTTP 503", status_code=503)
        return True

    def query_items(self, holder: str) -> list[Item]:
        self.query_count += 1
        if self.on_query is not None:
            self.on_query(self.query_count)
        if self.fail_queries > 0:
            self.fail_queries -= 1
            raise BackendUnavailable("query-mint: timed out")
        return parse_items(self.payload(holder))

    def query_recent_conversions(self) -> list[ConversionRecord]:
        return parse_conversions({"total": len(self.recent), "nfts": self.recent})


# ═══════════════════════════════════════════════════════════════════
# Ledger
# ═══════════════════════════════════════════════════════════════════

class FakeLedger:
    """
    Point reads return the configured values; None means "unreadable".
    Receipts default to success unless set in ``receipts``.
    """

    def __init__(self, allowance: int | None = 0, price: int | None = PRICE, chain_id: int = 50312):
        self.allowances: dict[str, int | None] = {}
        self.default_allowance = allowance
        self.price = price
        self.token_decimals: int | None = 18
        self.balances: dict[str, int] = {}
        self.chain = chain_id
        self.receipts: dict[str, dict[str, Any]] = {}
        self.associations: dict[str, AssociatedTransfer] = {}
        self.receipt_waits: list[str] = []

    def allowance(self, holder: str, spender: str | None = None) -> int | None:
        return self.allowances.get(holder.lower(), self.default_allowance)

    def balance(self, holder: str) -> int | None:
        return self.balances.get(holder.lower())

    def conversion_price(self) -> int | None:
        return self.price

    def decimals(self) -> int | None:
        return self.token_decimals

    def chain_id(self) -> int | None:
        return self.chain

    def get_receipt(self, tx_hash: str) -> dict[str, Any] | None:
        return self.receipts.get(tx_hash, {"status": 1, "transactionHash": tx_hash, "blockNumber": 1})

    def wait_for_receipt(self, tx_hash: str, poll_s: float = 2.0, should_stop=None) -> dict[str, Any] | None:
        self.receipt_waits.append(tx_hash)
        if should_stop is not None and should_stop():
            return None
        return self.get_receipt(tx_hash)

    def associate_events(self, receipt: dict[str, Any]) -> AssociatedTransfer | None:
        return self.associations.get(receipt.get("transactionHash", ""))


# ═══════════════════════════════════════════════════════════════════
# Signer
# ═══════════════════════════════════════════════════════════════════

class FakeSigner:
    """
    Records every request and hands back an unresolved future. The test
    decides whether (and when) the wallet answers.
    """

    def __init__(self):
        self.requests: list[tuple[TransactionRequest, Future]] = []

    def request(self, tx: TransactionRequest) -> Future:
        future: Future = Future()
        future.set_running_or_notify_cancel()
        self.requests.append((tx, future))
        return future

    @property
    def last(self) -> TransactionRequest:
        return self.requests[-1][0]

    def approve(self, index: int = -1, handle: str | None = None) -> str:
        handle = handle or "0x" + f"{len(self.requests):064x}"
        self.requests[index][1].set_result(handle)
        return handle

    def reject(self, index: int = -1, error: BaseException | None = None) -> None:
        self.requests[index][1].set_exception(error or SignerError("User rejected the request", user_rejected=True))
