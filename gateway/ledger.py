"""
mintsaga — Ledger Reader

Read-only accessor for the ledger:

    allowance(holder, spender)   → token.allowance
    balance(holder)              → token.balanceOf
    conversion_price()           → collection.mintPrice
    decimals()                   → token.decimals
    chain_id()                   → eth_chainId
    get_receipt(tx_hash)         → eth_getTransactionReceipt
    wait_for_receipt(tx_hash)    → polls get_receipt with no deadline
    associate_events(receipt)    → Transfer + HakuNFTMint pairing

Every point read goes through call_with_retry. A read that still fails is
reported as None ("unknown"), never as zero and never as a cached value.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable

from web3 import Web3
from web3.exceptions import TransactionNotFound
from web3.logs import DISCARD

from gateway.retry import BackoffPolicy, DEFAULT_READ_POLICY, call_with_retry

logger = logging.getLogger("mintsaga.ledger")


# ═══════════════════════════════════════════════════════════════════
# ABIs (minimal)
# ═══════════════════════════════════════════════════════════════════

TOKEN_ABI = [
    {"inputs": [{"name": "account", "type": "address"}], "name": "balanceOf",
     "outputs": [{"name": "", "type": "uint256"}], "stateMutability": "view", "type": "function"},
    {"inputs": [{"name": "owner", "type": "address"}, {"name": "spender", "type": "address"}],
     "name": "allowance", "outputs": [{"name": "", "type": "uint256"}],
     "stateMutability": "view", "type": "function"},
    {"inputs": [{"name": "spender", "type": "address"}, {"name": "amount", "type": "uint256"}],
     "name": "approve", "outputs": [{"name": "", "type": "bool"}],
     "stateMutability": "nonpayable", "type": "function"},
    {"inputs": [], "name": "decimals", "outputs": [{"name": "", "type": "uint8"}],
     "stateMutability": "view", "type": "function"},
    {"anonymous": False, "name": "Transfer", "type": "event", "inputs": [
        {"indexed": True, "name": "from", "type": "address"},
        {"indexed": True, "name": "to", "type": "address"},
        {"indexed": False, "name": "value", "type": "uint256"},
    ]},
]

COLLECTION_ABI = [
    {"inputs": [{"name": "to", "type": "address"}, {"name": "remark", "type": "string"},
                {"name": "tokenURL", "type": "uint256"}],
     "name": "safeMint", "outputs": [{"name": "", "type": "uint256"}],
     "stateMutability": "nonpayable", "type": "function"},
    {"inputs": [{"name": "tokenId", "type": "uint256"}], "name": "userBurn", "outputs": [],
     "stateMutability": "nonpayable", "type": "function"},
    {"inputs": [], "name": "mintPrice", "outputs": [{"name": "", "type": "uint256"}],
     "stateMutability": "view", "type": "function"},
    {"anonymous": False, "name": "HakuNFTMint", "type": "event", "inputs": [
        {"indexed": True, "name": "from", "type": "address"},
        {"indexed": True, "name": "to", "type": "address"},
        {"indexed": False, "name": "value", "type": "uint256"},
        {"indexed": True, "name": "tokenId", "type": "uint256"},
        {"indexed": False, "name": "remark", "type": "string"},
    ]},
]


# ═══════════════════════════════════════════════════════════════════
# Event Association
# ═══════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class AssociatedTransfer:
    """The token Transfer of a conversion, plus the matching mint event if found."""
    sender: str
    recipient: str
    value: int
    tx_hash: str
    block_number: int
    ledger_ref: str | None = None
    remark: str | None = None


def associate_transfer(
    transfers: list[dict[str, Any]],
    mints: list[dict[str, Any]],
    tx_hash: str = "",
    block_number: int = 0,
) -> AssociatedTransfer | None:
    """
    Pair the first token Transfer with a mint event carrying the same
    (from, to, value). Returns None when no Transfer is present; the mint
    fields stay None when nothing matches.
    """
    if not transfers:
        return None
    t = transfers[0]
    sender, recipient, value = str(t["from"]), str(t["to"]), int(t["value"])

    for m in mints:
        if (
            str(m["from"]).lower() == sender.lower()
            and str(m["to"]).lower() == recipient.lower()
            and int(m["value"]) == value
        ):
            return AssociatedTransfer(
                sender=sender, recipient=recipient, value=value,
                tx_hash=tx_hash, block_number=block_number,
                ledger_ref=str(m["tokenId"]), remark=m.get("remark"),
            )

    if mints:
        logger.warning("Mint event present but does not match transfer in %s", tx_hash[:18])
    return AssociatedTransfer(
        sender=sender, recipient=recipient, value=value,
        tx_hash=tx_hash, block_number=block_number,
    )


# ═══════════════════════════════════════════════════════════════════
# Reader
# ═══════════════════════════════════════════════════════════════════

class LedgerReader:
    """
    Point reads against the token and collection contracts.

    Pass ``w3`` to reuse an existing Web3 instance (or a test double);
    otherwise one is built over HTTP from ``rpc_url``.
    """

    def __init__(
        self,
        token_address: str,
        collection_address: str,
        rpc_url: str = "",
        timeout_s: float = 10.0,
        w3: Any = None,
        policy: BackoffPolicy | None = None,
        sleep_fn: Callable[[float], None] = time.sleep,
    ):
        self.w3 = w3 or Web3(Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": timeout_s}))
        self.token_address = Web3.to_checksum_address(token_address)
        self.collection_address = Web3.to_checksum_address(collection_address)
        self.token = self.w3.eth.contract(address=self.token_address, abi=TOKEN_ABI)
        self.collection = self.w3.eth.contract(address=self.collection_address, abi=COLLECTION_ABI)
        self._policy = policy or DEFAULT_READ_POLICY
        self._sleep = sleep_fn

    def _read(self, label: str, fn: Callable[[], Any]) -> Any:
        try:
            return call_with_retry(fn, self._policy, label=label, sleep_fn=self._sleep)
        except Exception as e:
            logger.warning("Ledger read %s unknown: %s", label, str(e)[:200])
            return None

    # ── Point reads ─────────────────────────────────────────────

    def allowance(self, holder: str, spender: str | None = None) -> int | None:
        owner = Web3.to_checksum_address(holder)
        spender = Web3.to_checksum_address(spender) if spender else self.collection_address
        value = self._read("allowance", lambda: self.token.functions.allowance(owner, spender).call())
        return int(value) if value is not None else None

    def balance(self, holder: str) -> int | None:
        owner = Web3.to_checksum_address(holder)
        value = self._read("balance", lambda: self.token.functions.balanceOf(owner).call())
        return int(value) if value is not None else None

    def conversion_price(self) -> int | None:
        value = self._read("conversion_price", lambda: self.collection.functions.mintPrice().call())
        return int(value) if value is not None else None

    def decimals(self) -> int | None:
        value = self._read("decimals", lambda: self.token.functions.decimals().call())
        return int(value) if value is not None else None

    def chain_id(self) -> int | None:
        value = self._read("chain_id", lambda: self.w3.eth.chain_id)
        return int(value) if value is not None else None

    # ── Receipts ────────────────────────────────────────────────

    def get_receipt(self, tx_hash: str) -> dict[str, Any] | None:
        """Receipt for tx_hash, or None while it is not yet mined (or unreadable)."""
        def fetch():
            try:
                return self.w3.eth.get_transaction_receipt(tx_hash)
            except TransactionNotFound:
                return None
        receipt = self._read("receipt", fetch)
        return dict(receipt) if receipt is not None else None

    def wait_for_receipt(
        self,
        tx_hash: str,
        poll_s: float = 2.0,
        should_stop: Callable[[], bool] | None = None,
    ) -> dict[str, Any] | None:
        """
        Block until tx_hash has a receipt. There is no deadline: ledger
        confirmation is unbounded. Returns None only if should_stop()
        turns true first.
        """
        while True:
            if should_stop is not None and should_stop():
                logger.debug("Receipt wait abandoned for %s", tx_hash[:18])
                return None
            receipt = self.get_receipt(tx_hash)
            if receipt is not None:
                return receipt
            self._sleep(poll_s)

    def associate_events(self, receipt: dict[str, Any]) -> AssociatedTransfer | None:
        """Decode the Transfer/HakuNFTMint pair emitted by a confirmed conversion."""
        transfers = [
            dict(ev["args"]) for ev in
            self.token.events.Transfer().process_receipt(receipt, errors=DISCARD)
        ]
        mints = [
            dict(ev["args"]) for ev in
            self.collection.events.HakuNFTMint().process_receipt(receipt, errors=DISCARD)
        ]
        tx_hash = receipt.get("transactionHash", "")
        if isinstance(tx_hash, (bytes, bytearray)):
            tx_hash = Web3.to_hex(tx_hash)
        elif hasattr(tx_hash, "hex"):
            tx_hash = tx_hash.hex()
        return associate_transfer(
            transfers, mints,
            tx_hash=str(tx_hash),
            block_number=int(receipt.get("blockNumber", 0) or 0),
        )
