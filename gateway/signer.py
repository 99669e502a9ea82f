"""
mintsaga — Signing Agent Adapter

The signing agent is an external authority: it may approve, reject, or
never answer, and there is no way to cancel a request once dispatched.

    SigningAgent.request(tx) → Future[str]   (resolves to a tx hash)

Failures resolve the future with a SignerError. decode_revert() maps a
SignerError onto a RevertCategory using the ABI error selectors the
contracts emit:

    0xe450d38c  ERC20InsufficientBalance(address,uint256,uint256)
    0xfb8f41b2  ERC20InsufficientAllowance(address,uint256,uint256)
    0x08c379a0  Error(string)
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, Protocol

from web3 import Web3
from web3.exceptions import ContractCustomError, ContractLogicError

from gateway.ledger import COLLECTION_ABI, TOKEN_ABI
from lifecycle.errors import RevertCategory, SignerError

logger = logging.getLogger("mintsaga.signer")

SELECTOR_INSUFFICIENT_BALANCE = "0xe450d38c"
SELECTOR_INSUFFICIENT_ALLOWANCE = "0xfb8f41b2"
SELECTOR_ERROR_STRING = "0x08c379a0"

_REJECTION_MARKERS = ("user rejected", "user denied", "rejected the request", "user cancelled")


# ═══════════════════════════════════════════════════════════════════
# Requests
# ═══════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class TransactionRequest:
    """A contract call to be signed, built only from verifier parameters."""
    contract: str
    function: str
    args: tuple = ()
    item_id: str = ""
    kind: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)
    not_after: float | None = None     # epoch seconds; never submitted after this

    @staticmethod
    def from_params(
        item_id: str, kind: str, params: dict[str, Any], not_after: float | None = None,
    ) -> TransactionRequest:
        try:
            return TransactionRequest(
                contract=params["contract"],
                function=params["function"],
                args=tuple(params.get("args", ())),
                item_id=item_id,
                kind=kind,
                metadata={k: v for k, v in params.items() if k not in ("contract", "function", "args")},
                not_after=not_after,
            )
        except KeyError as e:
            raise ValueError(f"Transaction params for item {item_id} missing {e}") from e

    def to_dict(self) -> dict[str, Any]:
        return {
            "contract": self.contract,
            "function": self.function,
            "args": list(self.args),
            "item_id": self.item_id,
            "kind": self.kind,
        }


class SigningAgent(Protocol):
    def request(self, tx: TransactionRequest) -> Future: ...


# ═══════════════════════════════════════════════════════════════════
# Revert decoding
# ═══════════════════════════════════════════════════════════════════

def _decode_error_string(data: str) -> str:
    """Decode the reason of an ABI-encoded Error(string) payload."""
    body = data[10:]
    try:
        length = int(body[64:128], 16)
        return bytes.fromhex(body[128:128 + 2 * length]).decode("utf-8", errors="replace")
    except ValueError:
        return ""


def _decode_amounts(data: str) -> tuple[int, int] | None:
    """(current, needed) from an ERC20Insufficient*(address,uint256,uint256) payload."""
    body = data[10:]
    try:
        return int(body[64:128], 16), int(body[128:192], 16)
    except ValueError:
        return None


def decode_revert(error: BaseException) -> tuple[RevertCategory, str]:
    """
    Classify a signer or ledger failure.

    Returns (category, human-readable detail).
    """
    message = str(error)
    lowered = message.lower()
    data = getattr(error, "data", None)

    if getattr(error, "user_rejected", False) or any(m in lowered for m in _REJECTION_MARKERS):
        return RevertCategory.USER_REJECTED, "Request was rejected in the wallet"

    if isinstance(data, str) and data.startswith("0x") and len(data) >= 10:
        selector = data[:10].lower()
        if selector == SELECTOR_INSUFFICIENT_BALANCE:
            amounts = _decode_amounts(data)
            detail = "Insufficient token balance"
            if amounts:
                detail += f" (have {amounts[0]}, need {amounts[1]})"
            return RevertCategory.INSUFFICIENT_BALANCE, detail
        if selector == SELECTOR_INSUFFICIENT_ALLOWANCE:
            amounts = _decode_amounts(data)
            detail = "Insufficient authorization"
            if amounts:
                detail += f" (granted {amounts[0]}, need {amounts[1]})"
            return RevertCategory.INSUFFICIENT_AUTHORIZATION, detail
        if selector == SELECTOR_ERROR_STRING:
            reason = _decode_error_string(data)
            reason_l = reason.lower()
            if "allowance" in reason_l:
                return RevertCategory.INSUFFICIENT_AUTHORIZATION, reason
            if "balance" in reason_l:
                return RevertCategory.INSUFFICIENT_BALANCE, reason
            return RevertCategory.GENERIC_REVERT, reason or "Execution reverted"
        return RevertCategory.UNRECOGNIZED, f"Unrecognized error code {selector}"

    if "insufficient allowance" in lowered:
        return RevertCategory.INSUFFICIENT_AUTHORIZATION, message
    if "insufficient balance" in lowered or "exceeds balance" in lowered:
        return RevertCategory.INSUFFICIENT_BALANCE, message
    if "execution reverted" in lowered or "reverted" in lowered:
        return RevertCategory.GENERIC_REVERT, message
    return RevertCategory.UNRECOGNIZED, message or type(error).__name__


# ═══════════════════════════════════════════════════════════════════
# Web3 signing agent
# ═══════════════════════════════════════════════════════════════════

class Web3SigningAgent:
    """
    Signs and submits with a local account over a Web3 connection.

    Each request runs on the agent's executor; the returned future resolves
    to the transaction hash once the node accepts the raw transaction. A
    request whose not_after has passed by the time a worker picks it up is
    failed without touching the node.
    """

    def __init__(
        self,
        w3: Any,
        account: Any,
        chain_id: int,
        executor: Executor | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.w3 = w3
        self.account = account
        self.chain_id = chain_id
        self._executor = executor or ThreadPoolExecutor(max_workers=2, thread_name_prefix="signer")
        self._clock = clock

    def _contract(self, tx: TransactionRequest):
        abi = TOKEN_ABI if tx.function == "approve" else COLLECTION_ABI
        return self.w3.eth.contract(address=Web3.to_checksum_address(tx.contract), abi=abi)

    def _submit(self, tx: TransactionRequest) -> str:
        if tx.not_after is not None and self._clock() > tx.not_after:
            raise SignerError(f"Signature deadline passed before item {tx.item_id} was submitted")
        sender = self.account.address
        try:
            fn = self._contract(tx).get_function_by_name(tx.function)(*tx.args)
            built = fn.build_transaction({
                "from": sender,
                "nonce": self.w3.eth.get_transaction_count(sender),
                "chainId": self.chain_id,
            })
            signed = self.account.sign_transaction(built)
            tx_hash = self.w3.eth.send_raw_transaction(signed.raw_transaction)
        except (ContractCustomError, ContractLogicError) as e:
            raise SignerError(str(e), data=getattr(e, "data", None)) from e
        except (ValueError, TypeError, OSError) as e:
            raise SignerError(str(e)) from e
        handle = Web3.to_hex(tx_hash)
        logger.info("Submitted %s for item %s: %s", tx.function, tx.item_id, handle)
        return handle

    def request(self, tx: TransactionRequest) -> Future:
        return self._executor.submit(self._submit, tx)
