"""
mintsaga — Eligibility Verifier

Produces the exact ledger-call parameters for an action. For a Convert
they come from the backend's validation endpoint alone; the client never
computes them. Authorize, Reclaim and Revoke parameters are derived from
ledger reads and the last authoritative snapshot.

Outcomes:
  EligibilityResult(eligible=True, conversion_params={...})  → sign
  EligibilityResult(eligible=False, message=...)             → notice only
  VerificationUnavailable                                    → could not check
"""

from __future__ import annotations

import logging
from typing import Any

from lifecycle.errors import BackendUnavailable, VerificationUnavailable
from lifecycle.types import ActionKind, EligibilityResult, Item, ItemStatus

logger = logging.getLogger("mintsaga.eligibility")

_CONVERTIBLE_FROM = (ItemStatus.ELIGIBLE, ItemStatus.CONVERTIBLE)


class EligibilityVerifier:

    def __init__(self, backend: Any, ledger: Any, token_address: str, collection_address: str):
        self.backend = backend
        self.ledger = ledger
        self.token_address = token_address
        self.collection_address = collection_address

    # ── Convert ─────────────────────────────────────────────────

    def check_allowance(self, holder: str) -> EligibilityResult | None:
        """
        Local sanity check before asking the backend to reserve a conversion.
        Returns an ineligible result, or None if the grant covers the price.

        Raises VerificationUnavailable if either value cannot be read.
        """
        allowance = self.ledger.allowance(holder, self.collection_address)
        if allowance is None:
            raise VerificationUnavailable("Authorization could not be read from the ledger; retry shortly")
        price = self.ledger.conversion_price()
        if price is None:
            raise VerificationUnavailable("Conversion price could not be read from the ledger; retry shortly")
        if allowance < price:
            return EligibilityResult(
                False, f"Insufficient authorization: granted {allowance}, conversion needs {price}",
            )
        return None

    def verify(self, item_id: str, holder: str) -> EligibilityResult:
        """Backend validation for a Convert, preceded by the local allowance check."""
        local = self.check_allowance(holder)
        if local is not None:
            logger.info("Item %s failed local check: %s", item_id, local.message)
            return local

        try:
            resp = self.backend.verify(holder, item_id)
        except BackendUnavailable as e:
            raise VerificationUnavailable(f"Eligibility check unavailable: {e}") from e

        if not resp.get("eligible"):
            return EligibilityResult(False, resp.get("message") or "Not eligible for conversion")

        remark = resp.get("token_id") or str(item_id)
        token_url = resp.get("uint256_param")
        if not token_url and resp.get("token_id"):
            try:
                token_url = int(str(resp["token_id"]).replace(".png", ""))
            except ValueError:
                token_url = None
        if token_url is None:
            raise VerificationUnavailable(f"Eligibility response for item {item_id} has no call parameters")

        return EligibilityResult(
            True,
            resp.get("message", ""),
            {
                "contract": resp.get("contract_address") or self.collection_address,
                "function": "safeMint",
                "args": [holder, str(remark), int(token_url)],
            },
        )

    # ── Any kind ────────────────────────────────────────────────

    def _grant_params(self, amount: int) -> dict[str, Any]:
        return {
            "contract": self.token_address,
            "function": "approve",
            "args": [self.collection_address, amount],
        }

    def verify_action(self, kind: ActionKind, item: Item | None, holder: str) -> EligibilityResult:
        if item is None:
            return EligibilityResult(False, "Item is not owned by this wallet")

        if kind == ActionKind.CONVERT:
            if item.status not in _CONVERTIBLE_FROM:
                return EligibilityResult(False, f"Item is {item.status.value}, not ready to convert")
            return self.verify(item.id, holder)

        if kind == ActionKind.AUTHORIZE:
            if item.status != ItemStatus.ELIGIBLE:
                return EligibilityResult(False, f"Item is {item.status.value}; only eligible items can be authorized")
            price = self.ledger.conversion_price()
            if price is None:
                raise VerificationUnavailable("Conversion price could not be read")
            return EligibilityResult(True, "", self._grant_params(price))

        if kind == ActionKind.RECLAIM:
            if item.status != ItemStatus.RECLAIMABLE or not item.ledger_ref:
                return EligibilityResult(False, "Item has no converted token to reclaim")
            try:
                token_id = int(item.ledger_ref)
            except ValueError:
                return EligibilityResult(False, f"Ledger reference {item.ledger_ref!r} is not a token id")
            return EligibilityResult(True, "", {
                "contract": self.collection_address,
                "function": "userBurn",
                "args": [token_id],
            })

        if kind == ActionKind.REVOKE:
            return EligibilityResult(True, "", self._grant_params(0))

        raise ValueError(f"Unknown action kind: {kind}")
