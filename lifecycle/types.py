"""
mintsaga — Lifecycle Types

Implements the item lifecycle data model:

  Item:           authoritative backend record (mutated only by snapshots)
  ItemPhase:      client-side phase machine layered on top of Item.status
  PendingAction:  at most one in-flight action per item, with deadline and
                  poll bookkeeping enforced by the coordinator's sweep
  Notice:         the only thing that crosses into the UI layer

These are pure data structures with transition tables, no I/O. The
coordinator wires them to the signer, ledger and backend.
"""

from __future__ import annotations

import enum
import time
import uuid
from dataclasses import dataclass, field
from typing import Any

from lifecycle.errors import InvalidTransition


# ═══════════════════════════════════════════════════════════════════
# ITEM
# ═══════════════════════════════════════════════════════════════════

class ItemStatus(str, enum.Enum):
    """Authoritative status, owned by the backend."""
    COLLECTING  = "collecting"
    ELIGIBLE    = "eligible"
    CONVERTIBLE = "convertible"
    CONVERTED   = "converted"
    RECLAIMABLE = "reclaimable"


# Legacy wire flag is_mint: 0 not requested, 1 reserved, 2 converted
_IS_MINT_NONE = 0
_IS_MINT_RESERVED = 1
_IS_MINT_CONVERTED = 2


@dataclass(frozen=True)
class Item:
    id: str
    collected_units: int
    total_units: int
    status: ItemStatus
    ledger_ref: str | None = None
    file_name: str | None = None

    def __post_init__(self):
        if not self.id:
            raise ValueError("Item id must be non-empty")
        if self.total_units < 0 or not 0 <= self.collected_units <= self.total_units:
            raise ValueError(
                f"Item {self.id}: collected_units={self.collected_units} "
                f"outside 0..{self.total_units}"
            )

    @property
    def all_collected(self) -> bool:
        return self.collected_units == self.total_units

    @staticmethod
    def from_wire(raw: dict[str, Any]) -> Item:
        """
        Parse one backend item payload.

        Accepts an explicit ``status`` string, or derives the status from
        the legacy flags ``is_mint`` / ``all_chips_owned`` / ``token_id``.
        """
        item_id = raw.get("id", raw.get("nft_id"))
        if item_id is None:
            raise ValueError(f"Item payload has no id: {raw!r}")
        collected = int(raw.get("collected_units", raw.get("owned_chips_count", 0)) or 0)
        total = int(raw.get("total_units", raw.get("total_chips_count", 0)) or 0)
        ledger_ref = raw.get("ledger_ref", raw.get("token_id"))
        ledger_ref = str(ledger_ref) if ledger_ref not in (None, "") else None

        explicit = raw.get("status")
        if explicit:
            status = ItemStatus(str(explicit).lower())
        else:
            is_mint = int(raw.get("is_mint", _IS_MINT_NONE) or 0)
            if is_mint == _IS_MINT_CONVERTED:
                status = ItemStatus.RECLAIMABLE if ledger_ref else ItemStatus.CONVERTED
            elif is_mint == _IS_MINT_RESERVED:
                status = ItemStatus.CONVERTIBLE
            else:
                owned_all = raw.get("all_chips_owned")
                if owned_all is None:
                    owned_all = total > 0 and collected == total
                status = ItemStatus.ELIGIBLE if owned_all else ItemStatus.COLLECTING

        if status not in (ItemStatus.CONVERTED, ItemStatus.RECLAIMABLE):
            ledger_ref = None

        return Item(
            id=str(item_id),
            collected_units=collected,
            total_units=total,
            status=status,
            ledger_ref=ledger_ref,
            file_name=raw.get("file_name"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "collected_units": self.collected_units,
            "total_units": self.total_units,
            "status": self.status.value,
            "ledger_ref": self.ledger_ref,
            "file_name": self.file_name,
        }


@dataclass(frozen=True)
class ConversionRecord:
    """One entry of the recently-converted feed (read-only)."""
    item_id: str
    ledger_ref: str | None = None
    token_url: str | None = None
    image_url: str | None = None

    @staticmethod
    def from_wire(raw: dict[str, Any]) -> ConversionRecord:
        item_id = raw.get("id", raw.get("nft_id"))
        if item_id is None:
            raise ValueError(f"Conversion payload has no id: {raw!r}")
        ref = raw.get("ledger_ref", raw.get("token_id"))
        return ConversionRecord(
            item_id=str(item_id),
            ledger_ref=str(ref) if ref not in (None, "") else None,
            token_url=raw.get("token_url"),
            image_url=raw.get("image_url"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "item_id": self.item_id,
            "ledger_ref": self.ledger_ref,
            "token_url": self.token_url,
            "image_url": self.image_url,
        }


# ═══════════════════════════════════════════════════════════════════
# ACTIONS & PHASES
# ═══════════════════════════════════════════════════════════════════

class ActionKind(str, enum.Enum):
    AUTHORIZE = "authorize"   # item-scoped spending grant
    CONVERT   = "convert"     # mint the collectible
    RECLAIM   = "reclaim"     # burn it back
    REVOKE    = "revoke"      # withdraw the grant (amount zero)


class ItemPhase(str, enum.Enum):
    IDLE               = "idle"
    VERIFYING          = "verifying"
    AWAITING_SIGNATURE = "awaiting_signature"
    SUBMITTED          = "submitted"
    CONFIRMING         = "confirming"
    RECONCILING        = "reconciling"
    ROLLED_BACK        = "rolled_back"


# Allowed transitions: from_phase → set of valid to_phases
_PHASE_TRANSITIONS: dict[ItemPhase, set[ItemPhase]] = {
    ItemPhase.IDLE:               {ItemPhase.VERIFYING},
    ItemPhase.VERIFYING:          {ItemPhase.AWAITING_SIGNATURE, ItemPhase.IDLE},
    ItemPhase.AWAITING_SIGNATURE: {ItemPhase.SUBMITTED, ItemPhase.ROLLED_BACK},
    ItemPhase.SUBMITTED:          {ItemPhase.CONFIRMING, ItemPhase.ROLLED_BACK},
    ItemPhase.CONFIRMING:         {ItemPhase.RECONCILING, ItemPhase.ROLLED_BACK},
    ItemPhase.RECONCILING:        {ItemPhase.IDLE},
    ItemPhase.ROLLED_BACK:        {ItemPhase.IDLE},
}

CANCELLABLE_PHASES = frozenset({ItemPhase.VERIFYING, ItemPhase.AWAITING_SIGNATURE})


def check_transition(item_id: str, current: ItemPhase, to: ItemPhase) -> None:
    """Raise InvalidTransition if current → to is not in the phase table."""
    allowed = _PHASE_TRANSITIONS.get(current, set())
    if to not in allowed:
        raise InvalidTransition(
            f"Item {item_id}: {current.value} → {to.value} is not allowed. "
            f"Valid transitions: {sorted(p.value for p in allowed)}"
        )


# None stands for "absent from the snapshot"
EXPECTED_AFTER: dict[ActionKind, frozenset] = {
    ActionKind.AUTHORIZE: frozenset({ItemStatus.ELIGIBLE}),
    ActionKind.CONVERT:   frozenset({ItemStatus.CONVERTED, ItemStatus.RECLAIMABLE}),
    ActionKind.RECLAIM:   frozenset({None, ItemStatus.COLLECTING}),
    ActionKind.REVOKE:    frozenset({
        ItemStatus.ELIGIBLE, ItemStatus.COLLECTING, ItemStatus.CONVERTIBLE,
        ItemStatus.CONVERTED, ItemStatus.RECLAIMABLE, None,
    }),
}


def new_action_id() -> str:
    return f"act_{uuid.uuid4().hex[:16]}"


@dataclass
class PendingAction:
    """
    One in-flight action for one item.

    Lifecycle: AWAITING_SIGNATURE → SUBMITTED → CONFIRMING → RECONCILING → IDLE
               AWAITING_SIGNATURE | SUBMITTED | CONFIRMING → ROLLED_BACK → IDLE

    ``deadline`` applies only while awaiting a signature; the sweep ignores
    it once a handle exists.
    """
    action_id: str
    item_id: str
    kind: ActionKind
    holder: str
    params: dict[str, Any]
    created_at: float
    deadline: float
    phase: ItemPhase = ItemPhase.AWAITING_SIGNATURE
    submitted_at: float | None = None
    external_handle: str | None = None
    polls_used: int = 0
    max_polls: int = 60
    expected: frozenset = field(default_factory=frozenset)

    @staticmethod
    def create(
        item_id: str,
        kind: ActionKind,
        holder: str,
        params: dict[str, Any] | None = None,
        signature_timeout_s: float = 30.0,
        max_polls: int = 60,
        now: float | None = None,
        action_id: str | None = None,
    ) -> PendingAction:
        now = time.time() if now is None else now
        return PendingAction(
            action_id=action_id or new_action_id(),
            item_id=item_id,
            kind=kind,
            holder=holder,
            params=dict(params or {}),
            created_at=now,
            deadline=now + signature_timeout_s,
            max_polls=max_polls,
            expected=EXPECTED_AFTER[kind],
        )

    def transition(self, to: ItemPhase, now: float | None = None) -> None:
        """
        Enforce the phase machine.
        Raises InvalidTransition if the transition is not allowed.
        """
        check_transition(self.item_id, self.phase, to)
        self.phase = to
        if to == ItemPhase.SUBMITTED:
            self.submitted_at = time.time() if now is None else now

    def is_expired(self, now: float | None = None) -> bool:
        """Signature deadline passed with no handle."""
        if self.phase != ItemPhase.AWAITING_SIGNATURE:
            return False
        now = time.time() if now is None else now
        return now >= self.deadline

    @property
    def cancellable(self) -> bool:
        return self.phase in CANCELLABLE_PHASES

    def matches(self, status: ItemStatus | None) -> bool:
        return status in self.expected


# ═══════════════════════════════════════════════════════════════════
# READ-ONLY VIEWS
# ═══════════════════════════════════════════════════════════════════

class NoticeLevel(str, enum.Enum):
    INFO    = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR   = "error"


@dataclass(frozen=True)
class Notice:
    item_id: str
    level: NoticeLevel
    code: str
    message: str
    at: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "item_id": self.item_id,
            "level": self.level.value,
            "code": self.code,
            "message": self.message,
            "at": self.at,
        }


@dataclass(frozen=True)
class ItemView:
    item: Item
    phase: ItemPhase
    pending_kind: ActionKind | None
    authorized: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            **self.item.to_dict(),
            "phase": self.phase.value,
            "pending_kind": self.pending_kind.value if self.pending_kind else None,
            "authorized": self.authorized,
        }


@dataclass(frozen=True)
class EligibilityResult:
    eligible: bool
    message: str = ""
    conversion_params: dict[str, Any] = field(default_factory=dict)
