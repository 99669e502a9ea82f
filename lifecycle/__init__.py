"""
mintsaga — Item Lifecycle Core

Coordinates conversions of collectible items across a signing agent, an
immutable ledger and the authoritative backend record, with per-item
isolation, exactly-once rollback and bounded reconciliation.

Only the data model and error hierarchy are re-exported here. The gateway
adapters import this package, so it must not import the coordinator.

Usage:
    from lifecycle.coordinator import LifecycleCoordinator
    from lifecycle import ActionKind

    coord = LifecycleCoordinator(backend, verifier, signer, ledger)
    coord.set_holder("0xabc...")
    coord.refresh()
    coord.request("42", ActionKind.CONVERT)
"""

from lifecycle.errors import (
    ActionInProgress,
    ConvergenceTimeout,
    Ineligible,
    InvalidTransition,
    LedgerReverted,
    LifecycleError,
    RevertCategory,
    SignerRejected,
    SignerTimeout,
    VerificationUnavailable,
    WrongNetwork,
)
from lifecycle.types import (
    ActionKind,
    ConversionRecord,
    EligibilityResult,
    Item,
    ItemPhase,
    ItemStatus,
    ItemView,
    Notice,
    NoticeLevel,
    PendingAction,
)
