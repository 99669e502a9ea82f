"""
mintsaga — Structured Exception Hierarchy

Typed errors so the coordinator can distinguish between:
- Transport failures → recoverable, retry the whole flow from Idle
- Backend-declared ineligibility → terminal for this attempt
- Signer / ledger failures → compensated through the rollback endpoint
- Convergence timeouts → non-fatal, reported as "unknown"

Each error carries: severity, retryable flag, compensated flag and a
stable notice code. Only the human-readable message of an item-level
error ever leaves the coordinator.
"""

from __future__ import annotations

from enum import Enum


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class RevertCategory(str, Enum):
    """Decoded reason for a signer or ledger failure. Value is the rollback reason."""
    INSUFFICIENT_AUTHORIZATION = "InsufficientAuthorization"
    INSUFFICIENT_BALANCE = "InsufficientBalance"
    GENERIC_REVERT = "Reverted"
    USER_REJECTED = "UserRejected"
    UNRECOGNIZED = "Unrecognized"


# ═══════════════════════════════════════════════════════════════
# Base
# ═══════════════════════════════════════════════════════════════

class LifecycleError(Exception):
    """Base exception for all mintsaga errors."""
    severity: Severity = Severity.MEDIUM
    retryable: bool = False
    compensated: bool = False
    code: str = "error"

    def __init__(self, message: str = "", **kwargs):
        self.detail = kwargs
        super().__init__(message)


# ═══════════════════════════════════════════════════════════════
# Pre-submission errors: no PendingAction exists yet
# ═══════════════════════════════════════════════════════════════

class VerificationUnavailable(LifecycleError):
    """Eligibility could not be checked (transport failure). Not the same as ineligible."""
    retryable = True
    code = "verification_unavailable"


class Ineligible(LifecycleError):
    """Backend (or a local ledger sanity check) declared the item ineligible."""
    severity = Severity.LOW
    code = "ineligible"


class ActionInProgress(LifecycleError):
    """A second action was requested for an item that already has one in flight."""
    severity = Severity.LOW
    code = "action_in_progress"


class WrongNetwork(LifecycleError):
    """The signing session is connected to a chain other than the required one."""
    severity = Severity.LOW
    code = "wrong_network"


class InvalidTransition(LifecycleError):
    """Raised when a phase transition is not allowed."""
    severity = Severity.HIGH
    code = "invalid_transition"


# ═══════════════════════════════════════════════════════════════
# Compensated errors: always followed by exactly one rollback call
# ═══════════════════════════════════════════════════════════════

class SignerTimeout(LifecycleError):
    """No handle and no explicit rejection before the signature deadline."""
    compensated = True
    code = "wallet_timeout"


class SignerRejected(LifecycleError):
    """The signing agent reported an error before producing a handle."""
    compensated = True
    code = "signer_rejected"

    def __init__(self, message: str = "", category: RevertCategory = RevertCategory.UNRECOGNIZED, **kwargs):
        self.category = category
        super().__init__(message, category=category.value, **kwargs)


class LedgerReverted(LifecycleError):
    """The ledger rejected the call; it made no state change."""
    compensated = True
    code = "ledger_reverted"

    def __init__(self, message: str = "", category: RevertCategory = RevertCategory.GENERIC_REVERT, **kwargs):
        self.category = category
        super().__init__(message, category=category.value, **kwargs)


# ═══════════════════════════════════════════════════════════════
# Non-fatal / internal
# ═══════════════════════════════════════════════════════════════

class ConvergenceTimeout(LifecycleError):
    """The backend record did not reach the expected status within the poll bound."""
    severity = Severity.LOW
    code = "convergence_timeout"


class ChannelDisconnected(LifecycleError):
    """Push channel is down. Recovered internally; never surfaced per item."""
    severity = Severity.LOW
    retryable = True
    code = "channel_disconnected"


# ═══════════════════════════════════════════════════════════════
# Collaborator errors: raised by gateway clients
# ═══════════════════════════════════════════════════════════════

class BackendUnavailable(LifecycleError):
    """Backend HTTP call failed at the transport level or returned non-2xx."""
    retryable = True
    code = "backend_unavailable"

    def __init__(self, message: str = "", status_code: int | None = None, **kwargs):
        self.status_code = status_code
        super().__init__(message, status_code=status_code, **kwargs)


class LedgerReadUnavailable(LifecycleError):
    """A ledger point read failed; its value is unknown."""
    retryable = True
    code = "ledger_read_unavailable"


class SignerError(LifecycleError):
    """
    Structured error from a signing agent.

    `data` carries the raw revert payload (hex string) when the agent
    surfaced one, so it can be decoded into a RevertCategory.
    """
    code = "signer_error"

    def __init__(self, message: str = "", data: str | None = None, user_rejected: bool = False, **kwargs):
        self.data = data
        self.user_rejected = user_rejected
        super().__init__(message, data=data, user_rejected=user_rejected, **kwargs)
