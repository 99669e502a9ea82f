"""
mintsaga — API Models

Request/response dataclasses for the API server.
No FastAPI dependency — used by server, CLI, and tests.
"""

from __future__ import annotations

from dataclasses import dataclass, asdict
from typing import Any

from lifecycle.types import ActionKind, ItemView

_KINDS = {k.value for k in ActionKind}


@dataclass
class ActionSubmission:
    """POST /v1/items/{id}/actions request body."""
    kind: str

    def validate(self) -> list[str]:
        """Return list of validation errors (empty = valid)."""
        errors = []
        if not self.kind or not isinstance(self.kind, str):
            errors.append("kind is required and must be a string")
        elif self.kind.lower() not in _KINDS:
            errors.append(f"kind must be one of {sorted(_KINDS)}")
        return errors

    @property
    def action_kind(self) -> ActionKind:
        return ActionKind(self.kind.lower())


@dataclass
class ActionAccepted:
    """POST /v1/items/{id}/actions response — returned once the action is underway."""
    item_id: str
    kind: str
    phase: str
    message: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @staticmethod
    def from_view(item_id: str, kind: ActionKind, view: ItemView | None) -> ActionAccepted:
        phase = view.phase.value if view else "unknown"
        return ActionAccepted(
            item_id=item_id,
            kind=kind.value,
            phase=phase,
            message="Action accepted; follow progress via notices",
        )


@dataclass
class SessionStatus:
    """GET /v1/session response."""
    holder: str | None
    chain_id: int | None
    required_chain_id: int | None
    authorized: list[str]
    channel_state: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)
