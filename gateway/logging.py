"""
mintsaga — Structured Logging with Session Correlation

Two output modes on the "mintsaga" logger tree:
  - JSON lines (server, default): one object per record, OTel field names,
    lifecycle events flattened into the object
  - plain text (CLI): "time level logger: message key=value ..."

Lifecycle events (phase transitions, signer dispatch, rollbacks,
convergence, channel and session changes) go through StructuredLogger so
every entry for one wallet session shares a trace_id.

Usage:
    from gateway.logging import StructuredLogger, configure_logging

    configure_logging(level="INFO")
    events = StructuredLogger(holder="0xabc...")
    events.on_phase_transition("42", "idle", "verifying", kind="convert")
"""

from __future__ import annotations

import json
import logging
import os
import sys
import uuid
from datetime import datetime, timezone
from typing import Any

ROOT_LOGGER = "mintsaga"

# Client libraries that log every request at INFO/DEBUG
_CHATTY_LIBRARIES = ("httpx", "httpcore", "websockets", "web3", "urllib3")


# ═══════════════════════════════════════════════════════════════════
# Formatters
# ═══════════════════════════════════════════════════════════════════

class JSONFormatter(logging.Formatter):
    """
    One JSON object per record.

    Base fields: timestamp, level, logger, message, thread, service.name,
    service.version. Event fields from StructuredLogger (trace_id, holder,
    action, item_id, ...) are merged in at the top level.
    """

    def __init__(self, service_name: str = ROOT_LOGGER):
        super().__init__()
        self.service_name = service_name
        self.service_version = os.environ.get("MINTSAGA_VERSION", "0.1.0")

    def format(self, record: logging.LogRecord) -> str:
        created = datetime.fromtimestamp(record.created, tz=timezone.utc)
        entry: dict[str, Any] = {
            "timestamp": created.isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "thread": record.threadName,
            "service.name": self.service_name,
            "service.version": self.service_version,
        }
        entry.update(getattr(record, "structured", None) or {})

        if record.exc_info and record.exc_info[0] is not None:
            exc_type, exc_value, _ = record.exc_info
            entry["exception.type"] = exc_type.__name__
            entry["exception.message"] = str(exc_value)

        return json.dumps(entry, default=str)


class PlainFormatter(logging.Formatter):
    """Human-readable lines for terminals; event fields appended as key=value."""

    def __init__(self):
        super().__init__("%(asctime)s %(levelname)-7s %(name)s: %(message)s", datefmt="%H:%M:%S")

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        fields = getattr(record, "structured", None)
        if fields:
            extras = " ".join(
                f"{k}={v}" for k, v in fields.items()
                if k not in ("action", "trace_id") and v not in (None, "")
            )
            if extras:
                line = f"{line} {extras}"
        return line


# ═══════════════════════════════════════════════════════════════════
# Log Configuration
# ═══════════════════════════════════════════════════════════════════

def configure_logging(
    level: str = "INFO",
    stream: Any = None,
    service_name: str = ROOT_LOGGER,
    json_lines: bool = True,
) -> logging.Logger:
    """
    Install a single handler on the mintsaga logger.

    Safe to call more than once: existing handlers on the mintsaga tree
    are removed first. Below DEBUG verbosity the HTTP, websocket and web3
    client libraries are capped at WARNING.
    """
    numeric = getattr(logging, level.upper(), logging.INFO)
    root = logging.getLogger(ROOT_LOGGER)
    root.setLevel(numeric)
    root.handlers.clear()
    root.propagate = False

    prefix = ROOT_LOGGER + "."
    for name in [n for n in logging.Logger.manager.loggerDict if n.startswith(prefix)]:
        child = logging.getLogger(name)
        child.handlers.clear()
        child.setLevel(logging.NOTSET)

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setLevel(numeric)
    handler.setFormatter(JSONFormatter(service_name) if json_lines else PlainFormatter())
    root.addHandler(handler)

    library_level = logging.DEBUG if numeric <= logging.DEBUG else logging.WARNING
    for name in _CHATTY_LIBRARIES:
        logging.getLogger(name).setLevel(library_level)

    return root


def get_logger(name: str = "") -> logging.Logger:
    """Child logger under the mintsaga namespace ("" for the root)."""
    return logging.getLogger(f"{ROOT_LOGGER}.{name}" if name else ROOT_LOGGER)


def generate_trace_id() -> str:
    """32 hex chars, usable as an OTel trace id."""
    return uuid.uuid4().hex


# ═══════════════════════════════════════════════════════════════════
# Lifecycle Events
# ═══════════════════════════════════════════════════════════════════

class StructuredLogger:
    """
    Lifecycle event logger for one client session.

    Every entry carries the session's trace_id and holder so that all
    events for a wallet can be correlated across push, poll and signer
    completions.
    """

    def __init__(self, holder: str = "", trace_id: str | None = None):
        self.holder = holder
        self.trace_id = trace_id or generate_trace_id()
        self._logger = get_logger("events")

    def with_holder(self, holder: str) -> StructuredLogger:
        """New session logger for a different holder."""
        return StructuredLogger(holder=holder)

    def _emit(self, level: int, action: str, **fields):
        if self._logger.isEnabledFor(level):
            structured = {"trace_id": self.trace_id, "holder": self.holder, "action": action}
            structured.update(fields)
            self._logger.log(level, action, extra={"structured": structured})

    # ── Item lifecycle ──────────────────────────────────────────

    def on_phase_transition(
        self,
        item_id: str,
        from_phase: str,
        to_phase: str,
        kind: str = "",
        reason: str = "",
    ) -> None:
        fields = {"item_id": item_id, "from_phase": from_phase, "to_phase": to_phase}
        if kind:
            fields["kind"] = kind
        if reason:
            fields["reason"] = reason[:500]
        self._emit(logging.INFO, "phase_transition", **fields)

    def on_signer_dispatch(self, item_id: str, kind: str, action_id: str, deadline: float) -> None:
        self._emit(
            logging.INFO, "signer_dispatch",
            item_id=item_id, kind=kind, action_id=action_id, deadline=deadline,
        )

    def on_rollback(self, item_id: str, action_id: str, reason: str, status: str) -> None:
        level = logging.WARNING if status != "compensated" else logging.INFO
        self._emit(
            level, "rollback",
            item_id=item_id, action_id=action_id, reason=reason, status=status,
        )

    def on_snapshot_applied(
        self,
        source: str,
        item_count: int,
        authorized_before: int,
        authorized_after: int,
    ) -> None:
        self._emit(
            logging.INFO, "snapshot_applied",
            source=source,
            item_count=item_count,
            authorized_before=authorized_before,
            authorized_after=authorized_after,
        )

    def on_convergence(self, item_id: str, converged: bool, attempts: int, elapsed_s: float) -> None:
        self._emit(
            logging.INFO if converged else logging.WARNING, "convergence",
            item_id=item_id,
            converged=converged,
            attempts=attempts,
            elapsed_s=round(elapsed_s, 2),
        )

    # ── Connectivity ────────────────────────────────────────────

    def on_channel_state(self, state: str, retry_count: int, delay_ms: float | None = None) -> None:
        fields: dict[str, Any] = {"state": state, "retry_count": retry_count}
        if delay_ms is not None:
            fields["delay_ms"] = round(delay_ms, 1)
        self._emit(logging.INFO, "channel_state", **fields)

    def on_session_change(self, holder: str, chain_id: int | None, ready: bool) -> None:
        self._emit(
            logging.INFO, "session_change",
            new_holder=holder, chain_id=chain_id, ready=ready,
        )
