"""
mintsaga — Session Tracker

Tracks the signing session's holder address and chain id. Changes arrive
two ways: pushed events from the wallet (accountsChanged / chainChanged)
and a polling backup that re-reads the chain id every few seconds, since
some wallets drop chain events.

Listeners are notified only on an actual change. A holder change makes
every piece of per-holder state stale; the coordinator resets on it.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable

logger = logging.getLogger("mintsaga.session")

SessionListener = Callable[[str | None, int | None], None]


def parse_chain_id(value: int | str | None) -> int | None:
    """Accept 50312, "50312" or "0xc488"."""
    if value is None or value == "":
        return None
    if isinstance(value, int):
        return value
    text = str(value).strip().lower()
    return int(text, 16) if text.startswith("0x") else int(text)


class SessionTracker:

    def __init__(
        self,
        required_chain_id: int,
        chain_source: Callable[[], int | str | None] | None = None,
        poll_interval_s: float = 2.0,
    ):
        self.required_chain_id = required_chain_id
        self._chain_source = chain_source
        self._poll_interval_s = poll_interval_s
        self._holder: str | None = None
        self._chain_id: int | None = None
        self._listeners: list[SessionListener] = []
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def holder(self) -> str | None:
        return self._holder

    @property
    def chain_id(self) -> int | None:
        return self._chain_id

    @property
    def on_required_chain(self) -> bool:
        return self._chain_id == self.required_chain_id

    @property
    def ready(self) -> bool:
        return bool(self._holder) and self.on_required_chain

    def add_listener(self, listener: SessionListener) -> None:
        self._listeners.append(listener)

    # ── Events ──────────────────────────────────────────────────

    def set_holder(self, holder: str | None) -> bool:
        """accountsChanged. Returns True if the holder actually changed."""
        normalized = holder.lower() if holder else None
        with self._lock:
            current = self._holder.lower() if self._holder else None
            if normalized == current:
                return False
            self._holder = holder or None
        logger.info("Session holder changed: %s", holder or "(disconnected)")
        self._notify()
        return True

    def on_chain_changed(self, value: int | str | None) -> bool:
        """chainChanged. Returns True if the chain id actually changed."""
        try:
            chain_id = parse_chain_id(value)
        except ValueError:
            logger.warning("Ignoring unparseable chain id %r", value)
            return False
        with self._lock:
            if chain_id == self._chain_id:
                return False
            previous, self._chain_id = self._chain_id, chain_id
        logger.info("Session chain changed: %s → %s (required %d)", previous, chain_id, self.required_chain_id)
        self._notify()
        return True

    # ── Polling backup ──────────────────────────────────────────

    def poll_once(self) -> bool:
        if self._chain_source is None:
            return False
        try:
            value = self._chain_source()
        except Exception as e:
            logger.warning("Chain id poll failed: %s", e)
            return False
        if value is None:
            return False
        return self.on_chain_changed(value)

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="mintsaga-session", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout=5.0)
        self._thread = None

    def _run(self) -> None:
        while not self._stop.is_set():
            self.poll_once()
            self._stop.wait(self._poll_interval_s)

    def _notify(self) -> None:
        holder, chain_id = self._holder, self._chain_id
        for listener in list(self._listeners):
            try:
                listener(holder, chain_id)
            except Exception:
                logger.exception("Session listener failed")
