"""
mintsaga — Realtime Push Channel

Persistent websocket subscription to the backend's push feed, with
bounded exponential reconnect:

    Connecting → Open                 (retry counter reset to 0)
    Open | Connecting → Closed        (schedule reconnect after
                                       min(base * 2^retry, cap) ms)
    Closed → Failed                   (after max_retries consecutive failures)

Frames are JSON envelopes ``{type, data}``. Known types are dispatched to
subscribed handlers; unknown types are ignored and undecodable frames are
logged and dropped. Messages are possibly-stale snapshots: handlers must
route them through the same reconcile path as polling.

The reconnect loop runs on its own thread and never blocks item
transitions. Connectivity is reported through state listeners only.
"""

from __future__ import annotations

import enum
import json
import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable

from websockets.exceptions import WebSocketException
from websockets.sync.client import connect as ws_connect

from gateway.retry import BackoffPolicy, compute_backoff

logger = logging.getLogger("mintsaga.realtime")


class ConnectionState(str, enum.Enum):
    CONNECTING = "connecting"
    OPEN       = "open"
    CLOSED     = "closed"
    FAILED     = "failed"


ITEM_UPDATE = "ItemUpdate"
RECENTLY_CONVERTED = "RecentlyConverted"

# Legacy names emitted by older backends
_TYPE_ALIASES = {
    "NFTUpdate": ITEM_UPDATE,
    "LatestMintedNFTs": RECENTLY_CONVERTED,
}


@dataclass(frozen=True)
class Envelope:
    type: str
    data: Any

    @staticmethod
    def parse(raw: str | bytes) -> Envelope:
        """Decode one frame. Raises ValueError if it is not a {type, data} object."""
        if isinstance(raw, (bytes, bytearray)):
            raw = raw.decode("utf-8")
        msg = json.loads(raw)
        if not isinstance(msg, dict) or not isinstance(msg.get("type"), str):
            raise ValueError("frame is not a {type, data} envelope")
        return Envelope(type=_TYPE_ALIASES.get(msg["type"], msg["type"]), data=msg.get("data"))


StateListener = Callable[[ConnectionState, int, "float | None"], None]


class RealtimeChannel:
    """
    Push subscription with reconnect/backoff.

    ``connect_fn`` opens one websocket connection and returns a context
    manager that iterates incoming frames; ``wait_fn`` sleeps for a number
    of seconds and returns True if the wait was interrupted by disconnect().
    Both default to the real implementations and exist for tests.
    """

    def __init__(
        self,
        url: str,
        base_delay_ms: float = 3000.0,
        cap_ms: float = 30000.0,
        max_retries: int = 5,
        ping_interval_s: float | None = 30.0,
        connect_fn: Callable[[str], Any] | None = None,
        wait_fn: Callable[[float], bool] | None = None,
    ):
        self.url = url
        self.max_retries = max_retries
        self._policy = BackoffPolicy(base=base_delay_ms, cap=cap_ms, max_attempts=max_retries)
        self._connect_fn = connect_fn or (lambda u: ws_connect(u, ping_interval=ping_interval_s))
        self._stop = threading.Event()
        self._wait_fn = wait_fn or self._stop.wait
        self._handlers: dict[str, list[Callable[[Any], None]]] = {}
        self._listeners: list[StateListener] = []
        self._lock = threading.Lock()
        self._thread: threading.Thread | None = None
        self._ws: Any = None
        self._state = ConnectionState.CLOSED
        self._retry_count = 0

    # ── Public surface ──────────────────────────────────────────

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def retry_count(self) -> int:
        return self._retry_count

    def subscribe(self, msg_type: str, handler: Callable[[Any], None]) -> None:
        self._handlers.setdefault(msg_type, []).append(handler)

    def add_state_listener(self, listener: StateListener) -> None:
        self._listeners.append(listener)

    def connect(self) -> None:
        """Start the connection loop on a background thread."""
        with self._lock:
            if self._thread is not None and self._thread.is_alive():
                return
            self._stop.clear()
            self._thread = threading.Thread(target=self.run, name="mintsaga-realtime", daemon=True)
            self._thread.start()

    def reconnect(self) -> None:
        """Reset the retry counter and try again (e.g. after Failed)."""
        self.disconnect()
        self._retry_count = 0
        self.connect()

    def disconnect(self) -> None:
        """Stop retrying and close the live connection. Idempotent."""
        self._stop.set()
        ws = self._ws
        if ws is not None:
            try:
                ws.close()
            except (WebSocketException, OSError) as e:
                logger.debug("Error closing websocket: %s", e)
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=5.0)
        self._thread = None
        if self._state != ConnectionState.CLOSED:
            self._set_state(ConnectionState.CLOSED)

    # ── Loop ────────────────────────────────────────────────────

    def run(self) -> None:
        """Connection loop. Returns on disconnect() or after reaching Failed."""
        while not self._stop.is_set():
            self._set_state(ConnectionState.CONNECTING)
            try:
                with self._connect_fn(self.url) as ws:
                    self._ws = ws
                    self._retry_count = 0
                    self._set_state(ConnectionState.OPEN)
                    for raw in ws:
                        self._dispatch(raw)
            except (WebSocketException, OSError) as e:
                logger.warning("Realtime connection error: %s", e)
            finally:
                self._ws = None

            if self._stop.is_set():
                break

            if self._retry_count >= self.max_retries:
                logger.error("Realtime channel giving up after %d retries", self._retry_count)
                self._set_state(ConnectionState.FAILED)
                return

            delay_ms = compute_backoff(self._retry_count, self._policy)
            self._retry_count += 1
            self._set_state(ConnectionState.CLOSED, delay_ms)
            if self._wait_fn(delay_ms / 1000.0):
                break

    def _dispatch(self, raw: str | bytes) -> None:
        try:
            envelope = Envelope.parse(raw)
        except ValueError as e:
            logger.warning("Dropping undecodable frame: %s", e)
            return

        handlers = self._handlers.get(envelope.type)
        if not handlers:
            logger.debug("Ignoring message type %s", envelope.type)
            return
        for handler in handlers:
            try:
                handler(envelope.data)
            except Exception:
                logger.exception("Handler for %s failed", envelope.type)

    def _set_state(self, state: ConnectionState, delay_ms: float | None = None) -> None:
        self._state = state
        logger.info("Realtime channel %s (retry=%d)", state.value, self._retry_count)
        for listener in list(self._listeners):
            try:
                listener(state, self._retry_count, delay_ms)
            except Exception:
                logger.exception("State listener failed")
