"""
mintsaga — Rollback Ledger

Exactly-once compensation for failed pending actions.
When a PendingAction is created: register it with the rollback payload.
When the signer produces a handle: confirm it.
On any failure before convergence: compensate, which fires the backend
rollback call at most once per action_id no matter how many failure paths
(timeout, rejection, revert, cancel, late completion) reach it.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable

logger = logging.getLogger("mintsaga.compensation")


class RollbackStatus(str, Enum):
    PENDING = "pending"          # Registered, no handle yet
    CONFIRMED = "confirmed"      # Signer produced a handle
    COMPENSATED = "compensated"  # Rollback call acknowledged
    FAILED = "failed"            # Rollback attempted but the call failed
    SETTLED = "settled"          # Action resolved without compensation


_TERMINAL = (RollbackStatus.COMPENSATED, RollbackStatus.FAILED, RollbackStatus.SETTLED)


@dataclass
class RollbackEntry:
    id: int
    action_id: str
    item_id: str
    kind: str
    holder: str
    rollback_data: dict[str, Any]
    status: RollbackStatus
    reason: str = ""
    error: str = ""
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)


class RollbackLedger:
    """
    Tracks pending actions and their compensation state.

    Flow:
    1. Action created: register(action_id, item_id, kind, holder, data)
    2. Handle received: confirm(action_id)
    3. Action failed: compensate(action_id, reason, handler)
       - No-op unless the entry is pending or confirmed
       - Calls handler once, marks compensated or failed
    4. Action converged: settle(action_id)
    """

    def __init__(self, db_path: str = ":memory:"):
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._lock = threading.RLock()
        self._init_db()

    def _init_db(self):
        self._conn.executescript("""
            CREATE TABLE IF NOT EXISTS rollbacks (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                action_id TEXT NOT NULL UNIQUE,
                item_id TEXT NOT NULL,
                kind TEXT NOT NULL,
                holder TEXT NOT NULL,
                rollback_data TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'pending',
                reason TEXT DEFAULT '',
                error TEXT DEFAULT '',
                created_at REAL NOT NULL,
                updated_at REAL NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_rollback_item
                ON rollbacks(item_id);
        """)

    def register(
        self,
        action_id: str,
        item_id: str,
        kind: str,
        holder: str,
        rollback_data: dict[str, Any] | None = None,
    ) -> int:
        """
        Register a pending action before the signing request goes out.

        Returns the entry ID.
        """
        now = time.time()
        with self._lock:
            cursor = self._conn.execute("""
                INSERT INTO rollbacks
                (action_id, item_id, kind, holder, rollback_data,
                 status, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                action_id, item_id, kind, holder,
                json.dumps(rollback_data or {}, default=str),
                RollbackStatus.PENDING.value,
                now, now,
            ))
            self._conn.commit()
            logger.info(
                "Rollback registered: item=%s kind=%s action=%s",
                item_id, kind, action_id[:16],
            )
            return cursor.lastrowid

    def confirm(self, action_id: str) -> None:
        """Mark that the signer produced a handle for this action."""
        with self._lock:
            self._conn.execute("""
                UPDATE rollbacks SET status = ?, updated_at = ?
                WHERE action_id = ? AND status = ?
            """, (RollbackStatus.CONFIRMED.value, time.time(),
                  action_id, RollbackStatus.PENDING.value))
            self._conn.commit()

    def settle(self, action_id: str) -> None:
        """Mark an action as resolved without needing compensation."""
        with self._lock:
            self._conn.execute("""
                UPDATE rollbacks SET status = ?, updated_at = ?
                WHERE action_id = ? AND status IN (?, ?)
            """, (RollbackStatus.SETTLED.value, time.time(), action_id,
                  RollbackStatus.PENDING.value, RollbackStatus.CONFIRMED.value))
            self._conn.commit()

    def claim(self, action_id: str, reason: str) -> RollbackEntry | None:
        """
        Atomically take ownership of an action's compensation.

        Returns the entry if this caller won the claim, None if the action
        is unknown or was already compensated, failed or settled.
        """
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM rollbacks WHERE action_id = ?", (action_id,),
            ).fetchone()
            if row is None:
                logger.warning("Rollback claim for unknown action %s", action_id[:16])
                return None
            entry = self._row_to_entry(row)
            if entry.status in _TERMINAL:
                logger.debug(
                    "Rollback already resolved: action=%s status=%s",
                    action_id[:16], entry.status.value,
                )
                return None
            # Mark failed up front; a successful handler upgrades it
            self._update_status(action_id, RollbackStatus.FAILED, reason, "in progress")
            entry.reason = reason
            return entry

    def compensate(
        self,
        action_id: str,
        reason: str,
        handler: Callable[[RollbackEntry], bool],
    ) -> RollbackEntry | None:
        """
        Fire the rollback for one action, at most once.

        Args:
            action_id: The action to compensate
            reason: Rollback reason sent to the backend
            handler: Function that takes a RollbackEntry and returns True if
                     the backend acknowledged the rollback.

        Returns:
            The entry with its updated status, or None when nothing was
            owed (unknown action or already resolved).
        """
        entry = self.claim(action_id, reason)
        if entry is None:
            return None

        try:
            success = handler(entry)
        except Exception as e:
            with self._lock:
                self._update_status(action_id, RollbackStatus.FAILED, reason, str(e))
            entry.status = RollbackStatus.FAILED
            entry.error = str(e)
            logger.error(
                "Rollback FAILED: item=%s action=%s reason=%s error=%s",
                entry.item_id, action_id[:16], reason, e,
            )
            return entry

        with self._lock:
            if success:
                self._update_status(action_id, RollbackStatus.COMPENSATED, reason)
                entry.status = RollbackStatus.COMPENSATED
                logger.info(
                    "Rollback SUCCESS: item=%s action=%s reason=%s",
                    entry.item_id, action_id[:16], reason,
                )
            else:
                self._update_status(
                    action_id, RollbackStatus.FAILED, reason, "Handler returned False",
                )
                entry.status = RollbackStatus.FAILED
        return entry

    def get(self, action_id: str) -> RollbackEntry | None:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM rollbacks WHERE action_id = ?", (action_id,),
            ).fetchone()
            return self._row_to_entry(row) if row else None

    def get_entries(self, item_id: str) -> list[RollbackEntry]:
        """Get all rollback entries for an item, oldest first."""
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM rollbacks WHERE item_id = ? ORDER BY id",
                (item_id,),
            ).fetchall()
            return [self._row_to_entry(r) for r in rows]

    def _update_status(self, action_id: str, status: RollbackStatus, reason: str = "", error: str = ""):
        self._conn.execute("""
            UPDATE rollbacks SET status = ?, reason = ?, error = ?, updated_at = ?
            WHERE action_id = ?
        """, (status.value, reason, error, time.time(), action_id))
        self._conn.commit()

    def _row_to_entry(self, row) -> RollbackEntry:
        return RollbackEntry(
            id=row["id"],
            action_id=row["action_id"],
            item_id=row["item_id"],
            kind=row["kind"],
            holder=row["holder"],
            rollback_data=json.loads(row["rollback_data"]),
            status=RollbackStatus(row["status"]),
            reason=row["reason"] or "",
            error=row["error"] or "",
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def close(self):
        self._conn.close()
