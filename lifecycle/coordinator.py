"""
mintsaga — Lifecycle Coordinator

Per-item saga over three authorities that never share a transaction:

    Idle → Verifying → AwaitingSignature → Submitted → Confirming
         → Reconciling → Idle
    Verifying → Idle                        (ineligible / unavailable / cancel)
    AwaitingSignature | Submitted | Confirming → RolledBack → Idle

State lives in two tables keyed by item id (items, pending actions) plus
the copy-on-write authorization record. All mutation happens under one
re-entrant lock which is never held across I/O. Verification runs on
the executor, signing on the agent's own executor, and each receipt wait
plus its polls on a thread of its own; all of them re-enter through small
locked steps that first check the action is still current. A completion
for an action that is no longer current is ignored.

Deadlines are fields on PendingAction; sweep() is the only place that
enforces them. Push messages and poll results go through the same
apply_snapshot() path.

Usage:
    coord = LifecycleCoordinator(backend, verifier, signer, ledger)
    coord.set_holder("0xabc...")
    coord.refresh()
    coord.request("42", ActionKind.AUTHORIZE)
    ...
    coord.sweep()        # from a timer, every second or so
"""

from __future__ import annotations

import dataclasses
import logging
import threading
import time
from collections import deque
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from typing import Any, Callable, Iterable

from gateway.backend import parse_conversions, parse_items
from gateway.compensation import RollbackLedger, RollbackStatus
from gateway.logging import StructuredLogger
from gateway.signer import TransactionRequest, decode_revert
from lifecycle.authorization import AuthorizationTracker
from lifecycle.errors import (
    ActionInProgress,
    Ineligible,
    InvalidTransition,
    LedgerReverted,
    RevertCategory,
    SignerRejected,
    SignerTimeout,
    VerificationUnavailable,
    WrongNetwork,
)
from lifecycle.reconciliation import PollOutcome, ReconciliationPoller, merge_snapshot
from lifecycle.types import (
    ActionKind,
    ConversionRecord,
    Item,
    ItemPhase,
    ItemView,
    Notice,
    NoticeLevel,
    PendingAction,
    new_action_id,
)

logger = logging.getLogger("mintsaga.coordinator")

REASON_WALLET_TIMEOUT = "WalletTimeout"
REASON_USER_CANCELLED = "UserCancelled"
REASON_SESSION_CHANGED = "SessionChanged"

_SUCCESS_MESSAGES = {
    ActionKind.AUTHORIZE: "Authorization confirmed",
    ActionKind.CONVERT:   "Conversion confirmed",
    ActionKind.RECLAIM:   "Reclaim confirmed",
    ActionKind.REVOKE:    "Authorization revoked",
}


class LifecycleCoordinator:

    def __init__(
        self,
        backend: Any,
        verifier: Any,
        signer: Any,
        ledger: Any,
        rollback_ledger: RollbackLedger | None = None,
        executor: Executor | None = None,
        wait_executor: Executor | None = None,
        signature_timeout_s: float = 30.0,
        poll_interval_s: float = 3.0,
        max_polls: int = 60,
        receipt_poll_s: float = 2.0,
        recent_feed_size: int = 20,
        required_chain_id: int | None = None,
        clock: Callable[[], float] = time.time,
        poll_sleep: Callable[[float], None] = time.sleep,
        max_notices: int = 200,
    ):
        self.backend = backend
        self.verifier = verifier
        self.signer = signer
        self.ledger = ledger
        self.rollbacks = rollback_ledger or RollbackLedger()
        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(max_workers=8, thread_name_prefix="mintsaga")
        self._wait_executor = wait_executor
        self.signature_timeout_s = signature_timeout_s
        self.poll_interval_s = poll_interval_s
        self.max_polls = max_polls
        self.receipt_poll_s = receipt_poll_s
        self.required_chain_id = required_chain_id
        self._clock = clock
        self._poll_sleep = poll_sleep

        self._lock = threading.RLock()
        self._holder: str | None = None
        self._chain_id: int | None = None
        self._items: dict[str, Item] = {}
        self._verifying: dict[str, tuple[str, ActionKind]] = {}
        self._pending: dict[str, PendingAction] = {}
        self._associations: dict[str, Any] = {}
        self._revision: int | None = None
        self._notices: deque[Notice] = deque(maxlen=max_notices)
        self._recent: deque[ConversionRecord] = deque(maxlen=recent_feed_size)
        self.tracker = AuthorizationTracker()
        self.events = StructuredLogger()

        self._sweeper: threading.Thread | None = None
        self._sweeper_stop = threading.Event()

    # ═══════════════════════════════════════════════════════════════
    # Session
    # ═══════════════════════════════════════════════════════════════

    @property
    def holder(self) -> str | None:
        return self._holder

    @property
    def chain_id(self) -> int | None:
        return self._chain_id

    def set_holder(self, holder: str | None) -> None:
        """
        Switch to a new holder. Every piece of per-holder state is dropped;
        actions still awaiting a signature are compensated.
        """
        with self._lock:
            if (holder or "").lower() == (self._holder or "").lower():
                return
            abandoned = [
                pa for pa in self._pending.values()
                if pa.phase == ItemPhase.AWAITING_SIGNATURE
            ]
            self._holder = holder or None
            self._items = {}
            self._verifying = {}
            self._pending = {}
            self._associations = {}
            self._revision = None
            self.tracker.reset()
            self.events = self.events.with_holder(holder or "")
            self.events.on_session_change(holder or "", self._chain_id, self._chain_ok())

        for pa in abandoned:
            self._compensate(pa, REASON_SESSION_CHANGED)

    def set_chain(self, chain_id: int | None) -> None:
        with self._lock:
            self._chain_id = chain_id
            ok = self._chain_ok()
        if not ok:
            logger.warning("Session on chain %s, required %s", chain_id, self.required_chain_id)

    def on_session_change(self, holder: str | None, chain_id: int | None) -> None:
        """SessionTracker listener."""
        self.set_chain(chain_id)
        self.set_holder(holder)

    def _chain_ok(self) -> bool:
        return self.required_chain_id is None or self._chain_id == self.required_chain_id

    # ═══════════════════════════════════════════════════════════════
    # Read-only views
    # ═══════════════════════════════════════════════════════════════

    def _phase_of(self, item_id: str) -> ItemPhase:
        pa = self._pending.get(item_id)
        if pa is not None:
            return pa.phase
        if item_id in self._verifying:
            return ItemPhase.VERIFYING
        return ItemPhase.IDLE

    def _view(self, item: Item) -> ItemView:
        pa = self._pending.get(item.id)
        kind = pa.kind if pa else self._verifying.get(item.id, (None, None))[1]
        return ItemView(
            item=item,
            phase=self._phase_of(item.id),
            pending_kind=kind,
            authorized=item.id in self.tracker,
        )

    def view(self, item_id: str) -> ItemView:
        with self._lock:
            item = self._items.get(item_id)
            if item is None:
                raise KeyError(item_id)
            return self._view(item)

    def views(self) -> list[ItemView]:
        with self._lock:
            return [self._view(self._items[k]) for k in sorted(self._items, key=_sort_key)]

    def items(self) -> dict[str, Item]:
        with self._lock:
            return dict(self._items)

    def authorized(self) -> frozenset:
        return self.tracker.snapshot()

    def pending_action(self, item_id: str) -> PendingAction | None:
        with self._lock:
            pa = self._pending.get(item_id)
            return dataclasses.replace(pa) if pa else None

    def notices(self, item_id: str | None = None) -> list[Notice]:
        with self._lock:
            return [n for n in self._notices if item_id is None or n.item_id == item_id]

    def drain_notices(self) -> list[Notice]:
        with self._lock:
            drained = list(self._notices)
            self._notices.clear()
            return drained

    def recent_conversions(self) -> list[ConversionRecord]:
        with self._lock:
            return list(self._recent)

    def _notice(self, item_id: str, level: NoticeLevel, code: str, message: str) -> Notice:
        notice = Notice(item_id=item_id, level=level, code=code, message=message, at=self._clock())
        self._notices.append(notice)
        return notice

    # ═══════════════════════════════════════════════════════════════
    # Snapshots (push and poll share this path)
    # ═══════════════════════════════════════════════════════════════

    def apply_snapshot(
        self,
        items: Iterable[Item],
        source: str = "push",
        holder: str | None = None,
        revision: int | None = None,
    ) -> bool:
        """
        Merge an authoritative snapshot, filter the authorization record,
        and resolve any reconciling action the snapshot satisfies.

        Returns False if the snapshot was ignored (other holder, stale).
        """
        items = list(items)
        with self._lock:
            if holder and (not self._holder or holder.lower() != self._holder.lower()):
                logger.debug("Ignoring %s snapshot for holder %s", source, holder)
                return False
            if revision is not None and self._revision is not None and revision < self._revision:
                logger.debug("Ignoring stale %s snapshot rev=%s < %s", source, revision, self._revision)
                return False
            if revision is not None:
                self._revision = revision

            before = len(self.tracker)
            self._items = merge_snapshot(self._items, items)
            self.tracker.reconcile(self._items.values())
            self.events.on_snapshot_applied(source, len(items), before, len(self.tracker))

            for pa in list(self._pending.values()):
                if pa.phase != ItemPhase.RECONCILING:
                    continue
                current = self._items.get(pa.item_id)
                if pa.matches(current.status if current else None):
                    self._resolve_converged(pa, source)
        return True

    def refresh(self) -> list[Item]:
        """Fetch the holder's snapshot from the backend and apply it."""
        holder = self._holder
        if not holder:
            return []
        items = self.backend.query_items(holder)
        self.apply_snapshot(items, source="query", holder=holder)
        return items

    def on_item_update(self, data: Any) -> None:
        """Push handler for ItemUpdate envelopes: {holder|user_address, items|nfts, revision?}."""
        if not isinstance(data, dict):
            logger.warning("Dropping ItemUpdate with non-object payload")
            return
        holder = data.get("holder") or data.get("user_address")
        self.apply_snapshot(parse_items(data), source="push", holder=holder, revision=data.get("revision"))

    def on_recently_converted(self, data: Any) -> None:
        """Push handler for RecentlyConverted envelopes. Replaces the bounded feed."""
        records = parse_conversions(data)
        with self._lock:
            self._recent.clear()
            self._recent.extend(records[: self._recent.maxlen])

    # ═══════════════════════════════════════════════════════════════
    # Requests
    # ═══════════════════════════════════════════════════════════════

    def request(self, item_id: str, kind: ActionKind) -> ItemView | None:
        """
        Start an action on an item.

        Raises:
            KeyError: item not in the current snapshot
            ActionInProgress: item already has an action in flight
            WrongNetwork: session is on the wrong chain (a notice is recorded)
            Ineligible: no holder connected, or no signing agent configured
        """
        kind = ActionKind(kind)
        with self._lock:
            if not self._holder:
                raise Ineligible("No wallet connected")
            if self.signer is None:
                raise Ineligible("No signing agent configured")
            if item_id not in self._items:
                raise KeyError(item_id)
            if item_id in self._pending or item_id in self._verifying:
                raise ActionInProgress(f"Item {item_id} already has an action in progress")
            if not self._chain_ok():
                message = f"Switch the wallet to chain {self.required_chain_id} to continue"
                self._notice(item_id, NoticeLevel.WARNING, WrongNetwork.code, message)
                raise WrongNetwork(message, chain_id=self._chain_id)

            action_id = new_action_id()
            self._verifying[item_id] = (action_id, kind)
            self.events.on_phase_transition(
                item_id, ItemPhase.IDLE.value, ItemPhase.VERIFYING.value, kind=kind.value,
            )

        self._submit(self._verify_and_dispatch, item_id, kind, action_id)
        with self._lock:
            item = self._items.get(item_id)
            return self._view(item) if item else None

    def _still_verifying(self, item_id: str, action_id: str) -> bool:
        entry = self._verifying.get(item_id)
        return entry is not None and entry[0] == action_id

    def _verify_and_dispatch(self, item_id: str, kind: ActionKind, action_id: str) -> None:
        with self._lock:
            item = self._items.get(item_id)
            holder = self._holder or ""

        try:
            result = self.verifier.verify_action(kind, item, holder)
        except Exception as e:
            if isinstance(e, VerificationUnavailable):
                unavailable = e
            else:
                logger.exception("Eligibility check for item %s raised", item_id)
                unavailable = VerificationUnavailable(f"Eligibility check failed: {e}")
            with self._lock:
                if self._still_verifying(item_id, action_id):
                    del self._verifying[item_id]
                    self._back_to_idle(item_id, kind, unavailable.code)
                    self._notice(item_id, NoticeLevel.WARNING, unavailable.code, str(unavailable))
            return

        with self._lock:
            superseded = not self._still_verifying(item_id, action_id)
            if superseded:
                same_holder = (self._holder or "").lower() == holder.lower()
                superseded_reason = REASON_USER_CANCELLED if same_holder else REASON_SESSION_CHANGED
            else:
                del self._verifying[item_id]
                if not result.eligible:
                    self._back_to_idle(item_id, kind, Ineligible.code)
                    self._notice(item_id, NoticeLevel.WARNING, Ineligible.code, result.message)
                    return

                pa = PendingAction.create(
                    item_id, kind, holder,
                    params=result.conversion_params,
                    signature_timeout_s=self.signature_timeout_s,
                    max_polls=self.max_polls,
                    now=self._clock(),
                    action_id=action_id,
                )
                self._pending[item_id] = pa
                self.rollbacks.register(action_id, item_id, kind.value, holder, {"params": pa.params})
                self.events.on_phase_transition(
                    item_id, ItemPhase.VERIFYING.value, pa.phase.value, kind=kind.value,
                )
                self.events.on_signer_dispatch(item_id, kind.value, action_id, pa.deadline)

        if superseded:
            # Cancelled or reset while the backend was reserving the conversion
            if result.eligible and kind == ActionKind.CONVERT:
                self.rollbacks.register(action_id, item_id, kind.value, holder)
                self._compensate(
                    PendingAction.create(item_id, kind, holder, now=self._clock(), action_id=action_id),
                    superseded_reason,
                )
            return

        try:
            tx = TransactionRequest.from_params(item_id, kind.value, pa.params, not_after=pa.deadline)
            future = self.signer.request(tx)
        except Exception as e:
            self._on_signer_error(item_id, action_id, e)
            return
        future.add_done_callback(lambda f: self._on_signer_done(item_id, action_id, f))

    def _back_to_idle(self, item_id: str, kind: ActionKind, reason: str) -> None:
        self.events.on_phase_transition(
            item_id, ItemPhase.VERIFYING.value, ItemPhase.IDLE.value, kind=kind.value, reason=reason,
        )

    # ═══════════════════════════════════════════════════════════════
    # Signer completion
    # ═══════════════════════════════════════════════════════════════

    def _current(self, item_id: str, action_id: str) -> PendingAction | None:
        with self._lock:
            pa = self._pending.get(item_id)
            return pa if pa is not None and pa.action_id == action_id else None

    def _on_signer_done(self, item_id: str, action_id: str, future: Future) -> None:
        try:
            handle = future.result()
        except Exception as e:
            self._on_signer_error(item_id, action_id, e)
            return

        with self._lock:
            pa = self._current(item_id, action_id)
            if pa is None or pa.phase != ItemPhase.AWAITING_SIGNATURE:
                logger.warning("Late signer handle for %s ignored (item %s)", action_id, item_id)
                return
            pa.external_handle = str(handle)
            pa.transition(ItemPhase.SUBMITTED, now=self._clock())
            self.rollbacks.confirm(action_id)
            self.events.on_phase_transition(
                item_id, ItemPhase.AWAITING_SIGNATURE.value, ItemPhase.SUBMITTED.value,
                kind=pa.kind.value,
            )

        self._submit_wait(self._confirm_and_reconcile, item_id, action_id, str(handle))

    def _on_signer_error(self, item_id: str, action_id: str, error: BaseException) -> None:
        category, detail = decode_revert(error)
        self._fail(
            item_id, action_id,
            reason=category.value,
            code=SignerRejected.code,
            message=_failure_message(category, detail),
            only_phase=ItemPhase.AWAITING_SIGNATURE,
        )

    # ═══════════════════════════════════════════════════════════════
    # Confirmation and reconciliation
    # ═══════════════════════════════════════════════════════════════

    def _confirm_and_reconcile(self, item_id: str, action_id: str, handle: str) -> None:
        with self._lock:
            pa = self._current(item_id, action_id)
            if pa is None:
                return
            pa.transition(ItemPhase.CONFIRMING)
            kind = pa.kind
            self.events.on_phase_transition(
                item_id, ItemPhase.SUBMITTED.value, ItemPhase.CONFIRMING.value, kind=kind.value,
            )

        receipt = self.ledger.wait_for_receipt(
            handle,
            poll_s=self.receipt_poll_s,
            should_stop=lambda: self._current(item_id, action_id) is None,
        )
        if receipt is None:
            return

        if int(receipt.get("status", 1)) != 1:
            failure = LedgerReverted("Transaction reverted on the ledger")
            self._fail(
                item_id, action_id,
                reason=failure.category.value,
                code=failure.code,
                message=_failure_message(failure.category, str(failure)),
                only_phase=ItemPhase.CONFIRMING,
            )
            return

        association = None
        if kind == ActionKind.CONVERT:
            try:
                association = self.ledger.associate_events(receipt)
            except Exception as e:
                logger.warning("Event association failed for %s: %s", handle, e)

        with self._lock:
            pa = self._current(item_id, action_id)
            if pa is None:
                return
            pa.transition(ItemPhase.RECONCILING)
            if association is not None:
                self._associations[action_id] = association
            self.events.on_phase_transition(
                item_id, ItemPhase.CONFIRMING.value, ItemPhase.RECONCILING.value, kind=kind.value,
            )
            holder = pa.holder
            expected = pa.expected
            max_polls = pa.max_polls

        poller = ReconciliationPoller(
            fetch=lambda: self.backend.query_items(holder),
            on_snapshot=lambda items: self.apply_snapshot(items, source="poll", holder=holder),
            sleep_fn=self._poll_sleep,
            clock=self._clock,
        )
        outcome = poller.wait_for(
            item_id, expected,
            interval=self.poll_interval_s,
            max_attempts=max_polls,
            is_pending=lambda: self._current(item_id, action_id) is not None,
            on_attempt=lambda n: self._record_poll(item_id, action_id, n),
        )
        self._finish_reconcile(item_id, action_id, outcome)

    def _record_poll(self, item_id: str, action_id: str, attempts: int) -> None:
        with self._lock:
            pa = self._current(item_id, action_id)
            if pa is not None:
                pa.polls_used = attempts

    def _finish_reconcile(self, item_id: str, action_id: str, outcome: PollOutcome) -> None:
        with self._lock:
            pa = self._current(item_id, action_id)
            if pa is None:
                return
            if outcome.converged:
                self._resolve_converged(pa, "poll")
                return

            del self._pending[item_id]
            self._associations.pop(action_id, None)
            pa.transition(ItemPhase.IDLE)
            self.rollbacks.settle(action_id)
            self.events.on_convergence(item_id, False, outcome.attempts, outcome.elapsed_s)
            self.events.on_phase_transition(
                item_id, ItemPhase.RECONCILING.value, ItemPhase.IDLE.value,
                kind=pa.kind.value, reason="convergence_timeout",
            )
            self._notice(
                item_id, NoticeLevel.WARNING, "convergence_timeout",
                "Status unknown: action may still complete. Refresh later to check.",
            )

    def _resolve_converged(self, pa: PendingAction, source: str) -> None:
        """Clear a reconciling action whose expected status was observed. Lock held."""
        item_id = pa.item_id
        del self._pending[item_id]
        pa.transition(ItemPhase.IDLE)
        self.rollbacks.settle(pa.action_id)

        if pa.kind == ActionKind.AUTHORIZE:
            statuses = {i: item.status for i, item in self._items.items()}
            self.tracker.mark_granted(item_id, statuses)
        elif pa.kind in (ActionKind.CONVERT, ActionKind.REVOKE):
            self.tracker.clear(item_id)

        message = _SUCCESS_MESSAGES[pa.kind]
        association = self._associations.pop(pa.action_id, None)
        if association is not None and association.ledger_ref:
            message += f": token #{association.ledger_ref}"
            if association.remark:
                message += f" ({association.remark})"

        elapsed = self._clock() - (pa.submitted_at or pa.created_at)
        self.events.on_convergence(item_id, True, pa.polls_used, elapsed)
        self.events.on_phase_transition(
            item_id, ItemPhase.RECONCILING.value, ItemPhase.IDLE.value,
            kind=pa.kind.value, reason=f"converged via {source}",
        )
        self._notice(item_id, NoticeLevel.SUCCESS, "converged", message)

    # ═══════════════════════════════════════════════════════════════
    # Failure, cancel, sweep
    # ═══════════════════════════════════════════════════════════════

    def _fail(
        self,
        item_id: str,
        action_id: str,
        reason: str,
        code: str,
        message: str,
        only_phase: ItemPhase | None = None,
    ) -> bool:
        """
        Roll back a current action: clear it, compensate once, notify.
        Returns False if the action was no longer current (or no longer in
        ``only_phase``), in which case nothing happens.
        """
        with self._lock:
            pa = self._current(item_id, action_id)
            if pa is None or (only_phase is not None and pa.phase != only_phase):
                logger.info("Failure for %s ignored: action no longer current (%s)", action_id, reason)
                return False
            from_phase = pa.phase
            pa.transition(ItemPhase.ROLLED_BACK)
            del self._pending[item_id]
            self._associations.pop(action_id, None)
            if pa.kind == ActionKind.CONVERT:
                self.tracker.clear(item_id)
            self.events.on_phase_transition(
                item_id, from_phase.value, ItemPhase.ROLLED_BACK.value, kind=pa.kind.value, reason=reason,
            )

        compensated = self._compensate(pa, reason)

        with self._lock:
            pa.transition(ItemPhase.IDLE)
            self.events.on_phase_transition(
                item_id, ItemPhase.ROLLED_BACK.value, ItemPhase.IDLE.value, kind=pa.kind.value,
            )
            suffix = "backend notified" if compensated else "backend could not be notified"
            level = NoticeLevel.INFO if reason == REASON_USER_CANCELLED else NoticeLevel.ERROR
            self._notice(item_id, level, code, f"{message}; {suffix}")
        return True

    def _compensate(self, pa: PendingAction, reason: str) -> bool:
        """Fire the rollback for pa at most once. Returns True if acknowledged."""
        entry = self.rollbacks.compensate(
            pa.action_id, reason,
            lambda e: self.backend.notify_rollback(e.holder, e.item_id, reason),
        )
        status = entry.status.value if entry else "already_resolved"
        self.events.on_rollback(pa.item_id, pa.action_id, reason, status)
        return entry is not None and entry.status == RollbackStatus.COMPENSATED

    def cancel(self, item_id: str) -> bool:
        """
        Cancel a pre-submission action. Returns False if nothing was in
        flight. Raises InvalidTransition once a handle exists.
        """
        with self._lock:
            entry = self._verifying.pop(item_id, None)
            if entry is not None:
                self._back_to_idle(item_id, entry[1], REASON_USER_CANCELLED)
                self._notice(item_id, NoticeLevel.INFO, "cancelled", "Action cancelled")
                return True
            pa = self._pending.get(item_id)
            if pa is None:
                return False
            if not pa.cancellable:
                raise InvalidTransition(
                    f"Item {item_id}: cannot cancel in {pa.phase.value}; the ledger decides now"
                )
            action_id = pa.action_id

        return self._fail(
            item_id, action_id,
            reason=REASON_USER_CANCELLED,
            code="cancelled",
            message="Action cancelled",
            only_phase=ItemPhase.AWAITING_SIGNATURE,
        )

    def sweep(self, now: float | None = None) -> list[str]:
        """Enforce every signature deadline. Returns the item ids rolled back."""
        now = self._clock() if now is None else now
        with self._lock:
            expired = [
                (pa.item_id, pa.action_id)
                for pa in self._pending.values()
                if pa.is_expired(now)
            ]

        rolled_back = []
        timeout = SignerTimeout(f"Wallet did not respond within {self.signature_timeout_s:.0f}s")
        for item_id, action_id in expired:
            if self._fail(
                item_id, action_id,
                reason=REASON_WALLET_TIMEOUT,
                code=timeout.code,
                message=str(timeout),
                only_phase=ItemPhase.AWAITING_SIGNATURE,
            ):
                rolled_back.append(item_id)
        return rolled_back

    # ═══════════════════════════════════════════════════════════════
    # Background plumbing
    # ═══════════════════════════════════════════════════════════════

    def _submit(self, fn: Callable, *args) -> Future:
        future = self._executor.submit(fn, *args)
        future.add_done_callback(_log_task_error)
        return future

    def _submit_wait(self, fn: Callable, item_id: str, *args) -> None:
        """
        Run a receipt wait plus reconciliation for one action.

        Each action gets its own daemon thread unless a wait executor was
        injected. Verification and dispatch never queue behind a receipt.
        """
        if self._wait_executor is not None:
            self._wait_executor.submit(fn, item_id, *args).add_done_callback(_log_task_error)
            return

        def run():
            try:
                fn(item_id, *args)
            except Exception:
                logger.exception("Confirmation for item %s failed", item_id)

        threading.Thread(target=run, name=f"mintsaga-confirm-{item_id}", daemon=True).start()

    def start_sweeper(self, interval_s: float = 1.0) -> None:
        if self._sweeper is not None and self._sweeper.is_alive():
            return
        self._sweeper_stop.clear()

        def run():
            while not self._sweeper_stop.wait(interval_s):
                try:
                    self.sweep()
                except Exception:
                    logger.exception("Sweep failed")

        self._sweeper = threading.Thread(target=run, name="mintsaga-sweeper", daemon=True)
        self._sweeper.start()

    def close(self) -> None:
        self._sweeper_stop.set()
        if self._sweeper is not None:
            self._sweeper.join(timeout=5.0)
            self._sweeper = None
        if self._owns_executor:
            self._executor.shutdown(wait=False)


def _log_task_error(future: Future) -> None:
    error = future.exception()
    if error is not None:
        logger.error("Background task failed: %s", error, exc_info=error)


def _failure_message(category: RevertCategory, detail: str) -> str:
    prefix = {
        RevertCategory.INSUFFICIENT_AUTHORIZATION: "Insufficient authorization",
        RevertCategory.INSUFFICIENT_BALANCE: "Insufficient balance",
        RevertCategory.GENERIC_REVERT: "Transaction reverted",
        RevertCategory.USER_REJECTED: "Rejected in wallet",
        RevertCategory.UNRECOGNIZED: "Transaction failed",
    }[category]
    if detail and detail.lower() != prefix.lower() and not detail.lower().startswith(prefix.lower()):
        return f"{prefix}: {detail}"
    return detail or prefix


def _sort_key(item_id: str):
    return (0, int(item_id), "") if item_id.isdigit() else (1, 0, item_id)

