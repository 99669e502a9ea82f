"""
mintsaga — Runtime Wiring

Builds the production object graph from Settings:

    BackendClient ─┐
    LedgerReader ──┼─→ EligibilityVerifier ─→ LifecycleCoordinator
    Web3SigningAgent (optional) ─────────────┘        ↑
    RealtimeChannel ── ItemUpdate / RecentlyConverted ┘
    SessionTracker ─── holder / chain changes ────────┘

Nothing connects until start() is called, so the CLI can build a runtime
just to run one query.
"""

from __future__ import annotations

import logging
import os
from concurrent.futures import Executor
from dataclasses import dataclass, field
from typing import Any

from gateway.backend import BackendClient
from gateway.compensation import RollbackLedger
from gateway.config import Settings
from gateway.ledger import LedgerReader
from gateway.realtime import ITEM_UPDATE, RECENTLY_CONVERTED, RealtimeChannel
from gateway.signer import Web3SigningAgent
from lifecycle.coordinator import LifecycleCoordinator
from lifecycle.eligibility import EligibilityVerifier
from lifecycle.executors import make_executor
from lifecycle.session import SessionTracker

logger = logging.getLogger("mintsaga.runtime")


@dataclass
class Runtime:
    settings: Settings
    backend: BackendClient
    ledger: LedgerReader
    verifier: EligibilityVerifier
    signer: Any
    rollbacks: RollbackLedger
    coordinator: LifecycleCoordinator
    channel: RealtimeChannel
    session: SessionTracker
    executors: list[Executor] = field(default_factory=list)

    def start(self, holder: str | None = None) -> None:
        """Open the push channel, begin chain polling and the deadline sweeper."""
        if holder:
            self.session.set_holder(holder)
        self.session.poll_once()
        self.session.start()
        self.channel.connect()
        self.coordinator.start_sweeper(self.settings.coordinator.sweep_interval_s)
        logger.info(
            "Runtime started (env=%s, holder=%s, chain=%s)",
            self.settings.active_env, self.session.holder, self.session.chain_id,
        )

    def close(self) -> None:
        self.channel.disconnect()
        self.session.stop()
        self.coordinator.close()
        self.backend.close()
        self.rollbacks.close()
        for executor in self.executors:
            executor.shutdown(wait=False)


def _build_signer(ledger: LedgerReader, chain_id: int, key: str | None, executor: Executor) -> Any:
    key = key or os.environ.get("MINTSAGA_SIGNER_KEY", "")
    if not key:
        logger.info("No signer key configured; runtime is read-only")
        return None
    account = ledger.w3.eth.account.from_key(key)
    logger.info("Local signing agent for %s", account.address)
    return Web3SigningAgent(ledger.w3, account, chain_id, executor=executor)


def build_runtime(
    settings: Settings,
    signer_key: str | None = None,
    executor: Executor | None = None,
    db_path: str | None = None,
    signer_executor: Executor | None = None,
) -> Runtime:
    """
    Wire the production graph. Verification and signing use separate
    executors; receipt waits run on per-action threads inside the
    coordinator. Executors created here are shut down by Runtime.close().
    """
    owned: list[Executor] = []
    if executor is None:
        executor = make_executor(max_workers=settings.coordinator.max_workers)
        owned.append(executor)
    if signer_executor is None:
        signer_executor = make_executor(max_workers=2)
        owned.append(signer_executor)

    backend = BackendClient(
        settings.backend.base_url,
        timeout_s=settings.backend.timeout_s,
        auth_token=settings.backend.auth_token,
    )
    ledger = LedgerReader(
        settings.ledger.token_address,
        settings.ledger.collection_address,
        rpc_url=settings.ledger.rpc_url,
        timeout_s=settings.ledger.timeout_s,
    )
    verifier = EligibilityVerifier(
        backend, ledger,
        token_address=settings.ledger.token_address,
        collection_address=settings.ledger.collection_address,
    )
    signer = _build_signer(ledger, settings.ledger.chain_id, signer_key, signer_executor)
    rollbacks = RollbackLedger(db_path or os.environ.get("MINTSAGA_DB", ":memory:"))

    coordinator = LifecycleCoordinator(
        backend, verifier, signer, ledger,
        rollback_ledger=rollbacks,
        executor=executor,
        signature_timeout_s=settings.coordinator.signature_timeout_s,
        poll_interval_s=settings.reconcile.interval_s,
        max_polls=settings.reconcile.max_attempts,
        receipt_poll_s=settings.ledger.receipt_poll_s,
        recent_feed_size=settings.coordinator.recent_feed_size,
        required_chain_id=settings.session.required_chain_id,
    )

    channel = RealtimeChannel(
        settings.channel.url,
        base_delay_ms=settings.channel.base_delay_ms,
        cap_ms=settings.channel.cap_ms,
        max_retries=settings.channel.max_retries,
        ping_interval_s=settings.channel.ping_interval_s,
    )
    channel.subscribe(ITEM_UPDATE, coordinator.on_item_update)
    channel.subscribe(RECENTLY_CONVERTED, coordinator.on_recently_converted)
    channel.add_state_listener(
        lambda state, retries, delay_ms: coordinator.events.on_channel_state(state.value, retries, delay_ms)
    )

    session = SessionTracker(
        settings.session.required_chain_id,
        chain_source=ledger.chain_id,
        poll_interval_s=settings.session.chain_poll_s,
    )
    session.add_listener(coordinator.on_session_change)

    return Runtime(
        settings=settings,
        backend=backend,
        ledger=ledger,
        verifier=verifier,
        signer=signer,
        rollbacks=rollbacks,
        coordinator=coordinator,
        channel=channel,
        session=session,
        executors=owned,
    )
