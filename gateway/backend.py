"""
mintsaga — Backend HTTP Client

Wraps the authoritative backend's REST endpoints:

    verify(holder, item_id)             → POST /api/verify-mint-eligibility
    notify_rollback(holder, item_id, …) → POST /api/mint-failed
    query_items(holder)                 → GET  /api/query-mint?user_address=...
    query_recent_conversions()          → GET  /api/query-minted-nfts-for-limit

Transport failures and non-2xx responses raise BackendUnavailable. Item
queries are idempotent and go through call_with_retry; verification and
rollback are issued exactly once per call.

Usage:
    from gateway.backend import BackendClient
    client = BackendClient("https://backend.example", timeout_s=10)
    items = client.query_items("0xabc...")
"""

from __future__ import annotations

import logging
from typing import Any, Callable

import httpx

from gateway.retry import BackoffPolicy, DEFAULT_READ_POLICY, call_with_retry
from lifecycle.errors import BackendUnavailable
from lifecycle.types import ConversionRecord, Item

logger = logging.getLogger("mintsaga.backend")

VERIFY_PATH = "/api/verify-mint-eligibility"
ROLLBACK_PATH = "/api/mint-failed"
QUERY_PATH = "/api/query-mint"
RECENT_PATH = "/api/query-minted-nfts-for-limit"


def parse_items(payload: dict[str, Any]) -> list[Item]:
    """
    Parse a ``{user_address, nfts: [...]}`` payload into Items.

    Malformed entries are logged and skipped so one bad record never
    hides the rest of the snapshot.
    """
    raw_items = payload.get("items", payload.get("nfts")) or []
    items: list[Item] = []
    for raw in raw_items:
        try:
            items.append(Item.from_wire(raw))
        except (ValueError, TypeError) as e:
            logger.warning("Dropping malformed item payload: %s", e)
    return items


def parse_conversions(payload: Any) -> list[ConversionRecord]:
    """Parse a recent-conversions payload (``{total, nfts}`` or a bare list)."""
    raw_list = payload.get("nfts", payload.get("items")) if isinstance(payload, dict) else payload
    records: list[ConversionRecord] = []
    for raw in raw_list or []:
        try:
            records.append(ConversionRecord.from_wire(raw))
        except (ValueError, TypeError) as e:
            logger.warning("Dropping malformed conversion payload: %s", e)
    return records


class BackendClient:
    """
    Thin synchronous client for the backend record.

    Pass ``transport`` (e.g. httpx.MockTransport) to run without a network.
    """

    def __init__(
        self,
        base_url: str,
        timeout_s: float = 10.0,
        auth_token: str | None = None,
        transport: httpx.BaseTransport | None = None,
        read_policy: BackoffPolicy | None = None,
        sleep_fn: Callable[[float], None] | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        headers = {"Content-Type": "application/json"}
        if auth_token:
            headers["Authorization"] = f"Bearer {auth_token}"
        self._client = httpx.Client(
            base_url=self.base_url,
            timeout=timeout_s,
            headers=headers,
            transport=transport,
        )
        self._read_policy = read_policy or DEFAULT_READ_POLICY
        self._retry_kwargs: dict[str, Any] = {}
        if sleep_fn is not None:
            self._retry_kwargs["sleep_fn"] = sleep_fn

    # ── Transport ───────────────────────────────────────────────

    def _request(self, method: str, path: str, **kwargs) -> Any:
        try:
            resp = self._client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            raise BackendUnavailable(f"{method} {path} failed: {e}") from e

        if resp.status_code >= 400:
            raise BackendUnavailable(
                f"{method} {path} returned HTTP {resp.status_code}",
                status_code=resp.status_code,
            )
        try:
            return resp.json()
        except ValueError as e:
            raise BackendUnavailable(f"{method} {path} returned invalid JSON") from e

    # ── Endpoints ───────────────────────────────────────────────

    def verify(self, holder: str, item_id: str) -> dict[str, Any]:
        """Ask the backend whether holder may convert item_id. Returns the raw response."""
        data = self._request(
            "POST", VERIFY_PATH,
            json={"user_address": holder, "nft_id": item_id},
        )
        if not isinstance(data, dict):
            raise BackendUnavailable(f"{VERIFY_PATH} returned a non-object body")
        return data

    def notify_rollback(self, holder: str, item_id: str, reason: str) -> bool:
        """Tell the backend a pending action failed. Never retried here."""
        self._request(
            "POST", ROLLBACK_PATH,
            json={"user_address": holder, "nft_id": item_id, "error": reason},
        )
        logger.info("Backend notified of rollback: item=%s reason=%s", item_id, reason)
        return True

    def query_items(self, holder: str) -> list[Item]:
        """Authoritative item snapshot for holder."""
        data = call_with_retry(
            lambda: self._request("GET", QUERY_PATH, params={"user_address": holder}),
            self._read_policy,
            label="query_items",
            **self._retry_kwargs,
        )
        if not isinstance(data, dict):
            raise BackendUnavailable(f"{QUERY_PATH} returned a non-object body")
        return parse_items(data)

    def query_recent_conversions(self) -> list[ConversionRecord]:
        data = call_with_retry(
            lambda: self._request("GET", RECENT_PATH),
            self._read_policy,
            label="query_recent_conversions",
            **self._retry_kwargs,
        )
        return parse_conversions(data)

    def close(self) -> None:
        self._client.close()
