"""
mintsaga — API Server

FastAPI application serving a view over one LifecycleCoordinator:
  GET  /health                        — liveness
  GET  /v1/session                    — holder, chain, authorization record, channel state
  GET  /v1/items                      — item views (?refresh=true re-queries the backend)
  GET  /v1/items/{id}                 — one item view
  POST /v1/items/{id}/actions         — start authorize | convert | reclaim | revoke
  POST /v1/items/{id}/cancel          — cancel before a ledger handle exists
  GET  /v1/notices                    — recorded notices (?item_id=)
  GET  /v1/recent-conversions         — bounded recently-converted feed

Usage:
    uvicorn api.server:app --host 0.0.0.0 --port 8080

Run the server with the default thread worker mode. The inline mode runs
verification and signing inside the request handler and is meant for the
CLI and tests only.
"""

from __future__ import annotations

import logging
import time
from typing import Any

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from api.models import ActionAccepted, ActionSubmission, SessionStatus
from lifecycle.errors import (
    ActionInProgress,
    BackendUnavailable,
    Ineligible,
    InvalidTransition,
    WrongNetwork,
)

logger = logging.getLogger("mintsaga.api")


def create_app(runtime: Any = None, coordinator: Any = None) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Pass a started Runtime, or a bare coordinator (tests). With neither,
    a runtime is built from the default settings on first use and closed
    on shutdown.
    """
    app = FastAPI(
        title="mintsaga API",
        version="0.1.0",
        description="Item conversion lifecycle",
    )

    # ── State ────────────────────────────────────────────────

    _runtime = runtime
    _owns_runtime = runtime is None and coordinator is None

    def get_runtime():
        nonlocal _runtime
        if _runtime is None and _owns_runtime:
            from gateway.config import load_settings
            from lifecycle.runtime import build_runtime

            _runtime = build_runtime(load_settings())
            _runtime.start()
        return _runtime

    def get_coordinator():
        if coordinator is not None:
            return coordinator
        return get_runtime().coordinator

    # ── Lifecycle ─────────────────────────────────────────────

    @app.on_event("shutdown")
    async def shutdown():
        if _owns_runtime and _runtime is not None:
            _runtime.close()

    # ── Session ───────────────────────────────────────────────

    @app.get("/v1/session")
    async def get_session():
        coord = get_coordinator()
        rt = get_runtime()
        status = SessionStatus(
            holder=coord.holder,
            chain_id=coord.chain_id,
            required_chain_id=coord.required_chain_id,
            authorized=sorted(coord.authorized()),
            channel_state=rt.channel.state.value if rt is not None else "disabled",
        )
        return JSONResponse(content=status.to_dict())

    # ── Items ─────────────────────────────────────────────────

    @app.get("/v1/items")
    def list_items(refresh: bool = False):
        coord = get_coordinator()
        if refresh:
            try:
                coord.refresh()
            except BackendUnavailable as e:
                raise HTTPException(status_code=503, detail=str(e))
        views = coord.views()
        return JSONResponse(content={
            "holder": coord.holder,
            "items": [v.to_dict() for v in views],
            "count": len(views),
        })

    @app.get("/v1/items/{item_id}")
    async def get_item(item_id: str):
        coord = get_coordinator()
        try:
            view = coord.view(item_id)
        except KeyError:
            raise HTTPException(status_code=404, detail="Item not found")
        pending = coord.pending_action(item_id)
        content = view.to_dict()
        if pending is not None:
            content["action"] = {
                "action_id": pending.action_id,
                "kind": pending.kind.value,
                "deadline": pending.deadline,
                "external_handle": pending.external_handle,
                "polls_used": pending.polls_used,
            }
        return JSONResponse(content=content)

    # ── Actions ───────────────────────────────────────────────

    @app.post("/v1/items/{item_id}/actions")
    async def submit_action(item_id: str, request: Request):
        try:
            body = await request.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}

        submission = ActionSubmission(kind=body.get("kind", ""))
        errors = submission.validate()
        if errors:
            return JSONResponse(status_code=422, content={"errors": errors})

        coord = get_coordinator()
        kind = submission.action_kind
        try:
            view = coord.request(item_id, kind)
        except KeyError:
            raise HTTPException(status_code=404, detail="Item not found")
        except (ActionInProgress, WrongNetwork) as e:
            return JSONResponse(status_code=409, content={"error": e.code, "detail": str(e)})
        except Ineligible as e:
            return JSONResponse(status_code=400, content={"error": e.code, "detail": str(e)})

        logger.info("Accepted %s for item %s", kind.value, item_id)
        return JSONResponse(status_code=202, content=ActionAccepted.from_view(item_id, kind, view).to_dict())

    @app.post("/v1/items/{item_id}/cancel")
    async def cancel_action(item_id: str):
        coord = get_coordinator()
        try:
            cancelled = coord.cancel(item_id)
        except InvalidTransition as e:
            return JSONResponse(status_code=409, content={"error": e.code, "detail": str(e)})
        return JSONResponse(content={"item_id": item_id, "cancelled": cancelled})

    # ── Feeds ─────────────────────────────────────────────────

    @app.get("/v1/notices")
    async def list_notices(item_id: str | None = None):
        coord = get_coordinator()
        notices = coord.notices(item_id)
        return JSONResponse(content={"notices": [n.to_dict() for n in notices]})

    @app.get("/v1/recent-conversions")
    async def recent_conversions():
        coord = get_coordinator()
        return JSONResponse(content={
            "conversions": [r.to_dict() for r in coord.recent_conversions()],
        })

    # ── Health ────────────────────────────────────────────────

    @app.get("/health")
    async def health():
        return JSONResponse(content={
            "status": "ok",
            "timestamp": time.time(),
        })

    return app


# ── Module-level app for uvicorn ──────────────────────────────

app = create_app()
