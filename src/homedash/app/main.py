"""FastAPI application exposing dashboard control endpoints."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Optional, Union

from fastapi import FastAPI, HTTPException
from fastapi.responses import Response

from homedash.app.models import ActionAccepted, AppState, JobRequest, NoticeList, TerminalInput, TerminalState
from homedash.core.errors import IssueFailed
from homedash.core.models import ActionKind
from homedash.core.reconciler import DashboardView
from homedash.core.runtime import DashboardRuntime, View
from homedash.core.settings import RuntimeSettings
from homedash.core.tracker import TrackedAction
from homedash.utils.logging import get_logger


logger = get_logger("DashboardAPI")


def _accepted(action: TrackedAction) -> ActionAccepted:
    return ActionAccepted(target_id=action.target_id, kind=action.kind.value, pending=not action.done)


def create_app(
    config: Union[Path, RuntimeSettings],
    *,
    runtime: Optional[DashboardRuntime] = None,
) -> FastAPI:
    settings = config if isinstance(config, RuntimeSettings) else RuntimeSettings.from_file(config)
    runtime = runtime or DashboardRuntime(settings)

    app = FastAPI(title="homedash Runtime")
    app.state.runtime = runtime

    @app.on_event("startup")
    async def _startup() -> None:  # pragma: no cover
        await runtime.start()

    @app.on_event("shutdown")
    async def _shutdown() -> None:  # pragma: no cover
        await runtime.stop()

    @app.get("/")
    async def root() -> dict:
        """Root endpoint with API information."""
        return {
            "name": "homedash Runtime API",
            "backend": settings.api_base,
            "view": runtime.active_view.value,
            "endpoints": {
                "health": "/health",
                "api_docs": "/docs",
                "view": "/view",
                "notices": "/notices",
            },
        }

    @app.get("/health", response_model=AppState)
    async def health() -> AppState:
        return AppState(
            started=runtime.started,
            view=runtime.active_view.value,
            pending=len(runtime.tracker.pending()),
            notices=len(runtime.notices),
        )

    @app.get("/favicon.ico")
    async def favicon() -> Response:
        return Response(status_code=204)

    @app.get("/view", response_model=DashboardView)
    async def view() -> DashboardView:
        return runtime.dashboard

    @app.post("/views/{name}")
    async def switch_view(name: str) -> dict:
        try:
            target = View(name)
        except ValueError:
            raise HTTPException(status_code=404, detail=f"Unknown view: {name}")
        await runtime.switch_view(target)
        return {"ok": True, "view": target.value}

    @app.get("/notices", response_model=NoticeList)
    async def notices() -> NoticeList:
        return NoticeList(notices=runtime.notices)

    # Services ----------------------------------------------------------------------

    @app.post("/services/refresh")
    async def refresh_services() -> dict:
        services = await runtime.services.refresh_services()
        return {"ok": True, "services": len(services)}

    @app.post("/services/{service_id}/launch", response_model=ActionAccepted)
    async def launch(service_id: str) -> ActionAccepted:
        try:
            return _accepted(runtime.services.launch(service_id))
        except IssueFailed as exc:
            raise HTTPException(status_code=400, detail=exc.message)

    @app.post("/services/{service_id}/stop", response_model=ActionAccepted)
    async def stop(service_id: str) -> ActionAccepted:
        try:
            return _accepted(runtime.services.stop_service(service_id))
        except IssueFailed as exc:
            raise HTTPException(status_code=400, detail=exc.message)

    @app.post("/services/{service_id}/cancel")
    async def cancel(service_id: str) -> dict:
        cancelled = runtime.tracker.cancel(service_id, ActionKind.LAUNCH)
        return {"ok": True, "cancelled": cancelled}

    # Jobs --------------------------------------------------------------------------

    @app.post("/jobs/{target_id}", response_model=ActionAccepted)
    async def execute_job(target_id: str, payload: JobRequest) -> ActionAccepted:
        return _accepted(runtime.jobs.execute(target_id, payload.workflow))

    @app.post("/jobs/{target_id}/cancel")
    async def cancel_job(target_id: str) -> dict:
        return {"ok": True, "cancelled": runtime.jobs.cancel(target_id)}

    # Terminal ----------------------------------------------------------------------

    def _terminal_state(sent: bool) -> TerminalState:
        terminal = runtime.terminal
        return TerminalState(sent=sent, pending_input=terminal.pending_input, history=list(terminal.history.entries))

    @app.post("/terminal/input", response_model=TerminalState)
    async def terminal_input(payload: TerminalInput) -> TerminalState:
        return _terminal_state(await runtime.terminal.submit(payload.line))

    @app.post("/terminal/interrupt", response_model=TerminalState)
    async def terminal_interrupt() -> TerminalState:
        return _terminal_state(await runtime.terminal.interrupt())

    @app.post("/terminal/clear", response_model=TerminalState)
    async def terminal_clear() -> TerminalState:
        runtime.terminal.clear()
        return _terminal_state(False)

    @app.post("/terminal/reconnect", response_model=TerminalState)
    async def terminal_reconnect() -> TerminalState:
        await runtime.terminal.reconnect()
        return _terminal_state(False)

    @app.post("/terminal/history/{direction}", response_model=TerminalState)
    async def terminal_history(direction: str) -> TerminalState:
        if direction == "previous":
            runtime.terminal.history_previous()
        elif direction == "next":
            runtime.terminal.history_next()
        else:
            raise HTTPException(status_code=404, detail=f"Unknown history direction: {direction}")
        return _terminal_state(False)

    logger.info("Control API ready for %s", settings.api_base)
    return app


def get_app() -> FastAPI:
    """ASGI factory: ``uvicorn --factory homedash.app.main:get_app`` with HOMEDASH_CONFIG set."""
    return create_app(Path(os.getenv("HOMEDASH_CONFIG", "config/dashboard.example.yml")))
