"""HTTP surface of the reconciliation service.

Runs the FastAPI app together with the background loops: the reconciliation
sweep, the heartbeat check and the per-user session monitors.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional

import uvicorn
from fastapi import FastAPI, HTTPException, Request
from pydantic import BaseModel

from .config import Settings
from .gateway import FAULT_STATUSES, ReadingGateway
from .models import USER_REASONS, CompletionReason, Session, utcnow
from .monitor import MonitorRegistry
from .reconciler import SessionReconciler
from .repository import InMemoryRepository, SessionRepository
from .scheduler import PeriodicTask
from .terminator import SessionTerminator
from .triggers import HeartbeatWatch, TerminationTriggers

logger = logging.getLogger(__name__)

BEACON_REASONS = (CompletionReason.APP_EXIT, CompletionReason.TAB_CLOSE)


@dataclass
class AppContext:
    settings: Settings
    repo: SessionRepository
    gateway: object
    terminator: SessionTerminator
    reconciler: SessionReconciler
    monitors: MonitorRegistry
    triggers: TerminationTriggers
    heartbeats: HeartbeatWatch

    @classmethod
    def build(
        cls,
        settings: Settings,
        repo: Optional[SessionRepository] = None,
        gateway=None,
        clock: Callable[[], datetime] = utcnow,
    ) -> "AppContext":
        repo = repo or InMemoryRepository()
        gateway = gateway or ReadingGateway(settings.gateway_url)
        terminator = SessionTerminator(repo, gateway, settings, clock)
        reconciler = SessionReconciler(repo, gateway, terminator, settings, clock)
        monitors = MonitorRegistry(repo, gateway, terminator, settings)
        triggers = TerminationTriggers(repo, terminator, settings, monitors)
        heartbeats = HeartbeatWatch(triggers, settings)
        return cls(settings, repo, gateway, terminator, reconciler, monitors, triggers, heartbeats)


class WebhookReq(BaseModel):
    deviceId: str
    status: Optional[str] = None
    connectorId: Optional[int] = None
    transactionId: Optional[str] = None
    faultCode: Optional[str] = None


class UserReq(BaseModel):
    userId: Optional[int] = None
    reason: Optional[str] = None


class SweepResp(BaseModel):
    message: str
    completed: int


def _require_user(req: UserReq) -> int:
    if req.userId is None:
        raise HTTPException(status_code=400, detail="User ID is required")
    return req.userId


def create_app(ctx: Optional[AppContext] = None, settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or (ctx.settings if ctx else Settings())
    ctx = ctx or AppContext.build(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        loops: List[PeriodicTask] = [
            PeriodicTask("heartbeat-check", settings.heartbeat_check_sec, ctx.heartbeats.check),
        ]
        if settings.sweep_enabled:
            loops.append(PeriodicTask("reconciler", settings.sweep_interval_sec, ctx.reconciler.sweep))
        for loop in loops:
            loop.start()
        try:
            yield
        finally:
            for loop in loops:
                await loop.stop()
            await ctx.monitors.stop_all()
            await ctx.triggers.drain()
            close = getattr(ctx.gateway, "close", None)
            if close is not None:
                await close()

    app = FastAPI(title="Charging Session Reconciler", version="1.0.0", lifespan=lifespan)
    app.state.ctx = ctx

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        logger.info(f">>> {request.method} {request.url.path}")
        try:
            response = await call_next(request)
            logger.info(f"<<< {request.method} {request.url.path} -> {response.status_code}")
            return response
        except Exception:
            logger.exception("Handler crashed")
            raise

    @app.get("/health")
    def health():
        return {"ok": True, "time": utcnow().isoformat()}

    @app.post("/auto-complete-sessions", response_model=SweepResp)
    async def auto_complete_sessions():
        try:
            report = await ctx.reconciler.sweep()
        except Exception as e:
            logger.exception("Reconciliation sweep failed")
            raise HTTPException(status_code=500, detail=str(e))
        if report.scanned == 0:
            return SweepResp(message="No active sessions", completed=0)
        return SweepResp(
            message=f"Auto-completed {report.completed} sessions", completed=report.completed
        )

    @app.post("/charger-webhook")
    async def charger_webhook(req: WebhookReq):
        try:
            if req.status in FAULT_STATUSES or req.faultCode:
                await ctx.triggers.charger_fault(
                    req.deviceId,
                    req.connectorId,
                    req.faultCode or req.status,
                    req.transactionId,
                )
        except Exception as e:
            logger.exception("Webhook error")
            raise HTTPException(status_code=500, detail=str(e))
        return {"success": True}

    @app.post("/stop-charging")
    async def stop_charging(req: UserReq):
        user_id = _require_user(req)
        reason = req.reason or CompletionReason.MANUAL_STOP
        if reason not in USER_REASONS:
            raise HTTPException(status_code=400, detail=f"Unsupported stop reason: {reason}")
        logger.info(f"Stopping charging sessions for user {user_id} ({reason})")
        try:
            results = await ctx.triggers.stop_user_sessions(user_id, reason)
        except Exception as e:
            logger.exception("Error in stop-charging")
            raise HTTPException(status_code=500, detail=str(e))
        ok = all(r.terminal for r in results)
        return {
            "success": ok,
            "message": "Charging sessions stopped" if ok else "Failed to stop some sessions",
        }

    @app.post("/logout")
    async def logout(req: UserReq):
        user_id = _require_user(req)
        ctx.heartbeats.forget(user_id)
        results = await ctx.triggers.logout(user_id)
        if results is None:
            return {"success": True, "stopped": 0, "message": "Stop already in progress"}
        return {
            "success": all(r.terminal for r in results),
            "stopped": sum(1 for r in results if r.closed_here),
        }

    @app.post("/beacon", status_code=202)
    async def beacon(req: UserReq):
        user_id = _require_user(req)
        reason = req.reason or CompletionReason.APP_EXIT
        if reason not in BEACON_REASONS:
            raise HTTPException(status_code=400, detail=f"Unsupported beacon reason: {reason}")
        ctx.heartbeats.forget(user_id)
        return {"accepted": ctx.triggers.beacon(user_id, reason)}

    @app.post("/heartbeat")
    async def heartbeat(req: UserReq):
        ctx.heartbeats.beat(_require_user(req))
        return {"ok": True}

    @app.post("/monitor/{user_id}")
    async def start_monitor(user_id: int):
        monitor = ctx.monitors.start(user_id)
        return {"ok": True, "running": monitor.running}

    @app.delete("/monitor/{user_id}")
    async def stop_monitor(user_id: int):
        return {"ok": await ctx.monitors.stop(user_id)}

    @app.get("/sessions/{session_id}", response_model=Session)
    async def get_session(session_id: int):
        session = await ctx.repo.get_session(session_id)
        if session is None:
            raise HTTPException(status_code=404, detail="Session not found")
        return session

    @app.get("/users/{user_id}/sessions", response_model=List[Session])
    async def user_sessions(user_id: int):
        sessions = await ctx.repo.list_sessions(user_id=user_id)
        return sorted(sessions, key=lambda s: s.started_at or utcnow(), reverse=True)

    return app


async def main(settings: Optional[Settings] = None) -> None:
    settings = settings or Settings()
    app = create_app(settings=settings)
    config = uvicorn.Config(
        app, host=settings.http_host, port=settings.http_port, loop="asyncio", log_level="info"
    )
    server = uvicorn.Server(config)
    logger.info(f"⚡ Reconciler listening on http://{settings.http_host}:{settings.http_port}")
    await server.serve()


def run() -> None:
    settings = Settings()
    logging.basicConfig(
        level=settings.log_level, format="%(asctime)s | %(levelname)s | %(message)s"
    )
    asyncio.run(main(settings))


if __name__ == "__main__":
    run()
