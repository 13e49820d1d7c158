from __future__ import annotations

import logging
from typing import Dict, Optional

from .config import Settings
from .gateway import read_with_deadline
from .models import CompletionReason, SessionStatus
from .repository import SessionRepository
from .scheduler import PeriodicTask
from .terminator import SessionTerminator, TerminationResult

logger = logging.getLogger(__name__)


class SessionMonitor:
    """Poll one user's active session and close it once the charger says it stopped."""

    def __init__(
        self,
        user_id: int,
        repo: SessionRepository,
        gateway,
        terminator: SessionTerminator,
        settings: Settings,
    ) -> None:
        self.user_id = user_id
        self.repo = repo
        self.gateway = gateway
        self.terminator = terminator
        self.settings = settings
        self._task = PeriodicTask(
            f"monitor-{user_id}", settings.monitor_interval_sec, self.tick
        )

    @property
    def running(self) -> bool:
        return self._task.running

    def start(self) -> None:
        self._task.start()

    async def stop(self) -> None:
        await self._task.stop()

    async def tick(self) -> None:
        try:
            await self.poll()
        except Exception:
            logger.exception(f"Session monitor for user {self.user_id} failed")

    async def poll(self) -> Optional[TerminationResult]:
        sessions = await self.repo.list_sessions(
            status=SessionStatus.active, user_id=self.user_id
        )
        if not sessions:
            return None
        session = sessions[0]

        reading = await read_with_deadline(
            self.gateway, session, self.settings.monitor_reading_timeout_sec
        )
        if not reading.stopped:
            return None

        snapshot = reading.snapshot()
        if snapshot is not None:
            await self.repo.attach_final_reading(session.id, snapshot)
        logger.info(f"Charger reported stop for session {session.id} (user {self.user_id})")
        return await self.terminator.terminate(
            session, CompletionReason.CHARGER_REPORTED_STOP, final_reading=snapshot
        )


class MonitorRegistry:
    """One :class:`SessionMonitor` per logged-in user."""

    def __init__(self, repo: SessionRepository, gateway, terminator: SessionTerminator, settings: Settings) -> None:
        self.repo = repo
        self.gateway = gateway
        self.terminator = terminator
        self.settings = settings
        self._monitors: Dict[int, SessionMonitor] = {}

    def __contains__(self, user_id: int) -> bool:
        return user_id in self._monitors

    def start(self, user_id: int) -> SessionMonitor:
        monitor = self._monitors.get(user_id)
        if monitor is None:
            monitor = SessionMonitor(user_id, self.repo, self.gateway, self.terminator, self.settings)
            self._monitors[user_id] = monitor
        monitor.start()
        return monitor

    async def stop(self, user_id: int) -> bool:
        monitor = self._monitors.pop(user_id, None)
        if monitor is None:
            return False
        await monitor.stop()
        return True

    async def stop_all(self) -> None:
        for user_id in list(self._monitors):
            await self.stop(user_id)
