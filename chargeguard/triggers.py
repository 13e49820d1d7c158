"""Entry points that end sessions on behalf of users and chargers.

Logout and manual stop are awaited by the caller.  App exit and tab close
arrive as beacons from a context that is going away, so they are scheduled
in the background and never confirmed; if one is lost, the reconciliation
sweep still closes the session later.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable, Dict, List, Optional, Set

from .config import Settings
from .gateway import device_id_for_slot
from .models import CompletionReason, Session, SessionStatus
from .monitor import MonitorRegistry
from .repository import SessionRepository
from .scheduler import CooldownGuard
from .terminator import SessionTerminator, TerminationResult

logger = logging.getLogger(__name__)


class TerminationTriggers:
    def __init__(
        self,
        repo: SessionRepository,
        terminator: SessionTerminator,
        settings: Settings,
        monitors: Optional[MonitorRegistry] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.repo = repo
        self.terminator = terminator
        self.settings = settings
        self.monitors = monitors
        self.cooldown = CooldownGuard(settings.stop_cooldown_sec, clock)
        self._pending: Set[asyncio.Task] = set()

    async def stop_user_sessions(self, user_id: int, reason: str) -> List[TerminationResult]:
        sessions = await self.repo.list_sessions(status=SessionStatus.active, user_id=user_id)
        if not sessions:
            logger.info(f"[{reason.upper()}] No active sessions for user {user_id}")
            return []
        logger.info(f"[{reason.upper()}] Stopping {len(sessions)} session(s) for user {user_id}")
        results = await asyncio.gather(
            *(self.terminator.terminate(s, reason, stop_charger=True) for s in sessions)
        )
        if not all(r.terminal for r in results):
            logger.warning(f"[{reason.upper()}] Some sessions of user {user_id} could not be stopped")
        return list(results)

    async def logout(self, user_id: int) -> Optional[List[TerminationResult]]:
        """Stop the user's monitor and sessions; None when inside the cooldown."""
        if self.monitors is not None:
            await self.monitors.stop(user_id)
        if not self.cooldown.try_acquire(user_id):
            logger.info(f"Logout stop for user {user_id} suppressed by cooldown")
            return None
        return await self.stop_user_sessions(user_id, CompletionReason.LOGOUT)

    async def manual_stop(self, user_id: int) -> List[TerminationResult]:
        return await self.stop_user_sessions(user_id, CompletionReason.MANUAL_STOP)

    def beacon(self, user_id: int, reason: str = CompletionReason.APP_EXIT) -> bool:
        """Schedule a stop without waiting for it. False when suppressed."""
        if not self.cooldown.try_acquire(user_id):
            logger.info(f"Beacon ({reason}) for user {user_id} suppressed by cooldown")
            return False
        task = asyncio.create_task(self._beacon_stop(user_id, reason))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return True

    async def _beacon_stop(self, user_id: int, reason: str) -> None:
        try:
            if self.monitors is not None:
                await self.monitors.stop(user_id)
            await self.stop_user_sessions(user_id, reason)
        except Exception:
            logger.exception(f"Beacon stop ({reason}) for user {user_id} failed")

    async def drain(self) -> None:
        """Wait for scheduled beacon stops to finish."""
        if self._pending:
            await asyncio.gather(*list(self._pending))

    async def charger_fault(
        self,
        device_id: str,
        connector_id: Optional[int],
        code: str,
        transaction_id: Optional[str] = None,
    ) -> Optional[TerminationResult]:
        session = await self.find_session_for_device(device_id, connector_id, transaction_id)
        if session is None:
            logger.info(
                f"Charger fault {code} on {device_id}/{connector_id}: no matching active session"
            )
            return None
        logger.warning(f"Charger fault {code} on {device_id}/{connector_id}: closing session {session.id}")
        return await self.terminator.terminate(session, CompletionReason.charger_fault(code))

    async def find_session_for_device(
        self, device_id: str, connector_id: Optional[int], transaction_id: Optional[str] = None
    ) -> Optional[Session]:
        sessions = await self.repo.list_sessions(status=SessionStatus.active)
        if transaction_id:
            for s in sessions:
                if s.charge_txn_id == str(transaction_id):
                    return s
        for s in sessions:
            if device_id not in (str(s.slot_id), device_id_for_slot(s.slot_id)):
                continue
            if s.connector_id is not None:
                if connector_id is None or s.connector_id == connector_id:
                    return s
                continue
            slot = await self.repo.get_slot(s.slot_id)
            if slot and (connector_id is None or connector_id in slot.active_connectors):
                return s
        return None


class HeartbeatWatch:
    """Stop the sessions of users whose client stopped sending heartbeats."""

    def __init__(
        self,
        triggers: TerminationTriggers,
        settings: Settings,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.triggers = triggers
        self.timeout = settings.heartbeat_timeout_sec
        self._clock = clock
        self._last_beat: Dict[int, float] = {}

    def beat(self, user_id: int) -> None:
        self._last_beat[user_id] = self._clock()

    def forget(self, user_id: int) -> None:
        self._last_beat.pop(user_id, None)

    def expired(self) -> List[int]:
        now = self._clock()
        return [u for u, t in self._last_beat.items() if now - t > self.timeout]

    async def check(self) -> List[int]:
        lost = self.expired()
        for user_id in lost:
            self.forget(user_id)
            logger.warning(f"No heartbeat from user {user_id} for {self.timeout}s")
            try:
                await self.triggers.stop_user_sessions(user_id, CompletionReason.HEARTBEAT_LOST)
            except Exception:
                logger.exception(f"Stopping sessions of silent user {user_id} failed")
        return lost
