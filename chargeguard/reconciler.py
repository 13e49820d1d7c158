"""Supervisory sweep over active sessions.

Each sweep takes a snapshot of the active sessions, reads every charger once
with a short deadline and force-completes the sessions that should no longer
be active.  Nothing is remembered between sweeps; sessions created while a
sweep runs are picked up by the next one.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from .config import Settings
from .errors import GatewayError
from .gateway import read_with_deadline
from .models import CompletionReason, Session, SessionStatus, utcnow
from .repository import SessionRepository
from .terminator import SessionTerminator, TerminationResult

logger = logging.getLogger(__name__)


def classify(duration: timedelta, energy_diff: float, settings: Settings) -> Optional[str]:
    """Staleness rules for a session whose charger answered. First match wins."""
    seconds = duration.total_seconds()
    if seconds > settings.no_power_after_sec and energy_diff <= settings.no_power_max_delta:
        return CompletionReason.NO_POWER_CONSUMPTION
    if seconds > settings.stale_after_sec and energy_diff < settings.stale_min_delta:
        return CompletionReason.SESSION_TIMEOUT
    return None


@dataclass
class SweepReport:
    scanned: int = 0
    skipped: int = 0
    completed: int = 0
    errors: int = 0
    results: List[TerminationResult] = field(default_factory=list)


class SessionReconciler:
    def __init__(
        self,
        repo: SessionRepository,
        gateway,
        terminator: SessionTerminator,
        settings: Settings,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.repo = repo
        self.gateway = gateway
        self.terminator = terminator
        self.settings = settings
        self.clock = clock

    async def sweep(self) -> SweepReport:
        sessions = await self.repo.list_sessions(status=SessionStatus.active)
        prefix = self.settings.test_txn_prefix
        candidates = [s for s in sessions if not s.is_test(prefix)]
        report = SweepReport(scanned=len(candidates), skipped=len(sessions) - len(candidates))
        if not candidates:
            return report

        limit = asyncio.Semaphore(max(1, self.settings.sweep_concurrency))

        async def guarded(session: Session) -> Optional[TerminationResult]:
            async with limit:
                return await self.reconcile(session)

        outcomes = await asyncio.gather(
            *(guarded(s) for s in candidates), return_exceptions=True
        )
        for session, outcome in zip(candidates, outcomes):
            if isinstance(outcome, BaseException):
                report.errors += 1
                logger.error(f"Reconciling session {session.id} failed: {outcome!r}")
            elif outcome is not None:
                report.results.append(outcome)
                if outcome.closed_here:
                    report.completed += 1
        if report.completed:
            logger.info(f"Sweep auto-completed {report.completed} of {report.scanned} sessions")
        return report

    async def reconcile(self, session: Session) -> Optional[TerminationResult]:
        """Evaluate one session and terminate it when a rule matches."""
        reason = await self.evaluate(session)
        if reason is None:
            return None
        logger.info(f"Force-completing session {session.id}: {reason}")
        return await self.terminator.terminate(session, reason)

    async def evaluate(self, session: Session) -> Optional[str]:
        duration = self.clock() - (session.started_at or self.clock())
        try:
            reading = await read_with_deadline(
                self.gateway, session, self.settings.sweep_reading_timeout_sec
            )
        except GatewayError as e:
            # a fault status counts as a failed reading here; fault reasons come from the webhook
            logger.warning(f"Session {session.id}: no usable reading: {e}")
            return CompletionReason.COMMUNICATION_FAILURE

        if reading.energy is None:
            return None
        energy_diff = reading.energy - (session.initial_reading or 0.0)
        return classify(duration, energy_diff, self.settings)
