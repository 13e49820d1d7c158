"""Finalize charging sessions.

Every way a session can end (user logout, app exit, manual stop, charger
fault, charger-reported stop, reconciliation sweep) ends up in
:meth:`SessionTerminator.terminate`.  The completion write is conditional on
the session still being active, so concurrent callers for the same session
produce one bill and one ``stopped_at``.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, Optional, Tuple

from ocpp.v16.enums import RemoteStartStopStatus

from .billing import energy_delivered_kwh, final_amount
from .config import Settings
from .errors import GatewayError, RepositoryError
from .gateway import device_id_for_slot, read_with_deadline
from .models import USER_REASONS, MeterSnapshot, Session, utcnow
from .repository import SessionRepository

logger = logging.getLogger(__name__)


class TerminationOutcome(str, Enum):
    completed = "completed"
    already_terminal = "already_terminal"
    # session is completed and billed but its connector is still marked busy
    slot_leak = "slot_leak"
    failed = "failed"


@dataclass
class TerminationResult:
    session_id: int
    outcome: TerminationOutcome
    reason: Optional[str] = None
    final_amount: Optional[float] = None
    energy_kwh: Optional[float] = None

    @property
    def closed_here(self) -> bool:
        """True if this call performed the transition to completed."""
        return self.outcome in (TerminationOutcome.completed, TerminationOutcome.slot_leak)

    @property
    def terminal(self) -> bool:
        return self.outcome != TerminationOutcome.failed


class SessionTerminator:
    def __init__(
        self,
        repo: SessionRepository,
        gateway,
        settings: Settings,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.repo = repo
        self.gateway = gateway
        self.settings = settings
        self.clock = clock

    async def terminate(
        self,
        session: Session,
        reason: Optional[str] = None,
        *,
        stop_charger: bool = False,
        final_reading: Optional[MeterSnapshot] = None,
    ) -> TerminationResult:
        """Complete ``session`` and release its connector. Never raises."""
        try:
            return await self._terminate(session.id, reason, stop_charger, final_reading)
        except Exception:
            logger.exception(f"Terminating session {session.id} ({reason}) failed")
            return TerminationResult(session.id, TerminationOutcome.failed, reason)

    async def _terminate(
        self,
        session_id: int,
        reason: Optional[str],
        stop_charger: bool,
        reported: Optional[MeterSnapshot],
    ) -> TerminationResult:
        session = await self.repo.get_session(session_id)
        if session is None:
            logger.warning(f"Session {session_id} not found; nothing to terminate")
            return TerminationResult(session_id, TerminationOutcome.failed, reason)
        if session.is_terminal:
            logger.info(f"Session {session_id} already {session.status.value}; skipping")
            return TerminationResult(session_id, TerminationOutcome.already_terminal, reason)

        is_test = session.is_test(self.settings.test_txn_prefix)
        if stop_charger and not is_test:
            await self._request_stop(session)

        energy, snapshot = await self.last_known_energy(session, reported)
        initial = session.initial_reading or 0.0
        energy_kwh = energy_delivered_kwh(initial, energy)

        station = await self.repo.get_station(session.station_id)
        price = station.price_per_kwh if station else 0.0
        tax = station.tax if station and station.tax else 1.0
        amount = final_amount(energy_kwh, price, tax)
        logger.info(
            f"Session {session_id} calculation: initial={initial}, final={energy}, "
            f"kWh={energy_kwh}, price={price}, tax={tax}, amount={amount}"
        )

        stored_reason = None if reason in USER_REASONS else reason
        try:
            completed = await self.repo.complete_session(
                session_id,
                stopped_at=self.clock().replace(microsecond=0),
                final_amount=amount,
                power_consumed=energy_kwh,
                completion_reason=stored_reason,
                final_reading=snapshot,
            )
        except RepositoryError:
            logger.exception(f"Billing write failed for session {session_id}; left active")
            return TerminationResult(session_id, TerminationOutcome.failed, reason)
        if completed is None:
            logger.info(f"Session {session_id} was completed concurrently; not billed again")
            return TerminationResult(session_id, TerminationOutcome.already_terminal, reason)

        logger.info(f"Session {session_id} completed ({reason or 'user stop'}), amount={amount}")
        await self._record_debit(completed)

        outcome = TerminationOutcome.completed
        if not await self._release_connector(completed):
            outcome = TerminationOutcome.slot_leak
        return TerminationResult(session_id, outcome, reason, amount, energy_kwh)

    async def last_known_energy(
        self, session: Session, reported: Optional[MeterSnapshot] = None
    ) -> Tuple[float, Optional[MeterSnapshot]]:
        """First available of: charger-reported snapshot, fresh reading,
        stored ``final_reading``, ``initial_reading``."""
        if reported is not None:
            return reported.energy, reported
        try:
            reading = await read_with_deadline(
                self.gateway, session, self.settings.final_reading_timeout_sec
            )
        except GatewayError as e:
            logger.warning(f"Final reading for session {session.id} unavailable: {e}")
        except Exception:
            logger.exception(f"Final reading for session {session.id} crashed")
        else:
            snapshot = reading.snapshot()
            if snapshot is not None:
                return snapshot.energy, snapshot
        if session.final_reading is not None:
            return session.final_reading.energy, None
        return session.initial_reading or 0.0, None

    async def _request_stop(self, session: Session) -> None:
        connector = session.connector_id or 1
        try:
            resp = await asyncio.wait_for(
                self.gateway.remote_stop(
                    device_id_for_slot(session.slot_id),
                    connector,
                    session.charge_txn_id or "",
                    str(session.user_id),
                ),
                timeout=self.settings.remote_stop_timeout_sec,
            )
        except (GatewayError, asyncio.TimeoutError) as e:
            logger.warning(f"RemoteStopTransaction for session {session.id} failed: {e!r}")
            return
        result = resp.get("result") if isinstance(resp, dict) else None
        status = result.get("status") if isinstance(result, dict) else None
        if status != RemoteStartStopStatus.accepted:
            logger.warning(f"RemoteStopTransaction for session {session.id} rejected: {status}")

    async def _record_debit(self, session: Session) -> None:
        amount = session.final_amount or 0.0
        try:
            await self.repo.add_wallet_entry(
                session.user_id,
                amount,
                "debit",
                "Charge payment" if amount > 0 else "Charging session (no consumption)",
            )
        except Exception:
            logger.exception(f"Wallet debit for session {session.id} not recorded")

    async def _release_connector(self, session: Session) -> bool:
        connector = session.connector_id
        try:
            if connector is None:
                slot = await self.repo.get_slot(session.slot_id)
                if slot is None or len(slot.active_connectors) != 1:
                    logger.error(
                        f"SLOT LEAK: session {session.id} has no connector id and slot "
                        f"{session.slot_id} has connectors "
                        f"{slot.active_connectors if slot else None}; not releasing"
                    )
                    return False
                connector = slot.active_connectors[0]
            await self.repo.release_connector(session.slot_id, connector)
        except Exception:
            logger.exception(
                f"SLOT LEAK: releasing connector {connector} on slot {session.slot_id} "
                f"for completed session {session.id} failed"
            )
            return False
        return True
