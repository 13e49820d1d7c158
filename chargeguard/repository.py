"""Record store interface for sessions, slots, stations and wallet entries.

The reconciliation core only talks to :class:`SessionRepository`.  Writes that
decide billing are conditional: :meth:`SessionRepository.complete_session`
only applies while the session is still ``active`` and returns ``None``
otherwise, so racing terminators cannot bill twice.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from datetime import datetime
from itertools import count
from typing import Dict, List, Optional

from .errors import RecordNotFound, SessionConflict
from .models import (
    MeterSnapshot,
    Session,
    SessionStatus,
    Slot,
    Station,
    WalletTransaction,
    utcnow,
)


class SessionRepository(ABC):
    """Narrow interface over the backing store."""

    @abstractmethod
    async def get_session(self, session_id: int) -> Optional[Session]:
        """Return the current state of a session."""

    @abstractmethod
    async def list_sessions(
        self, status: Optional[SessionStatus] = None, user_id: Optional[int] = None
    ) -> List[Session]:
        """Return sessions matching all given filters."""

    @abstractmethod
    async def attach_final_reading(
        self, session_id: int, snapshot: MeterSnapshot
    ) -> Optional[Session]:
        """Store ``snapshot`` as ``final_reading`` if the session is still active."""

    @abstractmethod
    async def complete_session(
        self,
        session_id: int,
        *,
        stopped_at: datetime,
        final_amount: float,
        power_consumed: float,
        completion_reason: Optional[str] = None,
        final_reading: Optional[MeterSnapshot] = None,
    ) -> Optional[Session]:
        """Move an active session to ``completed``; ``None`` if it was not active."""

    @abstractmethod
    async def get_station(self, station_id: int) -> Optional[Station]:
        """Return a station with its pricing."""

    @abstractmethod
    async def get_slot(self, slot_id: int) -> Optional[Slot]:
        """Return a slot with its active connectors."""

    @abstractmethod
    async def release_connector(self, slot_id: int, connector_id: int) -> Slot:
        """Remove ``connector_id`` from the slot's active connectors."""

    @abstractmethod
    async def add_wallet_entry(
        self, user_id: int, amount: float, type: str, description: str
    ) -> WalletTransaction:
        """Append a wallet ledger entry and update the running balance.

        A ``debit`` lowers the balance by ``amount``, a ``credit`` raises it.
        The balance read and the append happen as one step.
        """


class InMemoryRepository(SessionRepository):
    """Process-local store.

    Returned models are copies, so callers only ever hold snapshots and all
    mutation goes through the methods below under a single lock.
    """

    def __init__(self) -> None:
        self.stations: Dict[int, Station] = {}
        self.slots: Dict[int, Slot] = {}
        self.sessions: Dict[int, Session] = {}
        self.wallet: List[WalletTransaction] = []
        self._lock = asyncio.Lock()
        self._station_seq = count(1)
        self._slot_seq = count(1)
        self._session_seq = count(1)
        self._wallet_seq = count(1)

    # -------- seeding --------
    async def add_station(self, name: str, price_per_kwh: float, tax: float = 1.0) -> Station:
        async with self._lock:
            station = Station(
                id=next(self._station_seq), name=name, price_per_kwh=price_per_kwh, tax=tax
            )
            self.stations[station.id] = station
            return station.model_copy(deep=True)

    async def add_slot(self, station_id: int, no_of_connector: int = 1) -> Slot:
        async with self._lock:
            if station_id not in self.stations:
                raise RecordNotFound(f"Station {station_id} not found")
            slot = Slot(id=next(self._slot_seq), station_id=station_id, no_of_connector=no_of_connector)
            self.slots[slot.id] = slot
            return slot.model_copy(deep=True)

    async def create_session(
        self,
        user_id: int,
        slot_id: int,
        connector_id: Optional[int],
        initial_reading: float,
        *,
        vehicle_id: Optional[int] = None,
        started_at: Optional[datetime] = None,
        charge_txn_id: Optional[str] = None,
    ) -> Session:
        async with self._lock:
            slot = self.slots.get(slot_id)
            if slot is None:
                raise RecordNotFound(f"Slot {slot_id} not found")
            if any(
                s.user_id == user_id and s.status == SessionStatus.active
                for s in self.sessions.values()
            ):
                raise SessionConflict(f"User {user_id} already has an active session")
            now = utcnow()
            session = Session(
                id=next(self._session_seq),
                user_id=user_id,
                vehicle_id=vehicle_id,
                station_id=slot.station_id,
                slot_id=slot_id,
                connector_id=connector_id,
                status=SessionStatus.active,
                started_at=started_at or now,
                last_updated_at=now,
                initial_reading=initial_reading,
                charge_txn_id=charge_txn_id,
            )
            self.sessions[session.id] = session
            if connector_id is not None and connector_id not in slot.active_connectors:
                slot.active_connectors.append(connector_id)
            return session.model_copy(deep=True)

    # -------- reads --------
    async def get_session(self, session_id: int) -> Optional[Session]:
        session = self.sessions.get(session_id)
        return session.model_copy(deep=True) if session else None

    async def list_sessions(
        self, status: Optional[SessionStatus] = None, user_id: Optional[int] = None
    ) -> List[Session]:
        return [
            s.model_copy(deep=True)
            for s in self.sessions.values()
            if (status is None or s.status == status)
            and (user_id is None or s.user_id == user_id)
        ]

    async def get_station(self, station_id: int) -> Optional[Station]:
        station = self.stations.get(station_id)
        return station.model_copy(deep=True) if station else None

    async def get_slot(self, slot_id: int) -> Optional[Slot]:
        slot = self.slots.get(slot_id)
        return slot.model_copy(deep=True) if slot else None

    # -------- conditional writes --------
    async def attach_final_reading(
        self, session_id: int, snapshot: MeterSnapshot
    ) -> Optional[Session]:
        async with self._lock:
            session = self.sessions.get(session_id)
            if session is None or session.status != SessionStatus.active:
                return None
            session.final_reading = snapshot.model_copy(deep=True)
            session.last_updated_at = utcnow()
            return session.model_copy(deep=True)

    async def complete_session(
        self,
        session_id: int,
        *,
        stopped_at: datetime,
        final_amount: float,
        power_consumed: float,
        completion_reason: Optional[str] = None,
        final_reading: Optional[MeterSnapshot] = None,
    ) -> Optional[Session]:
        async with self._lock:
            session = self.sessions.get(session_id)
            if session is None:
                raise RecordNotFound(f"Session {session_id} not found")
            if session.status != SessionStatus.active:
                return None
            session.status = SessionStatus.completed
            session.stopped_at = stopped_at
            session.final_amount = final_amount
            session.power_consumed = power_consumed
            session.completion_reason = completion_reason
            if final_reading is not None:
                session.final_reading = final_reading.model_copy(deep=True)
            session.last_updated_at = utcnow()
            return session.model_copy(deep=True)

    async def release_connector(self, slot_id: int, connector_id: int) -> Slot:
        async with self._lock:
            slot = self.slots.get(slot_id)
            if slot is None:
                raise RecordNotFound(f"Slot {slot_id} not found")
            slot.active_connectors = [c for c in slot.active_connectors if c != connector_id]
            return slot.model_copy(deep=True)

    # -------- wallet --------
    def _balance(self, user_id: int) -> float:
        for entry in reversed(self.wallet):
            if entry.user_id == user_id:
                return entry.total_balance
        return 0.0

    async def add_wallet_entry(
        self, user_id: int, amount: float, type: str, description: str
    ) -> WalletTransaction:
        async with self._lock:
            balance = self._balance(user_id)
            balance = balance - amount if type == "debit" else balance + amount
            entry = WalletTransaction(
                id=next(self._wallet_seq),
                user_id=user_id,
                amount=amount,
                total_balance=round(balance, 2),
                type=type,
                description=description,
            )
            self.wallet.append(entry)
            return entry.model_copy(deep=True)
