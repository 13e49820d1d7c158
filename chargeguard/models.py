from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SessionStatus(str, Enum):
    scheduled = "scheduled"
    active = "active"
    completed = "completed"
    cancelled = "cancelled"


TERMINAL_STATUSES = frozenset({SessionStatus.completed, SessionStatus.cancelled})


class CompletionReason:
    LOGOUT = "logout"
    APP_EXIT = "app_exit"
    TAB_CLOSE = "tab_close"
    MANUAL_STOP = "manual_stop"
    NO_POWER_CONSUMPTION = "no_power_consumption"
    SESSION_TIMEOUT = "session_timeout"
    COMMUNICATION_FAILURE = "communication_failure"
    CHARGER_REPORTED_STOP = "charger_reported_stop"
    HEARTBEAT_LOST = "heartbeat_lost"

    @staticmethod
    def charger_fault(code: str) -> str:
        return f"charger_fault_{code}"


# reasons a user asked for; these leave completion_reason empty
USER_REASONS = frozenset(
    {
        CompletionReason.LOGOUT,
        CompletionReason.APP_EXIT,
        CompletionReason.TAB_CLOSE,
        CompletionReason.MANUAL_STOP,
    }
)


class MeterSnapshot(BaseModel):
    """Last known charger reading. ``energy`` is always present, any other
    fields the charger sent are kept as-is."""

    model_config = ConfigDict(extra="allow")

    energy: float


class Station(BaseModel):
    id: int
    name: str = ""
    price_per_kwh: float = 0.0
    tax: float = 1.0


class Slot(BaseModel):
    id: int
    station_id: int
    no_of_connector: int = 1
    active_connectors: List[int] = Field(default_factory=list)


class Session(BaseModel):
    id: int
    user_id: int
    vehicle_id: Optional[int] = None
    station_id: int
    slot_id: int
    connector_id: Optional[int] = None
    status: SessionStatus = SessionStatus.active
    started_at: Optional[datetime] = None
    stopped_at: Optional[datetime] = None
    last_updated_at: Optional[datetime] = None
    initial_reading: Optional[float] = None
    final_reading: Optional[MeterSnapshot] = None
    power_consumed: Optional[float] = None
    final_amount: Optional[float] = None
    completion_reason: Optional[str] = None
    charge_txn_id: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def is_test(self, prefix: str) -> bool:
        return bool(self.charge_txn_id) and self.charge_txn_id.startswith(prefix)


class WalletTransaction(BaseModel):
    id: int
    user_id: int
    amount: float
    total_balance: float
    type: str = "debit"
    description: str = ""
    date: datetime = Field(default_factory=utcnow)
