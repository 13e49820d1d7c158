"""Command transport to the charger integration layer.

Every command is a single POST of ``{deviceId, command, payload}`` to one
endpoint.  The gateway performs exactly one request per call and never
retries; callers decide on deadlines (see :func:`read_with_deadline`) and on
what a failure means in their context.
"""

from __future__ import annotations

import asyncio
import base64
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import httpx
from ocpp.v16.enums import ChargePointStatus

from .errors import ChargerFault, CommunicationFailure, ReadingTimeout
from .models import MeterSnapshot, Session

logger = logging.getLogger(__name__)

FAULT_STATUSES = (ChargePointStatus.faulted, ChargePointStatus.unavailable)


class ChargerCommand:
    STOP = "RemoteStopTransaction"
    READING = "RemoteMeterValue"


def device_id_for_slot(slot_id: int | str) -> str:
    """Base64 of the slot id without ``=`` padding."""
    return base64.b64encode(str(slot_id).encode()).decode().rstrip("=")


def _to_float(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


@dataclass
class Reading:
    """A meter reading as returned by the charger endpoint."""

    energy: Optional[float]
    raw: Dict[str, Any] = field(default_factory=dict)
    readings: Dict[str, Any] = field(default_factory=dict)
    energy_stop: Optional[float] = None
    stopped: bool = False

    def snapshot(self) -> Optional[MeterSnapshot]:
        """Structured snapshot of this reading, or None without an energy value.

        When the charger reported a stop, its ``energyStop`` counter wins over
        the live ``energy`` field.
        """
        energy = self.energy_stop if self.energy_stop is not None else self.energy
        if energy is None:
            return None
        extra = {k: v for k, v in self.readings.items() if k != "energy"}
        return MeterSnapshot(energy=energy, **extra)


def parse_reading(data: Any) -> Reading:
    if not isinstance(data, dict):
        raise CommunicationFailure(f"Unexpected reading payload: {data!r}")

    result = data.get("result") if isinstance(data.get("result"), dict) else data
    for source in (data, result):
        status = source.get("status")
        error_code = source.get("errorCode")
        if status in FAULT_STATUSES or error_code:
            raise ChargerFault(str(error_code or status))

    readings = result.get("readings") if isinstance(result.get("readings"), dict) else result
    energy = _to_float(readings.get("energy"))
    if energy is None:
        energy = _to_float(result.get("energy"))
    return Reading(
        energy=energy,
        raw=data,
        readings=dict(readings),
        energy_stop=_to_float(result.get("energyStop")),
        stopped="energyStop" in result,
    )


class ReadingGateway:
    """HTTP client for the charger command endpoint."""

    def __init__(self, url: str, client: httpx.AsyncClient | None = None) -> None:
        self.url = url
        # deadlines are imposed by callers; this is only a backstop
        self._client = client or httpx.AsyncClient(timeout=30.0)

    async def close(self) -> None:
        await self._client.aclose()

    async def send_command(self, device_id: str, command: str, payload: dict) -> Any:
        body = {"deviceId": device_id, "command": command, "payload": payload}
        logger.debug(f"→ {command} to {device_id}: {payload}")
        try:
            resp = await self._client.post(self.url, json=body)
        except httpx.HTTPError as e:
            raise CommunicationFailure(f"{command} to {device_id} failed: {e}") from e
        if resp.is_error:
            raise CommunicationFailure(
                f"{command} to {device_id} -> {resp.status_code} {resp.reason_phrase}"
            )
        try:
            return resp.json()
        except ValueError as e:
            raise CommunicationFailure(f"{command} to {device_id}: invalid JSON") from e

    async def get_reading(self, device_id: str, id_tag: str, connector_id: int = 1) -> Reading:
        data = await self.send_command(
            device_id,
            ChargerCommand.READING,
            {"connectorId": connector_id, "idTag": id_tag},
        )
        return parse_reading(data)

    async def remote_stop(
        self, device_id: str, connector_id: int, transaction_id: str, id_tag: str
    ) -> Any:
        return await self.send_command(
            device_id,
            ChargerCommand.STOP,
            {
                "idTag": id_tag,
                "connectorId": str(connector_id),
                "transactionId": transaction_id,
            },
        )


async def read_with_deadline(gateway, session: Session, timeout: float) -> Reading:
    """Read the meter for ``session``'s slot, giving up after ``timeout`` seconds."""
    try:
        return await asyncio.wait_for(
            gateway.get_reading(
                device_id_for_slot(session.slot_id),
                str(session.user_id),
                session.connector_id or 1,
            ),
            timeout=timeout,
        )
    except asyncio.TimeoutError as e:
        raise ReadingTimeout(
            f"No reading for session {session.id} within {timeout}s"
        ) from e
