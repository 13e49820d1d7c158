import asyncio

import pytest

from chargeguard.errors import RepositoryError
from chargeguard.gateway import device_id_for_slot
from chargeguard.models import CompletionReason, MeterSnapshot, SessionStatus
from chargeguard.repository import InMemoryRepository
from chargeguard.terminator import SessionTerminator, TerminationOutcome

from conftest import T0


@pytest.fixture
def terminator(repo, gateway, settings, clock):
    return SessionTerminator(repo, gateway, settings, clock)


@pytest.mark.asyncio
async def test_terminate_bills_fresh_reading(repo, gateway, terminator, clock):
    session = await repo.create_session(7, 1, 1, 1000, started_at=T0, charge_txn_id="TX1")
    gateway.set_energy(1, 6000)
    clock.advance(minutes=30, microseconds=123)

    result = await terminator.terminate(session, CompletionReason.SESSION_TIMEOUT)

    assert result.outcome == TerminationOutcome.completed
    assert result.final_amount == 59.00
    stored = await repo.get_session(session.id)
    assert stored.status == SessionStatus.completed
    assert stored.final_amount == 59.00
    assert stored.power_consumed == 5.0
    assert stored.final_reading.energy == 6000
    assert stored.completion_reason == "session_timeout"
    assert stored.stopped_at == clock.now.replace(microsecond=0)
    assert (await repo.get_slot(1)).active_connectors == []


@pytest.mark.asyncio
async def test_terminate_twice_bills_once(repo, gateway, terminator):
    session = await repo.create_session(7, 1, 1, 1000)
    gateway.set_energy(1, 6000)

    first = await terminator.terminate(session, CompletionReason.NO_POWER_CONSUMPTION)
    gateway.set_energy(1, 9000)
    second = await terminator.terminate(session, CompletionReason.SESSION_TIMEOUT)

    assert first.outcome == TerminationOutcome.completed
    assert second.outcome == TerminationOutcome.already_terminal
    stored = await repo.get_session(session.id)
    assert stored.final_amount == 59.00
    assert stored.completion_reason == "no_power_consumption"
    assert len(repo.wallet) == 1


@pytest.mark.asyncio
async def test_concurrent_terminations_complete_once(repo, gateway, terminator):
    session = await repo.create_session(7, 1, 1, 1000)
    gateway.set_energy(1, 6000)
    gateway.set_delay(1, 0.01)

    results = await asyncio.gather(
        terminator.terminate(session, CompletionReason.CHARGER_REPORTED_STOP),
        terminator.terminate(session, CompletionReason.NO_POWER_CONSUMPTION),
    )

    outcomes = sorted(r.outcome.value for r in results)
    assert outcomes == ["already_terminal", "completed"]
    assert len(repo.wallet) == 1
    assert repo.wallet[0].amount == 59.00


@pytest.mark.asyncio
async def test_negative_energy_bills_nothing(repo, gateway, terminator):
    session = await repo.create_session(7, 1, 1, 1000)
    gateway.set_energy(1, 200)

    result = await terminator.terminate(session, CompletionReason.SESSION_TIMEOUT)

    assert result.energy_kwh == 0
    assert result.final_amount == 0
    assert repo.wallet[0].description == "Charging session (no consumption)"


@pytest.mark.asyncio
async def test_falls_back_to_stored_final_reading(repo, terminator):
    session = await repo.create_session(7, 1, 1, 1000)
    await repo.attach_final_reading(session.id, MeterSnapshot(energy=3000, power=7.0))
    session = await repo.get_session(session.id)

    # no response scripted: the charger is unreachable
    result = await terminator.terminate(session, CompletionReason.COMMUNICATION_FAILURE)

    assert result.outcome == TerminationOutcome.completed
    assert result.final_amount == round(2 * 10 * 1.18, 2)
    stored = await repo.get_session(session.id)
    assert stored.final_reading.energy == 3000


@pytest.mark.asyncio
async def test_falls_back_to_initial_reading(repo, gateway, terminator):
    session = await repo.create_session(7, 1, 1, 1000)
    gateway.set_delay(1, 1)
    gateway.set_energy(1, 5000)

    result = await terminator.terminate(session, CompletionReason.COMMUNICATION_FAILURE)

    assert result.outcome == TerminationOutcome.completed
    assert result.final_amount == 0
    assert (await repo.get_session(session.id)).status == SessionStatus.completed


@pytest.mark.asyncio
async def test_releases_only_own_connector(repo, gateway, terminator):
    first = await repo.create_session(7, 1, 1, 1000)
    await repo.create_session(8, 1, 2, 1000)
    gateway.set_energy(1, 1000)

    await terminator.terminate(first, CompletionReason.SESSION_TIMEOUT)

    assert (await repo.get_slot(1)).active_connectors == [2]


@pytest.mark.asyncio
async def test_legacy_session_without_connector_on_shared_slot_leaks(repo, gateway, terminator):
    legacy = await repo.create_session(7, 1, None, 1000)
    await repo.create_session(8, 1, 2, 1000)
    await repo.create_session(9, 1, 1, 1000)
    gateway.set_energy(1, 1000)

    result = await terminator.terminate(legacy, CompletionReason.SESSION_TIMEOUT)

    assert result.outcome == TerminationOutcome.slot_leak
    assert (await repo.get_session(legacy.id)).status == SessionStatus.completed
    assert sorted((await repo.get_slot(1)).active_connectors) == [1, 2]


class FlakySlotRepository(InMemoryRepository):
    async def release_connector(self, slot_id, connector_id):
        raise ConnectionError("store unreachable")


@pytest.mark.asyncio
async def test_failed_slot_release_keeps_session_billed(gateway, settings, clock):
    repo = FlakySlotRepository()
    station = await repo.add_station("S", price_per_kwh=10, tax=1.18)
    slot = await repo.add_slot(station.id)
    session = await repo.create_session(7, slot.id, 1, 1000)
    gateway.set_energy(slot.id, 6000)

    result = await SessionTerminator(repo, gateway, settings, clock).terminate(
        session, CompletionReason.SESSION_TIMEOUT
    )

    assert result.outcome == TerminationOutcome.slot_leak
    assert result.terminal
    stored = await repo.get_session(session.id)
    assert stored.status == SessionStatus.completed
    assert stored.final_amount == 59.00


class WalletDownRepository(InMemoryRepository):
    async def add_wallet_entry(self, user_id, amount, type, description):
        raise ConnectionError("wallet store unreachable")


@pytest.mark.asyncio
async def test_failed_wallet_write_still_releases_connector(gateway, settings, clock):
    repo = WalletDownRepository()
    station = await repo.add_station("S", price_per_kwh=10, tax=1.18)
    slot = await repo.add_slot(station.id)
    session = await repo.create_session(7, slot.id, 1, 1000)
    gateway.set_energy(slot.id, 6000)

    result = await SessionTerminator(repo, gateway, settings, clock).terminate(
        session, CompletionReason.SESSION_TIMEOUT
    )

    assert result.outcome == TerminationOutcome.completed
    assert result.final_amount == 59.00
    assert (await repo.get_session(session.id)).status == SessionStatus.completed
    assert (await repo.get_slot(slot.id)).active_connectors == []
    assert repo.wallet == []


class BrokenWriteRepository(InMemoryRepository):
    async def complete_session(self, session_id, **fields):
        raise RepositoryError("write rejected")


@pytest.mark.asyncio
async def test_failed_billing_write_reports_failure(gateway, settings, clock):
    repo = BrokenWriteRepository()
    station = await repo.add_station("S", price_per_kwh=10)
    slot = await repo.add_slot(station.id)
    session = await repo.create_session(7, slot.id, 1, 1000)
    gateway.set_energy(slot.id, 6000)

    result = await SessionTerminator(repo, gateway, settings, clock).terminate(
        session, CompletionReason.SESSION_TIMEOUT
    )

    assert result.outcome == TerminationOutcome.failed
    assert (await repo.get_slot(slot.id)).active_connectors == [1]


@pytest.mark.asyncio
async def test_user_stop_sends_remote_stop_and_leaves_reason_empty(repo, gateway, terminator):
    session = await repo.create_session(7, 1, 2, 1000, charge_txn_id="TX7")
    gateway.set_energy(1, 2000)

    result = await terminator.terminate(session, CompletionReason.LOGOUT, stop_charger=True)

    assert result.outcome == TerminationOutcome.completed
    assert gateway.stop_calls == [(device_id_for_slot(1), 2, "TX7", "7")]
    assert (await repo.get_session(session.id)).completion_reason is None


@pytest.mark.asyncio
async def test_test_sessions_skip_remote_stop(repo, gateway, terminator):
    session = await repo.create_session(7, 1, 1, 1000, charge_txn_id="test_abc")
    gateway.set_energy(1, 1000)

    await terminator.terminate(session, CompletionReason.MANUAL_STOP, stop_charger=True)

    assert gateway.stop_calls == []


@pytest.mark.asyncio
async def test_reported_snapshot_skips_fresh_reading(repo, gateway, terminator):
    session = await repo.create_session(7, 1, 1, 1000)

    result = await terminator.terminate(
        session,
        CompletionReason.CHARGER_REPORTED_STOP,
        final_reading=MeterSnapshot(energy=6000),
    )

    assert result.final_amount == 59.00
    assert gateway.reading_calls == []


@pytest.mark.asyncio
async def test_wallet_debit_tracks_balance(repo, gateway, terminator):
    await repo.add_wallet_entry(7, 100.0, "credit", "Top up")
    session = await repo.create_session(7, 1, 1, 1000)
    gateway.set_energy(1, 6000)

    await terminator.terminate(session, CompletionReason.MANUAL_STOP)

    debit = repo.wallet[-1]
    assert debit.type == "debit"
    assert debit.amount == 59.00
    assert debit.total_balance == pytest.approx(41.0)
