import asyncio

import pytest

from chargeguard.errors import SessionConflict
from chargeguard.models import MeterSnapshot, SessionStatus

from conftest import T0


@pytest.mark.asyncio
async def test_create_session_occupies_connector(repo):
    session = await repo.create_session(7, 1, 2, 1000, started_at=T0)
    slot = await repo.get_slot(1)
    assert session.status == SessionStatus.active
    assert session.stopped_at is None
    assert slot.active_connectors == [2]


@pytest.mark.asyncio
async def test_one_active_session_per_user(repo):
    await repo.create_session(7, 1, 1, 1000)
    with pytest.raises(SessionConflict):
        await repo.create_session(7, 2, 1, 500)


@pytest.mark.asyncio
async def test_complete_is_conditional(repo):
    session = await repo.create_session(7, 1, 1, 1000)
    first = await repo.complete_session(
        session.id, stopped_at=T0, final_amount=12.5, power_consumed=1.0
    )
    second = await repo.complete_session(
        session.id, stopped_at=T0, final_amount=99.0, power_consumed=9.0
    )
    assert first.status == SessionStatus.completed
    assert second is None
    stored = await repo.get_session(session.id)
    assert stored.final_amount == 12.5


@pytest.mark.asyncio
async def test_attach_final_reading_only_while_active(repo):
    session = await repo.create_session(7, 1, 1, 1000)
    attached = await repo.attach_final_reading(session.id, MeterSnapshot(energy=1500))
    assert attached.final_reading.energy == 1500
    await repo.complete_session(session.id, stopped_at=T0, final_amount=0, power_consumed=0)
    assert await repo.attach_final_reading(session.id, MeterSnapshot(energy=1800)) is None


@pytest.mark.asyncio
async def test_release_connector_keeps_others(repo):
    await repo.create_session(7, 1, 1, 1000)
    await repo.create_session(8, 1, 2, 2000)
    slot = await repo.release_connector(1, 1)
    assert slot.active_connectors == [2]


@pytest.mark.asyncio
async def test_concurrent_wallet_debits_keep_balance(repo):
    await repo.add_wallet_entry(7, 100.0, "credit", "Top up")

    await asyncio.gather(
        repo.add_wallet_entry(7, 30.0, "debit", "Charge payment"),
        repo.add_wallet_entry(7, 20.0, "debit", "Charge payment"),
        repo.add_wallet_entry(8, 5.0, "debit", "Charge payment"),
    )

    balances = [e.total_balance for e in repo.wallet if e.user_id == 7]
    assert balances == [100.0, 70.0, 50.0]
    assert [e.total_balance for e in repo.wallet if e.user_id == 8] == [-5.0]


@pytest.mark.asyncio
async def test_returned_models_are_snapshots(repo):
    session = await repo.create_session(7, 1, 1, 1000)
    session.status = SessionStatus.cancelled
    stored = await repo.get_session(session.id)
    assert stored.status == SessionStatus.active
