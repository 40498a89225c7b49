import asyncio
from decimal import Decimal

import pytest
from sqlalchemy import update

from app.core.errors import ConflictError
from app.models import Vehicle
from app.models.v3 import VehicleStatus
from app.services import settlement, order_state
from app.services.locks import KeyedLocks, vehicle_locks, wallet_locks, order_locks

from helpers import fund, balance_of, ledger_sum, order_count, vehicle_status


async def _book_in_own_session(session_factory, customer_id, vehicle_id, start, end, payment_method=None):
    async with session_factory() as session:
        return await settlement.book(session, customer_id, vehicle_id, start, end,
                                     payment_method=payment_method)


async def test_same_vehicle_booked_once(db, world, session_factory):
    results = await asyncio.gather(
        _book_in_own_session(session_factory, world.customer.id, world.vehicle.id, world.start, world.end),
        _book_in_own_session(session_factory, world.other.id, world.vehicle.id, world.start, world.end),
    )
    assert sorted(r.success for r in results) == [False, True]
    failed = next(r for r in results if not r.success)
    assert failed.error == "conflict"
    assert await order_count(db) == 1
    assert await vehicle_status(db, world.vehicle.id) == VehicleStatus.RENTED


async def test_wallet_cannot_be_overdrawn(db, world, session_factory):
    await fund(db, world.customer.id, 4)
    results = await asyncio.gather(
        _book_in_own_session(session_factory, world.customer.id, world.vehicle.id, world.start, world.end,
                             payment_method="WALLET"),
        _book_in_own_session(session_factory, world.customer.id, world.spare.id, world.start, world.end,
                             payment_method="WALLET"),
    )
    assert sorted(r.success for r in results) == [False, True]
    failed = next(r for r in results if not r.success)
    assert failed.error == "insufficient_funds"
    assert await balance_of(db, world.customer.id) == Decimal("0")
    assert await ledger_sum(db, world.customer.id) == Decimal("0")
    assert await order_count(db) == 1


async def test_concurrent_cancel_refunds_once(db, world, session_factory):
    await fund(db, world.customer.id, 10)
    booked = await settlement.book(db, world.customer.id, world.vehicle.id, world.start, world.end,
                                   payment_method="WALLET")
    order_id = booked.data.order.id

    async def cancel():
        async with session_factory() as session:
            return await settlement.cancel(session, order_id, world.customer.id)

    results = await asyncio.gather(cancel(), cancel())
    assert sorted(r.success for r in results) == [False, True]
    assert await balance_of(db, world.customer.id) == Decimal("10")


async def test_occupy_rented_vehicle_conflicts(db, world):
    await db.execute(
        update(Vehicle).where(Vehicle.id == world.vehicle.id).values(status=VehicleStatus.RENTED)
    )
    await db.commit()
    with pytest.raises(ConflictError):
        await order_state.occupy_vehicle(db, world.vehicle.id)


async def test_locks_are_released(db, world, session_factory):
    await fund(db, world.customer.id, 4)
    await asyncio.gather(
        _book_in_own_session(session_factory, world.customer.id, world.vehicle.id, world.start, world.end,
                             payment_method="WALLET"),
        _book_in_own_session(session_factory, world.customer.id, world.spare.id, world.start, world.end,
                             payment_method="WALLET"),
    )
    assert len(vehicle_locks) == 0
    assert len(wallet_locks) == 0
    assert len(order_locks) == 0


async def test_keyed_locks_serialize_same_key():
    locks = KeyedLocks("test")
    events = []

    async def worker(name, key):
        async with locks.hold(key):
            events.append(f"{name}-in")
            await asyncio.sleep(0.01)
            events.append(f"{name}-out")

    await asyncio.gather(worker("a", 1), worker("b", 1))
    assert events in (["a-in", "a-out", "b-in", "b-out"], ["b-in", "b-out", "a-in", "a-out"])
    assert len(locks) == 0


async def test_keyed_locks_do_not_block_other_keys():
    locks = KeyedLocks("test")
    events = []

    async def worker(name, key):
        async with locks.hold(key):
            events.append(f"{name}-in")
            await asyncio.sleep(0.01)
            events.append(f"{name}-out")

    await asyncio.gather(worker("a", 1), worker("b", 2))
    assert events[:2] == ["a-in", "b-in"]
