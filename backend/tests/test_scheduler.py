from datetime import datetime, timedelta

from sqlalchemy import select

from app.core.config import settings
from app.models import Payment
from app.models.v3 import OrderStatus, VehicleStatus, PaymentStatus
from app.services import settlement, order_state, scheduler

from helpers import fund, vehicle_status, signed_callback


def _later():
    return datetime.utcnow() + timedelta(minutes=settings.PENDING_ORDER_EXPIRE_MINUTES + 1)


async def test_stale_pending_order_is_canceled(db, world, session_factory):
    booked = await settlement.book(db, world.customer.id, world.vehicle.id, world.start, world.end)
    order_id = booked.data.order.id

    assert await scheduler.expire_pending_orders(session_factory, now=_later()) == 1

    order = await order_state.load_order(db, order_id)
    assert order.status == OrderStatus.CANCELED
    assert order.flows[-1].flow_type == "expired"
    assert await vehicle_status(db, world.vehicle.id) == VehicleStatus.AVAILABLE


async def test_fresh_and_confirmed_orders_are_kept(db, world, session_factory):
    fresh = await settlement.book(db, world.customer.id, world.vehicle.id, world.start, world.end)
    fresh_id = fresh.data.order.id
    assert await scheduler.expire_pending_orders(session_factory) == 0

    await fund(db, world.other.id, 10)
    confirmed = await settlement.book(db, world.other.id, world.spare.id, world.start, world.end,
                                      payment_method="WALLET")
    confirmed_id = confirmed.data.order.id

    assert await scheduler.find_expired_orders(db, now=_later()) == [fresh_id]
    assert await scheduler.expire_pending_orders(session_factory, now=_later()) == 1

    kept = await order_state.load_order(db, confirmed_id)
    assert kept.status == OrderStatus.CONFIRMED


async def test_pending_gateway_payment_is_voided(db, world, session_factory, gateway):
    booked = await settlement.book(db, world.customer.id, world.vehicle.id, world.start, world.end,
                                   payment_method="GATEWAY", gateway=gateway)
    payment_no = booked.data.payment.payment_no

    assert await scheduler.expire_pending_orders(session_factory, now=_later()) == 1

    result = await db.execute(
        select(Payment.status).where(Payment.payment_no == payment_no)
    )
    assert result.scalar_one() == PaymentStatus.CANCELED

    # 过期后才到的成功回调不能复活订单
    late = await settlement.handle_gateway_callback(db, signed_callback(gateway, payment_no, 4), gateway)
    assert late.error == "conflict"


async def test_expire_refuses_paid_order(db, world):
    await fund(db, world.customer.id, 10)
    booked = await settlement.book(db, world.customer.id, world.vehicle.id, world.start, world.end,
                                   payment_method="WALLET")
    result = await settlement.expire_pending_order(db, booked.data.order.id)
    assert result.error == "conflict"


def test_expiry_cutoff():
    now = datetime(2030, 1, 1, 12, 0)
    assert scheduler.expiry_cutoff(now) == now - timedelta(minutes=settings.PENDING_ORDER_EXPIRE_MINUTES)


def test_scheduler_disabled_in_tests():
    scheduler.init_scheduler()
    status = scheduler.get_scheduler_status()
    assert status["enabled"] is False
    assert status["running"] is False
