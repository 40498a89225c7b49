from datetime import timedelta
from decimal import Decimal

from sqlalchemy import update

from app.models import RentalOrder, Vehicle
from app.models.v3 import OrderStatus, VehicleStatus
from app.services import availability


def _order(world, code, start, end, status=OrderStatus.CONFIRMED):
    return RentalOrder(
        order_code=code, customer_id=world.customer.id, vehicle_id=world.vehicle.id,
        start_time=start, end_time=end, base_price=Decimal("40"), status=status,
    )


async def test_unknown_vehicle_is_unavailable(db, world):
    assert await availability.is_available(db, 999, world.start, world.end) is False


async def test_free_vehicle_is_available(db, world):
    assert await availability.is_available(db, world.vehicle.id, world.start, world.end) is True


async def test_vehicle_in_maintenance_is_unavailable(db, world):
    await db.execute(
        update(Vehicle).where(Vehicle.id == world.vehicle.id).values(status=VehicleStatus.MAINTENANCE)
    )
    await db.commit()
    assert await availability.is_available(db, world.vehicle.id, world.start, world.end) is False


async def test_overlapping_active_order_blocks(db, world):
    db.add(_order(world, "OVL001", world.start + timedelta(hours=2), world.end + timedelta(hours=2)))
    await db.commit()
    assert await availability.is_available(db, world.vehicle.id, world.start, world.end) is False

    conflicts = await availability.find_conflicts(db, world.vehicle.id, world.start, world.end)
    assert [o.order_code for o in conflicts] == ["OVL001"]


async def test_back_to_back_orders_do_not_overlap(db, world):
    db.add(_order(world, "EARLY1", world.start - timedelta(hours=4), world.start))
    await db.commit()
    assert await availability.is_available(db, world.vehicle.id, world.start, world.end) is True


async def test_open_ended_order_blocks_later_starts(db, world):
    db.add(_order(world, "OPEN01", world.start - timedelta(days=3), None, status=OrderStatus.ONGOING))
    await db.commit()
    later = world.start + timedelta(days=7)
    assert await availability.is_available(db, world.vehicle.id, later, later + timedelta(hours=1)) is False


async def test_finished_orders_do_not_block(db, world):
    db.add_all([
        _order(world, "DONE01", world.start, world.end, status=OrderStatus.COMPLETED),
        _order(world, "GONE01", world.start, world.end, status=OrderStatus.CANCELED),
        _order(world, "BACK01", world.start, world.end, status=OrderStatus.REFUNDED),
    ])
    await db.commit()
    assert await availability.is_available(db, world.vehicle.id, world.start, world.end) is True


async def test_soft_deleted_order_does_not_block(db, world):
    order = _order(world, "DEL001", world.start, world.end)
    order.is_active = False
    db.add(order)
    await db.commit()
    assert await availability.is_available(db, world.vehicle.id, world.start, world.end) is True


async def test_other_vehicle_orders_are_ignored(db, world):
    order = _order(world, "SPARE1", world.start, world.end)
    order.vehicle_id = world.spare.id
    db.add(order)
    await db.commit()
    assert await availability.is_available(db, world.vehicle.id, world.start, world.end) is True
