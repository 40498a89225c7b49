"""
车辆可用性检查（只读）

规则：
1. 车辆不存在或状态不是 AVAILABLE → 不可用
2. 同一车辆存在有效订单（PENDING/CONFIRMED/ONGOING），且时间段与请求重叠 → 不可用
   重叠判断：existing.start < requested_end AND (existing.end IS NULL OR existing.end > requested_start)
   没有结束时间的订单视为无限期占用
"""

from datetime import datetime
from typing import List

from sqlalchemy import select, or_
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.v3.vehicle import Vehicle, VehicleStatus
from app.models.v3.rental_order import RentalOrder, OrderStatus


def overlap_conditions(vehicle_id: int, start: datetime, end: datetime):
    return (
        RentalOrder.vehicle_id == vehicle_id,
        RentalOrder.is_active == True,
        RentalOrder.status.in_(OrderStatus.ACTIVE),
        RentalOrder.start_time < end,
        or_(RentalOrder.end_time.is_(None), RentalOrder.end_time > start),
    )


async def find_conflicts(db: AsyncSession, vehicle_id: int, start: datetime, end: datetime) -> List[RentalOrder]:
    """时间段冲突的订单"""
    result = await db.execute(
        select(RentalOrder)
        .where(*overlap_conditions(vehicle_id, start, end))
        .order_by(RentalOrder.start_time)
    )
    return list(result.scalars().all())


async def is_available(db: AsyncSession, vehicle_id: int, start: datetime, end: datetime) -> bool:
    vehicle = await db.get(Vehicle, vehicle_id, populate_existing=True)
    if not vehicle or vehicle.status != VehicleStatus.AVAILABLE:
        return False

    result = await db.execute(
        select(RentalOrder.id).where(*overlap_conditions(vehicle_id, start, end)).limit(1)
    )
    return result.scalar_one_or_none() is None
