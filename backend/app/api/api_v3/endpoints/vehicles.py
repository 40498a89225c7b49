"""
车辆可用性 API
车辆增删改由站点管理系统负责，这里只提供下单前的可用性检查
"""

from typing import Any
from datetime import datetime
from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.deps import get_db
from app.core.errors import NotFoundError
from app.models.v3.vehicle import Vehicle
from app.schemas.v3.vehicle import AvailabilityResponse, ConflictingOrder
from app.services import availability, order_state, settlement

from .orders.core import raise_for_result

router = APIRouter()


@router.get("/{vehicle_id}/availability", response_model=AvailabilityResponse)
async def check_availability(
    *,
    db: AsyncSession = Depends(get_db),
    vehicle_id: int,
    start_time: datetime = Query(...),
    end_time: datetime = Query(...)) -> Any:
    """检查车辆在时间段内是否可用"""
    start = order_state.normalize_time(start_time)
    end = order_state.normalize_time(end_time)

    async def check():
        vehicle = await db.get(Vehicle, vehicle_id, populate_existing=True)
        if not vehicle:
            raise NotFoundError(f"车辆 {vehicle_id} 不存在")
        available = await availability.is_available(db, vehicle_id, start, end)
        conflicts = await availability.find_conflicts(db, vehicle_id, start, end)
        return vehicle, available, conflicts

    vehicle, available, conflicts = raise_for_result(
        await settlement.execute(db, "availability", check)
    )

    reason = ""
    if not available:
        if conflicts:
            reason = "该时间段已有订单"
        else:
            reason = f"车辆当前状态为「{vehicle.status_display}」"

    return AvailabilityResponse(
        vehicle_id=vehicle.id,
        serial_number=vehicle.serial_number,
        vehicle_status=vehicle.status,
        start_time=start,
        end_time=end,
        available=available,
        reason=reason,
        conflicts=[ConflictingOrder.model_validate(o) for o in conflicts],
    )
