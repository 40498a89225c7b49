"""
车辆相关的Pydantic模式
"""
from datetime import datetime
from typing import Optional, List
from pydantic import BaseModel


class ConflictingOrder(BaseModel):
    """占用该时间段的订单"""
    order_code: str
    status: str
    start_time: datetime
    end_time: Optional[datetime] = None

    class Config:
        from_attributes = True


class AvailabilityResponse(BaseModel):
    """可用性检查结果"""
    vehicle_id: int
    serial_number: Optional[str] = None
    vehicle_status: Optional[str] = None
    start_time: datetime
    end_time: datetime
    available: bool
    reason: str = ""
    conflicts: List[ConflictingOrder] = []
