"""支付记录 Schema"""

from datetime import datetime
from typing import Optional, List
from pydantic import BaseModel


class PaymentResponse(BaseModel):
    """支付记录响应"""
    id: int
    payment_no: str
    order_id: int
    amount: float
    method: str
    payment_type: str
    status: str
    gateway_tx_id: Optional[str] = None
    payment_date: Optional[datetime] = None

    # 显示字段
    type_display: str
    status_display: str

    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class OrderPaymentsResponse(BaseModel):
    """订单支付记录"""
    order_id: int
    order_code: str
    paid_total: float
    data: List[PaymentResponse]


class GatewayCallbackResponse(BaseModel):
    """网关回调处理结果"""
    message: str
    payment_no: str
    order_id: int
    order_code: str
    order_status: str
    success: bool
    replayed: bool = False
    remaining_amount: float = 0  # 尾款到账后仍需支付的金额
