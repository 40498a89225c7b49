"""租车订单 Schema"""

from datetime import datetime
from typing import Optional, List
from pydantic import BaseModel, Field

from app.schemas.v3.payment import PaymentResponse


class OrderCreate(BaseModel):
    """下单"""
    customer_id: int
    vehicle_id: int
    start_time: datetime
    end_time: datetime
    promo_code: Optional[str] = Field(None, max_length=50)
    # 为空时只下单不付押金
    payment_method: Optional[str] = Field(None, pattern="^(WALLET|GATEWAY)$")
    return_url: Optional[str] = None


class DepositRequest(BaseModel):
    """补付押金"""
    actor_id: int
    payment_method: str = Field(..., pattern="^(WALLET|GATEWAY)$")
    return_url: Optional[str] = None


class OrderStartRequest(BaseModel):
    """交车"""
    staff_id: int


class OrderCancelRequest(BaseModel):
    """取消"""
    actor_id: int
    reason: Optional[str] = Field(None, max_length=500)


class OrderCompleteRequest(BaseModel):
    """还车结算"""
    actor_id: int
    payment_method: str = Field(default="WALLET", pattern="^(WALLET|GATEWAY|CASH)$")
    return_url: Optional[str] = None


class OrderRefundRequest(BaseModel):
    """手动退款"""
    actor_id: int
    amount: Optional[float] = Field(None, gt=0, description="退款金额，默认退押金")
    reason: Optional[str] = Field(None, max_length=500)


class AutoRefundRequest(BaseModel):
    actor_id: int


class OrderFlowResponse(BaseModel):
    """流程记录响应"""
    id: int
    flow_type: str
    type_display: str
    from_status: Optional[str] = None
    to_status: Optional[str] = None
    description: Optional[str] = None
    meta_data: Optional[dict] = None
    notes: Optional[str] = None
    operator_id: Optional[int] = None
    operated_at: datetime

    class Config:
        from_attributes = True


class OrderResponse(BaseModel):
    """订单响应"""
    id: int
    order_code: str
    customer_id: int
    vehicle_id: int
    vehicle_serial: str = ""
    model_name: str = ""
    staff_id: Optional[int] = None

    order_date: Optional[datetime] = None
    start_time: datetime
    end_time: Optional[datetime] = None
    return_time: Optional[datetime] = None

    base_price: float
    discount_amount: float
    deposit_amount: float
    total_price: float
    promo_code: Optional[str] = None

    status: str
    status_display: str

    created_at: datetime
    updated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    canceled_at: Optional[datetime] = None

    flows: List[OrderFlowResponse] = []
    payments: List[PaymentResponse] = []

    class Config:
        from_attributes = True


class OrderListResponse(BaseModel):
    """订单列表响应"""
    data: List[OrderResponse]
    total: int
    page: int
    limit: int


class BookingResponse(BaseModel):
    """下单 / 付押金响应"""
    message: str
    order: OrderResponse
    payment: Optional[PaymentResponse] = None
    payment_url: Optional[str] = None


class CancelResponse(BaseModel):
    message: str
    order: OrderResponse
    previous_status: str
    refunded_amount: float = 0


class SettlementBreakdown(BaseModel):
    """结算明细"""
    base_price: float
    deposit_amount: float
    discount_amount: float
    damage_cost: float
    total_price: float
    final_amount: float


class CompleteResponse(BaseModel):
    """还车结算响应"""
    message: str
    order: OrderResponse
    settlement: SettlementBreakdown
    amount_charged: float
    refunded_amount: float = 0
    payment: Optional[PaymentResponse] = None
    payment_url: Optional[str] = None


class RefundResponse(BaseModel):
    message: str
    order: OrderResponse
    refunded_amount: float
    already_refunded: bool = False
    payment: Optional[PaymentResponse] = None


class PriceEstimate(BaseModel):
    """报价"""
    vehicle_id: int
    start_time: datetime
    end_time: datetime
    hours: float
    price_per_hour: float
    base_price: float
    discount_amount: float
    deposit_amount: float
    total_price: float
    promo_code: Optional[str] = None
