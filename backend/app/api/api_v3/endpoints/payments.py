"""
支付 API
- 订单支付记录
- 网关回调（浏览器跳转 / IPN 通知）
"""

from typing import Any
from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.deps import get_db, get_gateway
from app.models.v3.payment import PaymentStatus, PaymentType
from app.schemas.v3.payment import OrderPaymentsResponse, GatewayCallbackResponse
from app.services import order_state, settlement
from app.services.gateway import PaymentGateway

from .orders.core import raise_for_result, build_payment_response

router = APIRouter()


@router.get("/order/{order_id}", response_model=OrderPaymentsResponse)
async def list_order_payments(
    *,
    db: AsyncSession = Depends(get_db),
    order_id: int) -> Any:
    """订单的押金、尾款、退款记录"""
    order = raise_for_result(
        await settlement.execute(db, "order_payments", lambda: order_state.load_order(db, order_id))
    )
    paid_total = sum(
        float(p.amount) for p in order.payments
        if p.status == PaymentStatus.COMPLETED and p.payment_type != PaymentType.REFUND
    )
    return OrderPaymentsResponse(
        order_id=order.id,
        order_code=order.order_code,
        paid_total=paid_total,
        data=[build_payment_response(p) for p in order.payments],
    )


@router.api_route("/gateway/callback", methods=["GET", "POST"], response_model=GatewayCallbackResponse)
async def gateway_callback(
    *,
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
    request: Request) -> Any:
    """支付网关回调（签名校验通过才处理，重复回调返回首次结果）"""
    # VNPay 的跳转和 IPN 通知都把参数放在查询串里
    params = dict(request.query_params)
    result = await settlement.handle_gateway_callback(db, params, gateway)
    outcome = raise_for_result(result)
    return GatewayCallbackResponse(
        message=result.message,
        payment_no=outcome.payment.payment_no,
        order_id=outcome.order.id,
        order_code=outcome.order.order_code,
        order_status=outcome.order.status,
        success=outcome.success,
        replayed=outcome.replayed,
        remaining_amount=float(outcome.remaining_amount),
    )
