"""
租车订单状态变更操作模块
- 付押金、交车、取消
- 还车结算
- 手动退款、多付退款
"""

from typing import Any
from decimal import Decimal
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.deps import get_db, get_gateway
from app.services import settlement
from app.services.gateway import PaymentGateway
from app.schemas.v3.rental_order import (
    OrderResponse, DepositRequest, OrderStartRequest, OrderCancelRequest,
    OrderCompleteRequest, OrderRefundRequest, AutoRefundRequest,
    BookingResponse, CancelResponse, CompleteResponse, RefundResponse,
)

from .core import (
    raise_for_result, build_order_response, build_payment_response, build_settlement_breakdown
)

router = APIRouter()


@router.post("/{order_id}/deposit", response_model=BookingResponse)
async def pay_deposit(
    *,
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
    order_id: int,
    body: DepositRequest) -> Any:
    """补付押金：PENDING → CONFIRMED（网关方式在回调成功后确认）"""
    result = await settlement.capture_deposit(
        db, order_id, body.actor_id, body.payment_method, gateway=gateway, return_url=body.return_url
    )
    outcome = raise_for_result(result)
    return BookingResponse(
        message=result.message,
        order=build_order_response(outcome.order),
        payment=build_payment_response(outcome.payment) if outcome.payment else None,
        payment_url=outcome.payment_url,
    )


@router.post("/{order_id}/start", response_model=OrderResponse)
async def start_order(
    *,
    db: AsyncSession = Depends(get_db),
    order_id: int,
    body: OrderStartRequest) -> Any:
    """交车：CONFIRMED → ONGOING"""
    result = await settlement.start(db, order_id, body.staff_id)
    return build_order_response(raise_for_result(result))


@router.post("/{order_id}/cancel", response_model=CancelResponse)
async def cancel_order(
    *,
    db: AsyncSession = Depends(get_db),
    order_id: int,
    body: OrderCancelRequest) -> Any:
    """取消：PENDING/CONFIRMED → CANCELED，已付押金退回钱包"""
    result = await settlement.cancel(db, order_id, body.actor_id, body.reason)
    outcome = raise_for_result(result)
    return CancelResponse(
        message=result.message,
        order=build_order_response(outcome.order),
        previous_status=outcome.previous_status,
        refunded_amount=float(outcome.refunded_amount),
    )


@router.post("/{order_id}/complete", response_model=CompleteResponse)
async def complete_order(
    *,
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
    order_id: int,
    body: OrderCompleteRequest) -> Any:
    """还车结算：先收尾款，再 ONGOING → COMPLETED"""
    result = await settlement.complete(
        db, order_id, body.actor_id, body.payment_method, gateway=gateway, return_url=body.return_url
    )
    outcome = raise_for_result(result)
    return CompleteResponse(
        message=result.message,
        order=build_order_response(outcome.order),
        settlement=build_settlement_breakdown(outcome.settlement),
        amount_charged=float(outcome.amount_charged),
        refunded_amount=float(outcome.refunded_amount),
        payment=build_payment_response(outcome.payment) if outcome.payment else None,
        payment_url=outcome.payment_url,
    )


@router.post("/{order_id}/refund", response_model=RefundResponse)
async def refund_order(
    *,
    db: AsyncSession = Depends(get_db),
    order_id: int,
    body: OrderRefundRequest) -> Any:
    """手动退款：COMPLETED → REFUNDED"""
    amount = Decimal(str(body.amount)) if body.amount is not None else None
    result = await settlement.refund(db, order_id, body.actor_id, amount, body.reason)
    outcome = raise_for_result(result)
    return RefundResponse(
        message=result.message,
        order=build_order_response(outcome.order),
        refunded_amount=float(outcome.amount),
        payment=build_payment_response(outcome.payment) if outcome.payment else None,
    )


@router.post("/{order_id}/auto-refund", response_model=RefundResponse)
async def auto_refund_order(
    *,
    db: AsyncSession = Depends(get_db),
    order_id: int,
    body: AutoRefundRequest) -> Any:
    """多付金额退回钱包（重复调用不会重复退款）"""
    result = await settlement.auto_refund(db, order_id, body.actor_id)
    outcome = raise_for_result(result)
    return RefundResponse(
        message=result.message,
        order=build_order_response(outcome.order),
        refunded_amount=float(outcome.amount),
        already_refunded=outcome.already_refunded,
        payment=build_payment_response(outcome.payment) if outcome.payment else None,
    )
