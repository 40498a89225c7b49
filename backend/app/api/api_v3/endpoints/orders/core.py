"""
租车订单核心功能模块
- 响应构建
- 服务结果转 HTTP 错误
"""

from typing import Any

from fastapi import HTTPException

from app.models.v3.payment import Payment
from app.models.v3.rental_order import RentalOrder
from app.schemas.v3.payment import PaymentResponse
from app.schemas.v3.rental_order import OrderResponse, OrderFlowResponse, SettlementBreakdown
from app.services.pricing import FinalSettlement
from app.services.result import ServiceResult


def raise_for_result(result: ServiceResult) -> Any:
    """失败结果转为 HTTPException，成功返回 data"""
    if not result.success:
        raise HTTPException(
            status_code=result.status_code,
            detail={
                "error": result.error,
                "message": result.message,
                "retryable": result.retryable,
            },
        )
    return result.data


def build_payment_response(payment: Payment) -> PaymentResponse:
    return PaymentResponse(
        id=payment.id,
        payment_no=payment.payment_no,
        order_id=payment.order_id,
        amount=float(payment.amount or 0),
        method=payment.method,
        payment_type=payment.payment_type,
        status=payment.status,
        gateway_tx_id=payment.gateway_tx_id,
        payment_date=payment.payment_date,
        type_display=payment.type_display,
        status_display=payment.status_display,
        created_at=payment.created_at,
    )


def build_order_response(order: RentalOrder) -> OrderResponse:
    """构建订单响应"""
    vehicle = order.vehicle
    return OrderResponse(
        id=order.id,
        order_code=order.order_code,
        customer_id=order.customer_id,
        vehicle_id=order.vehicle_id,
        vehicle_serial=vehicle.serial_number if vehicle else "",
        model_name=vehicle.model.name if vehicle and vehicle.model else "",
        staff_id=order.staff_id,
        order_date=order.order_date,
        start_time=order.start_time,
        end_time=order.end_time,
        return_time=order.return_time,
        base_price=float(order.base_price or 0),
        discount_amount=float(order.discount_amount or 0),
        deposit_amount=float(order.deposit_amount or 0),
        total_price=float(order.total_price or 0),
        promo_code=order.promotion.promo_code if order.promotion else None,
        status=order.status,
        status_display=order.status_display,
        created_at=order.created_at,
        updated_at=order.updated_at,
        completed_at=order.completed_at,
        canceled_at=order.canceled_at,
        flows=[
            OrderFlowResponse(
                id=flow.id,
                flow_type=flow.flow_type,
                type_display=flow.type_display,
                from_status=flow.from_status,
                to_status=flow.to_status,
                description=flow.description,
                meta_data=flow.meta_data,
                notes=flow.notes,
                operator_id=flow.operator_id,
                operated_at=flow.operated_at,
            )
            for flow in order.flows
        ],
        payments=[build_payment_response(p) for p in order.payments],
    )


def build_settlement_breakdown(result: FinalSettlement) -> SettlementBreakdown:
    return SettlementBreakdown(
        base_price=float(result.base_price),
        deposit_amount=float(result.deposit_amount),
        discount_amount=float(result.discount_amount),
        damage_cost=float(result.damage_cost),
        total_price=float(result.total_price),
        final_amount=float(result.final_amount),
    )
