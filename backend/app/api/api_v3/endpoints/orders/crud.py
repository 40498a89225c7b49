"""
租车订单查询与下单模块
- 下单
- 列表 / 详情 / 订单码核验
- 报价
"""

from typing import Any, Optional
from datetime import datetime
from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.deps import get_db, get_gateway
from app.services import order_state, pricing, settlement
from app.services.gateway import PaymentGateway
from app.schemas.v3.rental_order import (
    OrderCreate, OrderResponse, OrderListResponse, BookingResponse, PriceEstimate
)

from .core import raise_for_result, build_order_response, build_payment_response

router = APIRouter()


@router.post("/", response_model=BookingResponse)
async def create_order(
    *,
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
    order_in: OrderCreate) -> Any:
    """下单（可同时支付押金）"""
    result = await settlement.book(
        db,
        customer_id=order_in.customer_id,
        vehicle_id=order_in.vehicle_id,
        start_time=order_in.start_time,
        end_time=order_in.end_time,
        promo_code=order_in.promo_code,
        payment_method=order_in.payment_method,
        gateway=gateway,
        return_url=order_in.return_url,
    )
    outcome = raise_for_result(result)
    return BookingResponse(
        message=result.message,
        order=build_order_response(outcome.order),
        payment=build_payment_response(outcome.payment) if outcome.payment else None,
        payment_url=outcome.payment_url,
    )


@router.get("/", response_model=OrderListResponse)
async def list_orders(
    *,
    db: AsyncSession = Depends(get_db),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    customer_id: Optional[int] = Query(None),
    vehicle_id: Optional[int] = Query(None),
    status: Optional[str] = Query(None)) -> Any:
    """获取订单列表"""
    result = await settlement.execute(
        db, "list_orders",
        lambda: order_state.list_orders(
            db, customer_id=customer_id, vehicle_id=vehicle_id, status=status,
            skip=(page - 1) * limit, limit=limit,
        ),
    )
    total, orders = raise_for_result(result)
    return OrderListResponse(
        data=[build_order_response(o) for o in orders],
        total=total,
        page=page,
        limit=limit,
    )


@router.get("/estimate", response_model=PriceEstimate)
async def estimate_price(
    *,
    db: AsyncSession = Depends(get_db),
    vehicle_id: int = Query(...),
    start_time: datetime = Query(...),
    end_time: datetime = Query(...),
    promo_code: Optional[str] = Query(None)) -> Any:
    """报价（不下单）"""
    start = order_state.normalize_time(start_time)
    end = order_state.normalize_time(end_time)
    result = await settlement.execute(
        db, "estimate",
        lambda: pricing.estimate(db, vehicle_id, start, end, promo_code),
    )
    vehicle, quote = raise_for_result(result)
    return PriceEstimate(
        vehicle_id=vehicle.id,
        start_time=start,
        end_time=end,
        hours=float(quote.hours),
        price_per_hour=float(vehicle.model.price_per_hour),
        base_price=float(quote.base_price),
        discount_amount=float(quote.discount_amount),
        deposit_amount=float(quote.deposit_amount),
        total_price=float(quote.total_price),
        promo_code=quote.promo_code,
    )


@router.get("/code/{order_code}", response_model=OrderResponse)
async def get_order_by_code(
    *,
    db: AsyncSession = Depends(get_db),
    order_code: str) -> Any:
    """按订单码核验（取车时出示）"""
    result = await settlement.execute(db, "get_order_by_code", lambda: order_state.get_by_code(db, order_code))
    return build_order_response(raise_for_result(result))


@router.get("/{order_id}", response_model=OrderResponse)
async def get_order(
    *,
    db: AsyncSession = Depends(get_db),
    order_id: int) -> Any:
    """获取订单详情"""
    result = await settlement.execute(db, "get_order", lambda: order_state.load_order(db, order_id))
    return build_order_response(raise_for_result(result))
