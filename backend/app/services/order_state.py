"""
订单状态机

PENDING → CONFIRMED → ONGOING → COMPLETED → REFUNDED
PENDING / CONFIRMED → CANCELED

- 订单状态、车辆占用状态只能在这里修改
- 不允许的流转抛 ConflictError，且不产生任何修改
- 每次流转都追加一条 OrderFlow 记录
- 这里只做状态与车辆，不碰钱包；扣款/退款的先后顺序由结算编排层保证

时间约定：租用时段（start_time / end_time）按本地时间；
下单、还车、完成、取消等记账时间一律为 UTC。
"""

import random
import string
from datetime import datetime
from typing import Dict, List, Optional, Sequence, Tuple

from sqlalchemy import select, update, func
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from app.core.config import settings
from app.core.errors import (
    ValidationError, NotFoundError, ConflictError, ForbiddenError, InternalError
)
from app.core.logging_config import get_logger
from app.models.user import User
from app.models.v3.vehicle import Vehicle, VehicleStatus
from app.models.v3.rental_order import RentalOrder, OrderStatus
from app.models.v3.order_flow import OrderFlow
from app.services import availability, pricing

logger = get_logger(__name__)

ORDER_CODE_ALPHABET = string.ascii_uppercase + string.digits

# 允许的状态流转：动作 -> (允许的原状态, 目标状态)
TRANSITIONS: Dict[str, Tuple[Sequence[str], str]] = {
    "confirm": ((OrderStatus.PENDING,), OrderStatus.CONFIRMED),
    "start": ((OrderStatus.CONFIRMED,), OrderStatus.ONGOING),
    "cancel": ((OrderStatus.PENDING, OrderStatus.CONFIRMED), OrderStatus.CANCELED),
    "expire": ((OrderStatus.PENDING,), OrderStatus.CANCELED),
    "complete": ((OrderStatus.ONGOING,), OrderStatus.COMPLETED),
    "refund": ((OrderStatus.COMPLETED,), OrderStatus.REFUNDED),
}

ACTION_NAMES = {
    "confirm": "确认",
    "start": "交车",
    "cancel": "取消",
    "expire": "超时取消",
    "complete": "完成",
    "refund": "退款",
}


def normalize_time(value: datetime) -> datetime:
    """统一为本地时间（无时区）"""
    if value.tzinfo is not None:
        return value.astimezone().replace(tzinfo=None)
    return value


def check_transition(order: RentalOrder, action: str) -> str:
    """检查流转是否允许，返回目标状态"""
    allowed_from, to_status = TRANSITIONS[action]
    if order.status not in allowed_from:
        raise ConflictError(
            f"订单 {order.order_code} 当前状态为「{order.status_display}」，不能{ACTION_NAMES[action]}"
        )
    return to_status


def ensure_can_act(order: RentalOrder, actor: User):
    """只有下单客户本人或员工可以操作订单"""
    if actor.is_staff:
        return
    if actor.id != order.customer_id:
        raise ForbiddenError("只有下单客户本人或工作人员可以操作该订单")


def base_order_query():
    """订单基础查询（带流程和支付记录）"""
    return (
        select(RentalOrder)
        .options(
            selectinload(RentalOrder.vehicle),
            selectinload(RentalOrder.flows),
            selectinload(RentalOrder.payments),
            selectinload(RentalOrder.promotion),
        )
        .execution_options(populate_existing=True)
    )


async def load_order(db: AsyncSession, order_id: int) -> RentalOrder:
    # 会话不自动 flush，重新加载前先写入内存中的修改
    await db.flush()
    result = await db.execute(base_order_query().where(RentalOrder.id == order_id))
    order = result.scalar_one_or_none()
    if not order or not order.is_active:
        raise NotFoundError(f"订单 {order_id} 不存在")
    return order


async def get_by_code(db: AsyncSession, order_code: str) -> RentalOrder:
    """按订单码查询（取车核验）"""
    await db.flush()
    result = await db.execute(
        base_order_query().where(RentalOrder.order_code == order_code.strip().upper())
    )
    order = result.scalar_one_or_none()
    if not order or not order.is_active:
        raise NotFoundError(f"订单码 {order_code} 不存在")
    return order


async def list_orders(
    db: AsyncSession,
    customer_id: Optional[int] = None,
    vehicle_id: Optional[int] = None,
    status: Optional[str] = None,
    skip: int = 0,
    limit: int = 20,
) -> Tuple[int, List[RentalOrder]]:
    query = base_order_query().where(RentalOrder.is_active == True)
    count_query = select(func.count(RentalOrder.id)).where(RentalOrder.is_active == True)

    if customer_id:
        query = query.where(RentalOrder.customer_id == customer_id)
        count_query = count_query.where(RentalOrder.customer_id == customer_id)
    if vehicle_id:
        query = query.where(RentalOrder.vehicle_id == vehicle_id)
        count_query = count_query.where(RentalOrder.vehicle_id == vehicle_id)
    if status:
        query = query.where(RentalOrder.status == status)
        count_query = count_query.where(RentalOrder.status == status)

    total = (await db.execute(count_query)).scalar() or 0
    result = await db.execute(
        query.order_by(RentalOrder.created_at.desc(), RentalOrder.id.desc()).offset(skip).limit(limit)
    )
    return total, list(result.scalars().all())


async def get_user(db: AsyncSession, user_id: int) -> User:
    user = await db.get(User, user_id)
    if not user or not user.is_active:
        raise NotFoundError(f"用户 {user_id} 不存在或已禁用")
    return user


async def generate_order_code(db: AsyncSession) -> str:
    """生成订单码：随机大写字母+数字，冲突时重试"""
    for _ in range(settings.ORDER_CODE_MAX_ATTEMPTS):
        code = "".join(random.choices(ORDER_CODE_ALPHABET, k=settings.ORDER_CODE_LENGTH))
        result = await db.execute(select(RentalOrder.id).where(RentalOrder.order_code == code))
        if result.scalar_one_or_none() is None:
            return code
    raise InternalError("订单码生成失败，请重试")


def record_flow(
    db: AsyncSession,
    order: RentalOrder,
    flow_type: str,
    from_status: Optional[str],
    to_status: Optional[str],
    description: str,
    operator_id: Optional[int] = None,
    meta_data: Optional[dict] = None,
    notes: Optional[str] = None,
) -> OrderFlow:
    flow = OrderFlow(
        order_id=order.id,
        flow_type=flow_type,
        from_status=from_status,
        to_status=to_status,
        description=description,
        meta_data=meta_data,
        notes=notes,
        operator_id=operator_id,
        operated_at=datetime.utcnow(),
    )
    db.add(flow)
    return flow


async def occupy_vehicle(db: AsyncSession, vehicle_id: int):
    """车辆 AVAILABLE → RENTED，按影响行数判断，抢占失败说明已被占用"""
    result = await db.execute(
        update(Vehicle)
        .where(Vehicle.id == vehicle_id, Vehicle.status == VehicleStatus.AVAILABLE)
        .values(status=VehicleStatus.RENTED, updated_at=datetime.utcnow())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise ConflictError(f"车辆 {vehicle_id} 已被占用")


async def release_vehicle(db: AsyncSession, vehicle_id: int) -> Optional[Vehicle]:
    """车辆 RENTED → AVAILABLE"""
    result = await db.execute(
        update(Vehicle)
        .where(Vehicle.id == vehicle_id, Vehicle.status == VehicleStatus.RENTED)
        .values(status=VehicleStatus.AVAILABLE, updated_at=datetime.utcnow())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        logger.warning(f"释放车辆 {vehicle_id} 时车辆不在租用状态")
    return await db.get(Vehicle, vehicle_id, populate_existing=True)


async def create_order(
    db: AsyncSession,
    customer_id: int,
    vehicle_id: int,
    start_time: datetime,
    end_time: datetime,
    promo_code: Optional[str] = None,
    now: Optional[datetime] = None,
) -> RentalOrder:
    """
    下单（→ PENDING）

    校验时间、车辆可用性，计算价格，写入订单并占用车辆。
    需在车辆锁内调用，由调用方提交。
    """
    now = now or datetime.now()
    start_time = normalize_time(start_time)
    end_time = normalize_time(end_time)

    await get_user(db, customer_id)

    if start_time <= now:
        raise ValidationError("开始时间必须晚于当前时间")
    if end_time <= start_time:
        raise ValidationError("结束时间必须晚于开始时间")

    vehicle = await db.get(Vehicle, vehicle_id, populate_existing=True)
    if not vehicle or not vehicle.is_active:
        raise NotFoundError(f"车辆 {vehicle_id} 不存在")
    if not vehicle.model:
        raise ValidationError(f"车辆 {vehicle.serial_number} 未配置车型")

    if not await availability.is_available(db, vehicle_id, start_time, end_time):
        raise ConflictError(f"车辆 {vehicle.serial_number} 在该时间段不可用")

    promotion = await pricing.resolve_promotion(db, promo_code, now)
    quote = pricing.build_quote(start_time, end_time, vehicle.model.price_per_hour, promotion)

    order = RentalOrder(
        order_code=await generate_order_code(db),
        customer_id=customer_id,
        vehicle_id=vehicle_id,
        order_date=datetime.utcnow(),
        start_time=start_time,
        end_time=end_time,
        base_price=quote.base_price,
        discount_amount=quote.discount_amount,
        deposit_amount=quote.deposit_amount,
        total_price=quote.total_price,
        promotion_id=quote.promotion_id,
        status=OrderStatus.PENDING,
        is_active=True,
    )
    db.add(order)
    await db.flush()

    # 条件更新兜底：即使绕过进程内锁，也只有一个订单能抢到车辆
    await occupy_vehicle(db, vehicle_id)

    record_flow(
        db, order, "created", None, OrderStatus.PENDING,
        description=f"下单：车辆 {vehicle.serial_number}",
        operator_id=customer_id,
        meta_data={
            "base_price": str(quote.base_price),
            "discount_amount": str(quote.discount_amount),
            "deposit_amount": str(quote.deposit_amount),
            "total_price": str(quote.total_price),
            "promo_code": quote.promo_code,
        },
    )
    logger.info(f"订单 {order.order_code} 已创建: 车辆={vehicle_id} 基础价={quote.base_price}")
    return order


async def confirm(db: AsyncSession, order: RentalOrder, operator_id: Optional[int] = None,
                  meta_data: Optional[dict] = None) -> RentalOrder:
    """押金到账 PENDING → CONFIRMED"""
    to_status = check_transition(order, "confirm")
    from_status = order.status
    order.status = to_status
    record_flow(db, order, "confirmed", from_status, to_status,
                      description="押金已支付，订单确认", operator_id=operator_id, meta_data=meta_data)
    return order


async def start(db: AsyncSession, order: RentalOrder, staff: User) -> RentalOrder:
    """员工交车 CONFIRMED → ONGOING"""
    if not staff.is_staff:
        raise ForbiddenError("只有工作人员可以交车")
    to_status = check_transition(order, "start")
    from_status = order.status
    order.status = to_status
    order.staff_id = staff.id
    record_flow(db, order, "started", from_status, to_status,
                      description=f"交车：{staff.full_name or staff.username}", operator_id=staff.id)
    return order


async def cancel(db: AsyncSession, order: RentalOrder, actor: User, reason: Optional[str] = None) -> str:
    """
    取消 PENDING/CONFIRMED → CANCELED，释放车辆

    Returns:
        取消前的状态（调用方据此决定是否退押金）
    """
    ensure_can_act(order, actor)
    to_status = check_transition(order, "cancel")
    from_status = order.status
    order.status = to_status
    order.canceled_at = datetime.utcnow()
    await release_vehicle(db, order.vehicle_id)
    record_flow(db, order, "canceled", from_status, to_status,
                      description="订单取消", operator_id=actor.id, notes=reason)
    return from_status


async def expire(db: AsyncSession, order: RentalOrder) -> RentalOrder:
    """超时未付押金 PENDING → CANCELED（系统任务）"""
    to_status = check_transition(order, "expire")
    from_status = order.status
    order.status = to_status
    order.canceled_at = datetime.utcnow()
    await release_vehicle(db, order.vehicle_id)
    record_flow(
        db, order, "expired", from_status, to_status,
        description=f"超过 {settings.PENDING_ORDER_EXPIRE_MINUTES} 分钟未支付押金，自动取消",
    )
    return order


async def complete(db: AsyncSession, order: RentalOrder, total_price, operator_id: Optional[int] = None,
                   meta_data: Optional[dict] = None) -> RentalOrder:
    """
    还车完成 ONGOING → COMPLETED，释放车辆

    只能在尾款结清之后调用
    """
    to_status = check_transition(order, "complete")
    from_status = order.status
    now = datetime.utcnow()
    order.status = to_status
    order.return_time = now
    order.completed_at = now
    order.total_price = total_price
    await release_vehicle(db, order.vehicle_id)
    record_flow(db, order, "completed", from_status, to_status,
                      description="还车完成，尾款已结清", operator_id=operator_id, meta_data=meta_data)
    return order


async def mark_refunded(db: AsyncSession, order: RentalOrder, operator_id: Optional[int] = None,
                        meta_data: Optional[dict] = None, reason: Optional[str] = None) -> RentalOrder:
    """完成后退款 COMPLETED → REFUNDED，不重新打开订单"""
    to_status = check_transition(order, "refund")
    from_status = order.status
    order.status = to_status
    record_flow(db, order, "refunded", from_status, to_status,
                      description="订单已退款", operator_id=operator_id, meta_data=meta_data, notes=reason)
    return order
