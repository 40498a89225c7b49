"""
计价引擎

金额全部取整到整数货币单位（银行家舍入，与原有结算规则一致）：
- 基础价 = 时长(小时，可带小数) × 车型每小时单价
- 优惠额 = 基础价 × 折扣% （仅对存在、启用且在有效期内的优惠码）
- 押金 = 基础价 × 10%，与优惠无关，下单时即固定
- 总价 = 基础价 - 优惠额 + 车损费
- 尾款 = 基础价 - 押金 - 优惠额 + 车损费，可以为负（多付），由调用方决定是否退回

可选阶梯计价（TIERED_PRICING_ENABLED）：每 12 小时为一档，
每往后一档便宜 5%，最多便宜 15%。
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, ROUND_HALF_EVEN
from typing import Optional, Tuple

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.errors import ValidationError, NotFoundError
from app.models.v3.promotion import Promotion, DamageReport
from app.models.v3.rental_order import RentalOrder
from app.models.v3.vehicle import Vehicle

ZERO = Decimal("0")
HUNDRED = Decimal("100")
SECONDS_PER_HOUR = Decimal("3600")

TIER_HOURS = Decimal("12")
TIER_STEP = Decimal("0.05")
TIER_FLOOR = Decimal("0.85")

DEPOSIT_RATE = Decimal("0.10")


def round_money(value) -> Decimal:
    """取整到整数货币单位"""
    return Decimal(str(value)).quantize(Decimal("1"), rounding=ROUND_HALF_EVEN)


def rental_hours(start: datetime, end: datetime) -> Decimal:
    """租用时长（小时，保留小数）"""
    seconds = Decimal(str((end - start).total_seconds()))
    return seconds / SECONDS_PER_HOUR


def tiered_price(hours: Decimal, price_per_hour: Decimal) -> Decimal:
    """阶梯计价：0-12h 原价，12-24h 95%，24-36h 90%，之后 85%"""
    if hours <= ZERO:
        return ZERO
    total = ZERO
    remaining = hours
    tier = 0
    while remaining > ZERO:
        in_tier = min(remaining, TIER_HOURS)
        multiplier = max(Decimal("1") - TIER_STEP * tier, TIER_FLOOR)
        total += in_tier * price_per_hour * multiplier
        remaining -= in_tier
        tier += 1
    return total


def calculate_base_price(start: datetime, end: datetime, price_per_hour, tiered: Optional[bool] = None) -> Decimal:
    hours = rental_hours(start, end)
    if hours <= ZERO:
        return ZERO
    rate = Decimal(str(price_per_hour))
    if tiered is None:
        tiered = settings.TIERED_PRICING_ENABLED
    raw = tiered_price(hours, rate) if tiered else hours * rate
    return round_money(raw)


def calculate_discount(base_price: Decimal, discount_percentage) -> Decimal:
    return round_money(Decimal(str(base_price)) * Decimal(str(discount_percentage)) / HUNDRED)


def calculate_deposit(base_price: Decimal, rate: Optional[Decimal] = None) -> Decimal:
    """押金只看基础价"""
    rate = DEPOSIT_RATE if rate is None else rate
    return round_money(Decimal(str(base_price)) * Decimal(str(rate)))


def calculate_total(base_price: Decimal, discount: Decimal = ZERO, damage_cost: Decimal = ZERO) -> Decimal:
    return round_money(Decimal(str(base_price)) - Decimal(str(discount)) + Decimal(str(damage_cost)))


def calculate_final(base_price: Decimal, deposit: Decimal, discount: Decimal = ZERO,
                    damage_cost: Decimal = ZERO) -> Decimal:
    """尾款，不做下限截断"""
    return round_money(
        Decimal(str(base_price)) - Decimal(str(deposit)) - Decimal(str(discount)) + Decimal(str(damage_cost))
    )


@dataclass
class PriceQuote:
    """下单时的报价"""
    hours: Decimal
    base_price: Decimal
    discount_amount: Decimal
    deposit_amount: Decimal
    total_price: Decimal
    promotion_id: Optional[int] = None
    promo_code: Optional[str] = None


@dataclass
class FinalSettlement:
    """还车时的结算明细"""
    base_price: Decimal
    deposit_amount: Decimal
    discount_amount: Decimal
    damage_cost: Decimal
    total_price: Decimal
    final_amount: Decimal

    @property
    def amount_due(self) -> Decimal:
        """应收金额（多付时为 0）"""
        return max(self.final_amount, ZERO)

    @property
    def overpaid(self) -> Decimal:
        """多付金额"""
        return max(-self.final_amount, ZERO)


def build_quote(start: datetime, end: datetime, price_per_hour, promotion: Optional[Promotion] = None) -> PriceQuote:
    base = calculate_base_price(start, end, price_per_hour)
    discount = calculate_discount(base, promotion.discount_percentage) if promotion else ZERO
    return PriceQuote(
        hours=rental_hours(start, end),
        base_price=base,
        discount_amount=discount,
        deposit_amount=calculate_deposit(base),
        total_price=calculate_total(base, discount),
        promotion_id=promotion.id if promotion else None,
        promo_code=promotion.promo_code if promotion else None,
    )


async def resolve_promotion(db: AsyncSession, promo_code: Optional[str],
                            now: Optional[datetime] = None) -> Optional[Promotion]:
    """
    校验优惠码

    未提供优惠码返回 None；提供了但不存在/失效/不在有效期内则报错，不静默忽略
    """
    if promo_code is None or not promo_code.strip():
        return None
    now = now or datetime.now()
    result = await db.execute(
        select(Promotion).where(Promotion.promo_code == promo_code.strip())
    )
    promotion = result.scalar_one_or_none()
    if not promotion:
        raise NotFoundError(f"优惠码 {promo_code} 不存在")
    if not promotion.is_active:
        raise ValidationError(f"优惠码 {promo_code} 已停用")
    if not promotion.is_applicable(now):
        raise ValidationError(f"优惠码 {promo_code} 不在有效期内")
    return promotion


async def get_damage_cost(db: AsyncSession, order_id: int) -> Decimal:
    """订单有效车损报告的估算金额合计，没有则为 0"""
    result = await db.execute(
        select(func.coalesce(func.sum(DamageReport.estimated_cost), 0)).where(
            DamageReport.order_id == order_id,
            DamageReport.is_active == True,
        )
    )
    return round_money(result.scalar() or 0)


async def get_order_discount(db: AsyncSession, order: RentalOrder) -> Decimal:
    """
    订单的优惠额

    下单时已固定在订单上；老数据没有存优惠额时按促销折扣重新计算
    """
    if order.discount_amount is not None and Decimal(str(order.discount_amount)) > ZERO:
        return Decimal(str(order.discount_amount))
    if order.promotion_id:
        promotion = await db.get(Promotion, order.promotion_id)
        if promotion:
            return calculate_discount(order.base_price, promotion.discount_percentage)
    return ZERO


async def calculate_final_settlement(db: AsyncSession, order: RentalOrder) -> FinalSettlement:
    """还车结算：基础价 - 押金 - 优惠 + 车损"""
    base = Decimal(str(order.base_price))
    # 押金以下单时固定在订单上的金额为准
    if order.deposit_amount is not None:
        deposit = Decimal(str(order.deposit_amount))
    else:
        deposit = calculate_deposit(base)
    discount = await get_order_discount(db, order)
    damage = await get_damage_cost(db, order.id)
    return FinalSettlement(
        base_price=base,
        deposit_amount=deposit,
        discount_amount=discount,
        damage_cost=damage,
        total_price=calculate_total(base, discount, damage),
        final_amount=calculate_final(base, deposit, discount, damage),
    )


async def estimate(db: AsyncSession, vehicle_id: int, start: datetime, end: datetime,
                   promo_code: Optional[str] = None) -> Tuple[Vehicle, PriceQuote]:
    """报价（不下单）"""
    if end <= start:
        raise ValidationError("结束时间必须晚于开始时间")
    vehicle = await db.get(Vehicle, vehicle_id)
    if not vehicle or not vehicle.is_active:
        raise NotFoundError(f"车辆 {vehicle_id} 不存在")
    if not vehicle.model:
        raise ValidationError(f"车辆 {vehicle.serial_number} 未配置车型")
    promotion = await resolve_promotion(db, promo_code)
    return vehicle, build_quote(start, end, vehicle.model.price_per_hour, promotion)
