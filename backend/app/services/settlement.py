"""
结算编排

组合订单状态机、钱包账本、支付网关，负责：
- 下单 + 押金（钱包直接扣款确认 / 网关先建待支付单，回调成功后确认）
- 交车、取消（已付押金退回钱包）
- 还车结算（先扣尾款，再改状态，同一事务）
- 网关回调（重放安全）
- 手动退款、多付自动退款
- 钱包充值、余额、流水、对账

每个操作是一个数据库事务：成功提交，任何错误整体回滚。
业务错误转换为 ServiceResult 返回，不向外抛异常；未知异常记录堆栈后按 InternalError 返回。

加锁顺序固定为 车辆 → 订单 → 钱包，锁一直持有到事务提交。
"""

import json
import random
import string
from contextlib import AsyncExitStack
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, Hashable, List, Mapping, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.errors import (
    RentalError, ValidationError, NotFoundError, ConflictError, ForbiddenError,
    ExternalGatewayError, InternalError,
)
from app.core.logging_config import get_logger, get_settlement_logger
from app.models.v3.rental_order import RentalOrder, OrderStatus
from app.models.v3.payment import Payment, PaymentType, PaymentStatus, PaymentMethod
from app.models.v3.wallet import Wallet, WalletTransaction, TransactionType
from app.services import order_state, pricing, wallet_ledger
from app.services.gateway import PaymentGateway, GatewayCallback
from app.services.locks import KeyedLocks, vehicle_locks, order_locks, wallet_locks
from app.services.result import ServiceResult

logger = get_logger(__name__)
settlement_logger = get_settlement_logger()

ZERO = Decimal("0")

PAYMENT_NO_PREFIX = {
    PaymentType.DEPOSIT: "DEP",
    PaymentType.FINAL: "FIN",
    PaymentType.REFUND: "REF",
}


# ==================== 返回数据 ====================

@dataclass
class OrderPaymentOutcome:
    """下单 / 付押金的结果"""
    order: RentalOrder
    payment: Optional[Payment] = None
    payment_url: Optional[str] = None


@dataclass
class CompletionOutcome:
    """还车结算结果"""
    order: RentalOrder
    settlement: pricing.FinalSettlement
    amount_charged: Decimal
    payment: Optional[Payment] = None
    payment_url: Optional[str] = None
    refunded_amount: Decimal = ZERO


@dataclass
class CancelOutcome:
    order: RentalOrder
    previous_status: str
    refunded_amount: Decimal = ZERO


@dataclass
class RefundOutcome:
    order: RentalOrder
    amount: Decimal
    transaction: Optional[WalletTransaction] = None
    payment: Optional[Payment] = None
    already_refunded: bool = False


@dataclass
class CallbackOutcome:
    """网关回调处理结果"""
    payment: Payment
    order: RentalOrder
    success: bool
    replayed: bool = False
    remaining_amount: Decimal = ZERO


Work = Callable[[AsyncExitStack], Awaitable[Tuple[Any, str]]]


# ==================== 事务边界 ====================

async def _hold(locks: AsyncExitStack, registry: KeyedLocks, key: Hashable):
    await locks.enter_async_context(registry.hold(key))


async def _run(db: AsyncSession, operation: str, work: Work) -> ServiceResult:
    """
    执行一个业务操作

    work 通过传入的 AsyncExitStack 加锁，提交或回滚之后才释放
    """
    async with AsyncExitStack() as locks:
        try:
            data, message = await work(locks)
            await db.commit()
        except RentalError as exc:
            await db.rollback()
            settlement_logger.warning(f"[{operation}] 失败 {exc.error_code}: {exc.message}")
            return ServiceResult.fail(exc)
        except IntegrityError as exc:
            await db.rollback()
            logger.warning(f"[{operation}] 数据约束冲突: {exc.orig}")
            return ServiceResult.fail(ConflictError("数据冲突，请刷新后重试"))
        except Exception:
            await db.rollback()
            logger.exception(f"[{operation}] 未知错误")
            return ServiceResult.fail(InternalError("系统内部错误，请稍后重试"))

    settlement_logger.info(f"[{operation}] {message}")
    return ServiceResult.ok(data, message)


async def execute(db: AsyncSession, operation: str, query: Callable[[], Awaitable[Any]],
                  message: str = "查询成功") -> ServiceResult:
    """只读查询也走同一个边界，错误按同样方式返回"""
    async def work(locks: AsyncExitStack):
        return await query(), message
    return await _run(db, operation, work)


# ==================== 内部工具 ====================

def generate_payment_no(payment_type: str) -> str:
    """支付单号：前缀 + 时间 + 4 位随机码"""
    prefix = PAYMENT_NO_PREFIX.get(payment_type, "PAY")
    suffix = "".join(random.choices(string.ascii_uppercase + string.digits, k=4))
    return f"{prefix}{datetime.now().strftime('%Y%m%d%H%M%S')}{suffix}"


def _new_payment(
    db: AsyncSession,
    order: RentalOrder,
    amount: Decimal,
    method: str,
    payment_type: str,
    status: str,
    idempotency_key: Optional[str] = None,
) -> Payment:
    payment = Payment(
        payment_no=generate_payment_no(payment_type),
        order_id=order.id,
        amount=amount,
        method=method,
        payment_type=payment_type,
        status=status,
        idempotency_key=idempotency_key,
        payment_date=datetime.utcnow() if status == PaymentStatus.COMPLETED else None,
        is_active=True,
    )
    db.add(payment)
    return payment


async def _find_payment(db: AsyncSession, idempotency_key: str) -> Optional[Payment]:
    result = await db.execute(select(Payment).where(Payment.idempotency_key == idempotency_key))
    return result.scalar_one_or_none()


async def _get_payment_by_no(db: AsyncSession, payment_no: str) -> Payment:
    result = await db.execute(
        select(Payment)
        .where(Payment.payment_no == payment_no)
        .execution_options(populate_existing=True)
    )
    payment = result.scalar_one_or_none()
    if not payment:
        raise NotFoundError(f"支付单 {payment_no} 不存在")
    return payment


def _completed_payment(order: RentalOrder, payment_type: str) -> Optional[Payment]:
    for payment in order.payments:
        if payment.payment_type == payment_type and payment.status == PaymentStatus.COMPLETED:
            return payment
    return None


def _paid_total(order: RentalOrder) -> Decimal:
    """已收款合计（押金 + 尾款）"""
    return sum(
        (Decimal(str(p.amount)) for p in order.payments
         if p.status == PaymentStatus.COMPLETED
         and p.payment_type in (PaymentType.DEPOSIT, PaymentType.FINAL)),
        ZERO,
    )


def _final_paid(order: RentalOrder) -> Decimal:
    """已到账的尾款合计"""
    return sum(
        (Decimal(str(p.amount)) for p in order.payments
         if p.status == PaymentStatus.COMPLETED and p.payment_type == PaymentType.FINAL),
        ZERO,
    )


def _outstanding(order: RentalOrder, result: pricing.FinalSettlement) -> Decimal:
    """尾款扣除已到账部分后的差额，正数为仍需支付，负数为多付"""
    return result.final_amount - _final_paid(order)


def _cancel_pending_payments(order: RentalOrder, payment_type: Optional[str] = None) -> int:
    count = 0
    for payment in order.payments:
        if payment.status != PaymentStatus.PENDING:
            continue
        if payment_type and payment.payment_type != payment_type:
            continue
        payment.status = PaymentStatus.CANCELED
        count += 1
    return count


def _redirect_url(gateway: Optional[PaymentGateway], payment: Payment, return_url: Optional[str]) -> str:
    if gateway is None:
        raise ExternalGatewayError("支付网关未配置")
    try:
        return gateway.create_redirect_url(
            payment.payment_no,
            Decimal(str(payment.amount)),
            return_url or settings.VNPAY_RETURN_URL,
            settings.VNPAY_CANCEL_URL,
        )
    except RentalError:
        raise
    except Exception as exc:
        raise ExternalGatewayError(f"生成支付地址失败: {exc}") from exc


def _settlement_meta(result: pricing.FinalSettlement) -> Dict[str, str]:
    return {
        "base_price": str(result.base_price),
        "deposit_amount": str(result.deposit_amount),
        "discount_amount": str(result.discount_amount),
        "damage_cost": str(result.damage_cost),
        "total_price": str(result.total_price),
        "final_amount": str(result.final_amount),
    }


async def _refund_to_wallet(db: AsyncSession, order: RentalOrder, amount: Decimal,
                            description: str) -> Tuple[WalletTransaction, Payment]:
    """退款入账：REFUND 流水 + 退款支付单，幂等键 order-{id}-REFUND"""
    key = wallet_ledger.idempotency_key_for(order.id, TransactionType.REFUND)
    tx = await wallet_ledger.credit(
        db, order.customer_id, amount,
        transaction_type=TransactionType.REFUND,
        order_id=order.id,
        description=description,
        idempotency_key=key,
    )
    payment = await _find_payment(db, key)
    if not payment:
        payment = _new_payment(db, order, Decimal(str(tx.amount)), PaymentMethod.WALLET,
                               PaymentType.REFUND, PaymentStatus.COMPLETED, idempotency_key=key)
    return tx, payment


# ==================== 押金 ====================

async def _capture_deposit(
    db: AsyncSession,
    order: RentalOrder,
    method: str,
    operator_id: Optional[int],
    gateway: Optional[PaymentGateway],
    return_url: Optional[str],
) -> Tuple[OrderPaymentOutcome, str]:
    order_state.check_transition(order, "confirm")
    if _completed_payment(order, PaymentType.DEPOSIT):
        raise ConflictError(f"订单 {order.order_code} 押金已支付")

    deposit = Decimal(str(order.deposit_amount))
    if deposit <= ZERO:
        await order_state.confirm(db, order, operator_id, meta_data={"deposit_amount": "0"})
        return OrderPaymentOutcome(order=order), "押金为 0，订单已确认"

    if method == PaymentMethod.WALLET:
        key = wallet_ledger.idempotency_key_for(order.id, TransactionType.DEPOSIT)
        tx = await wallet_ledger.debit(
            db, order.customer_id, deposit,
            transaction_type=TransactionType.DEPOSIT,
            order_id=order.id,
            description=f"订单 {order.order_code} 押金",
            idempotency_key=key,
        )
        _cancel_pending_payments(order, PaymentType.DEPOSIT)
        payment = _new_payment(db, order, deposit, PaymentMethod.WALLET, PaymentType.DEPOSIT,
                               PaymentStatus.COMPLETED, idempotency_key=key)
        await db.flush()
        await order_state.confirm(db, order, operator_id, meta_data={
            "method": PaymentMethod.WALLET,
            "amount": str(deposit),
            "payment_no": payment.payment_no,
            "wallet_transaction_id": tx.id,
        })
        return OrderPaymentOutcome(order=order, payment=payment), f"押金 {deposit} 已从钱包扣除，订单已确认"

    if method == PaymentMethod.GATEWAY:
        _cancel_pending_payments(order, PaymentType.DEPOSIT)
        payment = _new_payment(db, order, deposit, PaymentMethod.GATEWAY, PaymentType.DEPOSIT,
                               PaymentStatus.PENDING)
        await db.flush()
        url = _redirect_url(gateway, payment, return_url)
        return OrderPaymentOutcome(order=order, payment=payment, payment_url=url), "请前往支付页面支付押金"

    raise ValidationError(f"押金不支持的支付方式: {method}")


async def book(
    db: AsyncSession,
    customer_id: int,
    vehicle_id: int,
    start_time: datetime,
    end_time: datetime,
    promo_code: Optional[str] = None,
    payment_method: Optional[str] = None,
    gateway: Optional[PaymentGateway] = None,
    return_url: Optional[str] = None,
) -> ServiceResult[OrderPaymentOutcome]:
    """
    下单

    payment_method 为空时只创建 PENDING 订单；
    WALLET 在同一事务内扣押金并确认，余额不足则整个下单回滚；
    GATEWAY 创建待支付单并返回支付地址。
    """
    async def work(locks: AsyncExitStack):
        await _hold(locks, vehicle_locks, vehicle_id)
        await _hold(locks, wallet_locks, customer_id)

        order = await order_state.create_order(
            db, customer_id, vehicle_id, start_time, end_time, promo_code
        )
        outcome = OrderPaymentOutcome(order=order)
        message = f"下单成功，订单码 {order.order_code}"
        if payment_method:
            order = await order_state.load_order(db, order.id)
            outcome, deposit_message = await _capture_deposit(
                db, order, payment_method, customer_id, gateway, return_url
            )
            message = f"{message}，{deposit_message}"
        outcome.order = await order_state.load_order(db, order.id)
        return outcome, message

    return await _run(db, "book", work)


async def capture_deposit(
    db: AsyncSession,
    order_id: int,
    actor_id: int,
    payment_method: str,
    gateway: Optional[PaymentGateway] = None,
    return_url: Optional[str] = None,
) -> ServiceResult[OrderPaymentOutcome]:
    """对 PENDING 订单补付押金"""
    async def work(locks: AsyncExitStack):
        await _hold(locks, order_locks, order_id)
        order = await order_state.load_order(db, order_id)
        await _hold(locks, wallet_locks, order.customer_id)

        actor = await order_state.get_user(db, actor_id)
        order_state.ensure_can_act(order, actor)
        outcome, message = await _capture_deposit(db, order, payment_method, actor.id, gateway, return_url)
        outcome.order = await order_state.load_order(db, order_id)
        return outcome, message

    return await _run(db, "capture_deposit", work)


# ==================== 交车 / 取消 ====================

async def start(db: AsyncSession, order_id: int, staff_id: int) -> ServiceResult[RentalOrder]:
    """员工交车"""
    async def work(locks: AsyncExitStack):
        await _hold(locks, order_locks, order_id)
        order = await order_state.load_order(db, order_id)
        staff = await order_state.get_user(db, staff_id)
        await order_state.start(db, order, staff)
        return await order_state.load_order(db, order_id), f"订单 {order.order_code} 已交车"

    return await _run(db, "start", work)


async def cancel(db: AsyncSession, order_id: int, actor_id: int,
                 reason: Optional[str] = None) -> ServiceResult[CancelOutcome]:
    """
    取消订单

    PENDING：作废待支付单，不涉及退款
    CONFIRMED：已付押金退回钱包
    """
    async def work(locks: AsyncExitStack):
        await _hold(locks, order_locks, order_id)
        order = await order_state.load_order(db, order_id)
        await _hold(locks, wallet_locks, order.customer_id)

        actor = await order_state.get_user(db, actor_id)
        previous_status = await order_state.cancel(db, order, actor, reason)
        _cancel_pending_payments(order)

        refunded = ZERO
        deposit_payment = _completed_payment(order, PaymentType.DEPOSIT)
        if previous_status == OrderStatus.CONFIRMED and deposit_payment:
            tx, _ = await _refund_to_wallet(
                db, order, Decimal(str(deposit_payment.amount)),
                description=f"订单 {order.order_code} 取消，退还押金",
            )
            refunded = Decimal(str(tx.amount))

        order = await order_state.load_order(db, order_id)
        message = f"订单 {order.order_code} 已取消"
        if refunded > ZERO:
            message = f"{message}，押金 {refunded} 已退回钱包"
        return CancelOutcome(order=order, previous_status=previous_status, refunded_amount=refunded), message

    return await _run(db, "cancel", work)


async def expire_pending_order(db: AsyncSession, order_id: int) -> ServiceResult[RentalOrder]:
    """超时未付押金的订单自动取消（定时任务调用）"""
    async def work(locks: AsyncExitStack):
        await _hold(locks, order_locks, order_id)
        order = await order_state.load_order(db, order_id)
        if _completed_payment(order, PaymentType.DEPOSIT):
            raise ConflictError(f"订单 {order.order_code} 押金已支付，不能超时取消")
        await order_state.expire(db, order)
        canceled = _cancel_pending_payments(order)
        order = await order_state.load_order(db, order_id)
        return order, f"订单 {order.order_code} 超时未支付押金，已自动取消（作废待支付单 {canceled} 笔）"

    return await _run(db, "expire", work)


# ==================== 还车结算 ====================

async def _auto_refund(db: AsyncSession, order: RentalOrder, operator_id: Optional[int]) -> RefundOutcome:
    """多付退款：已有退款流水时直接返回，不重复退"""
    if order.status != OrderStatus.COMPLETED:
        raise ConflictError(f"订单 {order.order_code} 当前状态为「{order.status_display}」，不能自动退款")

    if await wallet_ledger.has_refund(db, order.id):
        return RefundOutcome(order=order, amount=ZERO, already_refunded=True)

    result = await pricing.calculate_final_settlement(db, order)
    overpaid = -_outstanding(order, result)
    if overpaid <= ZERO:
        return RefundOutcome(order=order, amount=ZERO)

    tx, payment = await _refund_to_wallet(
        db, order, overpaid,
        description=f"订单 {order.order_code} 多付金额退回",
    )
    order_state.record_flow(
        db, order, "refunded", order.status, order.status,
        description=f"多付金额 {overpaid} 自动退回钱包",
        operator_id=operator_id,
        meta_data={"amount": str(overpaid), "payment_no": payment.payment_no},
    )
    return RefundOutcome(order=order, amount=overpaid, transaction=tx, payment=payment)


async def _finish_completion(
    db: AsyncSession,
    order: RentalOrder,
    result: pricing.FinalSettlement,
    operator_id: Optional[int],
    meta_data: Dict[str, Any],
) -> Decimal:
    """尾款已结清后完成订单，按配置退回多付"""
    await order_state.complete(db, order, result.total_price, operator_id, meta_data=meta_data)
    if settings.AUTO_REFUND_OVERPAYMENT and _outstanding(order, result) < ZERO:
        refund = await _auto_refund(db, order, operator_id)
        return refund.amount
    return ZERO


async def complete(
    db: AsyncSession,
    order_id: int,
    actor_id: int,
    payment_method: str = PaymentMethod.WALLET,
    gateway: Optional[PaymentGateway] = None,
    return_url: Optional[str] = None,
) -> ServiceResult[CompletionOutcome]:
    """
    还车结算

    只能由工作人员办理。
    尾款 = 基础价 - 押金 - 优惠 + 车损，已经到账的网关尾款从中扣除
    - 应付 <= 0：不扣款，直接完成
    - WALLET：先扣款，再完成订单（同一事务，扣款失败订单保持 ONGOING）
    - CASH：工作人员收款后直接完成
    - GATEWAY：创建待支付尾款单，回调成功后才完成
    """
    async def work(locks: AsyncExitStack):
        await _hold(locks, order_locks, order_id)
        order = await order_state.load_order(db, order_id)
        await _hold(locks, wallet_locks, order.customer_id)

        actor = await order_state.get_user(db, actor_id)
        if not actor.is_staff:
            raise ForbiddenError("还车结算只能由工作人员办理")
        order_state.check_transition(order, "complete")

        result = await pricing.calculate_final_settlement(db, order)
        due = max(_outstanding(order, result), ZERO)
        meta = _settlement_meta(result)
        payment = None
        refunded = ZERO

        if due <= ZERO:
            refunded = await _finish_completion(db, order, result, actor.id, meta)
            message = f"订单 {order.order_code} 已完成，无需支付尾款"
        elif payment_method == PaymentMethod.WALLET:
            key = wallet_ledger.idempotency_key_for(order.id, TransactionType.PAYMENT)
            tx = await wallet_ledger.debit(
                db, order.customer_id, due,
                transaction_type=TransactionType.PAYMENT,
                order_id=order.id,
                description=f"订单 {order.order_code} 尾款",
                idempotency_key=key,
            )
            _cancel_pending_payments(order, PaymentType.FINAL)
            payment = await _find_payment(db, key)
            if not payment:
                payment = _new_payment(db, order, due, PaymentMethod.WALLET, PaymentType.FINAL,
                                       PaymentStatus.COMPLETED, idempotency_key=key)
            await db.flush()
            meta.update({"method": PaymentMethod.WALLET, "payment_no": payment.payment_no,
                         "wallet_transaction_id": tx.id})
            refunded = await _finish_completion(db, order, result, actor.id, meta)
            message = f"订单 {order.order_code} 已完成，钱包扣除尾款 {due}"
        elif payment_method == PaymentMethod.CASH:
            _cancel_pending_payments(order, PaymentType.FINAL)
            payment = _new_payment(db, order, due, PaymentMethod.CASH, PaymentType.FINAL,
                                   PaymentStatus.COMPLETED)
            await db.flush()
            meta.update({"method": PaymentMethod.CASH, "payment_no": payment.payment_no})
            refunded = await _finish_completion(db, order, result, actor.id, meta)
            message = f"订单 {order.order_code} 已完成，现金收取尾款 {due}"
        elif payment_method == PaymentMethod.GATEWAY:
            _cancel_pending_payments(order, PaymentType.FINAL)
            payment = _new_payment(db, order, due, PaymentMethod.GATEWAY, PaymentType.FINAL,
                                   PaymentStatus.PENDING)
            await db.flush()
            url = _redirect_url(gateway, payment, return_url)
            order = await order_state.load_order(db, order_id)
            outcome = CompletionOutcome(order=order, settlement=result, amount_charged=ZERO,
                                        payment=payment, payment_url=url)
            return outcome, f"请前往支付页面支付尾款 {due}"
        else:
            raise ValidationError(f"不支持的支付方式: {payment_method}")

        order = await order_state.load_order(db, order_id)
        outcome = CompletionOutcome(order=order, settlement=result, amount_charged=due,
                                    payment=payment, refunded_amount=refunded)
        return outcome, message

    return await _run(db, "complete", work)


# ==================== 网关回调 ====================

async def handle_gateway_callback(
    db: AsyncSession,
    params: Mapping[str, str],
    gateway: PaymentGateway,
) -> ServiceResult[CallbackOutcome]:
    """
    处理网关回调

    只信任网关校验过签名的回调；同一支付单重复回调返回首次处理结果，不重复流转
    """
    async def work(locks: AsyncExitStack):
        callback: GatewayCallback = gateway.verify_callback(params)

        payment = await _get_payment_by_no(db, callback.order_ref)
        await _hold(locks, order_locks, payment.order_id)
        payment = await _get_payment_by_no(db, callback.order_ref)
        order = await order_state.load_order(db, payment.order_id)

        if payment.status in (PaymentStatus.COMPLETED, PaymentStatus.FAILED):
            outcome = CallbackOutcome(payment=payment, order=order,
                                      success=payment.status == PaymentStatus.COMPLETED, replayed=True)
            return outcome, f"支付单 {payment.payment_no} 已处理过，忽略重复回调"

        if payment.status == PaymentStatus.CANCELED:
            if callback.success:
                settlement_logger.error(
                    f"已作废的支付单收到成功回调，需人工处理: 单号={payment.payment_no} "
                    f"网关交易号={callback.transaction_id} 金额={callback.amount}"
                )
                raise ConflictError(f"支付单 {payment.payment_no} 已作废，请联系工作人员处理退款")
            outcome = CallbackOutcome(payment=payment, order=order, success=False, replayed=True)
            return outcome, f"支付单 {payment.payment_no} 已作废"

        if callback.amount != Decimal(str(payment.amount)):
            raise ValidationError(
                f"回调金额 {callback.amount} 与支付单金额 {payment.amount} 不一致"
            )

        payment.gateway_response = json.dumps(dict(params), ensure_ascii=False)

        if not callback.success:
            payment.status = PaymentStatus.FAILED
            await db.flush()
            order = await order_state.load_order(db, order.id)
            outcome = CallbackOutcome(payment=payment, order=order, success=False)
            return outcome, f"支付单 {payment.payment_no} 支付失败（代码 {callback.response_code}）"

        if callback.transaction_id:
            result = await db.execute(
                select(Payment.id).where(
                    Payment.gateway_tx_id == callback.transaction_id,
                    Payment.id != payment.id,
                )
            )
            if result.scalar_one_or_none() is not None:
                raise ConflictError(f"网关交易号 {callback.transaction_id} 已被使用")

        payment.status = PaymentStatus.COMPLETED
        payment.gateway_tx_id = callback.transaction_id
        payment.payment_date = datetime.utcnow()
        meta = {
            "method": PaymentMethod.GATEWAY,
            "payment_no": payment.payment_no,
            "gateway_tx_id": callback.transaction_id,
            "amount": str(callback.amount),
        }

        if payment.payment_type == PaymentType.DEPOSIT:
            await order_state.confirm(db, order, meta_data=meta)
            message = f"订单 {order.order_code} 押金支付成功，订单已确认"
        elif payment.payment_type == PaymentType.FINAL:
            await _hold(locks, wallet_locks, order.customer_id)
            result = await pricing.calculate_final_settlement(db, order)
            remaining = _outstanding(order, result)
            if remaining > ZERO:
                # 下单尾款后又新增了车损，到账金额不够，订单保持 ONGOING
                settlement_logger.warning(
                    f"尾款到账不足: 订单={order.order_code} 单号={payment.payment_no} "
                    f"到账={callback.amount} 仍需={remaining}"
                )
                await db.flush()
                order = await order_state.load_order(db, order.id)
                outcome = CallbackOutcome(payment=payment, order=order, success=True, remaining_amount=remaining)
                return outcome, f"订单 {order.order_code} 尾款 {callback.amount} 已到账，还需支付 {remaining}"
            meta.update(_settlement_meta(result))
            await _finish_completion(db, order, result, None, meta)
            message = f"订单 {order.order_code} 尾款支付成功，订单已完成"
        else:
            raise ValidationError(f"支付单 {payment.payment_no} 类型不支持网关回调")

        await db.flush()
        order = await order_state.load_order(db, order.id)
        return CallbackOutcome(payment=payment, order=order, success=True), message

    return await _run(db, "gateway_callback", work)


# ==================== 退款 ====================

async def refund(db: AsyncSession, order_id: int, actor_id: int, amount: Optional[Decimal] = None,
                 reason: Optional[str] = None) -> ServiceResult[RefundOutcome]:
    """
    手动退款 COMPLETED → REFUNDED

    金额默认为押金，可部分退款，不能超过已收款；已退过款的订单拒绝再次退款
    """
    async def work(locks: AsyncExitStack):
        await _hold(locks, order_locks, order_id)
        order = await order_state.load_order(db, order_id)
        await _hold(locks, wallet_locks, order.customer_id)

        actor = await order_state.get_user(db, actor_id)
        if not actor.is_staff:
            raise ForbiddenError("只有工作人员可以退款")
        order_state.check_transition(order, "refund")
        if await wallet_ledger.has_refund(db, order.id):
            raise ConflictError(f"订单 {order.order_code} 已退款，不能重复退款")

        value = Decimal(str(amount)) if amount is not None else Decimal(str(order.deposit_amount))
        value = pricing.round_money(value)
        if value <= ZERO:
            raise ValidationError("退款金额必须大于 0")
        paid = _paid_total(order)
        if value > paid:
            raise ValidationError(f"退款金额 {value} 超过已收款 {paid}")

        tx, payment = await _refund_to_wallet(
            db, order, value,
            description=f"订单 {order.order_code} 退款" + (f"：{reason}" if reason else ""),
        )
        await db.flush()
        await order_state.mark_refunded(
            db, order, operator_id=actor.id, reason=reason,
            meta_data={"amount": str(value), "payment_no": payment.payment_no},
        )
        order = await order_state.load_order(db, order_id)
        outcome = RefundOutcome(order=order, amount=value, transaction=tx, payment=payment)
        return outcome, f"订单 {order.order_code} 已退款 {value}"

    return await _run(db, "refund", work)


async def auto_refund(db: AsyncSession, order_id: int, actor_id: int) -> ServiceResult[RefundOutcome]:
    """多付金额退回（幂等，已退过款直接返回）"""
    async def work(locks: AsyncExitStack):
        await _hold(locks, order_locks, order_id)
        order = await order_state.load_order(db, order_id)
        await _hold(locks, wallet_locks, order.customer_id)

        actor = await order_state.get_user(db, actor_id)
        order_state.ensure_can_act(order, actor)
        outcome = await _auto_refund(db, order, actor.id)
        await db.flush()
        outcome.order = await order_state.load_order(db, order_id)

        if outcome.already_refunded:
            message = f"订单 {order.order_code} 已退过款，无需重复退款"
        elif outcome.amount > ZERO:
            message = f"订单 {order.order_code} 多付金额 {outcome.amount} 已退回钱包"
        else:
            message = f"订单 {order.order_code} 无多付金额"
        return outcome, message

    return await _run(db, "auto_refund", work)


# ==================== 钱包 ====================

async def get_wallet(db: AsyncSession, account_id: int) -> ServiceResult[Wallet]:
    """查询钱包（不存在则创建）"""
    async def work(locks: AsyncExitStack):
        await _hold(locks, wallet_locks, account_id)
        return await wallet_ledger.get_or_create_wallet(db, account_id), "查询成功"

    return await _run(db, "get_wallet", work)


async def top_up(db: AsyncSession, account_id: int, amount: Decimal, description: Optional[str] = None,
                 idempotency_key: Optional[str] = None) -> ServiceResult[WalletTransaction]:
    """钱包充值"""
    async def work(locks: AsyncExitStack):
        await _hold(locks, wallet_locks, account_id)
        tx = await wallet_ledger.top_up(db, account_id, pricing.round_money(amount), description, idempotency_key)
        return tx, f"充值 {tx.amount} 成功"

    return await _run(db, "top_up", work)


async def wallet_transactions(db: AsyncSession, account_id: int, skip: int = 0, limit: int = 20,
                              transaction_type: Optional[str] = None
                              ) -> ServiceResult[Tuple[int, List[WalletTransaction]]]:
    async def work(locks: AsyncExitStack):
        await _hold(locks, wallet_locks, account_id)
        page = await wallet_ledger.list_transactions(db, account_id, skip, limit, transaction_type)
        return page, "查询成功"

    return await _run(db, "wallet_transactions", work)


async def reconcile_wallet(db: AsyncSession, account_id: int) -> ServiceResult[dict]:
    async def work(locks: AsyncExitStack):
        await _hold(locks, wallet_locks, account_id)
        report = await wallet_ledger.reconcile(db, account_id)
        return report, "对账一致" if report["consistent"] else "对账不一致"

    return await _run(db, "reconcile", work)

