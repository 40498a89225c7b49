"""
定时任务调度器服务
使用 APScheduler 定期取消超时未付押金的订单
"""

import logging
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy import select, exists, and_
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.db.session import SessionLocal
from app.models.v3.payment import Payment, PaymentType, PaymentStatus
from app.models.v3.rental_order import RentalOrder, OrderStatus
from app.services import settlement

logger = logging.getLogger(__name__)

# 全局调度器实例
scheduler: Optional[AsyncIOScheduler] = None


def expiry_cutoff(now: Optional[datetime] = None) -> datetime:
    """早于该时间创建、仍未付押金的 PENDING 订单视为超时"""
    now = now or datetime.utcnow()
    return now - timedelta(minutes=settings.PENDING_ORDER_EXPIRE_MINUTES)


async def find_expired_orders(db: AsyncSession, now: Optional[datetime] = None) -> List[int]:
    """超时未付押金的订单ID"""
    deposit_paid = exists().where(and_(
        Payment.order_id == RentalOrder.id,
        Payment.payment_type == PaymentType.DEPOSIT,
        Payment.status == PaymentStatus.COMPLETED,
    ))
    result = await db.execute(
        select(RentalOrder.id)
        .where(
            RentalOrder.is_active == True,
            RentalOrder.status == OrderStatus.PENDING,
            RentalOrder.created_at < expiry_cutoff(now),
            ~deposit_paid,
        )
        .order_by(RentalOrder.id)
    )
    return list(result.scalars().all())


async def expire_pending_orders(
    session_factory: Callable[[], AsyncSession] = SessionLocal,
    now: Optional[datetime] = None,
) -> int:
    """
    执行一次超时取消

    每个订单单独一个事务，一个失败不影响其它订单

    Returns:
        实际取消的订单数
    """
    async with session_factory() as db:
        order_ids = await find_expired_orders(db, now)

    if not order_ids:
        return 0

    expired = 0
    for order_id in order_ids:
        async with session_factory() as db:
            result = await settlement.expire_pending_order(db, order_id)
        if result.success:
            expired += 1
        else:
            # 期间已付押金或已被取消
            logger.info(f"订单 {order_id} 跳过超时取消: {result.message}")

    logger.info(f"⏰ 超时订单检查完成: 待处理 {len(order_ids)} 笔，已取消 {expired} 笔")
    return expired


async def expire_pending_orders_job():
    """调度器入口"""
    try:
        await expire_pending_orders()
    except Exception:
        logger.exception("❌ 超时订单检查失败")


def init_scheduler():
    """初始化并启动调度器"""
    global scheduler

    if not settings.PENDING_ORDER_EXPIRY_ENABLED:
        logger.info("⏰ 超时订单自动取消已禁用")
        return

    scheduler = AsyncIOScheduler()

    scheduler.add_job(
        expire_pending_orders_job,
        trigger=IntervalTrigger(minutes=settings.PENDING_ORDER_CHECK_INTERVAL_MINUTES),
        id="expire_pending_orders",
        name="超时未付押金订单自动取消",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )

    scheduler.start()
    logger.info(
        f"⏰ 定时任务调度器已启动 - 每 {settings.PENDING_ORDER_CHECK_INTERVAL_MINUTES} 分钟检查一次，"
        f"超过 {settings.PENDING_ORDER_EXPIRE_MINUTES} 分钟未付押金的订单自动取消"
    )


def shutdown_scheduler():
    """关闭调度器"""
    global scheduler
    if scheduler:
        scheduler.shutdown()
        scheduler = None
        logger.info("⏰ 定时任务调度器已关闭")


def get_scheduler_status() -> dict:
    """获取调度器状态"""
    if not scheduler:
        return {
            "enabled": settings.PENDING_ORDER_EXPIRY_ENABLED,
            "running": False,
            "jobs": []
        }

    jobs = []
    for job in scheduler.get_jobs():
        jobs.append({
            "id": job.id,
            "name": job.name,
            "next_run_time": job.next_run_time.isoformat() if job.next_run_time else None
        })

    return {
        "enabled": settings.PENDING_ORDER_EXPIRY_ENABLED,
        "running": scheduler.running,
        "jobs": jobs
    }
