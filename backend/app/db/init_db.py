import asyncio
import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession

from app.db.session import engine as default_engine, SessionLocal
from app.db.base import Base

# 导入所有模型，确保表能被创建
from app.models import (
    User, VehicleModel, Vehicle, RentalOrder, OrderFlow,
    Promotion, DamageReport, Wallet, WalletTransaction, Payment
)
from app.models.v3 import VehicleStatus

logger = logging.getLogger(__name__)


async def ensure_tables_exist(engine: Optional[AsyncEngine] = None) -> None:
    """
    确保数据库表存在（应用启动时调用）
    """
    async with (engine or default_engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def seed_demo_data(db: AsyncSession) -> bool:
    """
    写入演示数据（已有用户时跳过）

    Returns:
        是否写入了数据
    """
    result = await db.execute(select(User.id).limit(1))
    if result.scalar_one_or_none() is not None:
        logger.info("已有数据，跳过演示数据")
        return False

    db.add_all([
        User(username="admin", full_name="管理员", role="admin"),
        User(username="staff01", full_name="站点员工", role="staff"),
        User(username="customer01", full_name="演示客户", role="customer"),
    ])

    model = VehicleModel(name="VinFast VF e34", price_per_hour=Decimal("10"))
    db.add(model)
    await db.flush()

    db.add_all([
        Vehicle(serial_number=f"EV-{i:04d}", model_id=model.id, station_id=1,
                status=VehicleStatus.AVAILABLE, battery_level=100)
        for i in range(1, 4)
    ])

    now = datetime.now()
    db.add(Promotion(
        promo_code="SAVE10",
        discount_percentage=Decimal("10"),
        start_date=now - timedelta(days=1),
        end_date=now + timedelta(days=365),
        is_active=True,
    ))
    await db.commit()
    logger.info("演示数据写入完成: 3 个用户、1 个车型、3 辆车、1 个优惠码")
    return True


async def init_db() -> None:
    """
    初始化数据库 - 创建所有表并写入演示数据
    """
    await ensure_tables_exist()
    async with SessionLocal() as db:
        await seed_demo_data(db)


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    asyncio.run(init_db())
