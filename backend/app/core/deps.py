"""依赖注入 - 单机版（无认证）"""
from typing import AsyncGenerator
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.session import SessionLocal
from app.services.gateway import PaymentGateway, get_gateway as build_gateway


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    获取数据库会话依赖
    """
    async with SessionLocal() as session:
        yield session


def get_gateway() -> PaymentGateway:
    """支付网关依赖（测试中可替换）"""
    return build_gateway()
