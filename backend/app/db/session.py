import os
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from app.core.config import settings


def build_async_url(uri: str) -> str:
    """把同步 SQLite 连接串转换为 aiosqlite 连接串"""
    if uri.startswith("sqlite:///"):
        return uri.replace("sqlite:///", "sqlite+aiosqlite:///")
    return uri


def create_engine_for(uri: str) -> AsyncEngine:
    """
    创建异步引擎
    timeout 即 SQLite busy timeout，并发写入时等待写锁而不是直接报错
    """
    return create_async_engine(
        build_async_url(uri),
        echo=os.getenv("SQL_DEBUG", "false").lower() == "true",
        future=True,
        connect_args={"timeout": settings.SQLITE_BUSY_TIMEOUT},
    )


def create_session_factory(bind: AsyncEngine) -> sessionmaker:
    """创建异步会话工厂"""
    return sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=bind,
        class_=AsyncSession,
        expire_on_commit=False,
    )


# 创建异步引擎
# 仅在开发环境打印SQL（通过环境变量控制）
engine = create_engine_for(settings.SQLITE_DATABASE_URI)

# 创建异步会话
SessionLocal = create_session_factory(engine)
