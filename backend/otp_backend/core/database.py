"""数据库连接"""

import logging
from typing import AsyncGenerator, Optional

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    """ORM 基类"""


class Database:
    """
    数据库句柄

    由应用启动时显式创建并挂到 app.state 上，不使用模块级全局引擎。
    """

    def __init__(self, url: str, echo: bool = False):
        self.url = url
        self.echo = echo
        self._engine: Optional[AsyncEngine] = None
        self._session_maker: Optional[async_sessionmaker[AsyncSession]] = None

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            raise RuntimeError("Database is not connected")
        return self._engine

    def connect(self) -> None:
        """创建引擎和会话工厂"""
        if self._engine is not None:
            return
        self._engine = create_async_engine(self.url, echo=self.echo, pool_pre_ping=True)
        self._session_maker = async_sessionmaker(
            self._engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )
        logger.info("Database engine created for %s", self._engine.url.render_as_string(hide_password=True))

    async def create_all(self) -> None:
        """创建所有表（开发环境使用，生产环境走 alembic）"""
        # 必须导入所有模型以便 SQLAlchemy 能够注册它们
        import otp_backend.models  # noqa: F401

        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database tables initialized")

    def session(self) -> AsyncSession:
        if self._session_maker is None:
            raise RuntimeError("Database is not connected")
        return self._session_maker()

    async def sessions(self) -> AsyncGenerator[AsyncSession, None]:
        """请求级会话"""
        async with self.session() as session:
            yield session

    async def close(self) -> None:
        """关闭数据库连接"""
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
            self._session_maker = None
