"""API 依赖函数"""

from typing import AsyncGenerator

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from otp_backend.services.otp_service import OTPPolicy, OTPService
from otp_backend.services.otp_store import OTPStore


async def get_db(request: Request) -> AsyncGenerator[AsyncSession, None]:
    """请求级数据库会话"""
    async for session in request.app.state.database.sessions():
        yield session


def get_otp_service(
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> OTPService:
    """
    按请求组装 OTP 服务

    存储、通知器、策略和时钟都来自应用启动时创建的对象。
    """
    state = request.app.state
    return OTPService(
        store=OTPStore(db),
        notifier=state.notifier,
        policy=OTPPolicy.from_settings(state.settings),
        clock=state.clock,
    )
