"""FastAPI 应用入口"""

import time
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from otp_backend.api.otp import router as otp_router
from otp_backend.core.config import Settings, get_settings
from otp_backend.core.database import Database
from otp_backend.core.logging_config import get_logger, setup_logging
from otp_backend.core.responses import localized_error_response
from otp_backend.services.exceptions import OTPError
from otp_backend.services.otp_service import Clock, utcnow
from otp_backend.services.sms_service import Notifier, create_sms_notifier

logger = get_logger("otp_backend")


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """应用生命周期管理"""
    settings: Settings = app.state.settings
    if settings.auto_create_tables:
        await app.state.database.create_all()

    logger.info(
        f"{settings.app_name} started (environment={settings.environment}, "
        f"sms={'enabled' if app.state.notifier else 'disabled'})"
    )

    yield

    # 关闭时
    owned_notifier = app.state.owned_notifier
    if owned_notifier is not None:
        await owned_notifier.close()
    await app.state.database.close()


def register_exception_handlers(app: FastAPI) -> None:
    """领域错误统一转换为 {success, message, error} 响应"""

    @app.exception_handler(OTPError)
    async def otp_error_handler(request: Request, exc: OTPError):
        if exc.status_code >= 500:
            logger.error(f"{exc.code} on {request.url.path}: {exc.detail}")
        else:
            logger.info(f"{exc.code} on {request.url.path}")
        return localized_error_response(
            request,
            exc.message_key,
            status_code=exc.status_code,
            error=exc.code,
            data=exc.data,
            **exc.message_params,
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        detail = "; ".join(
            f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}"
            for error in exc.errors()
        )
        return localized_error_response(
            request,
            "errors.invalid_request",
            status_code=400,
            error=detail,
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        logger.exception(f"Unhandled error on {request.url.path}")
        return localized_error_response(
            request,
            "errors.internal_error",
            status_code=500,
            error="internal_error",
        )


def create_app(
    settings: Optional[Settings] = None,
    clock: Optional[Clock] = None,
    notifier: Optional[Notifier] = None,
) -> FastAPI:
    """
    创建应用

    Args:
        settings: 配置，缺省时从环境变量读取
        clock: 当前时间函数（测试中可替换）
        notifier: 短信通知器，缺省时按 Twilio 配置创建
    """
    settings = settings or get_settings()
    setup_logging(settings.log_level, settings.log_file, sql_echo=settings.database_echo)

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        debug=settings.debug,
        description="OTP 生成、验证与重发 API",
        lifespan=lifespan,
    )

    database = Database(settings.database_url, echo=settings.database_echo)
    database.connect()

    owned_notifier = None
    if notifier is None:
        notifier = owned_notifier = create_sms_notifier(settings)

    app.state.settings = settings
    app.state.database = database
    app.state.notifier = notifier
    app.state.owned_notifier = owned_notifier
    app.state.clock = clock or utcnow

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allow_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Origin", "Content-Type", "Accept", "Authorization", "Accept-Language"],
        expose_headers=["Content-Length"],
    )

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        """请求日志（不记录请求体，避免泄露验证码）"""
        start = time.perf_counter()
        response = await call_next(request)
        logger.info(
            "HTTP %s %s from %s -> %s (%.1f ms)",
            request.method,
            request.url.path,
            request.client.host if request.client else "?",
            response.status_code,
            (time.perf_counter() - start) * 1000,
        )
        return response

    register_exception_handlers(app)

    app.include_router(otp_router)

    @app.get("/health")
    async def health_check() -> dict:
        """健康检查端点"""
        return {"status": "ok", "message": "OTP Verification API is running"}

    return app


def get_application() -> FastAPI:
    """uvicorn --factory 入口"""
    return create_app()
