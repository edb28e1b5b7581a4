"""OTP API - 生成 / 验证 / 重发"""

from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, EmailStr, Field, field_validator

from otp_backend.core.responses import localized_success_response
from otp_backend.services.contact import Contact, PHONE_MAX_LENGTH, PHONE_MIN_LENGTH
from otp_backend.services.otp_service import IssuedOTP, OTPService
from otp_backend.services.sms_service import NotificationStatus
from otp_backend.api.deps import get_otp_service

router = APIRouter(prefix="/api/otp", tags=["otp"])


# ============================================================================
# 请求/响应模型
# ============================================================================

class GenerateOTPRequest(BaseModel):
    """生成 OTP 请求（email 和 phone 二选一）"""
    email: Optional[EmailStr] = Field(None, description="邮箱")
    phone: Optional[str] = Field(
        None,
        description="手机号",
        min_length=PHONE_MIN_LENGTH,
        max_length=PHONE_MAX_LENGTH,
        pattern=r"^\+?[0-9]+$",
    )

    @field_validator("email", "phone", mode="before")
    @classmethod
    def _blank_as_none(cls, value):
        if isinstance(value, str) and not value.strip():
            return None
        return value


class VerifyOTPRequest(BaseModel):
    """验证 OTP 请求"""
    otp_id: str = Field(..., description="OTP ID", min_length=1)
    otp_code: str = Field(..., description="验证码", min_length=6, max_length=6)


class ResendOTPRequest(BaseModel):
    """重发 OTP 请求"""
    otp_id: str = Field(..., description="OTP ID", min_length=1)


class OTPData(BaseModel):
    otp_id: str
    expires_at: datetime
    sms_status: NotificationStatus
    otp_code: Optional[str] = None


class VerifyData(BaseModel):
    verified: bool
    user_id: str
    email: Optional[str] = None
    phone: Optional[str] = None
    timestamp: datetime


class OTPResponse(BaseModel):
    success: bool
    message: str
    data: OTPData


class VerifyResponse(BaseModel):
    success: bool
    message: str
    data: VerifyData


def _as_utc(value: datetime) -> datetime:
    """数据库中是 naive UTC，响应中带上时区"""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _otp_data(issued: IssuedOTP) -> dict:
    data = {
        "otp_id": issued.otp_id,
        "expires_at": _as_utc(issued.expires_at),
        "sms_status": issued.sms_status,
    }
    # 只有非生产环境才会带上验证码
    if issued.otp_code is not None:
        data["otp_code"] = issued.otp_code
    return data


# ============================================================================
# API 端点
# ============================================================================

@router.post("/generate", response_model=OTPResponse, response_model_exclude_none=True)
async def generate_otp(
    request: Request,
    otp_request: GenerateOTPRequest,
    service: OTPService = Depends(get_otp_service),
):
    """
    生成并发送 OTP

    限制：同一联系方式 60 分钟内最多 3 次（含重发）
    """
    contact = Contact.from_fields(email=otp_request.email, phone=otp_request.phone)
    issued = await service.generate(contact)
    return localized_success_response(request, "success.otp_sent", data=_otp_data(issued))


@router.post("/verify", response_model=VerifyResponse)
async def verify_otp(
    request: Request,
    verify_request: VerifyOTPRequest,
    service: OTPService = Depends(get_otp_service),
):
    """验证 OTP，成功后创建或更新用户"""
    result = await service.verify(verify_request.otp_id, verify_request.otp_code)
    return localized_success_response(
        request,
        "success.otp_verified",
        data={
            "verified": result.verified,
            "user_id": result.user_id,
            "email": result.email,
            "phone": result.phone,
            "timestamp": _as_utc(result.verified_at),
        },
    )


@router.post("/resend", response_model=OTPResponse, response_model_exclude_none=True)
async def resend_otp(
    request: Request,
    resend_request: ResendOTPRequest,
    service: OTPService = Depends(get_otp_service),
):
    """为原记录的联系方式重新生成 OTP（旧验证码仍然有效）"""
    issued = await service.resend(resend_request.otp_id)
    return localized_success_response(request, "success.otp_resent", data=_otp_data(issued))
