"""数据模型模块"""

from otp_backend.models.otp import OTPRecord
from otp_backend.models.user import User

__all__ = [
    "OTPRecord",
    "User",
]
