"""OTP 领域错误

每个错误携带机器可读的错误码、HTTP 状态码和 i18n 消息键，
由 main.py 中注册的异常处理器统一转换成响应。
"""

from typing import Any, Optional


class OTPError(Exception):
    """OTP 领域错误基类"""

    code = "otp_error"
    status_code = 400
    message_key = "errors.internal_error"

    def __init__(self, detail: Optional[str] = None, message_key: Optional[str] = None):
        self.detail = detail
        if message_key is not None:
            self.message_key = message_key
        super().__init__(detail or self.code)

    @property
    def message_params(self) -> dict[str, Any]:
        return {}

    @property
    def data(self) -> Optional[dict[str, Any]]:
        return None


class InvalidInput(OTPError):
    """联系方式缺失、冲突或格式不正确"""

    code = "invalid_input"
    status_code = 400
    message_key = "errors.invalid_input"


class RateLimited(OTPError):
    """时间窗口内请求次数过多"""

    code = "rate_limited"
    status_code = 429
    message_key = "errors.rate_limited"


class NotFound(OTPError):
    code = "not_found"
    status_code = 404
    message_key = "errors.not_found"


class AlreadyVerified(OTPError):
    code = "already_verified"
    status_code = 400
    message_key = "errors.already_verified"


class Expired(OTPError):
    code = "expired"
    status_code = 400
    message_key = "errors.expired"


class AttemptsExceeded(OTPError):
    code = "attempts_exceeded"
    status_code = 400
    message_key = "errors.attempts_exceeded"


class CodeMismatch(OTPError):
    """验证码错误，允许在尝试上限内重试"""

    code = "code_mismatch"
    status_code = 400
    message_key = "errors.code_mismatch"

    def __init__(self, attempts_remaining: int):
        self.attempts_remaining = attempts_remaining
        super().__init__(f"{attempts_remaining} attempts remaining")

    @property
    def message_params(self) -> dict[str, Any]:
        return {"remaining": self.attempts_remaining}

    @property
    def data(self) -> dict[str, Any]:
        return {"attempts_remaining": self.attempts_remaining}


class RandomnessUnavailable(OTPError):
    """安全随机源不可用，不允许降级到普通随机数"""

    code = "randomness_unavailable"
    status_code = 500
    message_key = "errors.randomness_unavailable"


class StoreUnavailable(OTPError):
    code = "store_unavailable"
    status_code = 503
    message_key = "errors.store_unavailable"


class NotificationError(Exception):
    """短信发送失败（只记录状态，不作为请求失败）"""
