"""安全验证码生成"""

import secrets

from otp_backend.services.exceptions import RandomnessUnavailable

DIGITS = "0123456789"


def generate_otp(length: int = 6) -> str:
    """
    生成固定长度的数字验证码

    每一位独立、均匀地取自 0-9，只使用 secrets（操作系统 CSPRNG）。

    Raises:
        ValueError: length 小于 1
        RandomnessUnavailable: 系统熵源不可用
    """
    if length < 1:
        raise ValueError("OTP length must be at least 1")

    try:
        return "".join(DIGITS[secrets.randbelow(len(DIGITS))] for _ in range(length))
    except (NotImplementedError, OSError) as e:
        raise RandomnessUnavailable(str(e)) from e
