"""OTP 验证服务"""

__version__ = "0.1.0"
