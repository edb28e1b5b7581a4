"""OTP (One-Time Password) 相关模型"""

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import Boolean, DateTime, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from otp_backend.core.database import Base


class OTPRecord(Base):
    """OTP 验证码记录（不在核心逻辑中删除，保留用于限流历史和审计）"""

    __tablename__ = "otp_records"
    __table_args__ = (
        Index("ix_otp_records_email_created_at", "email", "created_at"),
        Index("ix_otp_records_phone_created_at", "phone", "created_at"),
    )

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    # email 与 phone 只能有一个有值
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    phone: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    otp_code: Mapped[str] = mapped_column(String(10), nullable=False)
    is_verified: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    attempt_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    verified_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    def __repr__(self) -> str:
        return (
            f"<OTPRecord id={self.id} verified={self.is_verified} "
            f"attempts={self.attempt_count}>"
        )
