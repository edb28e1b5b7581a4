"""联系方式（邮箱或手机号，二选一）"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from email_validator import EmailNotValidError, validate_email

from otp_backend.services.exceptions import InvalidInput

PHONE_MIN_LENGTH = 10
PHONE_MAX_LENGTH = 15


class ContactType(str, Enum):
    EMAIL = "email"
    PHONE = "phone"


@dataclass(frozen=True)
class Contact:
    """OTP 绑定的联系方式"""

    type: ContactType
    value: str

    @classmethod
    def email(cls, value: str) -> "Contact":
        value = (value or "").strip()
        if not value:
            raise InvalidInput("email is empty", message_key="errors.contact_required")
        try:
            validate_email(value, check_deliverability=False)
        except EmailNotValidError as e:
            raise InvalidInput(str(e), message_key="errors.invalid_email") from e
        return cls(ContactType.EMAIL, value)

    @classmethod
    def phone(cls, value: str) -> "Contact":
        value = (value or "").strip()
        if not value:
            raise InvalidInput("phone is empty", message_key="errors.contact_required")
        # 字符集规则由 API 层决定，这里只检查长度
        if not PHONE_MIN_LENGTH <= len(value) <= PHONE_MAX_LENGTH:
            raise InvalidInput(
                f"phone length must be {PHONE_MIN_LENGTH}-{PHONE_MAX_LENGTH}",
                message_key="errors.invalid_phone",
            )
        return cls(ContactType.PHONE, value)

    @classmethod
    def from_fields(cls, email: Optional[str] = None, phone: Optional[str] = None) -> "Contact":
        """
        从请求字段构造联系方式

        空白值视为未提供；两者都没有或同时提供都会抛出 InvalidInput。
        """
        email = (email or "").strip()
        phone = (phone or "").strip()

        if email and phone:
            raise InvalidInput("both email and phone given", message_key="errors.contact_conflict")
        if email:
            return cls.email(email)
        if phone:
            return cls.phone(phone)
        raise InvalidInput("email or phone is required", message_key="errors.contact_required")

    @property
    def is_email(self) -> bool:
        return self.type is ContactType.EMAIL

    @property
    def is_phone(self) -> bool:
        return self.type is ContactType.PHONE
