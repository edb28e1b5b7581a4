"""OTP 验证码服务

负责验证码的完整生命周期：限流检查、创建、验证、重发，以及验证成功后的用户更新。
过期和尝试次数耗尽不单独存储状态，而是在检查时根据记录和当前时间计算。
"""

import hmac
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Optional

from otp_backend.core.config import Settings
from otp_backend.models import OTPRecord
from otp_backend.services.contact import Contact, ContactType
from otp_backend.services.exceptions import (
    AlreadyVerified,
    AttemptsExceeded,
    CodeMismatch,
    Expired,
    NotFound,
    NotificationError,
    RateLimited,
)
from otp_backend.services.otp_generator import generate_otp
from otp_backend.services.otp_store import OTPStore
from otp_backend.services.sms_service import (
    NotificationStatus,
    Notifier,
    format_otp_message,
)

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    """当前 UTC 时间（naive，与数据库列一致）"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


@dataclass(frozen=True)
class OTPPolicy:
    """验证码策略参数"""
    code_length: int = 6
    expire_minutes: int = 5
    max_attempts: int = 3
    rate_limit_max_requests: int = 3
    rate_limit_window_minutes: int = 60
    expose_code: bool = False  # 非生产环境在结果中返回验证码

    @classmethod
    def from_settings(cls, settings: Settings) -> "OTPPolicy":
        return cls(
            code_length=settings.otp_length,
            expire_minutes=settings.otp_expire_minutes,
            max_attempts=settings.otp_max_attempts,
            rate_limit_max_requests=settings.otp_rate_limit_max_requests,
            rate_limit_window_minutes=settings.otp_rate_limit_window_minutes,
            expose_code=settings.expose_otp_code,
        )

    @property
    def ttl(self) -> timedelta:
        return timedelta(minutes=self.expire_minutes)

    @property
    def rate_limit_window(self) -> timedelta:
        return timedelta(minutes=self.rate_limit_window_minutes)


class OTPState(str, Enum):
    PENDING = "pending"
    VERIFIED = "verified"
    EXPIRED = "expired"
    ATTEMPTS_EXHAUSTED = "attempts_exhausted"


def is_expired(record: OTPRecord, now: datetime) -> bool:
    return now > record.expires_at


def attempts_exhausted(record: OTPRecord, max_attempts: int) -> bool:
    return record.attempt_count >= max_attempts


def otp_state(record: OTPRecord, now: datetime, max_attempts: int) -> OTPState:
    """记录在 now 时刻的状态，优先级与验证检查顺序一致"""
    if record.is_verified:
        return OTPState.VERIFIED
    if is_expired(record, now):
        return OTPState.EXPIRED
    if attempts_exhausted(record, max_attempts):
        return OTPState.ATTEMPTS_EXHAUSTED
    return OTPState.PENDING


def record_contact(record: OTPRecord) -> Contact:
    if record.email:
        return Contact(ContactType.EMAIL, record.email)
    return Contact(ContactType.PHONE, record.phone)


@dataclass
class IssuedOTP:
    """生成/重发结果"""
    otp_id: str
    contact: Contact
    expires_at: datetime
    sms_status: NotificationStatus
    otp_code: Optional[str] = None


@dataclass
class VerificationResult:
    """验证结果"""
    user_id: str
    email: Optional[str]
    phone: Optional[str]
    verified_at: datetime
    verified: bool = True


class OTPService:
    """OTP 验证码服务"""

    def __init__(
        self,
        store: OTPStore,
        notifier: Optional[Notifier] = None,
        policy: Optional[OTPPolicy] = None,
        clock: Clock = utcnow,
        generator: Callable[[int], str] = generate_otp,
    ):
        self.store = store
        self.notifier = notifier
        self.policy = policy or OTPPolicy()
        self.clock = clock
        self.generator = generator

    async def generate(self, contact: Contact) -> IssuedOTP:
        """
        为联系方式生成并发送验证码

        Raises:
            RateLimited: 滑动窗口内请求次数已达上限
            RandomnessUnavailable: 安全随机源不可用
        """
        return await self._issue(contact)

    async def resend(self, otp_id: str) -> IssuedOTP:
        """
        为原记录的联系方式重新生成验证码

        旧记录不会失效，在各自过期前都可以验证。重发同样计入限流。
        """
        old_otp = await self._get(otp_id)
        if old_otp.is_verified:
            raise AlreadyVerified()
        return await self._issue(record_contact(old_otp), resent_from=old_otp.id)

    async def verify(self, otp_id: str, code: str) -> VerificationResult:
        """
        验证验证码

        检查顺序：已验证 -> 已过期 -> 次数耗尽。通过后先增加尝试次数并提交，
        再比较验证码，因此任何一次比较都会消耗一次机会。
        """
        otp = await self._get(otp_id)
        now = self.clock()
        self._check_verifiable(otp, now)

        if not await self.store.increment_attempts(otp.id, self.policy.max_attempts):
            # 并发请求抢先用掉了最后一次机会或完成了验证
            await self.store.refresh(otp)
            self._check_verifiable(otp, now)
            raise AttemptsExceeded()
        await self.store.refresh(otp)

        if not hmac.compare_digest(otp.otp_code.encode(), code.encode()):
            remaining = max(self.policy.max_attempts - otp.attempt_count, 0)
            logger.info(f"OTP {otp.id} code mismatch, {remaining} attempts remaining")
            raise CodeMismatch(remaining)

        # 标记已验证和用户更新同一事务提交，失败时记录保持未验证
        user = await self.store.complete_verification(otp.id, record_contact(otp), now)
        if user is None:
            raise AlreadyVerified()
        await self.store.refresh(otp)
        logger.info(f"OTP {otp.id} verified for user {user.id}")

        return VerificationResult(
            user_id=user.id,
            email=user.email,
            phone=user.phone,
            verified_at=now,
        )

    def _check_verifiable(self, otp: OTPRecord, now: datetime) -> None:
        state = otp_state(otp, now, self.policy.max_attempts)
        if state is OTPState.VERIFIED:
            raise AlreadyVerified()
        if state is OTPState.EXPIRED:
            raise Expired()
        if state is OTPState.ATTEMPTS_EXHAUSTED:
            raise AttemptsExceeded()

    async def _get(self, otp_id: str) -> OTPRecord:
        otp = await self.store.get(otp_id)
        if otp is None:
            raise NotFound()
        return otp

    def _rate_limited(self, contact: Contact) -> RateLimited:
        logger.warning(
            f"OTP rate limit hit for {contact.type.value}: "
            f"{self.policy.rate_limit_max_requests} requests in "
            f"{self.policy.rate_limit_window_minutes} minutes"
        )
        return RateLimited()

    async def _issue(self, contact: Contact, resent_from: Optional[str] = None) -> IssuedOTP:
        now = self.clock()
        since = now - self.policy.rate_limit_window
        # 先做一次快速检查，已超限时不生成验证码
        if await self.store.count_since(contact, since) >= self.policy.rate_limit_max_requests:
            raise self._rate_limited(contact)

        code = self.generator(self.policy.code_length)

        otp = OTPRecord(
            id=str(uuid.uuid4()),
            email=contact.value if contact.is_email else None,
            phone=contact.value if contact.is_phone else None,
            otp_code=code,
            is_verified=False,
            attempt_count=0,
            created_at=now,
            expires_at=now + self.policy.ttl,
        )
        inserted = await self.store.insert_within_limit(
            otp, contact, since, self.policy.rate_limit_max_requests
        )
        if not inserted:
            raise self._rate_limited(contact)

        sms_status = await self._deliver(contact, code)

        if resent_from:
            logger.info(f"OTP {otp.id} resent (previous {resent_from}), sms_status={sms_status.value}")
        else:
            logger.info(f"OTP {otp.id} generated, sms_status={sms_status.value}")
        # 仅非生产环境记录验证码
        if self.policy.expose_code:
            logger.info(f"OTP code for {contact.value}: {code}")

        return IssuedOTP(
            otp_id=otp.id,
            contact=contact,
            expires_at=otp.expires_at,
            sms_status=sms_status,
            otp_code=code if self.policy.expose_code else None,
        )

    async def _deliver(self, contact: Contact, code: str) -> NotificationStatus:
        """尽力投递，失败只体现在状态上，不影响请求结果"""
        if contact.is_email:
            # TODO: 接入邮件渠道后改为实际发送
            logger.info("Email OTP delivery is not implemented")
            return NotificationStatus.NOT_APPLICABLE

        if self.notifier is None:
            return NotificationStatus.NOT_CONFIGURED

        body = format_otp_message(code, self.policy.expire_minutes)
        try:
            await self.notifier.send_message(contact.value, body)
        except NotificationError as e:
            logger.error(f"Failed to send OTP SMS: {e}")
            return NotificationStatus.FAILED
        return NotificationStatus.SENT
