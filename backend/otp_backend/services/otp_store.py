"""OTP 存储层

对 SQLAlchemy 会话的薄封装。计数自增和标记已验证都是带条件的单条 UPDATE，
并发请求下不会丢失计数，也只会有一个请求完成验证。限流计数与插入、
标记已验证与用户更新分别在同一事务中完成。
"""

import logging
import uuid
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, List, Optional

from sqlalchemy import delete, func, select, text, update
from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from otp_backend.models import OTPRecord, User
from otp_backend.services.contact import Contact
from otp_backend.services.exceptions import StoreUnavailable

logger = logging.getLogger(__name__)


def _contact_column(contact: Contact):
    return OTPRecord.email if contact.is_email else OTPRecord.phone


class OTPStore:
    """OTP 与用户记录的存储"""

    def __init__(self, db: AsyncSession):
        self.db = db

    @asynccontextmanager
    async def _translate_errors(self) -> AsyncIterator[None]:
        try:
            yield
        except (OperationalError, InterfaceError) as e:
            await self.db.rollback()
            logger.error(f"Store unavailable: {e}")
            raise StoreUnavailable(str(e)) from e

    async def insert(self, record: OTPRecord) -> OTPRecord:
        async with self._translate_errors():
            self.db.add(record)
            await self.db.commit()
        return record

    async def insert_within_limit(
        self, record: OTPRecord, contact: Contact, since: datetime, max_requests: int
    ) -> bool:
        """
        限流计数和插入在同一事务中完成

        同一联系方式的并发请求在事务内串行：PostgreSQL 使用事务级 advisory lock，
        SQLite 由先执行的 INSERT 取得写锁。插入后计数（含本条）超过上限则回滚。

        Returns:
            False 表示已达上限，记录未写入
        """
        try:
            async with self._translate_errors():
                await self._lock_contact(contact)
                self.db.add(record)
                await self.db.flush()
                count = await self.count_since(contact, since)
                if count > max_requests:
                    await self.db.rollback()
                    return False
                await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise
        return True

    async def _lock_contact(self, contact: Contact) -> None:
        if self.db.get_bind().dialect.name != "postgresql":
            return
        await self.db.execute(
            text("SELECT pg_advisory_xact_lock(hashtext(:key))"),
            {"key": f"otp:{contact.type.value}:{contact.value}"},
        )

    async def get(self, otp_id: str) -> Optional[OTPRecord]:
        async with self._translate_errors():
            result = await self.db.execute(
                select(OTPRecord).where(OTPRecord.id == otp_id)
            )
            return result.scalar_one_or_none()

    async def save(self, record: OTPRecord) -> OTPRecord:
        async with self._translate_errors():
            await self.db.merge(record)
            await self.db.commit()
        return record

    async def refresh(self, record: OTPRecord) -> OTPRecord:
        async with self._translate_errors():
            await self.db.refresh(record)
        return record

    async def count_since(self, contact: Contact, since: datetime) -> int:
        """统计某联系方式在 since 之后创建的记录数（限流滑动窗口）"""
        async with self._translate_errors():
            result = await self.db.execute(
                select(func.count())
                .select_from(OTPRecord)
                .where(
                    _contact_column(contact) == contact.value,
                    OTPRecord.created_at > since,
                )
            )
            return result.scalar_one()

    async def find_by_contact(self, contact: Contact) -> List[OTPRecord]:
        """某联系方式的全部历史记录，最新的在前"""
        async with self._translate_errors():
            result = await self.db.execute(
                select(OTPRecord)
                .where(_contact_column(contact) == contact.value)
                .order_by(OTPRecord.created_at.desc())
            )
            return list(result.scalars().all())

    async def increment_attempts(self, otp_id: str, max_attempts: int) -> bool:
        """
        原子地增加尝试次数

        Returns:
            False 表示记录已验证或次数已达上限（并发请求抢先）
        """
        async with self._translate_errors():
            result = await self.db.execute(
                update(OTPRecord)
                .where(
                    OTPRecord.id == otp_id,
                    OTPRecord.is_verified.is_(False),
                    OTPRecord.attempt_count < max_attempts,
                )
                .values(attempt_count=OTPRecord.attempt_count + 1)
                .execution_options(synchronize_session=False)
            )
            await self.db.commit()
            return result.rowcount == 1

    async def mark_verified(self, otp_id: str, verified_at: datetime) -> bool:
        """
        原子地标记为已验证（false -> true 只发生一次），不提交

        Returns:
            False 表示已被其他请求验证
        """
        async with self._translate_errors():
            result = await self.db.execute(
                update(OTPRecord)
                .where(OTPRecord.id == otp_id, OTPRecord.is_verified.is_(False))
                .values(is_verified=True, verified_at=verified_at)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    async def get_user(self, contact: Contact) -> Optional[User]:
        column = User.email if contact.is_email else User.phone
        async with self._translate_errors():
            result = await self.db.execute(select(User).where(column == contact.value))
            return result.scalar_one_or_none()

    async def upsert_user(self, contact: Contact, now: datetime) -> User:
        """
        获取或创建用户，并把对应联系方式标记为已验证，不提交

        已验证标记只会被置为 True，不会被重置。新用户会立即 flush，
        唯一约束冲突以 IntegrityError 抛出，由调用方回滚。
        """
        user = await self.get_user(contact)
        if user is None:
            user = User(
                id=str(uuid.uuid4()),
                email=contact.value if contact.is_email else None,
                phone=contact.value if contact.is_phone else None,
                is_email_verified=contact.is_email,
                is_phone_verified=contact.is_phone,
                created_at=now,
                updated_at=now,
            )
            async with self._translate_errors():
                self.db.add(user)
                await self.db.flush()
            logger.info(f"User created: {user.id}")
            return user

        if contact.is_email:
            user.is_email_verified = True
        else:
            user.is_phone_verified = True
        user.updated_at = now
        return user

    async def complete_verification(
        self, otp_id: str, contact: Contact, verified_at: datetime
    ) -> Optional[User]:
        """
        在同一事务中标记验证码已验证并更新用户，只提交一次

        任何一步失败都会整体回滚，记录保持未验证状态。

        Returns:
            验证后的用户；None 表示已被其他请求验证
        """
        for retry in range(2):
            try:
                if not await self.mark_verified(otp_id, verified_at):
                    await self.db.rollback()
                    return None
                user = await self.upsert_user(contact, verified_at)
                async with self._translate_errors():
                    await self.db.commit()
                return user
            except IntegrityError:
                # 并发验证同一联系方式时，另一请求已创建用户，重试时会更新该用户
                await self.db.rollback()
                if retry:
                    raise
            except Exception:
                await self.db.rollback()
                raise
        return None

    async def purge_before(self, cutoff: datetime) -> int:
        """
        删除在 cutoff 之前已过期且创建的记录

        cutoff 应早于限流窗口起点，以免影响限流统计。
        """
        async with self._translate_errors():
            result = await self.db.execute(
                delete(OTPRecord).where(
                    OTPRecord.expires_at < cutoff,
                    OTPRecord.created_at < cutoff,
                )
                .execution_options(synchronize_session=False)
            )
            await self.db.commit()
            return result.rowcount
