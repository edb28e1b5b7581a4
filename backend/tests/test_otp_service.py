import logging
import re
from datetime import timedelta

import pytest
from sqlalchemy.orm.attributes import set_committed_value

from otp_backend.services.contact import Contact
from otp_backend.services.exceptions import (
    AlreadyVerified,
    AttemptsExceeded,
    CodeMismatch,
    Expired,
    NotFound,
    RateLimited,
    StoreUnavailable,
)
from otp_backend.services.otp_service import OTPState, otp_state
from otp_backend.services.sms_service import NotificationStatus

from conftest import RecordingNotifier

PHONE = Contact.phone("+15551234567")
EMAIL = Contact.email("a@b.com")


def wrong_code(code: str) -> str:
    return "".join(str((int(d) + 1) % 10) for d in code)


async def test_generate_creates_pending_record(service, store, clock):
    issued = await service.generate(PHONE)

    assert re.fullmatch(r"^[0-9]{6}$", issued.otp_code)
    assert issued.expires_at == clock.now + timedelta(minutes=5)

    record = await store.get(issued.otp_id)
    assert record.phone == "+15551234567"
    assert record.email is None
    assert record.otp_code == issued.otp_code
    assert record.attempt_count == 0
    assert not record.is_verified
    assert record.verified_at is None
    assert otp_state(record, clock.now, 3) is OTPState.PENDING


async def test_fourth_request_in_window_is_rate_limited(service, store, clock):
    for _ in range(3):
        await service.generate(EMAIL)
        clock.advance(minutes=10)

    with pytest.raises(RateLimited):
        await service.generate(EMAIL)
    assert len(await store.find_by_contact(EMAIL)) == 3


async def test_rate_limit_window_slides(service, clock):
    for _ in range(3):
        await service.generate(EMAIL)

    clock.advance(minutes=59)
    with pytest.raises(RateLimited):
        await service.generate(EMAIL)

    clock.advance(minutes=1, seconds=1)
    issued = await service.generate(EMAIL)
    assert issued.otp_id


async def test_rate_limit_is_per_contact(service):
    for _ in range(3):
        await service.generate(EMAIL)

    issued = await service.generate(PHONE)
    assert issued.otp_id


async def test_verify_succeeds_exactly_once(service, store, clock):
    issued = await service.generate(PHONE)
    clock.advance(minutes=1)

    result = await service.verify(issued.otp_id, issued.otp_code)

    assert result.verified
    assert result.phone == "+15551234567"
    assert result.email is None
    assert result.verified_at == clock.now

    record = await store.get(issued.otp_id)
    assert record.is_verified
    assert record.attempt_count == 1
    assert record.verified_at == clock.now

    user = await store.get_user(PHONE)
    assert user.id == result.user_id
    assert user.is_phone_verified
    assert not user.is_email_verified

    with pytest.raises(AlreadyVerified):
        await service.verify(issued.otp_id, issued.otp_code)


async def test_wrong_code_consumes_attempts(service, store):
    issued = await service.generate(PHONE)
    bad = wrong_code(issued.otp_code)

    for remaining in (2, 1, 0):
        with pytest.raises(CodeMismatch) as exc_info:
            await service.verify(issued.otp_id, bad)
        assert exc_info.value.attempts_remaining == remaining

    record = await store.get(issued.otp_id)
    assert record.attempt_count == 3

    # 次数耗尽后即使验证码正确也失败
    with pytest.raises(AttemptsExceeded):
        await service.verify(issued.otp_id, issued.otp_code)
    await store.refresh(record)
    assert record.attempt_count == 3
    assert not record.is_verified


async def test_verify_after_expiry_fails(service, store, clock):
    issued = await service.generate(PHONE)
    clock.advance(minutes=5, seconds=1)

    with pytest.raises(Expired):
        await service.verify(issued.otp_id, issued.otp_code)

    record = await store.get(issued.otp_id)
    assert record.attempt_count == 0


async def test_verify_at_exact_expiry_is_allowed(service, clock):
    issued = await service.generate(PHONE)
    clock.advance(minutes=5)

    result = await service.verify(issued.otp_id, issued.otp_code)
    assert result.verified


async def test_verify_unknown_id(service):
    with pytest.raises(NotFound):
        await service.verify("does-not-exist", "123456")


async def test_already_verified_takes_precedence_over_expired(service, clock):
    issued = await service.generate(PHONE)
    await service.verify(issued.otp_id, issued.otp_code)
    clock.advance(hours=1)

    with pytest.raises(AlreadyVerified):
        await service.verify(issued.otp_id, issued.otp_code)


async def test_expired_takes_precedence_over_exhausted(service, clock):
    issued = await service.generate(PHONE)
    bad = wrong_code(issued.otp_code)
    for _ in range(3):
        with pytest.raises(CodeMismatch):
            await service.verify(issued.otp_id, bad)
    clock.advance(minutes=6)

    with pytest.raises(Expired):
        await service.verify(issued.otp_id, issued.otp_code)


async def test_lost_increment_race_reports_exhausted(service, store):
    issued = await service.generate(PHONE)
    # 模拟并发请求在检查之后用完了全部机会
    for _ in range(3):
        await store.increment_attempts(issued.otp_id, 3)

    original_get = store.get

    async def stale_get(otp_id):
        record = await original_get(otp_id)
        set_committed_value(record, "attempt_count", 0)
        return record

    store.get = stale_get
    with pytest.raises(AttemptsExceeded):
        await service.verify(issued.otp_id, issued.otp_code)


async def test_failed_user_update_leaves_code_unverified(service, store, monkeypatch):
    issued = await service.generate(PHONE)

    async def broken_upsert(contact, now):
        raise StoreUnavailable("connection lost")

    monkeypatch.setattr(store, "upsert_user", broken_upsert)
    with pytest.raises(StoreUnavailable):
        await service.verify(issued.otp_id, issued.otp_code)
    monkeypatch.undo()

    record = await store.get(issued.otp_id)
    assert not record.is_verified
    assert record.attempt_count == 1
    assert await store.get_user(PHONE) is None

    # 重试仍可完成验证
    result = await service.verify(issued.otp_id, issued.otp_code)
    assert result.phone == "+15551234567"
    assert (await store.get_user(PHONE)).id == result.user_id


async def test_resend_creates_independent_record(service, store):
    first = await service.generate(PHONE)

    second = await service.resend(first.otp_id)

    assert second.otp_id != first.otp_id
    record = await store.get(second.otp_id)
    assert record.phone == "+15551234567"
    assert record.attempt_count == 0

    # 旧验证码仍然有效
    result = await service.verify(first.otp_id, first.otp_code)
    assert result.verified
    result = await service.verify(second.otp_id, second.otp_code)
    assert result.user_id


async def test_resend_of_verified_record_creates_nothing(service, store):
    issued = await service.generate(EMAIL)
    await service.verify(issued.otp_id, issued.otp_code)

    with pytest.raises(AlreadyVerified):
        await service.resend(issued.otp_id)
    assert len(await store.find_by_contact(EMAIL)) == 1


async def test_resend_unknown_id(service):
    with pytest.raises(NotFound):
        await service.resend("does-not-exist")


async def test_resend_counts_toward_rate_limit(service, store):
    issued = await service.generate(PHONE)
    await service.resend(issued.otp_id)
    await service.resend(issued.otp_id)

    with pytest.raises(RateLimited):
        await service.resend(issued.otp_id)
    with pytest.raises(RateLimited):
        await service.generate(PHONE)
    assert len(await store.find_by_contact(PHONE)) == 3


async def test_sms_is_sent_for_phone(service, notifier):
    issued = await service.generate(PHONE)

    assert issued.sms_status is NotificationStatus.SENT
    destination, body = notifier.sent[0]
    assert destination == "+15551234567"
    assert issued.otp_code in body
    assert "5 minutes" in body


async def test_email_delivery_is_not_applicable(service, notifier):
    issued = await service.generate(EMAIL)

    assert issued.sms_status is NotificationStatus.NOT_APPLICABLE
    assert notifier.sent == []


async def test_missing_notifier_is_not_configured(service_factory):
    issued = await service_factory(notifier=None).generate(PHONE)
    assert issued.sms_status is NotificationStatus.NOT_CONFIGURED


async def test_notification_failure_does_not_fail_generate(service_factory, store):
    service = service_factory(notifier=RecordingNotifier(fail=True))

    issued = await service.generate(PHONE)

    assert issued.sms_status is NotificationStatus.FAILED
    assert await store.get(issued.otp_id) is not None
    result = await service.verify(issued.otp_id, issued.otp_code)
    assert result.verified


async def test_code_hidden_when_not_exposed(service_factory, store, caplog):
    caplog.set_level(logging.INFO)
    service = service_factory(notifier=RecordingNotifier(), expose_code=False)

    issued = await service.generate(PHONE)

    assert issued.otp_code is None
    record = await store.get(issued.otp_id)
    assert record.otp_code not in caplog.text


async def test_verifying_second_contact_updates_separate_users(service, store):
    email_otp = await service.generate(EMAIL)
    phone_otp = await service.generate(PHONE)

    email_result = await service.verify(email_otp.otp_id, email_otp.otp_code)
    phone_result = await service.verify(phone_otp.otp_id, phone_otp.otp_code)

    assert email_result.user_id != phone_result.user_id
    email_user = await store.get_user(EMAIL)
    assert email_user.is_email_verified
    assert not email_user.is_phone_verified


async def test_reverification_keeps_same_user(service, clock):
    first = await service.generate(EMAIL)
    first_result = await service.verify(first.otp_id, first.otp_code)

    clock.advance(minutes=2)
    second = await service.generate(EMAIL)
    second_result = await service.verify(second.otp_id, second.otp_code)

    assert second_result.user_id == first_result.user_id
    assert second_result.email == "a@b.com"
