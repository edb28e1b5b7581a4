import base64
from urllib.parse import parse_qs

import httpx
import pytest

from otp_backend.core.config import Settings
from otp_backend.services.exceptions import NotificationError
from otp_backend.services.sms_service import (
    TwilioSMSNotifier,
    create_sms_notifier,
    format_otp_message,
)


def make_notifier(handler) -> TwilioSMSNotifier:
    return TwilioSMSNotifier(
        account_sid="AC123",
        auth_token="secret",
        from_number="+15550000000",
        transport=httpx.MockTransport(handler),
    )


async def test_send_message_posts_form_to_twilio():
    captured = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["request"] = request
        return httpx.Response(201, json={"sid": "SM42", "status": "queued"})

    notifier = make_notifier(handler)
    sid = await notifier.send_message("+15551234567", "hello")
    await notifier.close()

    assert sid == "SM42"
    request = captured["request"]
    assert request.method == "POST"
    assert request.url.path == "/2010-04-01/Accounts/AC123/Messages.json"
    form = parse_qs(request.content.decode())
    assert form == {"To": ["+15551234567"], "From": ["+15550000000"], "Body": ["hello"]}
    expected_auth = base64.b64encode(b"AC123:secret").decode()
    assert request.headers["Authorization"] == f"Basic {expected_auth}"


async def test_twilio_error_status_raises():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(400, json={"code": 21211, "message": "Invalid 'To' Phone Number"})

    notifier = make_notifier(handler)
    with pytest.raises(NotificationError, match="21211"):
        await notifier.send_message("+1", "hello")
    await notifier.close()


async def test_transport_error_raises():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    notifier = make_notifier(handler)
    with pytest.raises(NotificationError):
        await notifier.send_message("+15551234567", "hello")
    await notifier.close()


def test_notifier_requires_all_credentials():
    settings = Settings(_env_file=None, twilio_account_sid="AC123", twilio_auth_token="secret")
    assert create_sms_notifier(settings) is None


async def test_notifier_created_when_configured():
    settings = Settings(
        _env_file=None,
        twilio_account_sid="AC123",
        twilio_auth_token="secret",
        twilio_phone_number="+15550000000",
    )
    notifier = create_sms_notifier(settings)
    assert isinstance(notifier, TwilioSMSNotifier)
    await notifier.close()


def test_otp_message_mentions_code_and_expiry():
    body = format_otp_message("123456", 5)
    assert "123456" in body
    assert "5 minutes" in body
