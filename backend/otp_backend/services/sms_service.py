"""短信发送服务（Twilio）"""

import logging
from enum import Enum
from typing import Optional, Protocol

import httpx

from otp_backend.core.config import Settings
from otp_backend.core.i18n import t
from otp_backend.services.exceptions import NotificationError

logger = logging.getLogger(__name__)


class NotificationStatus(str, Enum):
    """验证码投递结果"""
    SENT = "sent"
    FAILED = "failed"
    NOT_CONFIGURED = "not_configured"  # 未配置短信凭据
    NOT_APPLICABLE = "not_applicable"  # 该渠道暂无投递方式（邮箱）


class Notifier(Protocol):
    async def send_message(self, destination: str, body: str) -> str:
        """发送消息，返回消息 ID；失败时抛出 NotificationError"""
        ...


def format_otp_message(code: str, expire_minutes: int) -> str:
    """短信正文"""
    return t("sms.otp_body", code=code, minutes=expire_minutes)


class TwilioSMSNotifier:
    """通过 Twilio Messages API 发送短信"""

    def __init__(
        self,
        account_sid: str,
        auth_token: str,
        from_number: str,
        base_url: str = "https://api.twilio.com",
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.account_sid = account_sid
        self.from_number = from_number
        self.url = f"{base_url.rstrip('/')}/2010-04-01/Accounts/{account_sid}/Messages.json"
        self._client = httpx.AsyncClient(
            auth=(account_sid, auth_token),
            timeout=timeout,
            transport=transport,
            headers={"Accept": "application/json"},
        )

    async def send_message(self, destination: str, body: str) -> str:
        """
        发送短信

        Args:
            destination: 收件手机号
            body: 短信内容

        Returns:
            Twilio 消息 SID

        Raises:
            NotificationError: 网络错误或 Twilio 返回错误
        """
        data = {"To": destination, "From": self.from_number, "Body": body}
        try:
            response = await self._client.post(self.url, data=data)
        except httpx.HTTPError as e:
            raise NotificationError(f"failed to send SMS: {e}") from e

        try:
            payload = response.json()
        except ValueError:
            payload = {}

        if response.status_code >= 400:
            raise NotificationError(
                f"twilio error ({payload.get('code', response.status_code)}): "
                f"{payload.get('message', response.text)}"
            )

        sid = payload.get("sid", "")
        logger.info(f"SMS sent successfully, SID: {sid}, status: {payload.get('status')}")
        return sid

    async def close(self) -> None:
        await self._client.aclose()


def create_sms_notifier(settings: Settings) -> Optional[TwilioSMSNotifier]:
    """凭据齐全时创建 Twilio 通知器，否则返回 None"""
    if not settings.twilio_configured:
        logger.warning(
            "Twilio not configured. Set TWILIO_ACCOUNT_SID, TWILIO_AUTH_TOKEN and TWILIO_PHONE_NUMBER"
        )
        return None
    return TwilioSMSNotifier(
        account_sid=settings.twilio_account_sid,
        auth_token=settings.twilio_auth_token,
        from_number=settings.twilio_phone_number,
        base_url=settings.twilio_api_base_url,
        timeout=settings.twilio_timeout_seconds,
    )
