from datetime import datetime, timedelta
from typing import List, Optional, Tuple

import httpx
import pytest

from otp_backend.core.config import Settings
from otp_backend.core.database import Database
from otp_backend.main import create_app
from otp_backend.services.exceptions import NotificationError
from otp_backend.services.otp_service import OTPPolicy, OTPService
from otp_backend.services.otp_store import OTPStore


class FakeClock:
    """可手动推进的时钟"""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class RecordingNotifier:
    """记录发送内容的短信通知器"""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.sent: List[Tuple[str, str]] = []

    async def send_message(self, destination: str, body: str) -> str:
        if self.fail:
            raise NotificationError("gateway down")
        self.sent.append((destination, body))
        return f"SM{len(self.sent):04d}"


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2026, 1, 1, 12, 0, 0))


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        environment="development",
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'otp.db'}",
        auto_create_tables=True,
        twilio_account_sid=None,
        twilio_auth_token=None,
        twilio_phone_number=None,
    )


@pytest.fixture
async def database(settings: Settings):
    db = Database(settings.database_url)
    db.connect()
    await db.create_all()
    yield db
    await db.close()


@pytest.fixture
async def session(database: Database):
    async with database.session() as s:
        yield s


@pytest.fixture
def store(session) -> OTPStore:
    return OTPStore(session)


def _make_service(
    store: OTPStore,
    clock: FakeClock,
    notifier: Optional[RecordingNotifier] = None,
    expose_code: bool = True,
) -> OTPService:
    return OTPService(
        store=store,
        notifier=notifier,
        policy=OTPPolicy(expose_code=expose_code),
        clock=clock,
    )


@pytest.fixture
def service_factory(store: OTPStore, clock: FakeClock):
    """按需构造服务（可指定通知器和是否回显验证码）"""
    def factory(notifier=None, expose_code: bool = True) -> OTPService:
        return _make_service(store, clock, notifier, expose_code)
    return factory


@pytest.fixture
def service(store: OTPStore, clock: FakeClock, notifier: RecordingNotifier) -> OTPService:
    return _make_service(store, clock, notifier)


@pytest.fixture
async def app(settings: Settings, clock: FakeClock, notifier: RecordingNotifier):
    application = create_app(settings, clock=clock, notifier=notifier)
    await application.state.database.create_all()
    yield application
    await application.state.database.close()


@pytest.fixture
async def client(app):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
