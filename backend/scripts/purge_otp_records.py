"""清理过期 OTP 记录

只删除已过期且早于限流窗口的记录，窗口内的记录仍用于限流统计。

用法: python scripts/purge_otp_records.py [--keep-minutes N]
"""
import argparse
import asyncio
import logging
import os
import sys
from datetime import timedelta

# Add the parent directory to sys.path to import otp_backend modules
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from otp_backend.core.config import get_settings
from otp_backend.core.database import Database
from otp_backend.services.otp_service import utcnow
from otp_backend.services.otp_store import OTPStore

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


async def purge(keep_minutes: int) -> int:
    settings = get_settings()
    # 保留时间不能短于限流窗口
    keep_minutes = max(keep_minutes, settings.otp_rate_limit_window_minutes)
    cutoff = utcnow() - timedelta(minutes=keep_minutes)

    database = Database(settings.database_url)
    database.connect()
    try:
        async with database.session() as db:
            deleted = await OTPStore(db).purge_before(cutoff)
    finally:
        await database.close()

    logger.info(f"Purged {deleted} OTP records created before {cutoff.isoformat()}")
    return deleted


def main():
    parser = argparse.ArgumentParser(description="Purge expired OTP records")
    parser.add_argument(
        "--keep-minutes",
        type=int,
        default=24 * 60,
        help="keep records newer than this many minutes (default: 1440)",
    )
    args = parser.parse_args()
    asyncio.run(purge(args.keep_minutes))


if __name__ == "__main__":
    main()
