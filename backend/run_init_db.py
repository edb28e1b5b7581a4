import asyncio
import logging

from otp_backend.core.config import get_settings
from otp_backend.core.database import Database

# 配置日志
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


async def main():
    settings = get_settings()
    database = Database(settings.database_url)
    database.connect()
    logger.info("Initializing database tables...")
    try:
        await database.create_all()
        logger.info("Database tables initialized successfully.")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        raise
    finally:
        await database.close()

if __name__ == "__main__":
    asyncio.run(main())
