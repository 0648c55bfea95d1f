"""
Create (or recreate) the ChatRelay tables without Alembic.

Meant for local development and throwaway databases:

    python create_tables.py           # create missing tables
    python create_tables.py --reset   # drop everything first
"""
import asyncio
import sys

from chatrelay.database import engine
from chatrelay.logging_config import logger
from chatrelay.models.base import Base
# Registers the tables on Base.metadata
from chatrelay.models.message import Conversation, Message, MessageStatusEvent  # noqa: F401
from chatrelay.models.webhook import Webhook, WebhookDeliveryLog  # noqa: F401


async def create_all_tables():
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("tables_created", tables=sorted(Base.metadata.tables))


async def drop_all_tables():
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    logger.warning("tables_dropped", tables=sorted(Base.metadata.tables))


async def main(reset: bool = False):
    if reset:
        await drop_all_tables()
    await create_all_tables()
    await engine.dispose()


if __name__ == "__main__":
    asyncio.run(main(reset="--reset" in sys.argv[1:]))
