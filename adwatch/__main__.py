import asyncio
from sys import argv

from adwatch import logger
from adwatch.database import init_db, close_db
from adwatch.server.notification_service import notification_worker


async def run_worker():
    """Deliver the notification outbox without serving HTTP"""
    await init_db()
    try:
        await notification_worker()
    finally:
        await close_db()


if __name__ == '__main__':
    logger.info('initializing...')
    if argv[1:] == ['worker']:
        logger.info('Starting notification worker only')
        asyncio.run(run_worker())
    else:
        from adwatch.server import server
        # before_serving runs migrations and starts the outbox worker
        asyncio.run(server.serve())
