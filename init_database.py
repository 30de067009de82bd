import asyncio
import logging
from adwatch.database import init_db, close_db
from adwatch.schema import schema

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

async def main():
    logger.info("Initializing database...")
    try:
        await init_db()
        for name in ('users', 'ads', 'sessions'):
            mapping = getattr(schema, name)
            logger.info(f"{mapping.name}: {mapping.physical}")
        logger.info("Database initialized successfully!")
    finally:
        await close_db()

if __name__ == "__main__":
    asyncio.run(main())
