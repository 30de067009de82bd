from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.dialects import postgresql, sqlite
from logging import getLogger
from urllib.parse import urlparse, urlunparse
from adwatch.config import Database

logger = getLogger('adwatch.database')

class Base(DeclarativeBase):
    pass


def build_async_url(database_url: str) -> str:
    """Translate a plain PostgreSQL URL into an asyncpg one; other async URLs pass through"""
    parsed_url = urlparse(database_url)
    if parsed_url.scheme not in ('postgres', 'postgresql'):
        return database_url

    # Remove query parameters like sslmode that asyncpg doesn't support
    clean_url = urlunparse((
        'postgresql+asyncpg',
        parsed_url.netloc,
        parsed_url.path,
        parsed_url.params,
        '',
        parsed_url.fragment
    ))
    return clean_url


def _enable_sqlite_write_locks(async_engine: AsyncEngine) -> None:
    """
    pysqlite/aiosqlite defer BEGIN until the first write, which lets two
    transactions read the same row before either writes it. Taking the write
    lock up front serializes transactions the way SELECT ... FOR UPDATE does
    on PostgreSQL.
    """
    @event.listens_for(async_engine.sync_engine, "connect")
    def do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(async_engine.sync_engine, "begin")
    def do_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def create_engine_for(database_url: str) -> AsyncEngine:
    url = build_async_url(database_url)

    if url.startswith('sqlite'):
        async_engine = create_async_engine(url, echo=False)
        _enable_sqlite_write_locks(async_engine)
        return async_engine

    return create_async_engine(
        url,
        echo=False,  # Set to True for SQL query logging
        pool_pre_ping=True,
        pool_recycle=Database.POOL_RECYCLE,
        pool_size=Database.POOL_SIZE,
        max_overflow=Database.MAX_OVERFLOW,
        connect_args={
            "server_settings": {
                "application_name": "adwatch",
            }
        }
    )


engine = create_engine_for(Database.URL)

AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False
)


def configure_engine(database_url: str) -> AsyncEngine:
    """Point the shared engine and session factory at another database"""
    global engine
    engine = create_engine_for(database_url)
    AsyncSessionLocal.configure(bind=engine)
    return engine


def dialect_insert(db_session: AsyncSession, table):
    """INSERT construct with ON CONFLICT support for the session's dialect"""
    dialect_name = db_session.bind.dialect.name
    if dialect_name == 'postgresql':
        return postgresql.insert(table)
    if dialect_name == 'sqlite':
        return sqlite.insert(table)
    raise NotImplementedError(f"Upserts are not supported on {dialect_name}")


async def init_db():
    """Bring the schema up to date and resolve the column mapping"""
    # Import models to ensure they are registered
    from adwatch import models  # noqa: F401
    from adwatch.migrations import run_migrations
    from adwatch.schema import schema

    if Database.SCHEMA_AUTO_MIGRATE:
        await run_migrations(engine)
    else:
        logger.info("Schema auto-migration disabled, using existing tables as-is")

    await schema.resolve(engine)
    logger.info("Database initialized successfully")


async def close_db():
    """Close database connection"""
    await engine.dispose()
