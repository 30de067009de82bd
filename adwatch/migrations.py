"""
Versioned schema migrations.

Each step is ``(version, name, fn)`` where ``fn`` receives a synchronous
connection (via ``AsyncConnection.run_sync``). Applied versions are recorded in
``schema_migrations`` so every step runs at most once per database.
"""
from logging import getLogger
from typing import Callable

from sqlalchemy import inspect, select, insert
from sqlalchemy.engine import Connection
from sqlalchemy.ext.asyncio import AsyncEngine
from sqlalchemy.schema import CreateColumn

from adwatch.database import Base
from adwatch.models import SchemaMigration
from adwatch.schema import TABLE_LAYOUTS, validate_identifier

logger = getLogger('adwatch.migrations')


def _create_tables(sync_conn: Connection) -> None:
    Base.metadata.create_all(sync_conn, checkfirst=True)


def _can_add(canonical) -> bool:
    """Existing rows need a value: the column must allow NULL or carry a default"""
    return not canonical.primary_key and (canonical.nullable or canonical.server_default is not None)


def _add_missing_columns(sync_conn: Connection, required: bool) -> None:
    inspector = inspect(sync_conn)
    for table_name, layout in TABLE_LAYOUTS.items():
        if not inspector.has_table(table_name):
            continue

        present = {c['name'] for c in inspector.get_columns(table_name)}
        model_table = Base.metadata.tables[table_name]

        for logical in layout:
            if logical.required != required or any(c in present for c in logical.candidates):
                continue

            canonical = model_table.c[logical.name]
            if not _can_add(canonical):
                logger.warning(f"{table_name}.{logical.name} has no default and cannot be added to existing rows")
                continue

            ddl = CreateColumn(canonical).compile(dialect=sync_conn.dialect)
            sync_conn.exec_driver_sql(
                f"ALTER TABLE {validate_identifier(table_name)} ADD COLUMN {ddl}"
            )
            logger.info(f"Added {table_name}.{logical.name} column")


def _backfill_logical_columns(sync_conn: Connection) -> None:
    """Add the canonical column for each optional attribute that has no candidate at all"""
    _add_missing_columns(sync_conn, required=False)


def _backfill_required_columns(sync_conn: Connection) -> None:
    """
    Add mandatory attributes older tables lack, such as the reward snapshot of
    an ``ad_sessions`` table created before rewards were stored per session.
    """
    _add_missing_columns(sync_conn, required=True)


MIGRATIONS: list[tuple[int, str, Callable[[Connection], None]]] = [
    (1, 'create_tables', _create_tables),
    (2, 'backfill_logical_columns', _backfill_logical_columns),
    (3, 'backfill_required_columns', _backfill_required_columns),
]


async def run_migrations(engine: AsyncEngine) -> list[int]:
    """Apply pending migration steps in order, returning the versions applied"""
    applied_now = []
    async with engine.begin() as conn:
        await conn.run_sync(lambda sync_conn: SchemaMigration.__table__.create(sync_conn, checkfirst=True))

        result = await conn.execute(select(SchemaMigration.version))
        applied = set(result.scalars().all())

        for version, name, step in MIGRATIONS:
            if version in applied:
                continue

            logger.info(f"Applying migration {version}: {name}")
            await conn.run_sync(step)
            await conn.execute(insert(SchemaMigration).values(version=version, name=name))
            applied_now.append(version)

    if applied_now:
        logger.info(f"Schema migrated to version {applied_now[-1]}")
    else:
        logger.info("Schema is up to date")
    return applied_now
