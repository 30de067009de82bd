"""
Logical-to-physical column resolution for tables shared with older bot variants.

Deployments of the watch bot grew their ``users``/``ads``/``ad_sessions`` tables
independently, so the same attribute can live under different column names
(``balance_tl`` vs ``balance``, ``diamonds`` vs ``elmas`` ...). The adapter
inspects the live catalog once, picks the first candidate that exists for each
logical attribute and hands out lightweight SQLAlchemy table constructs keyed
by physical name. Everything above it talks in logical names only.

The versioned migrations in :mod:`adwatch.migrations` add canonical columns for
attributes with no candidate at all, so on a migrated database every attribute
resolves except those that cannot be added to a populated table (identities,
and columns that allow no NULL and have no default). Without migration,
optional attributes that are missing read as zero/None and are skipped on
write.
"""
import re
from dataclasses import dataclass
from logging import getLogger
from typing import Optional

from sqlalchemy import inspect, table, column, BigInteger, Boolean, DateTime, Integer, Numeric, String, Text
from sqlalchemy.ext.asyncio import AsyncEngine
from sqlalchemy.sql.expression import ColumnClause, TableClause
from sqlalchemy.types import TypeEngine

logger = getLogger('adwatch.schema')

IDENTIFIER_PATTERN = re.compile(r'^[A-Za-z_][A-Za-z0-9_]*$')


class SchemaError(RuntimeError):
    """The live schema cannot back a mandatory attribute, or a name is unsafe"""


def validate_identifier(name: str) -> str:
    if not isinstance(name, str) or not IDENTIFIER_PATTERN.match(name):
        raise SchemaError(f"Unsafe identifier: {name!r}")
    return name


@dataclass(frozen=True)
class LogicalColumn:
    name: str
    candidates: tuple[str, ...]
    type_: TypeEngine
    required: bool = False


# Candidate order is priority order: the first one present wins.
TABLE_LAYOUTS: dict[str, tuple[LogicalColumn, ...]] = {
    'users': (
        LogicalColumn('tg_id', ('tg_id', 'telegram_id', 'user_id'), BigInteger(), required=True),
        LogicalColumn('balance_tl', ('balance_tl', 'tl_balance', 'wallet_tl', 'balance'), Numeric()),
        LogicalColumn('diamonds', ('diamonds', 'elmas', 'diamond_balance', 'diamond'), Numeric()),
        LogicalColumn('daily_ads_watched', ('daily_ads_watched', 'ads_watched_today', 'daily_views', 'daily_views_count'), Integer()),
        LogicalColumn('referred_by', ('referred_by', 'referrer_tg_id', 'ref_by'), BigInteger()),
        LogicalColumn('is_vip', ('is_vip', 'vip'), Boolean()),
    ),
    'ads': (
        LogicalColumn('id', ('id',), Integer(), required=True),
        LogicalColumn('seconds', ('seconds', 'duration'), Integer(), required=True),
        LogicalColumn('active', ('active', 'is_active'), Boolean(), required=True),
        LogicalColumn('reward_tl', ('reward_tl',), Numeric()),
        LogicalColumn('reward_diamonds', ('reward_diamonds', 'reward_gem'), Numeric()),
        LogicalColumn('is_vip', ('is_vip', 'vip'), Boolean()),
        LogicalColumn('max_clicks', ('max_clicks',), Integer()),
        LogicalColumn('clicks', ('clicks',), Integer()),
        LogicalColumn('title', ('title',), String()),
        LogicalColumn('page_url', ('page_url', 'url'), Text()),
        LogicalColumn('youtube_url', ('youtube_url',), Text()),
        LogicalColumn('game_url', ('game_url',), Text()),
        LogicalColumn('media_url', ('media_url',), Text()),
        LogicalColumn('adsense_code', ('adsense_code',), Text()),
    ),
    'ad_sessions': (
        LogicalColumn('id', ('id', 'session_id'), String(), required=True),
        LogicalColumn('tg_id', ('tg_id', 'user_id'), BigInteger(), required=True),
        LogicalColumn('ad_id', ('ad_id',), Integer(), required=True),
        LogicalColumn('seconds', ('seconds',), Integer(), required=True),
        LogicalColumn('started_at', ('started_at',), DateTime(timezone=True), required=True),
        LogicalColumn('completed', ('completed',), Boolean(), required=True),
        LogicalColumn('completed_at', ('completed_at',), DateTime(timezone=True), required=True),
        LogicalColumn('reward_tl', ('reward_tl',), Numeric(), required=True),
        LogicalColumn('reward_diamonds', ('reward_diamonds',), Numeric(), required=True),
    ),
}


class TableMapping:
    """Resolved physical columns of one table, addressed by logical name"""

    def __init__(self, name: str, resolved: dict[str, tuple[str, TypeEngine]]):
        self.name = validate_identifier(name)
        self.types = {logical: type_ for logical, (_, type_) in resolved.items()}
        self.physical = {logical: validate_identifier(physical) for logical, (physical, _) in resolved.items()}
        self.table: TableClause = table(
            self.name,
            *[column(physical, type_) for physical, type_ in resolved.values()]
        )

    def has(self, logical: str) -> bool:
        return logical in self.physical

    def is_integer(self, logical: str) -> bool:
        return isinstance(self.types.get(logical), Integer)

    def col(self, logical: str) -> ColumnClause:
        physical = self.physical.get(logical)
        if physical is None:
            raise SchemaError(f"{self.name}.{logical} is not available in this deployment")
        return self.table.c[physical]

    def select_columns(self, *logical_names: str) -> list:
        """Labelled columns for the logical names that exist; absent ones are left out"""
        return [self.col(name).label(name) for name in logical_names if self.has(name)]

    def values(self, **logical_values) -> dict:
        """Translate logical keyword values to physical names, dropping absent attributes"""
        return {self.physical[name]: value for name, value in logical_values.items() if self.has(name)}

    def __repr__(self):
        return f"TableMapping({self.name!r}, {self.physical!r})"


def resolve_layout(name: str, present: set[str], live_types: Optional[dict[str, TypeEngine]] = None) -> TableMapping:
    """
    Pick the first present candidate for every logical attribute of one table.

    ``live_types`` are the catalog's column types. A text attribute backed by
    an integer column (``bigserial`` session ids) is bound as an integer.
    """
    live_types = live_types or {}
    resolved = {}
    for logical in TABLE_LAYOUTS[name]:
        found = next((c for c in logical.candidates if c in present), None)
        if found is None:
            if logical.required:
                raise SchemaError(
                    f"{name} table is missing {logical.name} (or equivalent) column; "
                    f"tried {', '.join(logical.candidates)}"
                )
            logger.warning(f"{name}.{logical.name} has no backing column; reads default, writes are skipped")
            continue
        type_ = logical.type_
        if isinstance(live_types.get(found), Integer) and isinstance(type_, String):
            type_ = BigInteger()
        resolved[logical.name] = (found, type_)
    return TableMapping(name, resolved)


def _read_catalog(sync_conn) -> dict[str, dict[str, TypeEngine]]:
    inspector = inspect(sync_conn)
    catalog = {}
    for name in TABLE_LAYOUTS:
        if inspector.has_table(name):
            catalog[name] = {c['name']: c['type'] for c in inspector.get_columns(name)}
        else:
            catalog[name] = {}
    return catalog


class SchemaAdapter:
    """Process-wide cache of resolved table mappings"""

    def __init__(self):
        self._mappings: Optional[dict[str, TableMapping]] = None

    @property
    def resolved(self) -> bool:
        return self._mappings is not None

    async def resolve(self, engine: AsyncEngine, force: bool = False) -> dict[str, TableMapping]:
        if self._mappings is not None and not force:
            return self._mappings

        async with engine.connect() as conn:
            catalog = await conn.run_sync(_read_catalog)

        mappings = {name: resolve_layout(name, set(catalog[name]), catalog[name]) for name in TABLE_LAYOUTS}
        self._mappings = mappings
        for mapping in mappings.values():
            logger.info(f"Resolved {mapping.name} columns: {mapping.physical}")
        return mappings

    async def ensure(self) -> 'SchemaAdapter':
        """Resolve lazily against the shared engine on first use"""
        if self._mappings is None:
            from adwatch import database
            await self.resolve(database.engine)
        return self

    def reset(self):
        self._mappings = None

    def _get(self, name: str) -> TableMapping:
        if self._mappings is None:
            raise SchemaError("Schema has not been resolved yet")
        return self._mappings[name]

    @property
    def users(self) -> TableMapping:
        return self._get('users')

    @property
    def ads(self) -> TableMapping:
        return self._get('ads')

    @property
    def sessions(self) -> TableMapping:
        return self._get('ad_sessions')


schema = SchemaAdapter()
