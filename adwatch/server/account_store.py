"""
User accounts and their TL/diamond balances.

Every function takes the caller's ``db_session`` so that balance changes join
the caller's transaction. Columns are addressed through the schema adapter;
callers must have awaited ``schema.ensure()`` before opening the session.
"""
from decimal import Decimal, InvalidOperation
from logging import getLogger
from typing import Optional

from sqlalchemy import select, update, func, literal, BigInteger
from sqlalchemy.ext.asyncio import AsyncSession

from adwatch.database import dialect_insert
from adwatch.schema import schema

logger = getLogger('adwatch.accounts')

ZERO = Decimal('0')

BALANCE_COLUMNS = (('tl', 'balance_tl'), ('diamonds', 'diamonds'))


def to_decimal(value) -> Decimal:
    if value is None:
        return ZERO
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value))
    except InvalidOperation:
        return ZERO


def balances_payload(balances: dict) -> dict:
    """JSON-friendly copy of a balances dict"""
    return {currency: float(amount) for currency, amount in balances.items()}


async def get_user(db_session: AsyncSession, tg_id: int) -> Optional[dict]:
    users = schema.users
    result = await db_session.execute(
        select(*users.select_columns(
            'tg_id', 'balance_tl', 'diamonds', 'daily_ads_watched', 'referred_by', 'is_vip'
        )).where(users.col('tg_id') == tg_id)
    )
    row = result.mappings().first()
    if row is None:
        return None

    return {
        'tg_id': int(row['tg_id']),
        'referred_by': row.get('referred_by'),
        'is_vip': bool(row.get('is_vip') or False),
        'daily_ads_watched': int(row.get('daily_ads_watched') or 0),
        'balances': {
            'tl': to_decimal(row.get('balance_tl')),
            'diamonds': to_decimal(row.get('diamonds')),
        }
    }


async def _acceptable_referrer(db_session: AsyncSession, tg_id: int, referrer_id) -> Optional[int]:
    try:
        referrer_id = int(referrer_id)
    except (TypeError, ValueError):
        return None

    if referrer_id <= 0 or referrer_id == tg_id:
        return None

    # Refuse two-user cycles: the referrer must not have been referred by this user
    if await get_referrer(db_session, referrer_id) == tg_id:
        logger.info(f"Ignoring circular referral {tg_id} <-> {referrer_id}")
        return None

    return referrer_id


async def ensure_user(db_session: AsyncSession, tg_id: int, referrer_id: Optional[int] = None) -> None:
    """
    Create the user row if it does not exist yet.

    The referrer is first-write-wins: an existing non-null ``referred_by`` is
    kept by the ``coalesce`` in the conflict branch.
    """
    users = schema.users
    if referrer_id is not None and users.has('referred_by'):
        referrer_id = await _acceptable_referrer(db_session, tg_id, referrer_id)
    else:
        referrer_id = None

    stmt = dialect_insert(db_session, users.table).values(users.values(tg_id=tg_id, referred_by=referrer_id))

    if referrer_id is None:
        stmt = stmt.on_conflict_do_nothing()
    else:
        referred_by = users.col('referred_by')
        stmt = stmt.on_conflict_do_update(
            index_elements=[users.physical['tg_id']],
            set_={referred_by.name: func.coalesce(referred_by, literal(referrer_id, BigInteger()))}
        )

    await db_session.execute(stmt)


async def get_balances(db_session: AsyncSession, tg_id: int) -> dict:
    """Current balances; a missing user or column reads as zero"""
    users = schema.users
    columns = users.select_columns('balance_tl', 'diamonds')
    balances = {'tl': ZERO, 'diamonds': ZERO}
    if not columns:
        return balances

    result = await db_session.execute(select(*columns).where(users.col('tg_id') == tg_id))
    row = result.mappings().first()
    if row is None:
        return balances

    for currency, logical in BALANCE_COLUMNS:
        balances[currency] = to_decimal(row.get(logical))
    return balances


async def credit(db_session: AsyncSession, tg_id: int, delta_tl=ZERO, delta_diamonds=ZERO) -> dict:
    """
    Add the deltas (negative allowed) in one UPDATE and return the new balances.

    The UPDATE runs even for zero deltas, so it also takes the user's row lock
    for the rest of the transaction.
    """
    users = schema.users
    changes = {}
    for (currency, logical), delta in zip(BALANCE_COLUMNS, (delta_tl, delta_diamonds)):
        delta = to_decimal(delta)
        if not users.has(logical):
            if delta:
                logger.warning(f"Skipping {currency} credit of {delta} for {tg_id}: no {logical} column")
            continue
        column = users.col(logical)
        changes[column.name] = func.coalesce(column, 0) + delta

    if not changes:
        changes[users.col('tg_id').name] = users.col('tg_id')

    await db_session.execute(
        update(users.table).where(users.col('tg_id') == tg_id).values(changes)
    )
    return await get_balances(db_session, tg_id)


async def debit_if_sufficient(db_session: AsyncSession, tg_id: int, tl=ZERO, diamonds=ZERO) -> Optional[dict]:
    """Subtract the amounts only if every balance covers them; None when it does not"""
    users = schema.users
    conditions = [users.col('tg_id') == tg_id]
    changes = {}
    for (currency, logical), amount in zip(BALANCE_COLUMNS, (tl, diamonds)):
        amount = to_decimal(amount)
        if amount <= 0:
            continue
        if not users.has(logical):
            return None
        column = users.col(logical)
        conditions.append(func.coalesce(column, 0) >= amount)
        changes[column.name] = func.coalesce(column, 0) - amount

    if not changes:
        return await get_balances(db_session, tg_id)

    result = await db_session.execute(update(users.table).where(*conditions).values(changes))
    if result.rowcount == 0:
        return None
    return await get_balances(db_session, tg_id)


async def get_referrer(db_session: AsyncSession, tg_id: int) -> Optional[int]:
    users = schema.users
    if not users.has('referred_by'):
        return None

    result = await db_session.execute(
        select(users.col('referred_by')).where(users.col('tg_id') == tg_id)
    )
    referrer = result.scalar_one_or_none()
    return int(referrer) if referrer else None


async def is_vip(db_session: AsyncSession, tg_id: int) -> bool:
    users = schema.users
    if not users.has('is_vip'):
        return False

    result = await db_session.execute(
        select(users.col('is_vip')).where(users.col('tg_id') == tg_id)
    )
    return bool(result.scalar_one_or_none() or False)


async def set_daily_counter(db_session: AsyncSession, tg_id: int, seen: int) -> None:
    """Mirror today's watch count into the legacy per-user counter"""
    users = schema.users
    if not users.has('daily_ads_watched'):
        return

    await db_session.execute(
        update(users.table)
        .where(users.col('tg_id') == tg_id)
        .values({users.physical['daily_ads_watched']: seen})
    )
