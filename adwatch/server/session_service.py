"""
Watch session lifecycle: PENDING -> COMPLETED, exactly once.

``start_session`` gates on the daily quota, picks an ad and stores a pending
session with a reward snapshot. ``complete_session`` checks ownership and
elapsed time under the session row lock, flips the session and credits the
reward in the same transaction, then pays the referral cascade separately.
"""
import math
from logging import getLogger
from typing import Optional
from uuid import uuid4

from sqlalchemy import select, insert, update, or_, false
from sqlalchemy.ext.asyncio import AsyncSession

from adwatch.config import Rewards
from adwatch.database import AsyncSessionLocal
from adwatch.schema import schema
from adwatch.server import account_store, ad_inventory, clock, daily_quota, reward_ledger
from adwatch.server.error import NotFoundError, StateConflictError, ResourceExhaustedError

logger = getLogger('adwatch.sessions')

SESSION_FIELDS = ('id', 'tg_id', 'ad_id', 'seconds', 'started_at', 'completed', 'reward_tl', 'reward_diamonds')


async def start_session(tg_id: int, wants_vip: Optional[bool] = None) -> dict:
    await schema.ensure()
    limit = Rewards.DAILY_AD_LIMIT

    async with AsyncSessionLocal() as db_session:
        async with db_session.begin():
            await account_store.ensure_user(db_session, tg_id)

            user_is_vip = await account_store.is_vip(db_session, tg_id)
            if wants_vip is None:
                wants_vip = user_is_vip
            elif wants_vip and not user_is_vip:
                raise StateConflictError('vip_required', 'VIP ads are only available to VIP users', status_code=403)

            seen = await daily_quota.touch(db_session, tg_id)
            if seen > limit:
                raise ResourceExhaustedError(
                    'daily_limit', 'Daily ad limit reached', status_code=429,
                    seen=seen - 1, limit=limit
                )

            ad = await ad_inventory.pick_ad(db_session, wants_vip=bool(wants_vip))
            if ad is None:
                raise ResourceExhaustedError('no_ad', 'No ad is available right now', status_code=404)

            await account_store.set_daily_counter(db_session, tg_id, seen)

            sessions = schema.sessions
            snapshot = sessions.values(
                tg_id=tg_id,
                ad_id=ad['id'],
                seconds=ad['seconds'],
                started_at=clock.now(),
                completed=False,
                reward_tl=ad['reward_tl'],
                reward_diamonds=ad['reward_diamonds']
            )
            if sessions.is_integer('id'):
                # bigserial ids are assigned by the store
                inserted = await db_session.execute(
                    insert(sessions.table).values(snapshot).returning(sessions.col('id'))
                )
                session_id = str(inserted.scalar_one())
            else:
                session_id = str(uuid4())
                snapshot[sessions.physical['id']] = session_id
                await db_session.execute(insert(sessions.table).values(snapshot))

    logger.info(f"Session {session_id} started for {tg_id} on ad {ad['id']} ({seen}/{limit})")
    return {
        'session_id': session_id,
        'seconds': ad['seconds'],
        'reward': {'tl': ad['reward_tl'], 'diamonds': ad['reward_diamonds']},
        'ad': ad_inventory.ad_payload(ad),
        'seen': seen,
        'limit': limit
    }


def _session_key(session_id):
    """Bind value for the id column, or None when the id cannot exist in it"""
    if schema.sessions.is_integer('id'):
        try:
            return int(session_id)
        except (TypeError, ValueError):
            return None
    return str(session_id)


async def _lock_session(db_session: AsyncSession, session_key):
    sessions = schema.sessions
    result = await db_session.execute(
        select(*sessions.select_columns(*SESSION_FIELDS))
        .where(sessions.col('id') == session_key)
        .with_for_update()
    )
    return result.mappings().first()


async def complete_session(session_id: str, tg_id: int) -> dict:
    await schema.ensure()
    sessions = schema.sessions
    payout = None

    async with AsyncSessionLocal() as db_session:
        async with db_session.begin():
            session_key = _session_key(session_id)
            row = None if session_key is None else await _lock_session(db_session, session_key)
            if row is None:
                raise NotFoundError('session_not_found', 'Session not found')

            if int(row['tg_id']) != int(tg_id):
                raise StateConflictError('not_your_session', 'Session belongs to another user', status_code=403)

            reward = {
                'tl': account_store.to_decimal(row['reward_tl']),
                'diamonds': account_store.to_decimal(row['reward_diamonds'])
            }

            if row['completed']:
                balances = await account_store.get_balances(db_session, tg_id)
                return {'already': True, 'balances': balances, 'reward': reward}

            now = clock.now()
            elapsed = (now - clock.as_utc(row['started_at'])).total_seconds()
            required = float(row['seconds'])
            if elapsed + Rewards.WATCH_TOLERANCE_SECONDS < required:
                raise StateConflictError(
                    'too_early', 'Watch the ad until the timer ends', status_code=400,
                    remaining=math.ceil(required - elapsed),
                    elapsed=round(elapsed, 2),
                    required=required
                )

            flipped = await db_session.execute(
                update(sessions.table)
                .where(
                    sessions.col('id') == session_key,
                    or_(sessions.col('completed').is_(None), sessions.col('completed') == false())
                )
                .values(sessions.values(completed=True, completed_at=now))
            )
            if flipped.rowcount == 0:
                balances = await account_store.get_balances(db_session, tg_id)
                return {'already': True, 'balances': balances, 'reward': reward}

            result = await reward_ledger.apply_completion(
                db_session, str(session_key), tg_id, int(row['ad_id']), reward['tl'], reward['diamonds']
            )
            balances = result.balances
            payout = result.referral

    if payout is not None:
        await reward_ledger.credit_referral(payout)

    return {'already': False, 'balances': balances, 'reward': reward}
