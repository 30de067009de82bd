from decimal import Decimal
from logging import getLogger
from typing import Optional

from sqlalchemy import select, func, or_, true, false
from sqlalchemy.ext.asyncio import AsyncSession

from adwatch.config import Rewards
from adwatch.schema import schema

logger = getLogger('adwatch.ads')

PICK_POLICIES = ('random', 'round_robin')

CREATIVE_FIELDS = ('title', 'page_url', 'youtube_url', 'game_url', 'media_url', 'adsense_code')


def clamp_seconds(seconds) -> int:
    """Keep an ad's watch time inside the configured bounds"""
    try:
        seconds = int(seconds)
    except (TypeError, ValueError):
        seconds = Rewards.AD_MIN_SECONDS
    return max(Rewards.AD_MIN_SECONDS, min(Rewards.AD_MAX_SECONDS, seconds))


def _reward(value, default: Decimal) -> Decimal:
    if value is None:
        return default
    return value if isinstance(value, Decimal) else Decimal(str(value))


async def pick_ad(db_session: AsyncSession, wants_vip: bool = False, policy: Optional[str] = None) -> Optional[dict]:
    """
    Select one eligible ad: active, under its click cap and matching the VIP flag.

    ``random`` orders by the database's random(); ``round_robin`` serves the
    least-clicked ad first. Ties fall back to ascending id.
    """
    policy = policy or Rewards.AD_PICK_POLICY
    if policy not in PICK_POLICIES:
        raise ValueError(f"Unknown ad pick policy: {policy}")

    ads = schema.ads
    conditions = [ads.col('active') == true()]

    if ads.has('is_vip'):
        vip = ads.col('is_vip')
        if wants_vip:
            conditions.append(vip == true())
        else:
            conditions.append(or_(vip.is_(None), vip == false()))
    elif wants_vip:
        return None

    if ads.has('max_clicks') and ads.has('clicks'):
        conditions.append(or_(
            ads.col('max_clicks').is_(None),
            func.coalesce(ads.col('clicks'), 0) < ads.col('max_clicks')
        ))

    if policy == 'round_robin' and ads.has('clicks'):
        order_by = [func.coalesce(ads.col('clicks'), 0).asc()]
    elif policy == 'round_robin':
        order_by = []
    else:
        order_by = [func.random()]
    order_by.append(ads.col('id').asc())

    result = await db_session.execute(
        select(*ads.select_columns('id', 'seconds', 'reward_tl', 'reward_diamonds', 'is_vip', *CREATIVE_FIELDS))
        .where(*conditions)
        .order_by(*order_by)
        .limit(1)
    )
    row = result.mappings().first()
    if row is None:
        logger.info(f"No eligible ad (vip={bool(wants_vip)})")
        return None

    ad = {
        'id': int(row['id']),
        'seconds': clamp_seconds(row['seconds']),
        'reward_tl': _reward(row.get('reward_tl'), Rewards.WATCH_REWARD_TL),
        'reward_diamonds': _reward(row.get('reward_diamonds'), Rewards.WATCH_REWARD_DIAMONDS),
        'is_vip': bool(row.get('is_vip') or False),
    }
    for field in CREATIVE_FIELDS:
        ad[field] = row.get(field)
    return ad


def ad_payload(ad: dict) -> dict:
    """Public view of a picked ad for the mini-app"""
    payload = {'id': ad['id'], 'seconds': ad['seconds'], 'is_vip': ad['is_vip']}
    for field in CREATIVE_FIELDS:
        payload[field] = ad.get(field)
    return payload
