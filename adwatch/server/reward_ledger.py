"""
Reward bookkeeping for a completed watch session.

:func:`apply_completion` runs inside the completion transaction. The referral
cascade it computes is paid afterwards by :func:`credit_referral` in a
separate transaction, so a failing referral never undoes the watcher's reward.
"""
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from logging import getLogger
from typing import Optional

from sqlalchemy import select, update, func, case, and_, true, false
from sqlalchemy.ext.asyncio import AsyncSession

from adwatch.config import Rewards
from adwatch.database import AsyncSessionLocal
from adwatch.models import ReferralEarning
from adwatch.schema import schema
from adwatch.server import account_store, notification_service

logger = getLogger('adwatch.rewards')

CENT = Decimal('0.01')


def round_money(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass
class ReferralPayout:
    referrer_id: int
    referred_id: int
    session_id: str
    amount_tl: Decimal
    amount_diamonds: Decimal
    signup_bonus: bool


@dataclass
class CompletionResult:
    balances: dict
    referral: Optional[ReferralPayout] = None


def compute_referral(referrer_id: int, referred_id: int, session_id: str,
                     reward_tl: Decimal, reward_diamonds: Decimal, first_session: bool) -> Optional[ReferralPayout]:
    """Ongoing share on every session plus the signup share on the first one"""
    amounts = []
    for reward in (reward_tl, reward_diamonds):
        bonus = round_money(reward * Rewards.REFERRAL_ONGOING_RATE)
        if first_session:
            bonus += round_money(reward * Rewards.REFERRAL_SIGNUP_RATE)
        amounts.append(bonus)

    if amounts[0] <= 0 and amounts[1] <= 0:
        return None

    return ReferralPayout(
        referrer_id=referrer_id,
        referred_id=referred_id,
        session_id=session_id,
        amount_tl=amounts[0],
        amount_diamonds=amounts[1],
        signup_bonus=first_session
    )


async def bump_ad_clicks(db_session: AsyncSession, ad_id: int) -> None:
    """Count a completed view and retire the ad once it reaches its click cap"""
    ads = schema.ads
    if not ads.has('clicks'):
        return

    clicks = func.coalesce(ads.col('clicks'), 0) + 1
    values = {ads.physical['clicks']: clicks}
    if ads.has('max_clicks'):
        max_clicks = ads.col('max_clicks')
        values[ads.physical['active']] = case(
            (and_(max_clicks.is_not(None), clicks >= max_clicks), false()),
            else_=ads.col('active')
        )

    await db_session.execute(update(ads.table).where(ads.col('id') == ad_id).values(values))


async def count_completed_sessions(db_session: AsyncSession, tg_id: int) -> int:
    sessions = schema.sessions
    result = await db_session.execute(
        select(func.count()).select_from(sessions.table).where(
            sessions.col('tg_id') == tg_id,
            sessions.col('completed') == true()
        )
    )
    return int(result.scalar_one())


async def apply_completion(db_session: AsyncSession, session_id: str, tg_id: int, ad_id: int,
                           reward_tl: Decimal, reward_diamonds: Decimal) -> CompletionResult:
    # Crediting first takes the watcher's row lock, which serializes the
    # first-session count below against the user's other completions.
    balances = await account_store.credit(db_session, tg_id, reward_tl, reward_diamonds)

    await bump_ad_clicks(db_session, ad_id)

    referral = None
    referrer_id = await account_store.get_referrer(db_session, tg_id)
    if referrer_id:
        first_session = await count_completed_sessions(db_session, tg_id) == 1
        referral = compute_referral(referrer_id, tg_id, session_id, reward_tl, reward_diamonds, first_session)

    await notification_service.enqueue(
        db_session, tg_id,
        f"Ad reward received: +{round_money(reward_tl)} TL, +{round_money(reward_diamonds)} diamonds."
    )

    logger.info(f"Session {session_id} credited {reward_tl} TL / {reward_diamonds} diamonds to {tg_id}")
    return CompletionResult(balances=balances, referral=referral)


async def credit_referral(payout: ReferralPayout) -> bool:
    """
    Pay a referral cascade in its own transaction.

    Runs after the watcher's reward has been committed. Any failure is logged
    and reported as False; it is never raised to the caller.
    """
    try:
        await schema.ensure()
        async with AsyncSessionLocal() as db_session:
            async with db_session.begin():
                await account_store.ensure_user(db_session, payout.referrer_id)
                await account_store.credit(
                    db_session, payout.referrer_id, payout.amount_tl, payout.amount_diamonds
                )
                db_session.add(ReferralEarning(
                    referrer_tg_id=payout.referrer_id,
                    referred_tg_id=payout.referred_id,
                    session_id=payout.session_id,
                    amount_tl=payout.amount_tl,
                    amount_diamonds=payout.amount_diamonds,
                    signup_bonus=payout.signup_bonus
                ))
                await notification_service.enqueue(
                    db_session, payout.referrer_id,
                    f"Referral bonus: +{payout.amount_tl} TL, +{payout.amount_diamonds} diamonds."
                )

        logger.info(
            f"Referral credited to {payout.referrer_id}: {payout.amount_tl} TL / "
            f"{payout.amount_diamonds} diamonds (signup={payout.signup_bonus})"
        )
        return True

    except Exception as e:
        logger.exception(f"Error crediting referral for session {payout.session_id}: {e}")
        return False
