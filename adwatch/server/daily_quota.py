from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from adwatch.database import dialect_insert
from adwatch.models import DailyView
from adwatch.server import clock

daily_views = DailyView.__table__


async def touch(db_session: AsyncSession, tg_id: int) -> int:
    """Count one more session start for today (UTC) and return the new total"""
    stmt = dialect_insert(db_session, daily_views).values(tg_id=tg_id, day=clock.today(), seen=1)
    stmt = stmt.on_conflict_do_update(
        index_elements=['tg_id', 'day'],
        set_={'seen': daily_views.c.seen + 1}
    ).returning(daily_views.c.seen)

    result = await db_session.execute(stmt)
    return int(result.scalar_one())


async def peek(db_session: AsyncSession, tg_id: int) -> int:
    result = await db_session.execute(
        select(daily_views.c.seen).where(
            daily_views.c.tg_id == tg_id,
            daily_views.c.day == clock.today()
        )
    )
    return int(result.scalar_one_or_none() or 0)
