"""
Outbox for chat notifications.

Rows are written inside the business transaction that caused them and are
delivered later by :func:`notification_worker`, at least once, through the
Telegram Bot API. Delivery problems never touch balances.
"""
import asyncio
from datetime import timedelta
from logging import getLogger
from typing import Optional

import httpx
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from adwatch.config import Telegram, Notifications
from adwatch.database import AsyncSessionLocal
from adwatch.models import NotificationTask
from adwatch.modules.log_sanitizer import sanitize
from adwatch.server import clock

logger = getLogger('adwatch.notifications')

# A claimed row is not offered to another worker until this lease runs out
CLAIM_LEASE_SECONDS = 120


class NotificationError(Exception):
    pass


def backoff_delay(attempts: int) -> float:
    """Seconds to wait before the next try after ``attempts`` failed deliveries"""
    return min(Notifications.BACKOFF_BASE * 2 ** max(attempts - 1, 0), Notifications.BACKOFF_CAP)


async def enqueue(db_session: AsyncSession, chat_id: int, text: str) -> Optional[NotificationTask]:
    """Add a pending message to the caller's transaction"""
    if not Notifications.ENABLED:
        return None

    task = NotificationTask(
        chat_id=chat_id,
        text=text,
        status='pending',
        attempts=0,
        next_attempt_at=clock.now()
    )
    db_session.add(task)
    return task


async def send_telegram_message(chat_id: int, text: str) -> None:
    if not Telegram.BOT_TOKEN:
        raise NotificationError('Bot token is not configured')

    async with httpx.AsyncClient(timeout=10.0) as client:
        response = await client.post(
            f"{Telegram.API_URL}/bot{Telegram.BOT_TOKEN}/sendMessage",
            json={'chat_id': chat_id, 'text': text}
        )
        data = response.json()

    if response.status_code != 200 or not data.get('ok'):
        raise NotificationError(data.get('description') or f"HTTP {response.status_code}")


async def _claim_due(limit: int) -> list[tuple[int, int, str, int]]:
    now = clock.now()
    async with AsyncSessionLocal() as db_session:
        async with db_session.begin():
            result = await db_session.execute(
                select(NotificationTask)
                .where(
                    NotificationTask.status == 'pending',
                    NotificationTask.next_attempt_at <= now
                )
                .order_by(NotificationTask.next_attempt_at, NotificationTask.id)
                .limit(limit)
                .with_for_update(skip_locked=True)
            )
            tasks = result.scalars().all()

            lease_until = now + timedelta(seconds=CLAIM_LEASE_SECONDS)
            claimed = []
            for task in tasks:
                task.next_attempt_at = lease_until
                claimed.append((task.id, task.chat_id, task.text, task.attempts))
    return claimed


async def _record_attempt(task_id: int, attempts: int, error: Optional[str]) -> str:
    now = clock.now()
    if error is None:
        values = {'status': 'sent', 'attempts': attempts, 'sent_at': now, 'last_error': None}
    elif attempts >= Notifications.MAX_ATTEMPTS:
        values = {'status': 'failed', 'attempts': attempts, 'last_error': error}
    else:
        values = {
            'attempts': attempts,
            'last_error': error,
            'next_attempt_at': now + timedelta(seconds=backoff_delay(attempts))
        }

    async with AsyncSessionLocal() as db_session:
        async with db_session.begin():
            await db_session.execute(
                update(NotificationTask).where(NotificationTask.id == task_id).values(**values)
            )
    return values.get('status', 'pending')


async def deliver_pending(limit: Optional[int] = None) -> dict:
    """Send every due message once; returns counts per outcome"""
    counts = {'sent': 0, 'retry': 0, 'failed': 0}
    claimed = await _claim_due(limit or Notifications.BATCH_SIZE)

    for task_id, chat_id, text, attempts in claimed:
        error = None
        try:
            await send_telegram_message(chat_id, text)
        except (httpx.HTTPError, NotificationError, ValueError) as e:
            error = sanitize(str(e) or type(e).__name__)[:500]
            logger.warning(f"Notification {task_id} to {chat_id} failed (attempt {attempts + 1}): {error}")

        status = await _record_attempt(task_id, attempts + 1, error)
        if status == 'pending':
            counts['retry'] += 1
        else:
            counts[status] += 1

    if claimed:
        logger.info(f"Notification batch: {counts}")
    return counts


async def notification_worker():
    """Background task delivering the outbox every poll interval"""
    while True:
        try:
            await asyncio.sleep(Notifications.POLL_INTERVAL)
            await deliver_pending()
        except Exception as e:
            logger.error(f'Error in notification worker: {e}')
