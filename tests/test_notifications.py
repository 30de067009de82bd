from decimal import Decimal

import httpx
import pytest
from sqlalchemy import select

from adwatch.config import Notifications
from adwatch.database import AsyncSessionLocal
from adwatch.models import NotificationTask
from adwatch.server import notification_service, session_service


async def queue_message(chat_id=42, text='hello'):
    async with AsyncSessionLocal() as db_session:
        async with db_session.begin():
            task = await notification_service.enqueue(db_session, chat_id, text)
    return task.id


async def load(task_id):
    async with AsyncSessionLocal() as db_session:
        return await db_session.get(NotificationTask, task_id)


@pytest.fixture
def outbox(monkeypatch):
    """Replace the Bot API call; failures are scripted per call"""
    calls = []
    script = []

    async def fake_send(chat_id, text):
        calls.append((chat_id, text))
        if script and script.pop(0):
            raise httpx.ConnectError('connection refused')

    monkeypatch.setattr(notification_service, 'send_telegram_message', fake_send)
    return calls, script


def test_backoff_doubles_until_cap(monkeypatch):
    monkeypatch.setattr(Notifications, 'BACKOFF_BASE', 5)
    monkeypatch.setattr(Notifications, 'BACKOFF_CAP', 3600)

    assert [notification_service.backoff_delay(n) for n in (1, 2, 3, 4)] == [5, 10, 20, 40]
    assert notification_service.backoff_delay(20) == 3600


async def test_pending_message_is_sent_once(db, fake_clock, outbox):
    calls, _ = outbox
    task_id = await queue_message()

    assert await notification_service.deliver_pending() == {'sent': 1, 'retry': 0, 'failed': 0}
    assert await notification_service.deliver_pending() == {'sent': 0, 'retry': 0, 'failed': 0}

    task = await load(task_id)
    assert calls == [(42, 'hello')]
    assert task.status == 'sent'
    assert task.attempts == 1


async def test_failed_delivery_is_retried_after_backoff(db, fake_clock, outbox, monkeypatch):
    monkeypatch.setattr(Notifications, 'BACKOFF_BASE', 5)
    calls, script = outbox
    script.extend([True, False])
    task_id = await queue_message()

    assert await notification_service.deliver_pending() == {'sent': 0, 'retry': 1, 'failed': 0}
    task = await load(task_id)
    assert task.status == 'pending'
    assert task.attempts == 1
    assert 'connection refused' in task.last_error

    fake_clock.advance(4)
    assert (await notification_service.deliver_pending())['sent'] == 0

    fake_clock.advance(1)
    assert (await notification_service.deliver_pending())['sent'] == 1
    assert (await load(task_id)).attempts == 2
    assert len(calls) == 2


async def test_delivery_gives_up_after_max_attempts(db, fake_clock, outbox, monkeypatch):
    monkeypatch.setattr(Notifications, 'MAX_ATTEMPTS', 2)
    monkeypatch.setattr(Notifications, 'BACKOFF_BASE', 1)
    _, script = outbox
    script.extend([True, True, True])
    task_id = await queue_message()

    await notification_service.deliver_pending()
    fake_clock.advance(60)
    assert await notification_service.deliver_pending() == {'sent': 0, 'retry': 0, 'failed': 1}
    fake_clock.advance(3600)
    assert await notification_service.deliver_pending() == {'sent': 0, 'retry': 0, 'failed': 0}

    assert (await load(task_id)).status == 'failed'


async def test_completion_queues_watcher_notification(make_ad, fake_clock):
    await make_ad(seconds=5, reward_tl=Decimal('1'), reward_diamonds=Decimal('2'))
    started = await session_service.start_session(42)
    fake_clock.advance(5)
    await session_service.complete_session(started['session_id'], 42)

    async with AsyncSessionLocal() as db_session:
        tasks = (await db_session.execute(select(NotificationTask))).scalars().all()
    assert [(t.chat_id, t.status) for t in tasks] == [(42, 'pending')]
    assert '+1.00 TL' in tasks[0].text


async def test_disabled_notifications_are_not_queued(db, monkeypatch):
    monkeypatch.setattr(Notifications, 'ENABLED', False)

    async with AsyncSessionLocal() as db_session:
        async with db_session.begin():
            assert await notification_service.enqueue(db_session, 1, 'x') is None

        assert (await db_session.execute(select(NotificationTask))).scalars().all() == []
