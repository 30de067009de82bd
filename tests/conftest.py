import hashlib
import hmac
import json
import os
import tempfile
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from urllib.parse import urlencode

_scratch = tempfile.mkdtemp(prefix='adwatch-tests-')

# Configuration is read at import time, so it has to be in place before adwatch loads
os.environ['DATABASE_URL'] = f"sqlite+aiosqlite:///{_scratch}/bootstrap.db"
os.environ['LOG_FILENAME'] = os.path.join(_scratch, 'event-log.txt')
os.environ['TELEGRAM_BOT_TOKEN'] = '123456789:AAHdqTcvCH1vGWJxfSeofSAs0K5PALDsawq'
os.environ['SERVICE_API_TOKEN'] = 'service-test-token'
os.environ['ADMIN_API_TOKEN'] = 'admin-test-token'
os.environ['NOTIFY_ENABLED'] = 'true'
os.environ['SCHEMA_AUTO_MIGRATE'] = 'true'
os.environ['AD_PICK_POLICY'] = 'random'

import pytest

from adwatch import database
from adwatch.database import AsyncSessionLocal, Base
from adwatch.models import Ad, User
from adwatch.schema import schema
from adwatch.server import clock

BOT_TOKEN = os.environ['TELEGRAM_BOT_TOKEN']
SERVICE_HEADERS = {'X-API-Key': 'service-test-token'}
ADMIN_HEADERS = {'X-API-Key': 'admin-test-token'}


class FakeClock:
    def __init__(self, start: datetime):
        self.current = start

    def now(self) -> datetime:
        return self.current

    def advance(self, seconds: float = 0, days: int = 0):
        self.current += timedelta(seconds=seconds, days=days)


def sign_fields(fields: dict, bot_token: str = BOT_TOKEN) -> str:
    """Sign a field set the way Telegram signs WebApp initData"""
    fields = {key: str(value) for key, value in fields.items()}
    data_check_string = '\n'.join(f'{key}={value}' for key, value in sorted(fields.items()))
    secret_key = hmac.new(b'WebAppData', bot_token.encode(), hashlib.sha256).digest()
    fields['hash'] = hmac.new(secret_key, data_check_string.encode(), hashlib.sha256).hexdigest()
    return urlencode(fields)


def sign_init_data(user: dict, bot_token: str = BOT_TOKEN, auth_date: int = None, **extra) -> str:
    fields = {
        'auth_date': auth_date if auth_date is not None else int(datetime.now(timezone.utc).timestamp()),
        'query_id': 'AAHdF6IQAAAAAN0XohDhrOrc',
        'user': json.dumps(user, separators=(',', ':')),
        **extra
    }
    return sign_fields(fields, bot_token)


@pytest.fixture
async def db(tmp_path):
    """Fresh migrated SQLite database for one test"""
    database.configure_engine(f"sqlite+aiosqlite:///{tmp_path / 'adwatch.db'}")
    schema.reset()
    await database.init_db()
    yield database
    await database.close_db()
    schema.reset()


@pytest.fixture
async def legacy_db(tmp_path):
    """
    Factory for databases whose tables were created by an older bot.

    Each DDL statement creates one legacy table. With ``migrate=False`` the
    remaining tables are created from the models and only the adapter runs, so
    missing legacy columns stay missing.
    """
    async def build(*legacy_ddl: str, migrate: bool = False):
        engine = database.configure_engine(f"sqlite+aiosqlite:///{tmp_path / 'legacy.db'}")
        schema.reset()
        async with engine.begin() as conn:
            for ddl in legacy_ddl:
                await conn.exec_driver_sql(ddl)
            if not migrate:
                await conn.run_sync(lambda sync_conn: Base.metadata.create_all(sync_conn, checkfirst=True))

        if migrate:
            await database.init_db()
        else:
            await schema.resolve(engine)
        return engine

    yield build
    await database.close_db()
    schema.reset()


@pytest.fixture
def fake_clock(monkeypatch):
    fake = FakeClock(datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc))
    monkeypatch.setattr(clock, 'now', fake.now)
    return fake


@pytest.fixture
def make_ad(db):
    async def create(**fields) -> int:
        fields.setdefault('title', 'Test ad')
        fields.setdefault('seconds', 15)
        fields.setdefault('page_url', 'https://example.com/ad')
        async with AsyncSessionLocal() as db_session:
            async with db_session.begin():
                ad = Ad(**fields)
                db_session.add(ad)
                await db_session.flush()
                return ad.id
    return create


@pytest.fixture
def make_user(db):
    async def create(tg_id: int, tl='0', diamonds='0', is_vip=False, referred_by=None) -> int:
        async with AsyncSessionLocal() as db_session:
            async with db_session.begin():
                db_session.add(User(
                    tg_id=tg_id,
                    balance_tl=Decimal(tl),
                    diamonds=Decimal(diamonds),
                    is_vip=is_vip,
                    referred_by=referred_by
                ))
        return tg_id
    return create


@pytest.fixture
async def client(db):
    from adwatch.server import instance
    return instance.test_client()
