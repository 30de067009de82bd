import hashlib
import hmac
import json
import time
from functools import wraps
from typing import Optional
from urllib.parse import parse_qsl

from quart import request, g

from adwatch.config import Telegram, Server
from adwatch.server.error import AuthError


def verify_init_data(init_data: Optional[str], bot_token: str, max_age: Optional[int] = None,
                     now: Optional[float] = None) -> dict:
    """
    Validate Telegram WebApp initData and return the signed user object.

    The data-check string is every field except ``hash``, sorted by key and
    joined with newlines; the key is HMAC-SHA256("WebAppData", bot_token).
    """
    if not init_data:
        raise AuthError('missing_initData', 'initData is required')

    data = dict(parse_qsl(init_data, keep_blank_values=True))
    received_hash = data.pop('hash', None)
    if not received_hash:
        raise AuthError('missing_hash', 'initData is not signed')

    if not bot_token:
        raise AuthError('bad_hash', 'initData cannot be verified on this server')

    data_check_string = '\n'.join(f'{key}={value}' for key, value in sorted(data.items()))
    secret_key = hmac.new(b'WebAppData', bot_token.encode(), hashlib.sha256).digest()
    calculated_hash = hmac.new(secret_key, data_check_string.encode(), hashlib.sha256).hexdigest()
    if not hmac.compare_digest(calculated_hash.encode(), received_hash.encode()):
        raise AuthError('bad_hash', 'initData signature mismatch')

    if max_age:
        try:
            auth_date = int(data.get('auth_date', 0))
        except ValueError:
            auth_date = 0
        if (now if now is not None else time.time()) - auth_date > max_age:
            raise AuthError('expired_initData', 'initData has expired')

    raw_user = data.get('user')
    if not raw_user:
        raise AuthError('missing_user', 'initData has no user')

    try:
        user = json.loads(raw_user)
    except ValueError:
        raise AuthError('bad_user_json', 'initData user is not valid JSON')

    if not isinstance(user, dict) or not user.get('id'):
        raise AuthError('missing_user_id', 'initData user has no id')

    return user


def _parse_user_id(value) -> int:
    try:
        user_id = int(value)
    except (TypeError, ValueError):
        raise AuthError('missing_user_id', 'user_id is required')
    if user_id <= 0:
        raise AuthError('missing_user_id', 'user_id must be positive')
    return user_id


async def authenticate_request() -> int:
    """
    Resolve the calling user from WebApp initData or, for the bot backend,
    from the service API key plus ``user_id`` in the body.
    """
    data = await request_data()

    api_key = request.headers.get('X-API-Key') or request.headers.get('X-Api-Key')
    if api_key:
        if not Server.SERVICE_API_TOKEN or not hmac.compare_digest(api_key.encode(), Server.SERVICE_API_TOKEN.encode()):
            raise AuthError('invalid_api_key', 'Invalid API key')
        return _parse_user_id(data.get('user_id'))

    init_data = request.headers.get('X-Telegram-InitData') or data.get('initData')
    user = verify_init_data(init_data, Telegram.BOT_TOKEN, Telegram.INITDATA_MAX_AGE)
    return _parse_user_id(user.get('id'))


def require_user(func):
    """
    Decorator for user endpoints; sets ``g.tg_user_id``.
    Usage: @require_user
    """
    @wraps(func)
    async def wrapper(*args, **kwargs):
        g.tg_user_id = await authenticate_request()
        return await func(*args, **kwargs)
    return wrapper


def require_admin_key(func):
    """Decorator for admin endpoints guarded by ADMIN_API_TOKEN"""
    @wraps(func)
    async def wrapper(*args, **kwargs):
        api_key = request.headers.get('X-API-Key') or request.headers.get('X-Api-Key') or ''
        auth_header = request.headers.get('Authorization', '')
        if not api_key and auth_header.startswith('Bearer '):
            api_key = auth_header[7:]

        if not Server.ADMIN_API_TOKEN or not hmac.compare_digest(api_key.encode(), Server.ADMIN_API_TOKEN.encode()):
            raise AuthError('invalid_api_key', 'Invalid admin API key')
        return await func(*args, **kwargs)
    return wrapper


async def request_data() -> dict:
    """JSON body of the current request, empty when absent or not an object"""
    data = await request.get_json(silent=True)
    return data if isinstance(data, dict) else {}
