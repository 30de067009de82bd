from decimal import Decimal

from sqlalchemy.exc import OperationalError

from adwatch.server import session_service

from conftest import ADMIN_HEADERS, SERVICE_HEADERS, sign_init_data


async def post(client, path, json=None, headers=SERVICE_HEADERS):
    response = await client.post(path, json=json or {}, headers=headers)
    return response.status_code, await response.get_json()


async def test_user_endpoint_creates_account_with_referrer(client):
    status, body = await post(client, '/api/user', {'user_id': 200, 'referrer_id': 100})

    assert status == 200
    assert body['status'] == 'success'
    assert body['user'] == {'tg_id': 200, 'referred_by': 100, 'is_vip': False}
    assert body['balances'] == {'tl': 0.0, 'diamonds': 0.0}


async def test_init_data_header_authenticates(client):
    init_data = sign_init_data({'id': 555, 'first_name': 'Ali'})

    status, body = await post(client, '/api/wallet', headers={'X-Telegram-InitData': init_data})

    assert status == 200
    assert body == {'status': 'success', 'tl': 0.0, 'diamonds': 0.0}


async def test_init_data_in_body_authenticates(client):
    init_data = sign_init_data({'id': 556})

    status, body = await post(client, '/api/user', {'initData': init_data}, headers={})

    assert status == 200
    assert body['user']['tg_id'] == 556


async def test_authentication_failures(client):
    status, body = await post(client, '/api/wallet', headers={})
    assert status == 401
    assert body['error'] == 'missing_initData'

    status, body = await post(client, '/api/wallet', {'user_id': 1}, headers={'X-API-Key': 'wrong'})
    assert status == 401
    assert body['error'] == 'invalid_api_key'

    status, body = await post(client, '/api/wallet', {})
    assert status == 401
    assert body['error'] == 'missing_user_id'

    status, body = await post(client, '/api/admin/withdrawals/1/decide', {'status': 'approved'})
    assert status == 401
    assert body['error'] == 'invalid_api_key'


async def test_watch_flow_over_http(client, make_ad, fake_clock):
    await make_ad(seconds=15)

    status, started = await post(client, '/api/ad/start', {'user_id': 42})
    assert status == 200
    assert started['seconds'] == 15
    assert started['reward'] == {'tl': 0.25, 'diamonds': 0.25}
    assert started['seen'] == 1

    fake_clock.advance(14.5)
    status, body = await post(client, '/api/ad/complete', {'user_id': 42, 'session_id': started['session_id']})
    assert status == 400
    assert body['status'] == 'error'
    assert body['error'] == 'too_early'
    assert body['remaining'] == 1

    fake_clock.advance(0.2)
    status, body = await post(client, '/api/ad/complete', {'user_id': 42, 'session_id': started['session_id']})
    assert status == 200
    assert body['balances'] == {'tl': 0.25, 'diamonds': 0.25}
    assert 'already' not in body

    status, body = await post(client, '/api/ad/complete', {'user_id': 42, 'session_id': started['session_id']})
    assert status == 200
    assert body['already'] is True


async def test_complete_requires_session_id(client):
    status, body = await post(client, '/api/ad/complete', {'user_id': 42})

    assert status == 400
    assert body['error'] == 'missing_session_id'


async def test_start_errors_map_to_status_codes(client, make_ad, fake_clock, monkeypatch):
    status, body = await post(client, '/api/ad/start', {'user_id': 42})
    assert (status, body['error']) == (404, 'no_ad')

    status, body = await post(client, '/api/ad/start', {'user_id': 42, 'wants_vip': True})
    assert (status, body['error']) == (403, 'vip_required')

    from adwatch.config import Rewards
    monkeypatch.setattr(Rewards, 'DAILY_AD_LIMIT', 1)
    await make_ad()
    await post(client, '/api/ad/start', {'user_id': 42})
    status, body = await post(client, '/api/ad/start', {'user_id': 42})
    assert status == 429
    assert body['error'] == 'daily_limit'
    assert body['limit'] == 1


async def test_wallet_endpoints(client, make_user):
    await make_user(7, tl='80', diamonds='4')

    status, body = await post(client, '/api/convert', {'user_id': 7, 'amount': 4, 'direction': 'diamonds_to_tl'})
    assert status == 200
    assert body['converted'] == 4.0
    assert body['balances'] == {'tl': 84.0, 'diamonds': 0.0}

    status, body = await post(client, '/api/convert', {'user_id': 7, 'amount': 1, 'direction': 'sideways'})
    assert (status, body['error']) == (400, 'invalid_direction')

    status, body = await post(client, '/api/withdraw', {
        'user_id': 7, 'amount': 50, 'iban': 'TR33 0006 1005 1978 6457 8413 26', 'full_name': 'Mehmet'
    })
    assert status == 200
    assert body['balances']['tl'] == 34.0
    request_id = body['request']['id']

    status, body = await post(client, '/api/withdrawals', {'user_id': 7})
    assert [r['id'] for r in body['withdrawals']] == [request_id]

    status, body = await post(
        client, f'/api/admin/withdrawals/{request_id}/decide',
        {'status': 'rejected', 'admin_id': 1, 'note': 'IBAN holder mismatch'},
        headers=ADMIN_HEADERS
    )
    assert status == 200
    assert body['request']['status'] == 'rejected'

    status, body = await post(client, '/api/wallet', {'user_id': 7})
    assert body['tl'] == 84.0

    status, body = await post(
        client, f'/api/admin/withdrawals/{request_id}/decide', {'status': 'paid'}, headers=ADMIN_HEADERS
    )
    assert (status, body['error']) == (409, 'invalid_transition')


async def test_store_outage_is_reported_as_unavailable(client, monkeypatch):
    async def unavailable(*args, **kwargs):
        raise OperationalError('SELECT 1', {}, Exception('connection refused'))

    monkeypatch.setattr(session_service, 'start_session', unavailable)

    status, body = await post(client, '/api/ad/start', {'user_id': 42})

    assert status == 503
    assert body['error'] == 'store_unavailable'


async def test_unexpected_errors_are_hidden(client, monkeypatch):
    async def broken(*args, **kwargs):
        raise KeyError(Decimal('1'))

    monkeypatch.setattr(session_service, 'start_session', broken)

    status, body = await post(client, '/api/ad/start', {'user_id': 42})

    assert status == 500
    assert body == {'status': 'error', 'error': 'server_error', 'message': 'Internal server error.'}


async def test_unknown_route_is_json(client):
    response = await client.post('/api/nope', json={})

    assert response.status_code == 404
    assert (await response.get_json())['status'] == 'error'
