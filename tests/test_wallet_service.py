from decimal import Decimal

import pytest
from sqlalchemy import select

from adwatch.config import Rewards
from adwatch.database import AsyncSessionLocal
from adwatch.models import CurrencyConversion
from adwatch.server import wallet_service
from adwatch.server.error import ApiError

IBAN = 'TR33 0006 1005 1978 6457 8413 26'


async def expect_error(code, coro):
    with pytest.raises(ApiError) as exc:
        await coro
    assert exc.value.code == code
    return exc.value


async def test_convert_diamonds_to_tl(make_user):
    await make_user(1, diamonds='5')

    result = await wallet_service.convert_currency(1, '2', 'diamonds_to_tl')

    assert result['converted'] == Decimal('2.00')
    assert result['balances'] == {'tl': Decimal('2'), 'diamonds': Decimal('3')}

    async with AsyncSessionLocal() as db_session:
        log = (await db_session.execute(select(CurrencyConversion))).scalar_one()
    assert log.direction == 'diamonds_to_tl'
    assert log.amount_in == Decimal('2')


async def test_convert_uses_configured_rate(make_user, monkeypatch):
    monkeypatch.setattr(Rewards, 'DIAMOND_TO_TL_RATE', Decimal('0.5'))
    await make_user(1, tl='3')

    result = await wallet_service.convert_currency(1, 3, 'tl_to_diamonds')

    assert result['converted'] == Decimal('6.00')
    assert result['balances'] == {'tl': 0, 'diamonds': Decimal('6')}


async def test_convert_validation(make_user):
    await make_user(1, diamonds='1')

    await expect_error('bad_amount', wallet_service.convert_currency(1, 'lots', 'diamonds_to_tl'))
    await expect_error('bad_amount', wallet_service.convert_currency(1, 0, 'diamonds_to_tl'))
    await expect_error('bad_amount', wallet_service.convert_currency(1, True, 'diamonds_to_tl'))
    await expect_error('invalid_direction', wallet_service.convert_currency(1, 1, 'gold_to_tl'))

    error = await expect_error('insufficient_funds', wallet_service.convert_currency(1, 2, 'diamonds_to_tl'))
    assert error.status_code == 400
    assert await wallet_service.get_wallet(1) == {'tl': 0, 'diamonds': Decimal('1')}


async def test_withdrawal_debits_and_is_listed(make_user):
    await make_user(1, tl='100')

    result = await wallet_service.request_withdrawal(1, 60, IBAN, '  Ayse Yilmaz ')

    assert result['balances']['tl'] == Decimal('40')
    assert result['request']['status'] == 'pending'
    assert result['request']['iban'] == 'TR330006100519786457841326'
    assert result['request']['full_name'] == 'Ayse Yilmaz'

    listed = await wallet_service.list_withdrawals(1)
    assert [r['id'] for r in listed] == [result['request']['id']]
    assert listed[0]['amount_tl'] == 60.0


async def test_withdrawal_checks_run_in_order(make_user):
    await make_user(1, tl='20')

    await expect_error('bad_amount', wallet_service.request_withdrawal(1, -5, 'bad'))
    await expect_error('bad_iban', wallet_service.request_withdrawal(1, 60, 'TR12'))
    await expect_error('bad_iban', wallet_service.request_withdrawal(1, 60, 'TR12-3456-7890'))
    error = await expect_error('min_withdraw', wallet_service.request_withdrawal(1, 10, IBAN))
    assert error.extra['min'] == float(Rewards.MIN_WITHDRAW_TL)
    await expect_error('insufficient_balance', wallet_service.request_withdrawal(1, 60, IBAN))

    assert await wallet_service.get_wallet(1) == {'tl': Decimal('20'), 'diamonds': 0}
    assert await wallet_service.list_withdrawals(1) == []


async def test_withdrawal_lifecycle(make_user):
    await make_user(1, tl='100')
    request_id = (await wallet_service.request_withdrawal(1, 50, IBAN))['request']['id']

    approved = await wallet_service.decide_withdrawal(request_id, 'approved', admin_id=9, note='checked')
    assert approved['status'] == 'approved'
    assert approved['decided_by'] == 9
    assert approved['admin_note'] == 'checked'
    assert approved['decided_at'] is not None

    paid = await wallet_service.decide_withdrawal(request_id, 'paid', admin_id=9)
    assert paid['status'] == 'paid'

    error = await expect_error('invalid_transition', wallet_service.decide_withdrawal(request_id, 'rejected'))
    assert error.status_code == 409
    assert await wallet_service.get_wallet(1) == {'tl': Decimal('50'), 'diamonds': 0}


async def test_rejection_refunds_the_amount(make_user):
    await make_user(1, tl='100')
    request_id = (await wallet_service.request_withdrawal(1, 70, IBAN))['request']['id']

    rejected = await wallet_service.decide_withdrawal(request_id, 'rejected', note='name mismatch')

    assert rejected['status'] == 'rejected'
    assert await wallet_service.get_wallet(1) == {'tl': Decimal('100'), 'diamonds': 0}
    await expect_error('invalid_transition', wallet_service.decide_withdrawal(request_id, 'approved'))


async def test_decision_errors(make_user):
    await make_user(1, tl='100')
    request_id = (await wallet_service.request_withdrawal(1, 50, IBAN))['request']['id']

    error = await expect_error('withdrawal_not_found', wallet_service.decide_withdrawal(9999, 'approved'))
    assert error.status_code == 404
    error = await expect_error('invalid_status', wallet_service.decide_withdrawal(request_id, 'pending'))
    assert error.status_code == 400
    await expect_error('invalid_status', wallet_service.decide_withdrawal(request_id, 'cancelled'))
