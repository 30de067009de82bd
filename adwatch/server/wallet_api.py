from quart import Blueprint, jsonify, g

from adwatch.server import wallet_service
from adwatch.server.account_store import balances_payload
from adwatch.server.api_auth import require_user, request_data

bp = Blueprint('wallet_api', __name__, url_prefix='/api')


@bp.route('/wallet', methods=['POST'])
@require_user
async def wallet():
    balances = await wallet_service.get_wallet(g.tg_user_id)
    return jsonify({'status': 'success', **balances_payload(balances)})


@bp.route('/convert', methods=['POST'])
@require_user
async def convert():
    data = await request_data()
    result = await wallet_service.convert_currency(
        g.tg_user_id, data.get('amount'), str(data.get('direction') or '')
    )

    return jsonify({
        'status': 'success',
        'direction': result['direction'],
        'rate': float(result['rate']),
        'converted': float(result['converted']),
        'balances': balances_payload(result['balances'])
    })


@bp.route('/withdraw', methods=['POST'])
@require_user
async def withdraw():
    data = await request_data()
    result = await wallet_service.request_withdrawal(
        g.tg_user_id, data.get('amount'), data.get('iban'), data.get('full_name')
    )

    return jsonify({
        'status': 'success',
        'request': result['request'],
        'balances': balances_payload(result['balances'])
    })


@bp.route('/withdrawals', methods=['POST'])
@require_user
async def withdrawals():
    requests = await wallet_service.list_withdrawals(g.tg_user_id)
    return jsonify({'status': 'success', 'withdrawals': requests})
