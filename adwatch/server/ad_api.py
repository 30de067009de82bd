from quart import Blueprint, jsonify, g

from adwatch.server import session_service, wallet_service
from adwatch.server.account_store import balances_payload
from adwatch.server.api_auth import require_user, request_data
from adwatch.server.error import ValidationError

bp = Blueprint('ad_api', __name__, url_prefix='/api')


def _parse_flag(value):
    """Optional boolean from JSON; strings like "true"/"0" are accepted"""
    if value is None or isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    return str(value).strip().lower() in ('1', 'true', 'yes', 'on')


def _reward_payload(reward: dict) -> dict:
    return {'tl': float(reward['tl']), 'diamonds': float(reward['diamonds'])}


@bp.route('/user', methods=['POST'])
@require_user
async def user_info():
    """Create the account on first contact and return it with balances"""
    data = await request_data()
    user = await wallet_service.open_account(g.tg_user_id, data.get('referrer_id'))

    return jsonify({
        'status': 'success',
        'user': {
            'tg_id': user['tg_id'],
            'referred_by': user['referred_by'],
            'is_vip': user['is_vip'],
        },
        'balances': balances_payload(user['balances'])
    })


@bp.route('/ad/start', methods=['POST'])
@require_user
async def start_ad():
    data = await request_data()
    started = await session_service.start_session(g.tg_user_id, _parse_flag(data.get('wants_vip')))

    return jsonify({
        'status': 'success',
        'session_id': started['session_id'],
        'seconds': started['seconds'],
        'reward': _reward_payload(started['reward']),
        'ad': started['ad'],
        'seen': started['seen'],
        'limit': started['limit']
    })


@bp.route('/ad/complete', methods=['POST'])
@require_user
async def complete_ad():
    data = await request_data()
    session_id = str(data.get('session_id') or '').strip()
    if not session_id:
        raise ValidationError('missing_session_id', 'session_id is required')

    completed = await session_service.complete_session(session_id, g.tg_user_id)

    response = {
        'status': 'success',
        'balances': balances_payload(completed['balances']),
        'reward': _reward_payload(completed['reward'])
    }
    if completed['already']:
        response['already'] = True
    return jsonify(response)
