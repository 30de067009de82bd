from quart import Blueprint, jsonify

from adwatch.server import wallet_service
from adwatch.server.api_auth import require_admin_key, request_data

bp = Blueprint('admin_api', __name__, url_prefix='/api/admin')


@bp.route('/withdrawals/<int:withdrawal_id>/decide', methods=['POST'])
@require_admin_key
async def decide_withdrawal(withdrawal_id: int):
    """Approve, reject (refunding the amount) or mark a withdrawal as paid"""
    data = await request_data()

    admin_id = data.get('admin_id')
    try:
        admin_id = int(admin_id) if admin_id is not None else None
    except (TypeError, ValueError):
        admin_id = None

    request_record = await wallet_service.decide_withdrawal(
        withdrawal_id,
        str(data.get('status') or '').strip().lower(),
        admin_id=admin_id,
        note=data.get('note')
    )
    return jsonify({'status': 'success', 'request': request_record})
