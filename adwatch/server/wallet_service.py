import re
from decimal import Decimal, InvalidOperation
from logging import getLogger
from typing import Optional

from sqlalchemy import select

from adwatch.config import Rewards
from adwatch.database import AsyncSessionLocal
from adwatch.models import CurrencyConversion, WithdrawRequest
from adwatch.schema import schema
from adwatch.server import account_store, clock, notification_service
from adwatch.server.error import ValidationError, NotFoundError, StateConflictError, ResourceExhaustedError
from adwatch.server.reward_ledger import round_money

logger = getLogger('adwatch.wallet')

CONVERSION_DIRECTIONS = ('diamonds_to_tl', 'tl_to_diamonds')

IBAN_PATTERN = re.compile(r'^[A-Z0-9]{8,64}$')

WITHDRAW_STATUSES = ('pending', 'approved', 'rejected', 'paid')

# Allowed decisions from each current status
WITHDRAW_TRANSITIONS = {
    'pending': ('approved', 'rejected'),
    'approved': ('paid', 'rejected'),
}


def parse_amount(value) -> Decimal:
    """Positive finite decimal from a JSON value, or ``bad_amount``"""
    if isinstance(value, bool) or value is None:
        raise ValidationError('bad_amount', 'Amount must be a positive number')
    try:
        amount = Decimal(str(value).strip())
    except InvalidOperation:
        raise ValidationError('bad_amount', 'Amount must be a positive number')
    if not amount.is_finite() or amount <= 0:
        raise ValidationError('bad_amount', 'Amount must be a positive number')
    return amount


def normalize_iban(value) -> Optional[str]:
    iban = re.sub(r'\s+', '', str(value or '')).upper()
    return iban if IBAN_PATTERN.match(iban) else None


def withdrawal_payload(request: WithdrawRequest) -> dict:
    return {
        'id': request.id,
        'tg_id': request.tg_id,
        'amount_tl': float(request.amount_tl),
        'full_name': request.full_name,
        'iban': request.iban,
        'status': request.status,
        'admin_note': request.admin_note,
        'created_at': request.created_at.isoformat() if request.created_at else None,
        'decided_at': request.decided_at.isoformat() if request.decided_at else None,
        'decided_by': request.decided_by,
    }


async def get_wallet(tg_id: int) -> dict:
    await schema.ensure()
    async with AsyncSessionLocal() as db_session:
        return await account_store.get_balances(db_session, tg_id)


async def convert_currency(tg_id: int, amount, direction: str) -> dict:
    """Move value between diamonds and TL at the configured rate in one transaction"""
    amount = parse_amount(amount)
    if direction not in CONVERSION_DIRECTIONS:
        raise ValidationError('invalid_direction', f"Direction must be one of {', '.join(CONVERSION_DIRECTIONS)}")

    await schema.ensure()
    users = schema.users
    if not (users.has('balance_tl') and users.has('diamonds')):
        raise ValidationError('invalid_direction', 'Conversion needs both TL and diamond balances')

    rate = Rewards.DIAMOND_TO_TL_RATE
    if direction == 'diamonds_to_tl':
        converted = round_money(amount * rate)
        debit = {'diamonds': amount}
        credit = (converted, Decimal('0'))
    else:
        converted = round_money(amount / rate)
        debit = {'tl': amount}
        credit = (Decimal('0'), converted)

    if converted <= 0:
        raise ValidationError('bad_amount', 'Amount is too small to convert')

    async with AsyncSessionLocal() as db_session:
        async with db_session.begin():
            await account_store.ensure_user(db_session, tg_id)

            if await account_store.debit_if_sufficient(db_session, tg_id, **debit) is None:
                raise ResourceExhaustedError('insufficient_funds', 'Not enough balance to convert')

            balances = await account_store.credit(db_session, tg_id, *credit)

            db_session.add(CurrencyConversion(
                tg_id=tg_id,
                direction=direction,
                amount_in=amount,
                amount_out=converted,
                rate=rate
            ))

    logger.info(f"User {tg_id} converted {amount} ({direction}) into {converted}")
    return {'balances': balances, 'rate': rate, 'converted': converted, 'direction': direction}


async def request_withdrawal(tg_id: int, amount, iban, full_name: Optional[str] = None) -> dict:
    """Record a payout request and debit its amount immediately"""
    amount = parse_amount(amount)

    normalized_iban = normalize_iban(iban)
    if normalized_iban is None:
        raise ValidationError('bad_iban', 'IBAN must be 8-64 letters or digits')

    if amount < Rewards.MIN_WITHDRAW_TL:
        raise ValidationError(
            'min_withdraw', f"Minimum withdrawal is {Rewards.MIN_WITHDRAW_TL} TL",
            min=float(Rewards.MIN_WITHDRAW_TL)
        )

    await schema.ensure()
    async with AsyncSessionLocal() as db_session:
        async with db_session.begin():
            await account_store.ensure_user(db_session, tg_id)

            balances = await account_store.debit_if_sufficient(db_session, tg_id, tl=amount)
            if balances is None:
                raise ResourceExhaustedError('insufficient_balance', 'Not enough TL balance')

            request = WithdrawRequest(
                tg_id=tg_id,
                full_name=(full_name or '').strip()[:120],
                iban=normalized_iban,
                amount_tl=amount,
                status='pending',
                created_at=clock.now()
            )
            db_session.add(request)
            await db_session.flush()
            payload = withdrawal_payload(request)

    logger.info(f"Withdrawal {payload['id']} requested by {tg_id} for {amount} TL")
    return {'request': payload, 'balances': balances}


async def list_withdrawals(tg_id: int) -> list[dict]:
    async with AsyncSessionLocal() as db_session:
        result = await db_session.execute(
            select(WithdrawRequest)
            .where(WithdrawRequest.tg_id == tg_id)
            .order_by(WithdrawRequest.created_at.desc(), WithdrawRequest.id.desc())
        )
        return [withdrawal_payload(request) for request in result.scalars().all()]


async def decide_withdrawal(withdrawal_id: int, status: str, admin_id: Optional[int] = None,
                            note: Optional[str] = None) -> dict:
    """Move a request along pending -> approved -> paid, or reject it with a refund"""
    if status not in WITHDRAW_STATUSES or status == 'pending':
        raise ValidationError('invalid_status', 'Status must be approved, rejected or paid')

    await schema.ensure()
    async with AsyncSessionLocal() as db_session:
        async with db_session.begin():
            result = await db_session.execute(
                select(WithdrawRequest).where(WithdrawRequest.id == withdrawal_id).with_for_update()
            )
            request = result.scalar_one_or_none()
            if request is None:
                raise NotFoundError('withdrawal_not_found', 'Withdrawal request not found')

            if status not in WITHDRAW_TRANSITIONS.get(request.status, ()):
                raise StateConflictError(
                    'invalid_transition', f"Cannot move a {request.status} request to {status}",
                    current=request.status
                )

            previous = request.status
            request.status = status
            request.decided_at = clock.now()
            request.decided_by = admin_id
            if note is not None:
                request.admin_note = note

            if status == 'rejected':
                await account_store.credit(db_session, request.tg_id, request.amount_tl, Decimal('0'))

            await notification_service.enqueue(
                db_session, request.tg_id,
                f"Your withdrawal of {round_money(account_store.to_decimal(request.amount_tl))} TL is now {status}."
            )
            await db_session.flush()
            payload = withdrawal_payload(request)

    logger.info(f"Withdrawal {withdrawal_id} moved {previous} -> {status} by {admin_id}")
    return payload


async def open_account(tg_id: int, referrer_id=None) -> dict:
    """Create the user on first contact, recording the referrer if one is given"""
    await schema.ensure()
    async with AsyncSessionLocal() as db_session:
        async with db_session.begin():
            await account_store.ensure_user(db_session, tg_id, referrer_id)
            user = await account_store.get_user(db_session, tg_id)
    return user
