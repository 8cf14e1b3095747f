import hmac
import json
import time
import hashlib
from uuid import uuid4
from sqlalchemy.ext.asyncio import async_sessionmaker, AsyncSession

import tables


# Not fixtures, tests need different combinations of owners and cards

async def create_card_owner(
    session_maker: async_sessionmaker[AsyncSession],
    address: str = '0x4444444444444444444444444444444444444444',
    external_card_id: str = 'ic_test',
    card_status: tables.card.Status = 'active'
) -> tuple[tables.User, tables.Card]:
    async with session_maker() as session, session.begin():
        user = tables.User(name='Test', address=address, provider='wallet')
        session.add(user)
        await session.flush()

        card = tables.Card(
            user_id=user.id,
            external_id=external_card_id,
            external_cardholder_id='ich_test',
            name='Test',
            brand='Visa',
            last4='4242',
            status=card_status
        )
        session.add(card)

    return user, card


async def create_payment(
    session_maker: async_sessionmaker[AsyncSession],
    card: tables.Card,
    amount: int,
    currency: str = 'GBP',
    status: tables.payment.Status = 'completed'
) -> tables.Payment:
    async with session_maker() as session, session.begin():
        payment = tables.Payment(
            card_id=card.id,
            external_id=f'iauth_{uuid4().hex}',
            status=status,
            amount=amount,
            currency=currency,
            merchant_name='Coffee',
            merchant_amount=amount,
            merchant_currency=currency
        )
        session.add(payment)

    return payment


def authorization_event(
    event_type: str,
    authorization_id: str,
    card_id: str = 'ic_test',
    amount: int = 375,
    pending_amount: int | None = None,
    approved: bool = False,
    currency: str = 'gbp'
) -> dict:
    return {
        'id': f'evt_{uuid4().hex}',
        'object': 'event',
        'type': event_type,
        'data': {
            'object': {
                'id': authorization_id,
                'object': 'issuing.authorization',
                'approved': approved,
                'amount': amount if pending_amount is None else 0,
                'currency': currency,
                'merchant_amount': amount if pending_amount is None else 0,
                'merchant_currency': currency,
                'merchant_data': {'name': 'Coffee'},
                'card': {'id': card_id},
                'pending_request': {
                    'amount': pending_amount,
                    'currency': currency,
                    'merchant_amount': pending_amount,
                    'merchant_currency': currency
                } if pending_amount is not None else None
            }
        }
    }


def sign(payload: bytes, secret: str, timestamp: int | None = None) -> str:
    timestamp = timestamp or int(time.time())
    signature = hmac.new(secret.encode(), f'{timestamp}.'.encode() + payload, hashlib.sha256).hexdigest()
    return f't={timestamp},v1={signature}'


def signed_body(event: dict, secret: str) -> tuple[bytes, dict[str, str]]:
    payload = json.dumps(event).encode()
    return payload, {'stripe-signature': sign(payload, secret), 'content-type': 'application/json'}
