import asyncio
import logging
import stripe
from uuid import UUID
from typing import Annotated, Any, Union
from dataclasses import dataclass
from fastapi import Depends
from pydantic import BaseModel, ConfigDict, Discriminator, Tag, TypeAdapter, ValidationError

import tables
from chain.gateway import ChainError
from services.authorization import AuthorizationDecisionEngine, Decision, get_decision_engine
from services.fx import FxRateUnavailable
from services.ledger import PaymentAmounts, PaymentLedger, get_ledger
from services.settlement import (
    SettlementExecutor,
    DuplicateExecution,
    InsufficientFunds,
    PaymentNotFound,
    PaymentNotSettleable,
    CardNotFound,
    UserNotFound,
)
from settings import settings, stripe_settings


logger = logging.getLogger('settlement-webhook')


class InvalidSignature(Exception):
    ...


class MalformedEvent(Exception):
    ...


class MerchantData(BaseModel):
    name: str | None = None


class CardRef(BaseModel):
    id: str


class PendingRequest(BaseModel):
    amount: int
    currency: str
    merchant_amount: int
    merchant_currency: str


class Authorization(BaseModel):
    """The parts of an issuing authorization object the pipeline reads"""

    id: str
    approved: bool = False
    amount: int = 0
    currency: str
    merchant_amount: int = 0
    merchant_currency: str
    merchant_data: MerchantData = MerchantData()
    card: CardRef
    pending_request: PendingRequest | None = None

    def pending_amounts(self) -> PaymentAmounts:
        # `pending_request` is only absent on objects that are already decided
        if self.pending_request is None:
            return self.final_amounts()

        return PaymentAmounts(
            amount=self.pending_request.amount,
            currency=self.pending_request.currency.upper(),
            merchant_name=self.merchant_data.name or 'no_name',
            merchant_amount=self.pending_request.merchant_amount,
            merchant_currency=self.pending_request.merchant_currency.upper()
        )

    def final_amounts(self, known_merchant_name: str | None = None) -> PaymentAmounts:
        return PaymentAmounts(
            amount=self.amount,
            currency=self.currency.upper(),
            merchant_name=self.merchant_data.name or known_merchant_name or 'no_name',
            merchant_amount=self.merchant_amount,
            merchant_currency=self.merchant_currency.upper()
        )


class AuthorizationEventData(BaseModel):
    object: Authorization


class AuthorizationRequestEvent(BaseModel):
    id: str
    type: str
    data: AuthorizationEventData


class AuthorizationCreatedEvent(BaseModel):
    id: str
    type: str
    data: AuthorizationEventData


class IgnoredEvent(BaseModel):
    model_config = ConfigDict(extra='ignore')

    type: str


def _event_kind(value: Any) -> str:
    event_type = value.get('type') if isinstance(value, dict) else getattr(value, 'type', None)
    if not isinstance(event_type, str):
        return 'ignored'

    match event_type.removeprefix('issuing_'):
        case 'authorization.request':
            return 'request'
        case 'authorization.created':
            return 'created'
        case _:
            return 'ignored'


WebhookEvent = Annotated[
    Union[
        Annotated[AuthorizationRequestEvent, Tag('request')],
        Annotated[AuthorizationCreatedEvent, Tag('created')],
        Annotated[IgnoredEvent, Tag('ignored')],
    ],
    Discriminator(_event_kind)
]

_webhook_event_adapter: TypeAdapter[WebhookEvent] = TypeAdapter(WebhookEvent)


@dataclass(frozen=True)
class WebhookService:
    ledger: PaymentLedger
    engine: AuthorizationDecisionEngine
    webhook_secret: str
    signature_tolerance: int
    authorization_timeout: float

    def parse(self, payload: bytes, signature: str | None) -> WebhookEvent:
        """Verifies the signature over the raw body, then validates it into one of the event types"""
        if not signature:
            logger.warning('rejected webhook without signature')
            raise InvalidSignature('missing signature')

        try:
            stripe.WebhookSignature.verify_header(
                payload.decode(),
                signature,
                self.webhook_secret,
                self.signature_tolerance
            )
        except (stripe.SignatureVerificationError, UnicodeDecodeError) as e:
            logger.warning(f'rejected webhook with invalid signature: {e}')
            raise InvalidSignature(str(e)) from e

        try:
            return _webhook_event_adapter.validate_json(payload)
        except ValidationError as e:
            logger.warning(f'rejected malformed webhook: {e.error_count()} errors, first: {e.errors()[0]["msg"]}')
            raise MalformedEvent(str(e)) from e

    async def handle_authorization_request(self, event: AuthorizationRequestEvent) -> Decision:
        """Always answers with a decision, errors and slow dependencies decline"""
        authorization = event.data.object

        try:
            async with asyncio.timeout(self.authorization_timeout):
                decision = await self._record_and_decide(authorization)
        except TimeoutError:
            logger.warning(f'declining {authorization.id}: no decision in {self.authorization_timeout}s')
            return Decision.decline('timeout')
        except Exception:
            logger.exception(f'declining {authorization.id}: couldn\'t record or decide it')
            return Decision.decline('internal_error')

        logger.info(
            f'authorization {authorization.id} '
            f'{"approved" if decision.approved else f"declined: {decision.reason}"}'
        )
        return decision

    async def _record_and_decide(self, authorization: Authorization) -> Decision:
        card = await self.ledger.get_card_by_external_id(authorization.card.id)
        if card is None:
            logger.info(f'unknown card {authorization.card.id} in authorization {authorization.id}')
            return Decision.decline('card_not_found')

        payment, created = await self.ledger.upsert_or_fetch_payment(
            card_id=card.id,
            external_id=authorization.id,
            amounts=authorization.pending_amounts()
        )
        if not created:
            logger.info(f'authorization {authorization.id} was already recorded as payment {payment.id}')

        return await self.engine.decide(payment)

    async def handle_authorization_created(self, event: AuthorizationCreatedEvent) -> tables.Payment | None:
        """Finalizes the payment; returns it if it should be settled"""
        authorization = event.data.object

        existing = await self.ledger.get_payment_by_external_id(authorization.id)
        if existing is None:
            logger.warning(f'authorization {authorization.id} was created without a recorded request, ignoring')
            return None

        payment = await self.ledger.finalize_payment(
            external_id=authorization.id,
            status='completed' if authorization.approved else 'cancelled',
            amounts=authorization.final_amounts(existing.merchant_name)
        )
        assert payment is not None

        if payment.status != ('completed' if authorization.approved else 'cancelled'):
            logger.warning(f'payment {payment.id} is already {payment.status}, keeping it')

        if authorization.approved and payment.status == 'completed':
            return payment
        return None


async def settle_in_background(executor: SettlementExecutor, payment_id: UUID):
    """Runs settlement after the webhook was acknowledged; failures are for the platform, not the card network"""
    try:
        result = await executor.execute(payment_id)
    except DuplicateExecution as e:
        logger.info(f'payment {payment_id} settlement skipped: {e}')
    except (PaymentNotFound, PaymentNotSettleable, CardNotFound, UserNotFound, InsufficientFunds) as e:
        logger.error(f'payment {payment_id} settlement failed: {e}')
    except (ChainError, FxRateUnavailable) as e:
        logger.error(f'payment {payment_id} settlement failed: {e!r}')
    except Exception:
        logger.exception(f'payment {payment_id} settlement failed unexpectedly')
    else:
        logger.info(f'payment {payment_id} settled in {result.tx_hash}')


def get_webhook_service(
    ledger: Annotated[PaymentLedger, Depends(get_ledger)],
    engine: Annotated[AuthorizationDecisionEngine, Depends(get_decision_engine)]
) -> WebhookService:
    return WebhookService(
        ledger=ledger,
        engine=engine,
        webhook_secret=stripe_settings.webhook_secret.get_secret_value(),
        signature_tolerance=stripe_settings.signature_tolerance_sec,
        authorization_timeout=settings.authorization_timeout
    )
