import asyncio
import logging
from typing import Annotated, Literal
from dataclasses import dataclass
from fastapi import Depends

import tables
from chain.gateway import ChainGateway, ChainReadError, get_chain_gateway
from services.fx import FxRateProvider, FxRateUnavailable, convert, get_fx_rate_provider
from services.ledger import PaymentLedger, get_ledger
from settings import chain_settings, fx_settings


logger = logging.getLogger('settlement-authorization')


DeclineReason = Literal[
    'card_not_found',
    'card_inactive',
    'user_not_found',
    'insufficient_allowance',
    'insufficient_balance',
    'fx_unavailable',
    'chain_unavailable',
    'timeout',
    'internal_error',
]


@dataclass(frozen=True)
class Decision:
    approved: bool
    reason: DeclineReason | None = None

    @classmethod
    def approve(cls) -> 'Decision':
        return cls(approved=True)

    @classmethod
    def decline(cls, reason: DeclineReason) -> 'Decision':
        return cls(approved=False, reason=reason)


@dataclass(frozen=True)
class AuthorizationDecisionEngine:
    """Approves an authorization when the owner's wallet can cover its pending amount.

    Only reads: nothing here writes to the chain, and every failure becomes a decline.
    """

    ledger: PaymentLedger
    gateway: ChainGateway
    fx: FxRateProvider
    fiat_decimals: int
    settlement_decimals: int

    async def decide(self, payment: tables.Payment) -> Decision:
        try:
            return await self._decide(payment)
        except Exception:
            logger.exception(f'declining {payment.external_id}: couldn\'t make a decision')
            return Decision.decline('internal_error')

    async def _decide(self, payment: tables.Payment) -> Decision:
        card, user = await self.ledger.resolve_owner(payment.card_id)
        if card is None:
            return Decision.decline('card_not_found')
        if card.status != 'active':
            return Decision.decline('card_inactive')
        if user is None:
            return Decision.decline('user_not_found')

        try:
            fx_rate = await self.fx.get_rate(payment.currency)
        except FxRateUnavailable as e:
            logger.warning(f'declining {payment.external_id}: {e}')
            return Decision.decline('fx_unavailable')

        quote = convert(payment.amount, fx_rate, self.fiat_decimals, self.settlement_decimals)

        try:
            allowance, balance = await asyncio.gather(
                self.gateway.read_allowance(user.address),
                self.gateway.read_balance(user.address)
            )
        except ChainReadError as e:
            logger.warning(f'declining {payment.external_id}: {e}')
            return Decision.decline('chain_unavailable')

        if allowance < quote.settlement_minor:
            return Decision.decline('insufficient_allowance')
        if balance < quote.settlement_minor:
            return Decision.decline('insufficient_balance')

        return Decision.approve()


def get_decision_engine(
    ledger: Annotated[PaymentLedger, Depends(get_ledger)],
    gateway: Annotated[ChainGateway, Depends(get_chain_gateway)],
    fx: Annotated[FxRateProvider, Depends(get_fx_rate_provider)]
) -> AuthorizationDecisionEngine:
    return AuthorizationDecisionEngine(
        ledger=ledger,
        gateway=gateway,
        fx=fx,
        fiat_decimals=fx_settings.fiat_decimals,
        settlement_decimals=chain_settings.token_decimals
    )
