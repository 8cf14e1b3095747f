import asyncio
import logging
from uuid import UUID
from typing import Annotated, Literal
from dataclasses import dataclass
from fastapi import Depends

import tables
from chain.gateway import ChainGateway, ChainOutcomeUnknown, TransactionReverted, get_chain_gateway
from services.fx import FxRateProvider, Quote, convert, get_fx_rate_provider
from services.ledger import PaymentLedger, get_ledger
from services.points import PointsAward, PointsAwardQueue, points_for, get_points_queue
from settings import settings, chain_settings, fx_settings


logger = logging.getLogger('settlement-executor')


class PaymentNotFound(Exception):
    ...


class CardNotFound(Exception):
    ...


class UserNotFound(Exception):
    ...


class PaymentNotSettleable(Exception):
    def __init__(self, payment_id: UUID, status: tables.payment.Status):
        super().__init__(f'payment {payment_id} is {status}, only completed payments are settled')
        self.payment_id = payment_id
        self.status = status


class DuplicateExecution(Exception):
    def __init__(self, payment_id: UUID, tx_hash: str | None, status: tables.settlement_attempt.Status):
        super().__init__(f'payment {payment_id} is already {status} ({tx_hash})')
        self.payment_id = payment_id
        self.tx_hash = tx_hash
        self.status = status


class InsufficientFunds(Exception):
    def __init__(self, kind: Literal['allowance', 'balance'], needed: int, available: int):
        super().__init__(f'insufficient {kind}: needed {needed}, available {available}')
        self.kind = kind
        self.needed = needed
        self.available = available


@dataclass(frozen=True)
class SettlementResult:
    payment: tables.Payment
    execution: tables.Execution
    owner_address: str
    token_address: str
    quote: Quote

    @property
    def tx_hash(self) -> str:
        return self.execution.tx_hash


@dataclass(frozen=True)
class SettlementExecutor:
    ledger: PaymentLedger
    gateway: ChainGateway
    fx: FxRateProvider
    points: PointsAwardQueue
    token_symbol: str
    token_decimals: int
    fiat_decimals: int
    points_divisor: int

    async def execute(self, payment_id: UUID) -> SettlementResult:
        """Pulls the payment's final amount from the owner's wallet into the treasury, at most once.

        The settlement attempt row claimed before any chain write is what makes
        concurrent and repeated calls safe: only the caller that inserted it proceeds.
        A claim is dropped again only if nothing was broadcast.
        """
        payment = await self.ledger.get_payment(payment_id)
        if payment is None:
            raise PaymentNotFound(payment_id)
        if payment.status != 'completed':
            raise PaymentNotSettleable(payment.id, payment.status)

        execution = await self.ledger.get_execution(payment.id)
        if execution is not None:
            raise DuplicateExecution(payment.id, execution.tx_hash, 'executed')

        card, user = await self.ledger.resolve_owner(payment.card_id)
        if card is None:
            raise CardNotFound(payment.card_id)
        if user is None:
            raise UserNotFound(card.user_id)

        attempt = await self.ledger.claim_settlement(payment.id)
        if attempt is None:
            existing = await self.ledger.get_settlement_attempt(payment.id)
            if existing is None:
                # The claim was released between our insert and select
                raise DuplicateExecution(payment.id, None, 'pending_execution')
            raise DuplicateExecution(payment.id, existing.tx_hash, existing.status)

        try:
            quote = convert(
                payment.amount,
                await self.fx.get_rate(payment.currency),
                self.fiat_decimals,
                self.token_decimals
            )
            await self._check_funds(user.address, quote.settlement_minor)
            tx_hash = await self.gateway.pull_transfer(user.address, quote.settlement_minor)
        except ChainOutcomeUnknown as e:
            logger.error(f'payment {payment.id}: {e}, needs reconciliation')
            await self.ledger.mark_settlement_failed(attempt.id, 'unknown', str(e), e.tx_hash)
            raise
        except Exception:
            await self.ledger.release_settlement(attempt.id)
            raise

        await self.ledger.mark_broadcast(attempt.id, tx_hash)
        logger.info(f'payment {payment.id}: pulling {quote.settlement_minor} {self.token_symbol} from {user.address} in {tx_hash}')

        try:
            await self.gateway.wait_for_confirmation(tx_hash)
        except TransactionReverted as e:
            logger.error(f'payment {payment.id}: {e}')
            await self.ledger.mark_settlement_failed(attempt.id, 'failed', str(e), tx_hash)
            raise
        except ChainOutcomeUnknown as e:
            logger.error(f'payment {payment.id}: {e}, needs reconciliation')
            await self.ledger.mark_settlement_failed(attempt.id, 'unknown', str(e), tx_hash)
            raise

        execution = await self.ledger.record_execution(
            attempt_id=attempt.id,
            payment_id=payment.id,
            user_id=user.id,
            symbol=self.token_symbol,
            amount=quote.settlement_minor,
            decimals=self.token_decimals,
            sender=user.address,
            receiver=self.gateway.treasury_address,
            tx_hash=tx_hash
        )
        logger.info(f'payment {payment.id} executed in {tx_hash}')

        points = points_for(quote.settlement_minor, self.points_divisor)
        if points > 0:
            self.points.emit(PointsAward(payment_id=payment.id, to=user.address, amount=points))

        return SettlementResult(
            payment=payment,
            execution=execution,
            owner_address=user.address,
            token_address=self.gateway.token_address,
            quote=quote
        )

    async def _check_funds(self, owner: str, needed: int):
        allowance, balance = await asyncio.gather(
            self.gateway.read_allowance(owner),
            self.gateway.read_balance(owner)
        )
        if allowance < needed:
            raise InsufficientFunds('allowance', needed, allowance)
        if balance < needed:
            raise InsufficientFunds('balance', needed, balance)


def get_settlement_executor(
    ledger: Annotated[PaymentLedger, Depends(get_ledger)],
    gateway: Annotated[ChainGateway, Depends(get_chain_gateway)],
    fx: Annotated[FxRateProvider, Depends(get_fx_rate_provider)],
    points: Annotated[PointsAwardQueue, Depends(get_points_queue)]
) -> SettlementExecutor:
    return SettlementExecutor(
        ledger=ledger,
        gateway=gateway,
        fx=fx,
        points=points,
        token_symbol=chain_settings.token_symbol,
        token_decimals=chain_settings.token_decimals,
        fiat_decimals=fx_settings.fiat_decimals,
        points_divisor=settings.points_divisor
    )
