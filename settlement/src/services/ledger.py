from uuid import UUID
from datetime import datetime
from typing import Annotated, AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from fastapi import Depends
from sqlalchemy import select, update, delete
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import async_sessionmaker, AsyncSession

import db.postgres
import tables


def _insert(session: AsyncSession, table):
    # Both dialects implement `ON CONFLICT DO NOTHING`; SQLite is used by the tests
    assert session.bind is not None
    if session.bind.dialect.name == 'sqlite':
        return sqlite.insert(table)
    return postgresql.insert(table)


@dataclass(frozen=True)
class PaymentAmounts:
    amount: int
    currency: str
    merchant_name: str
    merchant_amount: int
    merchant_currency: str


@dataclass(frozen=True)
class PaymentLedger:
    """Payment, execution and transfer records, plus the nonce rows of the signing keys.

    Every "create if absent" here is a single `INSERT .. ON CONFLICT DO NOTHING RETURNING`,
    never a select followed by an insert.
    """

    session_maker: async_sessionmaker[AsyncSession]

    async def get_card_by_external_id(self, external_card_id: str) -> tables.Card | None:
        async with self.session_maker() as session:
            return await session.scalar(
                select(tables.Card)
                .where(tables.Card.external_id == external_card_id)
            )

    async def resolve_owner(self, card_id: UUID) -> tuple[tables.Card | None, tables.User | None]:
        async with self.session_maker() as session:
            card = await session.get(tables.Card, card_id)
            if card is None:
                return None, None
            return card, await session.get(tables.User, card.user_id)

    async def get_payment(self, payment_id: UUID) -> tables.Payment | None:
        async with self.session_maker() as session:
            return await session.get(tables.Payment, payment_id)

    async def get_payment_by_external_id(self, external_id: str) -> tables.Payment | None:
        async with self.session_maker() as session:
            return await session.scalar(
                select(tables.Payment)
                .where(tables.Payment.external_id == external_id)
            )

    async def upsert_or_fetch_payment(
        self,
        card_id: UUID,
        external_id: str,
        amounts: PaymentAmounts
    ) -> tuple[tables.Payment, bool]:
        """Atomic upsert-or-fetch keyed by the external authorization id.

        Returns the payment and whether this call created it. The loser of a race
        gets the winner's row, the existing row is never modified.
        """
        async with self.session_maker() as session, session.begin():
            payment = (await session.scalars(
                _insert(session, tables.Payment)
                .values({
                    tables.Payment.card_id: card_id,
                    tables.Payment.external_id: external_id,
                    tables.Payment.status: 'started',
                    tables.Payment.amount: amounts.amount,
                    tables.Payment.currency: amounts.currency,
                    tables.Payment.merchant_name: amounts.merchant_name,
                    tables.Payment.merchant_amount: amounts.merchant_amount,
                    tables.Payment.merchant_currency: amounts.merchant_currency,
                })
                .on_conflict_do_nothing(index_elements=[tables.Payment.external_id])
                .returning(tables.Payment)
            )).one_or_none()

            if payment is not None:
                return payment, True

        existing = await self.get_payment_by_external_id(external_id)
        assert existing is not None, f'payment {external_id} conflicted but doesn\'t exist'
        return existing, False

    async def finalize_payment(
        self,
        external_id: str,
        status: tables.payment.Status,
        amounts: PaymentAmounts
    ) -> tables.Payment | None:
        """Moves a `started` payment to its final status with the final amounts.

        A payment that is already `completed` or `cancelled` is returned as is.
        """
        assert status != 'started'

        async with self.session_maker() as session, session.begin():
            payment = (await session.scalars(
                update(tables.Payment)
                .where(
                    tables.Payment.external_id == external_id,
                    tables.Payment.status == 'started'
                )
                .values({
                    tables.Payment.status: status,
                    tables.Payment.amount: amounts.amount,
                    tables.Payment.currency: amounts.currency,
                    tables.Payment.merchant_name: amounts.merchant_name,
                    tables.Payment.merchant_amount: amounts.merchant_amount,
                    tables.Payment.merchant_currency: amounts.merchant_currency,
                    tables.Payment.updated_at: datetime.now(),
                })
                .returning(tables.Payment)
                .execution_options(synchronize_session=False)
            )).one_or_none()

            if payment is not None:
                return payment

        return await self.get_payment_by_external_id(external_id)

    async def get_execution(self, payment_id: UUID) -> tables.Execution | None:
        async with self.session_maker() as session:
            return await session.scalar(
                select(tables.Execution)
                .where(tables.Execution.payment_id == payment_id)
            )

    async def get_settlement_attempt(self, payment_id: UUID) -> tables.SettlementAttempt | None:
        async with self.session_maker() as session:
            return await session.scalar(
                select(tables.SettlementAttempt)
                .where(tables.SettlementAttempt.payment_id == payment_id)
            )

    async def claim_settlement(self, payment_id: UUID) -> tables.SettlementAttempt | None:
        """Returns the new attempt, or `None` if another caller already holds the payment"""
        async with self.session_maker() as session, session.begin():
            return (await session.scalars(
                _insert(session, tables.SettlementAttempt)
                .values({
                    tables.SettlementAttempt.payment_id: payment_id,
                    tables.SettlementAttempt.status: 'pending_execution',
                })
                .on_conflict_do_nothing(index_elements=[tables.SettlementAttempt.payment_id])
                .returning(tables.SettlementAttempt)
            )).one_or_none()

    async def release_settlement(self, attempt_id: UUID):
        """Drops a claim when nothing was broadcast, so the payment can be executed later"""
        async with self.session_maker() as session, session.begin():
            await session.execute(
                delete(tables.SettlementAttempt)
                .where(
                    tables.SettlementAttempt.id == attempt_id,
                    tables.SettlementAttempt.status == 'pending_execution',
                    tables.SettlementAttempt.tx_hash.is_(None)
                )
            )

    async def mark_broadcast(self, attempt_id: UUID, tx_hash: str):
        async with self.session_maker() as session, session.begin():
            await session.execute(
                update(tables.SettlementAttempt)
                .where(tables.SettlementAttempt.id == attempt_id)
                .values({
                    tables.SettlementAttempt.tx_hash: tx_hash,
                    tables.SettlementAttempt.updated_at: datetime.now(),
                })
            )

    async def mark_settlement_failed(
        self,
        attempt_id: UUID,
        status: tables.settlement_attempt.Status,
        error: str,
        tx_hash: str | None = None
    ):
        assert status in ('failed', 'unknown')

        values = {
            tables.SettlementAttempt.status: status,
            tables.SettlementAttempt.error: error,
            tables.SettlementAttempt.updated_at: datetime.now(),
        }
        if tx_hash is not None:
            values[tables.SettlementAttempt.tx_hash] = tx_hash

        async with self.session_maker() as session, session.begin():
            await session.execute(
                update(tables.SettlementAttempt)
                .where(tables.SettlementAttempt.id == attempt_id)
                .values(values)
            )

    async def record_execution(
        self,
        attempt_id: UUID,
        payment_id: UUID,
        user_id: UUID,
        symbol: str,
        amount: int,
        decimals: int,
        sender: str,
        receiver: str,
        tx_hash: str
    ) -> tables.Execution:
        async with self.session_maker() as session, session.begin():
            execution = tables.Execution(
                payment_id=payment_id,
                symbol=symbol,
                amount=amount,
                decimals=decimals,
                tx_hash=tx_hash
            )
            session.add(execution)
            session.add(tables.Transfer(
                user_id=user_id,
                symbol=symbol,
                amount=amount,
                decimals=decimals,
                sender=sender,
                receiver=receiver,
                tx_hash=tx_hash
            ))
            await session.execute(
                update(tables.SettlementAttempt)
                .where(tables.SettlementAttempt.id == attempt_id)
                .values({
                    tables.SettlementAttempt.status: 'executed',
                    tables.SettlementAttempt.tx_hash: tx_hash,
                    tables.SettlementAttempt.updated_at: datetime.now(),
                })
            )

        return execution

    @asynccontextmanager
    async def lock_signer(self, address: str) -> AsyncIterator[tables.SignerNonce]:
        """Holds the signing address's row lock until the block exits.

        The yielded row's `nonce` is committed if the block succeeds and rolled
        back if it raises. Every process signing with the address waits here.
        """
        async with self.session_maker() as session, session.begin():
            await session.execute(
                _insert(session, tables.SignerNonce)
                .values({tables.SignerNonce.address: address, tables.SignerNonce.nonce: 0})
                .on_conflict_do_nothing(index_elements=[tables.SignerNonce.address])
            )
            signer = await session.scalar(
                select(tables.SignerNonce)
                .where(tables.SignerNonce.address == address)
                .with_for_update()
            )
            assert signer is not None
            yield signer


def get_ledger(
    session_maker: Annotated[async_sessionmaker[AsyncSession], Depends(db.postgres.get_session_maker)]
) -> PaymentLedger:
    return PaymentLedger(session_maker=session_maker)
