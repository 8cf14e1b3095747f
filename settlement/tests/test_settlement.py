import asyncio
import pytest
from uuid import uuid4
from sqlalchemy import select, func

import tables
from chain.gateway import ChainSubmissionError, ConfirmationTimeout, TransactionReverted
from services.fx import FxRateUnavailable, StaticFxRateProvider
from services.ledger import PaymentLedger
from services.points import PointsAward, PointsAwardQueue
from services.settlement import (
    SettlementExecutor,
    DuplicateExecution,
    InsufficientFunds,
    PaymentNotFound,
    PaymentNotSettleable,
)
from fakes import FakeChainGateway, TOKEN, TREASURY
from helpers import create_card_owner, create_payment


@pytest.fixture
def executor(
    ledger: PaymentLedger,
    gateway: FakeChainGateway,
    fx: StaticFxRateProvider,
    points_queue: PointsAwardQueue
) -> SettlementExecutor:
    return SettlementExecutor(
        ledger=ledger,
        gateway=gateway,  # type: ignore
        fx=fx,
        points=points_queue,
        token_symbol='USDC',
        token_decimals=6,
        fiat_decimals=2,
        points_divisor=1000
    )


async def test_execute(
    executor: SettlementExecutor,
    gateway: FakeChainGateway,
    points_queue: PointsAwardQueue,
    ledger: PaymentLedger,
    session_maker
):
    user, card = await create_card_owner(session_maker)
    gateway.fund(user.address, allowance=10_000_000, balance=10_000_000)
    payment = await create_payment(session_maker, card, 375)

    result = await executor.execute(payment.id)

    assert result.owner_address == user.address
    assert result.token_address == TOKEN
    assert result.quote.settlement_minor == 4_762_500
    assert gateway.transfers == [(user.address, 4_762_500, result.tx_hash)]
    assert gateway.balances[user.address] == 5_237_500

    execution = await ledger.get_execution(payment.id)
    assert execution is not None
    assert execution.tx_hash == result.tx_hash
    assert execution.amount == 4_762_500
    assert execution.symbol == 'USDC'
    assert execution.decimals == 6

    async with session_maker() as session:
        transfer = await session.scalar(select(tables.Transfer))
        assert transfer is not None
        assert transfer.sender == user.address
        assert transfer.receiver == TREASURY
        assert transfer.tx_hash == result.tx_hash

    attempt = await ledger.get_settlement_attempt(payment.id)
    assert attempt is not None
    assert attempt.status == 'executed'

    assert points_queue.qsize() == 1
    assert await points_queue.get() == PointsAward(payment_id=payment.id, to=user.address, amount=4762)


async def test_execute_twice(executor: SettlementExecutor, gateway: FakeChainGateway, session_maker):
    user, card = await create_card_owner(session_maker)
    gateway.fund(user.address, allowance=10_000_000, balance=10_000_000)
    payment = await create_payment(session_maker, card, 375)

    result = await executor.execute(payment.id)

    with pytest.raises(DuplicateExecution) as e:
        await executor.execute(payment.id)

    assert e.value.tx_hash == result.tx_hash
    assert e.value.status == 'executed'
    assert len(gateway.transfers) == 1


async def test_concurrent_executions_transfer_once(
    executor: SettlementExecutor,
    gateway: FakeChainGateway,
    points_queue: PointsAwardQueue,
    session_maker
):
    user, card = await create_card_owner(session_maker)
    gateway.fund(user.address, allowance=10_000_000, balance=10_000_000)
    payment = await create_payment(session_maker, card, 375)

    results = await asyncio.gather(*(executor.execute(payment.id) for _ in range(6)), return_exceptions=True)

    succeeded = [r for r in results if not isinstance(r, BaseException)]
    duplicates = [r for r in results if isinstance(r, DuplicateExecution)]
    assert len(succeeded) == 1
    assert len(duplicates) == 5
    # Losers may have raced ahead of the winner's broadcast
    assert all(d.tx_hash in (None, succeeded[0].tx_hash) for d in duplicates)

    assert len(gateway.transfers) == 1
    assert points_queue.qsize() == 1

    async with session_maker() as session:
        assert await session.scalar(select(func.count()).select_from(tables.Execution)) == 1
        assert await session.scalar(select(func.count()).select_from(tables.Transfer)) == 1

    with pytest.raises(DuplicateExecution) as e:
        await executor.execute(payment.id)
    assert e.value.tx_hash == succeeded[0].tx_hash


async def test_payment_not_found(executor: SettlementExecutor):
    with pytest.raises(PaymentNotFound):
        await executor.execute(uuid4())


@pytest.mark.parametrize('payment_status', ['started', 'cancelled'])
async def test_only_completed_payments_are_settled(
    executor: SettlementExecutor,
    gateway: FakeChainGateway,
    points_queue: PointsAwardQueue,
    ledger: PaymentLedger,
    session_maker,
    payment_status: str
):
    user, card = await create_card_owner(session_maker)
    gateway.fund(user.address, allowance=10_000_000, balance=10_000_000)
    payment = await create_payment(session_maker, card, 375, status=payment_status)

    with pytest.raises(PaymentNotSettleable) as e:
        await executor.execute(payment.id)

    assert e.value.status == payment_status
    assert gateway.transfers == []
    assert gateway.reads == 0
    assert await ledger.get_settlement_attempt(payment.id) is None
    assert await ledger.get_execution(payment.id) is None
    assert points_queue.qsize() == 0


async def test_insufficient_allowance(executor: SettlementExecutor, gateway: FakeChainGateway, ledger: PaymentLedger, session_maker):
    user, card = await create_card_owner(session_maker)
    gateway.fund(user.address, allowance=1_000_000, balance=10_000_000)
    payment = await create_payment(session_maker, card, 375)

    with pytest.raises(InsufficientFunds) as e:
        await executor.execute(payment.id)

    assert e.value.kind == 'allowance'
    assert e.value.needed == 4_762_500
    assert e.value.available == 1_000_000
    assert gateway.transfers == []
    assert await ledger.get_settlement_attempt(payment.id) is None


async def test_retry_after_top_up(executor: SettlementExecutor, gateway: FakeChainGateway, session_maker):
    user, card = await create_card_owner(session_maker)
    gateway.fund(user.address, allowance=10_000_000, balance=1)
    payment = await create_payment(session_maker, card, 375)

    with pytest.raises(InsufficientFunds) as e:
        await executor.execute(payment.id)
    assert e.value.kind == 'balance'

    gateway.fund(user.address, allowance=10_000_000, balance=10_000_000)
    result = await executor.execute(payment.id)

    assert gateway.transfers == [(user.address, 4_762_500, result.tx_hash)]


async def test_rejected_submission_releases_claim(
    executor: SettlementExecutor,
    gateway: FakeChainGateway,
    ledger: PaymentLedger,
    session_maker
):
    user, card = await create_card_owner(session_maker)
    gateway.fund(user.address, allowance=10_000_000, balance=10_000_000)
    payment = await create_payment(session_maker, card, 375)
    gateway.fail_submission = True

    with pytest.raises(ChainSubmissionError):
        await executor.execute(payment.id)

    assert await ledger.get_settlement_attempt(payment.id) is None

    gateway.fail_submission = False
    await executor.execute(payment.id)
    assert len(gateway.transfers) == 1


async def test_missing_fx_rate_releases_claim(executor: SettlementExecutor, gateway: FakeChainGateway, ledger: PaymentLedger, session_maker):
    user, card = await create_card_owner(session_maker)
    gateway.fund(user.address, allowance=10**12, balance=10**12)
    payment = await create_payment(session_maker, card, 375, currency='EUR')

    with pytest.raises(FxRateUnavailable):
        await executor.execute(payment.id)

    assert await ledger.get_settlement_attempt(payment.id) is None
    assert gateway.transfers == []


async def test_reverted_transfer(
    executor: SettlementExecutor,
    gateway: FakeChainGateway,
    points_queue: PointsAwardQueue,
    ledger: PaymentLedger,
    session_maker
):
    user, card = await create_card_owner(session_maker)
    gateway.fund(user.address, allowance=10_000_000, balance=10_000_000)
    payment = await create_payment(session_maker, card, 375)
    gateway.revert = True

    with pytest.raises(TransactionReverted) as e:
        await executor.execute(payment.id)

    attempt = await ledger.get_settlement_attempt(payment.id)
    assert attempt is not None
    assert attempt.status == 'failed'
    assert attempt.tx_hash == e.value.tx_hash
    assert await ledger.get_execution(payment.id) is None
    assert points_queue.qsize() == 0

    # A reverted payment is not retried automatically
    gateway.revert = False
    with pytest.raises(DuplicateExecution) as duplicate:
        await executor.execute(payment.id)
    assert duplicate.value.status == 'failed'
    assert len(gateway.transfers) == 1


async def test_confirmation_timeout(executor: SettlementExecutor, gateway: FakeChainGateway, ledger: PaymentLedger, session_maker):
    user, card = await create_card_owner(session_maker)
    gateway.fund(user.address, allowance=10_000_000, balance=10_000_000)
    payment = await create_payment(session_maker, card, 375)
    gateway.confirmation_timeout = True

    with pytest.raises(ConfirmationTimeout) as e:
        await executor.execute(payment.id)

    attempt = await ledger.get_settlement_attempt(payment.id)
    assert attempt is not None
    assert attempt.status == 'unknown'
    assert attempt.tx_hash == e.value.tx_hash
    assert await ledger.get_execution(payment.id) is None

    with pytest.raises(DuplicateExecution) as duplicate:
        await executor.execute(payment.id)
    assert duplicate.value.status == 'unknown'
    assert duplicate.value.tx_hash == e.value.tx_hash


async def test_points_divisor(ledger: PaymentLedger, gateway: FakeChainGateway, fx: StaticFxRateProvider, session_maker):
    queue = PointsAwardQueue()
    executor = SettlementExecutor(
        ledger=ledger,
        gateway=gateway,  # type: ignore
        fx=fx,
        points=queue,
        token_symbol='USDC',
        token_decimals=6,
        fiat_decimals=2,
        points_divisor=10_000
    )
    user, card = await create_card_owner(session_maker)
    gateway.fund(user.address, allowance=10_000_000, balance=10_000_000)
    payment = await create_payment(session_maker, card, 375)

    await executor.execute(payment.id)

    assert (await queue.get()).amount == 476


async def test_no_points_for_tiny_amount(
    executor: SettlementExecutor,
    gateway: FakeChainGateway,
    points_queue: PointsAwardQueue,
    session_maker
):
    user, card = await create_card_owner(session_maker)
    gateway.fund(user.address, allowance=10_000_000, balance=10_000_000)
    # $0.00 settles nothing, 0 tokens
    payment = await create_payment(session_maker, card, 0, currency='USD')

    result = await executor.execute(payment.id)

    assert result.quote.settlement_minor == 0
    assert points_queue.qsize() == 0


async def test_failed_award_does_not_affect_settlement(
    executor: SettlementExecutor,
    gateway: FakeChainGateway,
    ledger: PaymentLedger,
    session_maker
):
    user, card = await create_card_owner(session_maker)
    gateway.fund(user.address, allowance=10_000_000, balance=10_000_000)
    gateway.fail_awards = True
    payment = await create_payment(session_maker, card, 375)

    result = await executor.execute(payment.id)

    assert (await ledger.get_execution(payment.id)).tx_hash == result.tx_hash
