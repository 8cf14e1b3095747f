import anyio
import asyncio
import logging
from uuid import UUID
from dataclasses import dataclass
from fastapi import Request

from chain.gateway import ChainGateway, ChainError


logger = logging.getLogger('settlement-points-award-loop')


@dataclass(frozen=True)
class PointsAward:
    payment_id: UUID
    to: str
    amount: int


def points_for(settled_minor: int, divisor: int) -> int:
    return settled_minor // divisor


class PointsAwardQueue:
    """One-way channel for loyalty points awards.

    `emit` never raises and returns nothing, so settlement can't be affected by
    how (or whether) the award goes through. Outcomes are only logged.
    """

    def __init__(self):
        self._queue: asyncio.Queue[PointsAward] = asyncio.Queue()

    def emit(self, award: PointsAward) -> None:
        self._queue.put_nowait(award)
        logger.info(f'queued {award.amount} points for {award.to} (payment {award.payment_id})')

    async def get(self) -> PointsAward:
        return await self._queue.get()

    def task_done(self):
        self._queue.task_done()

    async def join(self):
        await self._queue.join()

    def qsize(self) -> int:
        return self._queue.qsize()


async def points_award_loop(queue: PointsAwardQueue, gateway: ChainGateway, confirmation_concurrency: int):
    limiter = anyio.CapacityLimiter(confirmation_concurrency)

    async def wait_for_award(award: PointsAward, tx_hash: str):
        async with limiter:
            try:
                await gateway.wait_for_confirmation(tx_hash)
            except ChainError as e:
                logger.warning(f'points award {tx_hash} for payment {award.payment_id} not confirmed: {e}')
                return
            except Exception:
                logger.exception(f'couldn\'t confirm points award {tx_hash} for payment {award.payment_id}')
                return
            logger.info(f'points award {tx_hash} for payment {award.payment_id} confirmed')

    async with anyio.create_task_group() as tg:
        while True:
            award = await queue.get()
            try:
                tx_hash = await gateway.award_points(award.to, award.amount)
            except (ChainError, ValueError) as e:
                logger.error(f'couldn\'t award {award.amount} points to {award.to} for payment {award.payment_id}: {e}')
            except Exception:
                logger.exception(f'couldn\'t award {award.amount} points to {award.to} for payment {award.payment_id}')
            else:
                tg.start_soon(wait_for_award, award, tx_hash)
            finally:
                queue.task_done()


def get_points_queue(request: Request) -> PointsAwardQueue:
    return request.app.state.points_queue
