import sys
import pathlib
import pytest
import httpx
from sqlalchemy import event
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine, AsyncSession

sys.path.append(str(pathlib.Path(__file__).parent.parent/'src'))
sys.path.append(str(pathlib.Path(__file__).parent))

import tables
import db.postgres
from main import app
from chain.gateway import get_chain_gateway
from services.fx import StaticFxRateProvider, get_fx_rate_provider
from services.ledger import PaymentLedger
from services.points import PointsAwardQueue, get_points_queue
from fakes import FakeChainGateway


@pytest.fixture
async def session_maker(tmp_path: pathlib.Path):
    # File database, so concurrent sessions get their own connections like they would with PostgreSQL
    engine = create_async_engine(f'sqlite+aiosqlite:///{tmp_path/"settlement.db"}')

    @event.listens_for(engine.sync_engine, 'connect')
    def enable_foreign_keys(dbapi_connection, _):
        cursor = dbapi_connection.cursor()
        cursor.execute('PRAGMA foreign_keys=ON')
        cursor.close()

    async with engine.begin() as conn:
        await conn.run_sync(tables.Base.metadata.create_all)

    yield async_sessionmaker(engine, expire_on_commit=False)

    await engine.dispose()


@pytest.fixture
def ledger(session_maker: async_sessionmaker[AsyncSession]) -> PaymentLedger:
    return PaymentLedger(session_maker=session_maker)


@pytest.fixture
def gateway() -> FakeChainGateway:
    return FakeChainGateway()


@pytest.fixture
def fx() -> StaticFxRateProvider:
    return StaticFxRateProvider(rates={'GBP': 1.27, 'USD': 1.0})


@pytest.fixture
def points_queue() -> PointsAwardQueue:
    return PointsAwardQueue()


@pytest.fixture
async def api_client(
    session_maker: async_sessionmaker[AsyncSession],
    gateway: FakeChainGateway,
    fx: StaticFxRateProvider,
    points_queue: PointsAwardQueue
):
    app.dependency_overrides[db.postgres.get_session_maker] = lambda: session_maker
    app.dependency_overrides[get_chain_gateway] = lambda: gateway
    app.dependency_overrides[get_fx_rate_provider] = lambda: fx
    app.dependency_overrides[get_points_queue] = lambda: points_queue

    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url='http://tests') as client:
        yield client

    app.dependency_overrides.clear()
