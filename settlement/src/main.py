import httpx
import asyncio
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.responses import ORJSONResponse

import db.postgres
import api.v1
import api.health
from chain.gateway import ChainGateway
from services.fx import FxRateProvider, HttpFxRateProvider, StaticFxRateProvider
from services.ledger import PaymentLedger
from services.points import PointsAwardQueue, points_award_loop
from settings import settings, chain_settings, fx_settings


logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s %(name)s %(levelname)s: %(message)s'
)

logger = logging.getLogger('settlement-api')


@asynccontextmanager
async def lifespan(app: FastAPI):
    db.postgres.connect()

    fx_client: httpx.AsyncClient | None = None
    fx_rate_provider: FxRateProvider
    if fx_settings.source == 'http':
        fx_client = httpx.AsyncClient(timeout=fx_settings.connection_timeout_sec)
        fx_rate_provider = HttpFxRateProvider(
            client=fx_client,
            url=fx_settings.rate_url,
            quote_currency=fx_settings.quote_currency,
            ttl=fx_settings.cache_ttl_sec
        )
    else:
        fx_rate_provider = StaticFxRateProvider(rates=fx_settings.static_rates)

    app.state.fx_rate_provider = fx_rate_provider
    app.state.chain_gateway = ChainGateway.from_settings(
        chain_settings,
        signer_lock=PaymentLedger(session_maker=db.postgres.get_session_maker()).lock_signer
    )
    app.state.points_queue = PointsAwardQueue()

    points_task = asyncio.create_task(points_award_loop(
        app.state.points_queue,
        app.state.chain_gateway,
        settings.points_confirmation_concurrency
    ))
    logger.info(f'executor is {app.state.chain_gateway.address}, treasury is {app.state.chain_gateway.treasury_address}')

    yield

    points_task.cancel()
    try:
        await points_task
    except asyncio.CancelledError:
        ...

    if fx_client is not None:
        await fx_client.aclose()
    await db.postgres.disconnect()


app = FastAPI(
    title='Card Settlement',
    lifespan=lifespan,
    docs_url='/api/openapi',
    openapi_url='/api/openapi.json',
    default_response_class=ORJSONResponse
)

app.include_router(api.v1.router)
app.include_router(api.health.router, tags=['health'])
