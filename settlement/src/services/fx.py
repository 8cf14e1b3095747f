import time
import httpx
import asyncio
import logging
from datetime import date
from decimal import Decimal, ROUND_HALF_UP
from dataclasses import dataclass
from typing import Protocol
from fastapi import Request


logger = logging.getLogger('settlement-fx')


RATE_SCALE = 1_000_000


class FxRateUnavailable(Exception):
    def __init__(self, currency: str, detail: str = ''):
        super().__init__(f'no exchange rate for {currency}: {detail}' if detail else f'no exchange rate for {currency}')
        self.currency = currency


@dataclass(frozen=True)
class FxRate:
    rate: float
    as_of: date


@dataclass(frozen=True)
class Quote:
    as_of: date
    rate: float
    fiat_minor: int
    settlement_minor: int


def _ceil_div(a: int, b: int) -> int:
    return -(-a // b)


def convert(
    fiat_minor: int,
    fx_rate: FxRate,
    fiat_decimals: int = 2,
    settlement_decimals: int = 6
) -> Quote:
    """Converts a fiat amount in minor units into settlement asset minor units.

    The rate is fixed to 6 decimal digits and the result is rounded up, so the
    platform never collects less than the fiat amount owed (it may collect at
    most one minor unit more).
    """
    if fiat_minor <= 0:
        return Quote(as_of=fx_rate.as_of, rate=fx_rate.rate, fiat_minor=0, settlement_minor=0)

    # Decimal(str(...)) keeps 1.27 from becoming 1.2700000000000000177...
    rate_scaled = int((Decimal(str(fx_rate.rate)) * RATE_SCALE).quantize(Decimal(1), rounding=ROUND_HALF_UP))
    scale_diff = 10 ** (settlement_decimals - fiat_decimals)

    return Quote(
        as_of=fx_rate.as_of,
        rate=fx_rate.rate,
        fiat_minor=fiat_minor,
        settlement_minor=_ceil_div(fiat_minor * scale_diff * rate_scaled, RATE_SCALE)
    )


class FxRateProvider(Protocol):
    async def get_rate(self, currency: str) -> FxRate:
        ...


@dataclass(frozen=True)
class StaticFxRateProvider:
    rates: dict[str, float]

    async def get_rate(self, currency: str) -> FxRate:
        rate = self.rates.get(currency.upper())
        if rate is None:
            raise FxRateUnavailable(currency)
        return FxRate(rate=rate, as_of=date.today())


class HttpFxRateProvider:
    """Fetches daily rates from a Frankfurter-compatible API and caches them for `ttl` seconds"""

    def __init__(self, client: httpx.AsyncClient, url: str, quote_currency: str, ttl: float):
        self.client = client
        self.url = url
        self.quote_currency = quote_currency.upper()
        self.ttl = ttl
        self._cache: dict[str, tuple[float, FxRate]] = {}
        self._lock = asyncio.Lock()

    def invalidate(self):
        self._cache.clear()

    async def get_rate(self, currency: str) -> FxRate:
        currency = currency.upper()

        hit = self._cache.get(currency)
        if hit and time.monotonic() - hit[0] < self.ttl:
            return hit[1]

        async with self._lock:
            hit = self._cache.get(currency)
            if hit and time.monotonic() - hit[0] < self.ttl:
                return hit[1]

            fx_rate = await self._fetch(currency)
            self._cache[currency] = (time.monotonic(), fx_rate)
            return fx_rate

    async def _fetch(self, currency: str) -> FxRate:
        try:
            response = await self.client.get(
                url=self.url,
                params={'from': currency, 'to': self.quote_currency}
            )
        except httpx.HTTPError as e:
            logger.warning(f'couldn\'t fetch {currency}/{self.quote_currency} rate: {e!r}')
            raise FxRateUnavailable(currency, 'rate source is unreachable') from e

        if response.status_code != 200:
            logger.warning(f'got status {response.status_code} from rate source for {currency}/{self.quote_currency}')
            raise FxRateUnavailable(currency, f'rate source responded with {response.status_code}')

        try:
            response_json = response.json()
            rate = response_json.get('rates', {}).get(self.quote_currency)
            if rate is None:
                raise FxRateUnavailable(currency, 'rate source has no such pair')

            fx_rate = FxRate(
                rate=float(rate),
                as_of=date.fromisoformat(response_json['date']) if 'date' in response_json else date.today()
            )
        except (ValueError, TypeError, AttributeError) as e:
            # Also covers a 200 with a non-JSON body, e.g. a proxy's maintenance page
            logger.warning(f'got unreadable {currency}/{self.quote_currency} rate from rate source: {e!r}')
            raise FxRateUnavailable(currency, 'rate source response is malformed') from e

        if fx_rate.rate <= 0:
            raise FxRateUnavailable(currency, f'rate source returned non-positive rate {fx_rate.rate}')

        logger.info(f'{currency}/{self.quote_currency} rate is {fx_rate.rate} as of {fx_rate.as_of}')
        return fx_rate


def get_fx_rate_provider(request: Request) -> FxRateProvider:
    return request.app.state.fx_rate_provider
