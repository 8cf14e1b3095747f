from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, SecretStr
from typing import Literal


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file='.env', extra='allow', env_prefix='settlement_api_')

    # Stripe waits ~2 seconds for an authorization decision
    authorization_timeout: float = Field(default=1.5)

    # 1 point per `points_divisor` minor units of the settlement asset
    points_divisor: int = Field(default=1000, gt=0)
    points_confirmation_concurrency: int = Field(default=4, gt=0)


class PostgresSettings(BaseSettings):
    model_config = SettingsConfigDict(env_file='.env', extra='allow', env_prefix='settlement_postgres_')

    host: str = Field(default='127.0.0.1')
    port: int = Field(default=5432)
    user: str = Field(default='settlement')
    password: str = Field(default='settlement')
    db: str = Field(default='settlement')

    def get_url(self, driver: str | None, db: str | None = None):
        scheme = f'postgresql+{driver}' if driver else 'postgresql'
        return f'{scheme}://{self.user}:{self.password}@{self.host}:{self.port}/{db or self.db}'


class ChainSettings(BaseSettings):
    model_config = SettingsConfigDict(env_file='.env', extra='allow', env_prefix='settlement_chain_')

    rpc_url: str = Field(default='https://testnet-rpc.monad.xyz')
    chain_id: int = Field(default=10143)
    executor_private_key: SecretStr | None = None

    token_address: str = Field(default='0xf817257fed379853cDe0fa4F97AB987181B1E5Ea')
    token_symbol: str = Field(default='USDC')
    token_decimals: int = Field(default=6)
    treasury_address: str = Field(default='0x0000000000000000000000000000000000000000')
    points_contract_address: str | None = None

    confirmation_timeout_sec: float = Field(default=120.0)
    request_timeout_sec: float = Field(default=10.0)


class StripeSettings(BaseSettings):
    model_config = SettingsConfigDict(env_file='.env', extra='allow', env_prefix='settlement_stripe_')

    webhook_secret: SecretStr = Field(default=SecretStr('whsec_test'))  # Local default only, set through env in real deployments
    signature_tolerance_sec: int = Field(default=300)
    api_version: str = Field(default='2025-07-30.basil')


class FxSettings(BaseSettings):
    model_config = SettingsConfigDict(env_file='.env', extra='allow', env_prefix='settlement_fx_')

    source: Literal['static', 'http'] = Field(default='static')
    # Program currency -> settlement asset rate
    static_rates: dict[str, float] = Field(default={'GBP': 1.27})
    rate_url: str = Field(default='https://api.frankfurter.app/latest')
    quote_currency: str = Field(default='USD')
    cache_ttl_sec: float = Field(default=60.0)
    connection_timeout_sec: float = 10.0

    fiat_decimals: int = Field(default=2)


settings = Settings()
pg_settings = PostgresSettings()
chain_settings = ChainSettings()
stripe_settings = StripeSettings()
fx_settings = FxSettings()
