from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from settings import pg_settings


engine: AsyncEngine | None = None
session_maker: async_sessionmaker[AsyncSession] | None = None


def connect():
    global engine, session_maker

    engine = create_async_engine(
        pg_settings.get_url('psycopg'),
        pool_size=20,
        max_overflow=30,
    )
    session_maker = async_sessionmaker(engine, expire_on_commit=False)


async def disconnect():
    if engine is not None:
        await engine.dispose()


def get_session_maker() -> async_sessionmaker[AsyncSession]:
    assert session_maker is not None, 'database is not connected'
    return session_maker
