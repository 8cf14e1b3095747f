from decimal import Decimal
from typing import Any
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.types import TypeDecorator, Numeric, String


class MinorUnits(TypeDecorator):
    """Arbitrary precision integer amount, `NUMERIC(78, 0)` on PostgreSQL.

    SQLite has no exact numeric storage for values above 2**63, so the amount
    is kept as text there.
    """

    impl = Numeric(78, 0)
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == 'sqlite':
            return dialect.type_descriptor(String(78))
        return dialect.type_descriptor(Numeric(78, 0))

    def process_bind_param(self, value: int | None, dialect) -> Any:
        if value is None:
            return None
        if dialect.name == 'sqlite':
            return str(int(value))
        return Decimal(int(value))

    def process_result_value(self, value: Any, dialect) -> int | None:
        if value is None:
            return None
        return int(value)


class Base(AsyncAttrs, DeclarativeBase):
    ...
