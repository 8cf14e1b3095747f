from .base import Base, MinorUnits
from datetime import datetime
from uuid import UUID, uuid4
from sqlalchemy import ForeignKey
from sqlalchemy.orm import Mapped, mapped_column
from .payment import Payment


class Execution(Base):
    __tablename__ = 'executions'

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    payment_id: Mapped[UUID] = mapped_column(ForeignKey(Payment.id, ondelete='CASCADE'), unique=True)
    symbol: Mapped[str] = mapped_column()
    amount: Mapped[int] = mapped_column(MinorUnits())
    decimals: Mapped[int] = mapped_column()
    tx_hash: Mapped[str] = mapped_column(unique=True)
    created_at: Mapped[datetime] = mapped_column(default=datetime.now)
