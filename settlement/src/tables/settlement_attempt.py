from .base import Base
from typing import Literal
from datetime import datetime
from uuid import UUID, uuid4
from sqlalchemy import ForeignKey
from sqlalchemy.orm import Mapped, mapped_column
from .payment import Payment


# 'unknown' - broadcast, but the receipt never arrived; needs reconciliation against the chain
Status = Literal['pending_execution', 'executed', 'failed', 'unknown']


class SettlementAttempt(Base):
    __tablename__ = 'settlement_attempts'

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    payment_id: Mapped[UUID] = mapped_column(ForeignKey(Payment.id, ondelete='CASCADE'), unique=True)
    status: Mapped[Status] = mapped_column(default='pending_execution')
    tx_hash: Mapped[str | None] = mapped_column(nullable=True)
    error: Mapped[str | None] = mapped_column(nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=datetime.now)
    updated_at: Mapped[datetime] = mapped_column(default=datetime.now, onupdate=datetime.now)
