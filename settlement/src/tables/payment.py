from .base import Base, MinorUnits
from typing import Literal
from datetime import datetime
from uuid import UUID, uuid4
from sqlalchemy import ForeignKey
from sqlalchemy.orm import Mapped, mapped_column
from .card import Card


Status = Literal['started', 'completed', 'cancelled']


class Payment(Base):
    __tablename__ = 'payments'

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    card_id: Mapped[UUID] = mapped_column(ForeignKey(Card.id, ondelete='CASCADE'), index=True)
    external_id: Mapped[str] = mapped_column(unique=True)
    status: Mapped[Status] = mapped_column(default='started')

    # Program currency, e.g. pence for GBP
    amount: Mapped[int] = mapped_column(MinorUnits())
    currency: Mapped[str] = mapped_column()

    merchant_name: Mapped[str] = mapped_column()
    merchant_amount: Mapped[int] = mapped_column(MinorUnits())
    merchant_currency: Mapped[str] = mapped_column()

    created_at: Mapped[datetime] = mapped_column(default=datetime.now)
    updated_at: Mapped[datetime] = mapped_column(default=datetime.now, onupdate=datetime.now)
