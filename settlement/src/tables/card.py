from .base import Base
from typing import Literal
from datetime import datetime
from uuid import UUID, uuid4
from decimal import Decimal
from sqlalchemy import ForeignKey, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column
from .user import User


Status = Literal['active', 'inactive', 'deleted']


class Card(Base):
    __tablename__ = 'cards'

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(ForeignKey(User.id, ondelete='CASCADE'), unique=True)
    external_id: Mapped[str] = mapped_column(unique=True)
    external_cardholder_id: Mapped[str] = mapped_column()
    name: Mapped[str] = mapped_column()
    brand: Mapped[str] = mapped_column()
    last4: Mapped[str] = mapped_column(String(4))
    status: Mapped[Status] = mapped_column()
    spending_limit: Mapped[Decimal] = mapped_column(Numeric(20, 2), default=Decimal('0.00'))
    created_at: Mapped[datetime] = mapped_column(default=datetime.now)
    updated_at: Mapped[datetime] = mapped_column(default=datetime.now, onupdate=datetime.now)
