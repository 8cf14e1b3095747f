from .base import Base, MinorUnits
from datetime import datetime
from uuid import UUID, uuid4
from sqlalchemy import ForeignKey
from sqlalchemy.orm import Mapped, mapped_column
from .user import User


class Transfer(Base):
    __tablename__ = 'transfers'

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(ForeignKey(User.id, ondelete='CASCADE'), index=True)
    symbol: Mapped[str] = mapped_column()
    amount: Mapped[int] = mapped_column(MinorUnits())
    decimals: Mapped[int] = mapped_column()
    sender: Mapped[str] = mapped_column()
    receiver: Mapped[str] = mapped_column()
    tx_hash: Mapped[str] = mapped_column(unique=True)
    created_at: Mapped[datetime] = mapped_column(default=datetime.now)
