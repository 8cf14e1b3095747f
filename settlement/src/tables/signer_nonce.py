from .base import Base
from datetime import datetime
from sqlalchemy import BigInteger
from sqlalchemy.orm import Mapped, mapped_column


class SignerNonce(Base):
    """Next nonce of a signing address, shared by every process that signs with it"""

    __tablename__ = 'signer_nonces'

    address: Mapped[str] = mapped_column(primary_key=True)
    nonce: Mapped[int] = mapped_column(BigInteger, default=0)
    updated_at: Mapped[datetime] = mapped_column(default=datetime.now, onupdate=datetime.now)
