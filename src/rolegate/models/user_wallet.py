# src/rolegate/models/user_wallet.py
"""Wallet addresses a user has proven control of."""

from datetime import datetime

from sqlalchemy import BigInteger, DateTime, Integer, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from rolegate.db.session import Base
from rolegate.db.time import utcnow


class UserWallet(Base):
    """Verified (user, address) pair; addresses are stored lowercase."""

    __tablename__ = "user_wallets"
    __table_args__ = (UniqueConstraint("user_id", "address", name="uq_user_wallets_user_address"),)

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True)
    user_id: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    address: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    user_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    last_verified_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
