# src/rolegate/models/rule.py
"""SQLAlchemy model for admin-defined ownership rules."""

from sqlalchemy import BigInteger, Index, Integer, Text
from sqlalchemy.orm import Mapped, mapped_column

from rolegate.db.session import Base

WILDCARD = "ALL"


class VerifierRule(Base):
    """Ownership criterion mapped to a grantable platform role.

    Every optional criterion column is non-null; ``ALL`` means "match anything".
    ``channel_id`` stays nullable, NULL meaning the rule applies server-wide.
    """

    __tablename__ = "verifier_rules"
    __table_args__ = (Index("ix_verifier_rules_server", "server_id", "channel_id"),)

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True)
    server_id: Mapped[str] = mapped_column(Text, nullable=False)
    server_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    channel_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    slug: Mapped[str] = mapped_column(Text, nullable=False, default=WILDCARD)
    attribute_key: Mapped[str] = mapped_column(Text, nullable=False, default=WILDCARD)
    attribute_value: Mapped[str] = mapped_column(Text, nullable=False, default=WILDCARD)
    min_items: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    role_id: Mapped[str] = mapped_column(Text, nullable=False)
    role_name: Mapped[str | None] = mapped_column(Text, nullable=True)
