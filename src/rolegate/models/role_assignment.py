# src/rolegate/models/role_assignment.py
"""Ledger rows recording which user holds which role because of which rule."""

from datetime import datetime

from sqlalchemy import BigInteger, DateTime, Index, Integer, Text, text
from sqlalchemy.orm import Mapped, mapped_column

from rolegate.db.session import Base
from rolegate.db.time import utcnow

ASSIGNMENT_STATUS_ACTIVE = "active"
ASSIGNMENT_STATUS_EXPIRED = "expired"
ASSIGNMENT_STATUS_REVOKED = "revoked"

ASSIGNMENT_STATUSES = (
    ASSIGNMENT_STATUS_ACTIVE,
    ASSIGNMENT_STATUS_EXPIRED,
    ASSIGNMENT_STATUS_REVOKED,
)

_ACTIVE_ONLY = text(f"status = '{ASSIGNMENT_STATUS_ACTIVE}'")


class RoleAssignment(Base):
    """State machine for a single role grant.

    active -> expired when reconciliation finds the holdings no longer qualify,
    active/expired -> revoked on manual removal. Rows never return to active;
    a later verification inserts a fresh row instead.
    """

    __tablename__ = "verifier_user_roles"
    __table_args__ = (
        # At most one active row per (user, role); history rows are unconstrained.
        Index(
            "uq_verifier_user_roles_active",
            "user_id",
            "role_id",
            unique=True,
            sqlite_where=_ACTIVE_ONLY,
            postgresql_where=_ACTIVE_ONLY,
        ),
        Index("ix_verifier_user_roles_sweep", "status", "last_checked", "id"),
    )

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True)
    user_id: Mapped[str] = mapped_column(Text, nullable=False)
    server_id: Mapped[str] = mapped_column(Text, nullable=False)
    role_id: Mapped[str] = mapped_column(Text, nullable=False)
    # No FK: rows pointing at a deleted rule are revoked by reconciliation.
    rule_id: Mapped[int | None] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"), nullable=True, index=True
    )
    address: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(Text, nullable=False, default=ASSIGNMENT_STATUS_ACTIVE)
    verified_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    last_checked: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    user_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    role_name: Mapped[str | None] = mapped_column(Text, nullable=True)
