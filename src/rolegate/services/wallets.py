"""Registry of wallet addresses each user has proven control of."""
from __future__ import annotations

import logging

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from rolegate.core.errors import PersistenceFailure
from rolegate.db.time import utcnow
from rolegate.models import UserWallet

logger = logging.getLogger(__name__)

__all__ = ["WalletRegistry"]


class WalletRegistry:
    """Stores lowercase addresses per user; one row per (user, address)."""

    def __init__(self, db: Session) -> None:
        self.db = db

    def _find(self, user_id: str, address: str) -> UserWallet | None:
        return (
            self.db.query(UserWallet)
            .filter(UserWallet.user_id == user_id, UserWallet.address == address)
            .first()
        )

    def record_address(
        self, user_id: str, address: str, user_name: str | None = None
    ) -> UserWallet:
        """Insert the address for the user, or refresh its last-verified time."""
        normalized = address.lower()
        wallet = self._find(user_id, normalized)
        try:
            if wallet is None:
                wallet = UserWallet(user_id=user_id, address=normalized, user_name=user_name)
                self.db.add(wallet)
            else:
                wallet.last_verified_at = utcnow()
                if user_name:
                    wallet.user_name = user_name
            self.db.commit()
        except IntegrityError:
            # Another request recorded the same pair first.
            self.db.rollback()
            existing = self._find(user_id, normalized)
            if existing is None:
                raise PersistenceFailure("Wallet row vanished after conflict") from None
            return existing
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.error("Failed to record wallet %s for user %s: %s", normalized, user_id, exc)
            raise PersistenceFailure() from exc
        self.db.refresh(wallet)
        return wallet

    def list_addresses(self, user_id: str) -> list[str]:
        """Return the user's addresses, most recently verified first."""
        rows = (
            self.db.query(UserWallet.address)
            .filter(UserWallet.user_id == user_id)
            .order_by(UserWallet.last_verified_at.desc(), UserWallet.id.desc())
            .all()
        )
        return [row[0] for row in rows]
