"""Read access to admin-defined verification rules."""
from __future__ import annotations

from collections.abc import Iterable, Sequence

from sqlalchemy.orm import Session

from rolegate.models import VerifierRule

__all__ = ["RuleRepository"]


class RuleRepository:
    """Thin wrapper around database access for rule entities."""

    def __init__(self, db: Session) -> None:
        self.db = db

    def get(self, rule_id: int) -> VerifierRule | None:
        """Return a rule by identifier."""
        return self.db.get(VerifierRule, rule_id)

    def get_by_ids(self, rule_ids: Iterable[int]) -> list[VerifierRule]:
        """Return the rules that exist among ``rule_ids``, ordered by id."""
        ids = sorted(set(rule_ids))
        if not ids:
            return []
        return (
            self.db.query(VerifierRule)
            .filter(VerifierRule.id.in_(ids))
            .order_by(VerifierRule.id)
            .all()
        )

    def for_server(self, server_id: str) -> Sequence[VerifierRule]:
        """Return every rule configured for a server."""
        return (
            self.db.query(VerifierRule)
            .filter(VerifierRule.server_id == server_id)
            .order_by(VerifierRule.id)
            .all()
        )
