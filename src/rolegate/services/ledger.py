"""Persistence of role assignments (the verifier_user_roles ledger).

Writes are single-row commits. Concurrent verifications of the same user and
role are serialised by the partial unique index on active rows: the loser of
an insert race rolls back and adopts the winner's row.
"""
from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import and_, func, or_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from rolegate.core.errors import PersistenceFailure
from rolegate.db.time import utcnow
from rolegate.models import RoleAssignment
from rolegate.models.role_assignment import (
    ASSIGNMENT_STATUS_ACTIVE,
    ASSIGNMENT_STATUS_EXPIRED,
    ASSIGNMENT_STATUS_REVOKED,
    ASSIGNMENT_STATUSES,
)

logger = logging.getLogger(__name__)

__all__ = ["AssignmentLedger", "SweepCursor"]

SweepCursor = tuple[datetime, int]


class AssignmentLedger:
    """Data access for role assignment rows."""

    def __init__(self, db: Session) -> None:
        self.db = db

    def find_active(self, user_id: str, role_id: str) -> RoleAssignment | None:
        """Return the active assignment for (user, role), if any."""
        return (
            self.db.query(RoleAssignment)
            .filter(
                RoleAssignment.user_id == user_id,
                RoleAssignment.role_id == role_id,
                RoleAssignment.status == ASSIGNMENT_STATUS_ACTIVE,
            )
            .first()
        )

    def upsert_active(
        self,
        *,
        user_id: str,
        server_id: str,
        role_id: str,
        address: str,
        rule_id: int | None = None,
        user_name: str | None = None,
        role_name: str | None = None,
        expires_at: datetime | None = None,
    ) -> tuple[RoleAssignment, bool]:
        """Ensure an active row exists for (user, role).

        Returns:
            The active row and True when this call inserted it.

        Raises:
            PersistenceFailure: The write failed for a reason other than a duplicate.
        """
        now = utcnow()
        normalized = address.lower()
        existing = self.find_active(user_id, role_id)
        try:
            if existing is not None:
                existing.address = normalized
                existing.verified_at = now
                existing.last_checked = now
                if rule_id is not None:
                    existing.rule_id = rule_id
                if role_name:
                    existing.role_name = role_name
                self.db.commit()
                return existing, False

            row = RoleAssignment(
                user_id=user_id,
                server_id=server_id,
                role_id=role_id,
                rule_id=rule_id,
                address=normalized,
                status=ASSIGNMENT_STATUS_ACTIVE,
                verified_at=now,
                last_checked=now,
                expires_at=expires_at,
                user_name=user_name,
                role_name=role_name,
            )
            self.db.add(row)
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            winner = self.find_active(user_id, role_id)
            if winner is None:
                logger.error(
                    "Unique conflict for user %s role %s but no active row found",
                    user_id,
                    role_id,
                )
                raise PersistenceFailure("Conflicting role assignment disappeared") from None
            logger.debug("Assignment for user %s role %s already recorded", user_id, role_id)
            return winner, False
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.error(
                "Failed to record role %s for user %s: %s", role_id, user_id, exc, exc_info=True
            )
            raise PersistenceFailure() from exc

        logger.info("Recorded role %s for user %s in server %s", role_id, user_id, server_id)
        return row, True

    def _set_status(self, assignment_id: int, status: str) -> RoleAssignment | None:
        row = self.db.get(RoleAssignment, assignment_id)
        if row is None:
            return None
        try:
            row.status = status
            row.last_checked = utcnow()
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise PersistenceFailure() from exc
        return row

    def mark_expired(self, assignment_id: int) -> RoleAssignment | None:
        """Move an assignment to ``expired`` after holdings stopped qualifying."""
        return self._set_status(assignment_id, ASSIGNMENT_STATUS_EXPIRED)

    def mark_revoked(self, assignment_id: int) -> RoleAssignment | None:
        """Move an assignment to ``revoked`` after manual removal."""
        return self._set_status(assignment_id, ASSIGNMENT_STATUS_REVOKED)

    def touch_checked(self, assignment_id: int) -> None:
        row = self.db.get(RoleAssignment, assignment_id)
        if row is None:
            return
        try:
            row.last_checked = utcnow()
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise PersistenceFailure() from exc

    def list_active(
        self,
        limit: int,
        after: SweepCursor | None = None,
        checked_before: datetime | None = None,
    ) -> list[RoleAssignment]:
        """Return one page of active rows, least recently checked first.

        ``after`` is the (last_checked, id) of the previous page's final row.
        """
        query = self.db.query(RoleAssignment).filter(
            RoleAssignment.status == ASSIGNMENT_STATUS_ACTIVE
        )
        if checked_before is not None:
            query = query.filter(RoleAssignment.last_checked < checked_before)
        if after is not None:
            last_checked, last_id = after
            query = query.filter(
                or_(
                    RoleAssignment.last_checked > last_checked,
                    and_(
                        RoleAssignment.last_checked == last_checked,
                        RoleAssignment.id > last_id,
                    ),
                )
            )
        return (
            query.order_by(RoleAssignment.last_checked.asc(), RoleAssignment.id.asc())
            .limit(limit)
            .all()
        )

    def list_users_for_server(self, server_id: str) -> list[str]:
        """Return every user who has held a role in the server, in any status."""
        rows = (
            self.db.query(RoleAssignment.user_id)
            .filter(RoleAssignment.server_id == server_id)
            .distinct()
            .order_by(RoleAssignment.user_id)
            .all()
        )
        return [row[0] for row in rows]

    def list_active_for_rule(self, rule_id: int) -> list[RoleAssignment]:
        return (
            self.db.query(RoleAssignment)
            .filter(
                RoleAssignment.rule_id == rule_id,
                RoleAssignment.status == ASSIGNMENT_STATUS_ACTIVE,
            )
            .order_by(RoleAssignment.id)
            .all()
        )

    def latest_address(self, user_id: str) -> str | None:
        """Return the address of the user's most recent verification."""
        row = (
            self.db.query(RoleAssignment.address)
            .filter(RoleAssignment.user_id == user_id)
            .order_by(RoleAssignment.verified_at.desc(), RoleAssignment.id.desc())
            .first()
        )
        return row[0] if row else None

    def count_by_status(self) -> dict[str, int]:
        counts = {status: 0 for status in ASSIGNMENT_STATUSES}
        rows = (
            self.db.query(RoleAssignment.status, func.count(RoleAssignment.id))
            .group_by(RoleAssignment.status)
            .all()
        )
        for status, total in rows:
            counts[status] = int(total)
        return counts
