"""Verification engine: evaluate a wallet against rules and grant roles."""
from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field

from sqlalchemy.orm import Session

from rolegate.core.errors import (
    NoMatchingHoldings,
    NoQualifyingRules,
    PersistenceFailure,
    RoleMutationFailure,
)
from rolegate.models import VerifierRule
from rolegate.services.assets import AssetSource
from rolegate.services.ledger import AssignmentLedger
from rolegate.services.matching import Asset, PerRuleResult, evaluate
from rolegate.services.platform import RolePlatform
from rolegate.services.rules import RuleRepository

logger = logging.getLogger(__name__)

__all__ = [
    "BulkVerificationResult",
    "RoleFailure",
    "RoleGrant",
    "VerificationEngine",
]


@dataclass(frozen=True)
class RoleGrant:
    """A role the user holds after verification."""

    rule_id: int
    role_id: str
    newly_granted: bool


@dataclass(frozen=True)
class RoleFailure:
    """A role that qualified but could not be granted or recorded."""

    role_id: str
    reason: str


@dataclass
class BulkVerificationResult:
    """Per-rule outcome of one verification pass."""

    user_id: str
    address: str
    valid_rules: list[int] = field(default_factory=list)
    invalid_rules: list[int] = field(default_factory=list)
    matching_asset_counts: dict[int, int] = field(default_factory=dict)
    results: list[PerRuleResult] = field(default_factory=list)
    granted: list[RoleGrant] = field(default_factory=list)
    failures: list[RoleFailure] = field(default_factory=list)

    @property
    def evaluated(self) -> int:
        return len(self.results)

    @property
    def newly_granted(self) -> list[RoleGrant]:
        return [grant for grant in self.granted if grant.newly_granted]

    @property
    def already_held(self) -> list[RoleGrant]:
        return [grant for grant in self.granted if not grant.newly_granted]

    def raise_if_unqualified(self) -> None:
        """Raise when nothing was evaluated or nothing matched."""
        if not self.results:
            raise NoQualifyingRules()
        if not self.valid_rules:
            raise NoMatchingHoldings()


class VerificationEngine:
    """Evaluates a user's holdings against rules and grants the matching roles.

    Assets are fetched once per call and shared by every rule. Each role grant
    is isolated: a platform or ledger failure is recorded and the remaining
    roles are still attempted.
    """

    def __init__(self, db: Session, assets: AssetSource, platform: RolePlatform) -> None:
        self.db = db
        self.assets = assets
        self.platform = platform
        self.rules = RuleRepository(db)
        self.ledger = AssignmentLedger(db)

    async def verify_user_bulk(
        self,
        user_id: str,
        rule_ids: Iterable[int],
        address: str,
        *,
        channel_id: str | None = None,
        user_name: str | None = None,
    ) -> BulkVerificationResult:
        """Evaluate the explicitly requested rules. Unknown ids are ignored."""
        requested = list(rule_ids)
        rules = self.rules.get_by_ids(requested)
        known = {rule.id for rule in rules}
        for missing in sorted(set(requested) - known):
            logger.warning("Ignoring unknown rule id %s for user %s", missing, user_id)
        return await self._verify(user_id, rules, address, channel_id, user_name)

    async def verify_user_for_server(
        self,
        user_id: str,
        server_id: str,
        address: str,
        *,
        channel_id: str | None = None,
        user_name: str | None = None,
    ) -> BulkVerificationResult:
        """Evaluate every rule configured for ``server_id``."""
        rules = self.rules.for_server(server_id)
        if not rules:
            logger.info("No rules configured for server %s", server_id)
        return await self._verify(user_id, rules, address, channel_id, user_name)

    async def _verify(
        self,
        user_id: str,
        rules: Sequence[VerifierRule],
        address: str,
        channel_id: str | None,
        user_name: str | None,
    ) -> BulkVerificationResult:
        normalized = address.lower()
        result = BulkVerificationResult(user_id=user_id, address=normalized)
        if not rules:
            return result

        holdings = await self.assets.get_assets(normalized)
        logger.info(
            "Evaluating %d rules for user %s (%s) against %d assets",
            len(rules),
            user_id,
            normalized,
            len(holdings),
        )

        valid: list[VerifierRule] = []
        for rule in rules:
            outcome = self._evaluate(rule, holdings, channel_id)
            result.results.append(outcome)
            result.matching_asset_counts[rule.id] = outcome.matching_asset_count
            if outcome.is_valid:
                result.valid_rules.append(rule.id)
                valid.append(rule)
            else:
                result.invalid_rules.append(rule.id)

        await self._grant_roles(result, valid, user_name)
        return result

    @staticmethod
    def _evaluate(
        rule: VerifierRule, holdings: Sequence[Asset], channel_id: str | None
    ) -> PerRuleResult:
        # Without a caller channel, a channel-scoped rule is judged in its own scope.
        return evaluate(rule, holdings, channel_id if channel_id is not None else rule.channel_id)

    async def _grant_roles(
        self,
        result: BulkVerificationResult,
        rules: Sequence[VerifierRule],
        user_name: str | None,
    ) -> None:
        seen: set[str] = set()
        for rule in rules:
            if rule.role_id in seen:
                continue
            seen.add(rule.role_id)

            try:
                await self.platform.grant_role(result.user_id, rule.role_id, rule.server_id)
            except RoleMutationFailure as exc:
                logger.warning(
                    "Failed to grant role %s to user %s: %s", rule.role_id, result.user_id, exc
                )
                result.failures.append(RoleFailure(role_id=rule.role_id, reason=str(exc)))
                continue

            try:
                _, created = self.ledger.upsert_active(
                    user_id=result.user_id,
                    server_id=rule.server_id,
                    role_id=rule.role_id,
                    address=result.address,
                    rule_id=rule.id,
                    user_name=user_name,
                    role_name=rule.role_name,
                )
            except PersistenceFailure as exc:
                logger.error(
                    "Granted role %s to user %s but could not record it: %s",
                    rule.role_id,
                    result.user_id,
                    exc,
                )
                result.failures.append(RoleFailure(role_id=rule.role_id, reason=str(exc)))
                continue

            result.granted.append(
                RoleGrant(rule_id=rule.id, role_id=rule.role_id, newly_granted=created)
            )
