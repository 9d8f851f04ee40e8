"""Periodic re-validation of granted roles.

Holdings change after a role is granted. The reconciler walks active
assignments oldest-checked first, re-evaluates each against its rule and
revokes roles whose holdings no longer qualify. Any failure on a row leaves it
active; the next sweep picks it up again.

Session work runs in a worker thread via ``asyncio.to_thread`` so a sweep
never holds the event loop while the database answers.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, TypeVar

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from rolegate.core.errors import AssetQueryError, PersistenceFailure, RoleMutationFailure
from rolegate.core.settings import settings
from rolegate.db.session import SessionLocal
from rolegate.db.time import utcnow
from rolegate.models import RoleAssignment, VerifierRule
from rolegate.services.assets import AssetSource, get_asset_client
from rolegate.services.ledger import AssignmentLedger, SweepCursor
from rolegate.services.matching import Asset, evaluate
from rolegate.services.platform import RolePlatform, get_platform_client
from rolegate.services.rules import RuleRepository
from rolegate.services.wallets import WalletRegistry

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]
R = TypeVar("R")

# Expected failures that skip one row; anything else is logged with a traceback.
_ROW_FAILURES = (
    AssetQueryError,
    PersistenceFailure,
    RoleMutationFailure,
    asyncio.TimeoutError,
)


@dataclass
class SweepReport:
    """Counters for one reconciliation pass."""

    checked: int = 0
    still_valid: int = 0
    expired: int = 0
    errors: int = 0

    def as_dict(self) -> dict[str, int]:
        return asdict(self)


@dataclass
class ReverifyReport:
    """Role ids confirmed, revoked or failed while re-verifying one user."""

    verified: list[str] = field(default_factory=list)
    revoked: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


@dataclass
class ServerReverifyReport:
    users_processed: int = 0
    total_verified: int = 0
    total_revoked: int = 0
    errors: list[str] = field(default_factory=list)


class RoleReconciler:
    """Re-checks active role assignments against current holdings."""

    def __init__(
        self,
        db: Session,
        assets: AssetSource,
        platform: RolePlatform,
        *,
        page_size: int | None = None,
        page_delay_seconds: float | None = None,
        row_timeout_seconds: float | None = None,
        user_delay_seconds: float | None = None,
        sleep: Sleep = asyncio.sleep,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.db = db
        self.assets = assets
        self.platform = platform
        self.ledger = AssignmentLedger(db)
        self.rules = RuleRepository(db)
        self.wallets = WalletRegistry(db)
        self.page_size = max(1, page_size or settings.reconcile_page_size)
        self.page_delay_seconds = (
            settings.reconcile_page_delay_seconds
            if page_delay_seconds is None
            else page_delay_seconds
        )
        self.row_timeout_seconds = (
            settings.reconcile_row_timeout_seconds
            if row_timeout_seconds is None
            else row_timeout_seconds
        )
        self.user_delay_seconds = (
            settings.reconcile_user_delay_seconds
            if user_delay_seconds is None
            else user_delay_seconds
        )
        self._sleep = sleep
        self._clock = clock

    @staticmethod
    async def _db(func: Callable[..., R], *args: Any, **kwargs: Any) -> R:
        return await asyncio.to_thread(func, *args, **kwargs)

    async def perform_scheduled_reverification(self) -> SweepReport:
        """Walk every active assignment not yet checked during this sweep."""
        sweep_start = self._clock()
        report = SweepReport()
        holdings: dict[str, list[Asset]] = {}
        cursor: SweepCursor | None = None

        logger.info("Starting role reconciliation sweep")
        while True:
            page = await self._db(
                self.ledger.list_active, self.page_size, after=cursor, checked_before=sweep_start
            )
            if not page:
                break
            # Captured before processing: touching a row moves its last_checked.
            cursor = (page[-1].last_checked, page[-1].id)
            for row in page:
                await self._process_row(row, report, holdings)
            if len(page) < self.page_size:
                break
            await self._sleep(self.page_delay_seconds)

        logger.info(
            "Reconciliation sweep finished: checked=%d still_valid=%d expired=%d errors=%d",
            report.checked,
            report.still_valid,
            report.expired,
            report.errors,
        )
        return report

    async def reverify_rule(self, rule_id: int) -> SweepReport:
        """Re-check every active assignment granted through one rule."""
        report = SweepReport()
        holdings: dict[str, list[Asset]] = {}
        for row in await self._db(self.ledger.list_active_for_rule, rule_id):
            await self._process_row(row, report, holdings)
        logger.info(
            "Re-verified rule %s: checked=%d still_valid=%d expired=%d errors=%d",
            rule_id,
            report.checked,
            report.still_valid,
            report.expired,
            report.errors,
        )
        return report

    async def reverify_server(self, server_id: str) -> ServerReverifyReport:
        """Re-verify every user who has ever held a role in the server.

        Users are handled one at a time with a short pause in between to stay
        under the platform's role mutation rate limit. One user's failure is
        recorded and the loop moves on.
        """
        report = ServerReverifyReport()
        user_ids = await self._db(self.ledger.list_users_for_server, server_id)
        logger.info("Re-verifying %d user(s) in server %s", len(user_ids), server_id)

        for index, user_id in enumerate(user_ids):
            if index:
                await self._sleep(self.user_delay_seconds)
            report.users_processed += 1
            try:
                user_report = await self.reverify_user(user_id, server_id)
            except Exception as exc:
                logger.error("Re-verification of user %s failed: %s", user_id, exc, exc_info=True)
                await self._rollback()
                report.errors.append(f"User {user_id}: {exc}")
                continue
            report.total_verified += len(user_report.verified)
            report.total_revoked += len(user_report.revoked)
            report.errors.extend(user_report.errors)

        logger.info(
            "Server %s re-verification complete: users=%d verified=%d revoked=%d errors=%d",
            server_id,
            report.users_processed,
            report.total_verified,
            report.total_revoked,
            len(report.errors),
        )
        return report

    async def reverify_user(self, user_id: str, server_id: str) -> ReverifyReport:
        """Bring one user's roles in a server in line with current holdings.

        Roles that qualify and are not held are granted; held roles that no
        longer qualify are revoked and expired.
        """
        report = ReverifyReport()
        rules = await self._db(self.rules.for_server, server_id)
        if not rules:
            return report

        addresses = await self._db(self._addresses_for, user_id)
        if not addresses:
            report.errors.append(f"No verified wallet for user {user_id}")
            return report

        holdings: dict[str, list[Asset]] = {}
        try:
            for address in addresses:
                await self._holdings_for(address, holdings)
        except AssetQueryError as exc:
            logger.warning("Could not load holdings for user %s: %s", user_id, exc)
            report.errors.append(str(exc))
            return report

        by_role: dict[str, list[VerifierRule]] = {}
        for rule in rules:
            by_role.setdefault(rule.role_id, []).append(rule)

        for role_id, role_rules in by_role.items():
            qualifying = self._first_qualifying(role_rules, addresses, holdings)
            held = await self._db(self.ledger.find_active, user_id, role_id)
            try:
                if qualifying is not None:
                    rule, address = qualifying
                    if held is None:
                        await self.platform.grant_role(user_id, role_id, server_id)
                        await self._db(
                            self.ledger.upsert_active,
                            user_id=user_id,
                            server_id=server_id,
                            role_id=role_id,
                            address=address,
                            rule_id=rule.id,
                            role_name=rule.role_name,
                        )
                    else:
                        await self._db(self.ledger.touch_checked, held.id)
                    report.verified.append(role_id)
                elif held is not None:
                    await self.platform.revoke_role(user_id, role_id, server_id)
                    await self._db(self.ledger.mark_expired, held.id)
                    report.revoked.append(role_id)
            except (RoleMutationFailure, PersistenceFailure) as exc:
                logger.warning(
                    "Re-verification of role %s for user %s failed: %s", role_id, user_id, exc
                )
                report.errors.append(f"{role_id}: {exc}")

        logger.info(
            "Re-verified user %s in server %s: %d verified, %d revoked, %d errors",
            user_id,
            server_id,
            len(report.verified),
            len(report.revoked),
            len(report.errors),
        )
        return report

    def assignment_stats(self) -> dict[str, int]:
        """Return assignment counts per status plus a total."""
        counts = self.ledger.count_by_status()
        counts["total"] = sum(counts.values())
        return counts

    async def _process_row(
        self,
        row: RoleAssignment,
        report: SweepReport,
        holdings: dict[str, list[Asset]],
    ) -> None:
        report.checked += 1
        try:
            still_valid = await asyncio.wait_for(
                self._check_row(row, holdings), timeout=self.row_timeout_seconds
            )
        except _ROW_FAILURES as exc:
            report.errors += 1
            logger.warning(
                "Skipping assignment %s (user %s, role %s) this sweep: %r",
                row.id,
                row.user_id,
                row.role_id,
                exc,
            )
            return
        except Exception as exc:
            report.errors += 1
            logger.error(
                "Unexpected error checking assignment %s (user %s, role %s): %s",
                row.id,
                row.user_id,
                row.role_id,
                exc,
                exc_info=True,
            )
            await self._rollback()
            return
        if still_valid:
            report.still_valid += 1
        else:
            report.expired += 1

    async def _rollback(self) -> None:
        try:
            await self._db(self.db.rollback)
        except SQLAlchemyError as exc:
            logger.warning("Rollback after failed re-verification also failed: %s", exc)

    async def _check_row(self, row: RoleAssignment, holdings: dict[str, list[Asset]]) -> bool:
        if row.rule_id is None:
            # Legacy grant without a rule reference: keep it.
            await self._db(self.ledger.touch_checked, row.id)
            return True

        rule = await self._db(self.rules.get, row.rule_id)
        qualifies = False
        if rule is None:
            logger.info("Rule %s of assignment %s no longer exists", row.rule_id, row.id)
        else:
            addresses = await self._db(self._addresses_for, row.user_id) or [row.address]
            for address in addresses:
                assets = await self._holdings_for(address, holdings)
                if evaluate(rule, assets, rule.channel_id).is_valid:
                    qualifies = True
                    break

        if qualifies:
            await self._db(self.ledger.touch_checked, row.id)
            return True

        await self.platform.revoke_role(row.user_id, row.role_id, row.server_id)
        await self._db(self.ledger.mark_expired, row.id)
        logger.info(
            "Expired role %s for user %s in server %s", row.role_id, row.user_id, row.server_id
        )
        return False

    def _addresses_for(self, user_id: str) -> list[str]:
        addresses = self.wallets.list_addresses(user_id)
        if addresses:
            return addresses
        latest = self.ledger.latest_address(user_id)
        return [latest] if latest else []

    async def _holdings_for(self, address: str, cache: dict[str, list[Asset]]) -> list[Asset]:
        key = address.lower()
        if key not in cache:
            cache[key] = await self.assets.get_assets(key)
        return cache[key]

    @staticmethod
    def _first_qualifying(
        rules: Sequence[VerifierRule],
        addresses: Sequence[str],
        holdings: dict[str, list[Asset]],
    ) -> tuple[VerifierRule, str] | None:
        for rule in rules:
            for address in addresses:
                if evaluate(rule, holdings[address.lower()], rule.channel_id).is_valid:
                    return rule, address
        return None


class ReconcileWorker:
    """Runs a reconciliation sweep on a fixed interval in the background."""

    def __init__(
        self,
        assets: AssetSource | None = None,
        platform: RolePlatform | None = None,
        db_session: Session | None = None,
        *,
        interval_seconds: float | None = None,
        sleep: Sleep = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the worker.

        Args:
            assets: Asset source; defaults to the shared HTTP client.
            platform: Role platform; defaults to the shared HTTP client.
            db_session: Optional session. If None, a new session is opened per sweep.
            interval_seconds: Time between sweep starts.
            sleep: Awaitable sleep used between sweeps and pages.
            clock: Monotonic clock used to schedule sweeps.
        """
        self.assets = assets or get_asset_client()
        self.platform = platform or get_platform_client()
        self._db_session = db_session
        self.interval_seconds = max(
            0.1,
            float(
                settings.reconcile_interval_seconds
                if interval_seconds is None
                else interval_seconds
            ),
        )
        self._sleep = sleep
        self._clock = clock
        self._task: asyncio.Task[None] | None = None
        self._stopping = asyncio.Event()
        self.last_report: SweepReport | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Start the background reconciliation loop."""
        if not self.running:
            self._stopping.clear()
            self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        """Stop the loop, letting an in-flight sweep finish."""
        if self._task is None:
            return
        self._stopping.set()
        await self._task
        self._task = None

    async def run_once(self) -> SweepReport:
        """Run a single sweep now."""
        if self._db_session is not None:
            report = await self._sweep(self._db_session)
        else:
            with SessionLocal() as db:
                report = await self._sweep(db)
        self.last_report = report
        return report

    async def _sweep(self, db: Session) -> SweepReport:
        reconciler = RoleReconciler(db, self.assets, self.platform, sleep=self._sleep)
        return await reconciler.perform_scheduled_reverification()

    async def _run(self) -> None:
        while not self._stopping.is_set():
            started = self._clock()
            try:
                await self.run_once()
            except Exception as exc:
                logger.error("ReconcileWorker sweep failed: %s", exc, exc_info=True)
            remaining = max(0.0, self.interval_seconds - (self._clock() - started))
            await self._wait(remaining)

    async def _wait(self, delay: float) -> None:
        """Sleep for ``delay`` unless ``stop()`` is requested first."""
        if self._stopping.is_set():
            return
        sleeper = asyncio.ensure_future(self._sleep(delay))
        stopper = asyncio.ensure_future(self._stopping.wait())
        _, pending = await asyncio.wait(
            {sleeper, stopper}, return_when=asyncio.FIRST_COMPLETED
        )
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
