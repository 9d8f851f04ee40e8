"""End-to-end handling of a signed verification challenge."""
from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field

from sqlalchemy.orm import Session

from rolegate.core.errors import PersistenceFailure, VerificationError
from rolegate.db.time import unix_now
from rolegate.schemas.verification import VerificationData
from rolegate.services.assets import AssetSource
from rolegate.services.nonce import NonceContext, NonceStore
from rolegate.services.platform import RolePlatform
from rolegate.services.signature import SignatureVerifier
from rolegate.services.verification import BulkVerificationResult, VerificationEngine
from rolegate.services.wallets import WalletRegistry

logger = logging.getLogger(__name__)

__all__ = ["VerificationFlow", "VerificationOutcome"]


@dataclass(frozen=True)
class VerificationOutcome:
    message: str
    address: str
    assigned_roles: list[str] = field(default_factory=list)


def summarize(result: BulkVerificationResult) -> str:
    """Human readable summary shown to the user after a successful pass."""
    new_count = len(result.newly_granted)
    held_count = len(result.already_held)
    message = f"Verification successful: {new_count} new, {held_count} existing role(s)."
    if result.failures:
        message += f" {len(result.failures)} role(s) could not be assigned right now."
    return message


class VerificationFlow:
    """Signature check, wallet registration, rule evaluation and user feedback."""

    def __init__(
        self,
        db: Session,
        nonces: NonceStore,
        assets: AssetSource,
        platform: RolePlatform,
        clock: Callable[[], float] = unix_now,
    ) -> None:
        self.nonces = nonces
        self.platform = platform
        self.verifier = SignatureVerifier(nonces, clock=clock)
        self.wallets = WalletRegistry(db)
        self.engine = VerificationEngine(db, assets, platform)

    async def verify_signature_flow(
        self, payload: VerificationData, signature: str
    ) -> VerificationOutcome:
        """Verify a signed challenge and grant every role the wallet qualifies for.

        Raises:
            VerificationError: Any abort-class failure; the pending prompt is
                updated with the error before the exception propagates.
        """
        # Peek first so the prompt can still be updated if the claim fails.
        prompt = await self.nonces.get_nonce_data(payload.user_id)
        try:
            address, claimed = await self.verifier.verify_and_claim(payload, signature)
            self._remember_wallet(payload, address)
            result = await self.engine.verify_user_for_server(
                payload.user_id,
                payload.server_id,
                address,
                channel_id=claimed.channel_id or payload.channel_id,
                user_name=payload.user_tag or None,
            )
            result.raise_if_unqualified()
        except VerificationError as exc:
            logger.info("Verification for user %s aborted: %s", payload.user_id, exc)
            await self._notify(prompt, f"Verification failed: {exc.public_message}")
            raise

        message = summarize(result)
        logger.info(
            "User %s verified %s in server %s: %d new, %d existing, %d failed",
            payload.user_id,
            address,
            payload.server_id,
            len(result.newly_granted),
            len(result.already_held),
            len(result.failures),
        )
        await self._notify(claimed if claimed.routable else prompt, message)
        return VerificationOutcome(
            message=message,
            address=address,
            assigned_roles=[grant.role_id for grant in result.granted],
        )

    def _remember_wallet(self, payload: VerificationData, address: str) -> None:
        # The ledger keeps the address too, so a failed wallet write is not fatal.
        try:
            self.wallets.record_address(
                payload.user_id, address, user_name=payload.user_tag or None
            )
        except PersistenceFailure as exc:
            logger.warning(
                "Could not store wallet %s for user %s: %s", address, payload.user_id, exc
            )

    async def _notify(self, context: NonceContext, content: str) -> None:
        if not context.routable:
            return
        try:
            await self.platform.show_notice(context, content)
        except Exception as exc:
            logger.warning("Could not deliver verification notice: %s", exc)
