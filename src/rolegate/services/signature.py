"""Wallet signature verification for challenge responses."""

from __future__ import annotations

import logging
from collections.abc import Callable

from rolegate.core.errors import ExpiredChallenge, InvalidNonce, SignatureInvalid
from rolegate.core.security import build_typed_data, recover_typed_data_address
from rolegate.db.time import unix_now
from rolegate.schemas.verification import VerificationData
from rolegate.services.nonce import NonceContext, NonceStore

logger = logging.getLogger(__name__)


class SignatureVerifier:
    """Recovers the signer of a verification challenge and enforces freshness.

    Each call is one attempt: the nonce is consumed up front, so a failed
    attempt cannot be retried with the same challenge.
    """

    def __init__(self, nonces: NonceStore, clock: Callable[[], float] = unix_now) -> None:
        self._nonces = nonces
        self._clock = clock

    async def verify_signature(self, payload: VerificationData, signature: str) -> str:
        """Validate the challenge and return the lowercase signer address.

        Raises:
            InvalidNonce: The nonce is missing, expired or does not match.
            ExpiredChallenge: ``payload.expiry`` has passed.
            SignatureInvalid: The signer cannot be recovered or differs from ``payload.address``.
        """
        address, _ = await self.verify_and_claim(payload, signature)
        return address

    async def verify_and_claim(
        self, payload: VerificationData, signature: str
    ) -> tuple[str, NonceContext]:
        """Like ``verify_signature`` but also return the claimed nonce context."""
        context = await self._nonces.claim_nonce(payload.user_id, payload.nonce)
        if context is None:
            logger.info("Rejected verification for user %s: invalid nonce", payload.user_id)
            raise InvalidNonce()

        if payload.expiry < self._clock():
            logger.info("Rejected verification for user %s: challenge expired", payload.user_id)
            raise ExpiredChallenge()

        typed_data = build_typed_data(payload.typed_message())
        try:
            recovered = recover_typed_data_address(typed_data, signature)
        except Exception as err:
            logger.info(
                "Rejected verification for user %s: unrecoverable signature (%s)",
                payload.user_id,
                err,
            )
            raise SignatureInvalid() from err

        if recovered.lower() != payload.address.lower():
            logger.info(
                "Rejected verification for user %s: signer %s does not match %s",
                payload.user_id,
                recovered,
                payload.address,
            )
            raise SignatureInvalid()

        return recovered.lower(), context
