"""Error taxonomy for the verification and reconciliation engine."""

from __future__ import annotations


class VerificationError(RuntimeError):
    """Base exception for failures that abort a verification attempt.

    Carries a user-safe message and the HTTP status the transport should use.
    """

    status_code: int = 400
    public_message: str = "Verification failed"

    def __init__(self, detail: str | None = None) -> None:
        super().__init__(detail or self.public_message)


class InvalidNonce(VerificationError):
    """Raised when the challenge nonce is missing, expired or mismatched."""

    public_message = "Invalid or expired nonce. Please request a new verification link."


class ExpiredChallenge(VerificationError):
    """Raised when the signed payload's expiry timestamp has elapsed."""

    public_message = "Verification has expired. Please request a new verification link."


class SignatureInvalid(VerificationError):
    """Raised when the signer cannot be recovered or does not match."""

    public_message = "Invalid signature."


class NoQualifyingRules(VerificationError):
    """Raised when there are no rules to evaluate for the request."""

    public_message = "No verification rules are configured for this server."


class NoMatchingHoldings(VerificationError):
    """Raised when the wallet satisfies none of the evaluated rules."""

    public_message = "No matching assets found for this wallet."


class AssetQueryError(VerificationError):
    """Raised when the asset ownership index cannot be queried."""

    status_code = 502
    public_message = "Could not load wallet holdings. Please try again later."


class PersistenceFailure(VerificationError):
    """Raised when a ledger write fails for reasons other than a duplicate."""

    status_code = 500
    public_message = "Verification failed due to an internal error."


class RoleMutationFailure(RuntimeError):
    """A single grant or revoke call failed on the chat platform.

    Non-fatal: callers log it and move on to the next role.
    """

    def __init__(
        self,
        message: str,
        *,
        role_id: str | None = None,
        retry_after: float | None = None,
    ) -> None:
        super().__init__(message)
        self.role_id = role_id
        self.retry_after = retry_after

    @property
    def rate_limited(self) -> bool:
        return self.retry_after is not None


__all__ = [
    "AssetQueryError",
    "ExpiredChallenge",
    "InvalidNonce",
    "NoMatchingHoldings",
    "NoQualifyingRules",
    "PersistenceFailure",
    "RoleMutationFailure",
    "SignatureInvalid",
    "VerificationError",
]
