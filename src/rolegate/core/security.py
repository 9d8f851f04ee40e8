"""EIP-712 typed-data helpers built on eth-account."""
from __future__ import annotations

from collections.abc import Mapping
from datetime import UTC, datetime, timedelta
from typing import Any

from eth_account import Account
from eth_account.messages import encode_typed_data
from jose import jwt

from rolegate.core.settings import settings

PRIMARY_TYPE = "Verification"

VERIFICATION_TYPES: dict[str, list[dict[str, str]]] = {
    "EIP712Domain": [
        {"name": "name", "type": "string"},
        {"name": "version", "type": "string"},
        {"name": "chainId", "type": "uint256"},
    ],
    PRIMARY_TYPE: [
        {"name": "UserID", "type": "string"},
        {"name": "UserTag", "type": "string"},
        {"name": "ServerID", "type": "string"},
        {"name": "ServerName", "type": "string"},
        {"name": "Nonce", "type": "string"},
        {"name": "Expiry", "type": "uint256"},
    ],
}


def build_typed_data(
    message: Mapping[str, Any],
    domain: Mapping[str, Any] | None = None,
) -> dict[str, Any]:
    """Assemble the full EIP-712 structure for a verification message."""
    return {
        "types": VERIFICATION_TYPES,
        "primaryType": PRIMARY_TYPE,
        "domain": dict(domain if domain is not None else settings.typed_data_domain),
        "message": dict(message),
    }


def recover_typed_data_address(typed_data: Mapping[str, Any], signature_hex: str) -> str:
    """Recover the checksummed signer address of an EIP-712 signature.

    Raises:
        ValueError: If the signature or structure cannot be decoded.
    """
    signature = signature_hex if signature_hex.startswith("0x") else f"0x{signature_hex}"
    signable = encode_typed_data(full_message=dict(typed_data))
    return Account.recover_message(signable, signature=signature)


def create_service_token(subject: str, ttl: timedelta = timedelta(minutes=5)) -> str:
    """Mint a short-lived bearer token for admin/bot callers."""
    now = datetime.now(UTC)
    claims: dict[str, object] = {
        "sub": subject,
        "aud": settings.service_token_audience,
        "iat": now,
        "exp": now + ttl,
    }
    token: str = jwt.encode(claims, settings.secret_key, algorithm=settings.jwt_algorithm)
    return token
