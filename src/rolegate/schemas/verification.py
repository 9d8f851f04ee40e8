"""Verification-related Pydantic schemas.

Wire payloads use camelCase keys to match the wallet frontend and the chat bot.
"""

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

_ADDRESS_HEX_LENGTH = 42


class CamelModel(BaseModel):
    """Base model serialising to camelCase while accepting snake_case input."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class VerificationData(CamelModel):
    """Challenge fields the user signed, plus the address they claim to control."""

    user_id: str = Field(..., min_length=1, description="Chat platform user ID")
    user_tag: str = Field("", description="Display tag shown in the signing prompt")
    # Older wallet frontends send the guild as discordId/discordName.
    server_id: str = Field(
        ...,
        min_length=1,
        validation_alias=AliasChoices("serverId", "discordId", "server_id"),
        description="Chat server (guild) ID",
    )
    server_name: str = Field(
        "",
        validation_alias=AliasChoices("serverName", "discordName", "server_name"),
        description="Server name shown in the signing prompt",
    )
    nonce: str = Field(..., min_length=1, description="Challenge nonce issued for this user")
    expiry: int = Field(..., ge=0, description="Unix timestamp after which the challenge is void")
    address: str = Field(..., description="0x-prefixed wallet address")
    channel_id: str | None = Field(None, description="Channel the verification was started in")
    avatar: str | None = Field(None, description="Optional user avatar URL")
    server_icon: str | None = Field(None, description="Optional server icon URL")

    @field_validator("address")
    @classmethod
    def validate_address(cls, v: str) -> str:
        """Require a 0x-prefixed 20-byte hex address."""
        if len(v) != _ADDRESS_HEX_LENGTH or not v.startswith("0x"):
            raise ValueError("Address must be a 0x-prefixed 20-byte hex string")
        try:
            bytes.fromhex(v[2:])
        except ValueError as err:
            raise ValueError("Address must be hex encoded") from err
        return v

    def typed_message(self) -> dict[str, object]:
        """Return the EIP-712 message fields in signing order."""
        return {
            "UserID": self.user_id,
            "UserTag": self.user_tag,
            "ServerID": self.server_id,
            "ServerName": self.server_name,
            "Nonce": self.nonce,
            "Expiry": self.expiry,
        }


class VerifySignatureRequest(CamelModel):
    """Body of the single verification entry point."""

    data: VerificationData
    signature: str = Field(..., min_length=2, description="Hex-encoded EIP-712 signature")


class VerifySignatureResponse(CamelModel):
    """Successful verification outcome."""

    message: str
    address: str
    assigned_roles: list[str] = Field(default_factory=list)


class ChallengeRequest(CamelModel):
    """Request from the chat bot to open a verification challenge."""

    user_id: str = Field(..., min_length=1)
    message_id: str | None = None
    channel_id: str | None = None


class ChallengeResponse(CamelModel):
    """Challenge material handed to the wallet frontend."""

    nonce: str
    expires_in: int = Field(..., description="Seconds until the nonce expires")


class BulkVerifyRequest(CamelModel):
    """Evaluate a user's wallet against an explicit set of rules."""

    user_id: str = Field(..., min_length=1)
    rule_ids: list[int] = Field(default_factory=list)
    address: str
    channel_id: str | None = None


class RuleResultResponse(CamelModel):
    rule_id: int
    is_valid: bool
    matching_asset_count: int


class RoleGrantResponse(CamelModel):
    rule_id: int
    role_id: str
    newly_granted: bool


class BulkVerifyResponse(CamelModel):
    """Per-rule outcome of a bulk verification pass."""

    user_id: str
    address: str
    valid_rules: list[int]
    invalid_rules: list[int]
    matching_asset_counts: dict[str, int]
    results: list[RuleResultResponse]
    granted: list[RoleGrantResponse]
    failed_roles: list[str]


class ReverifyRequest(CamelModel):
    user_id: str = Field(..., min_length=1)
    server_id: str = Field(..., min_length=1)


class ReverifyResponse(CamelModel):
    verified: list[str]
    revoked: list[str]
    errors: list[str]


class SweepResponse(CamelModel):
    checked: int
    still_valid: int
    expired: int
    errors: int


class ServerReverifyRequest(CamelModel):
    server_id: str = Field(..., min_length=1)


class ServerReverifyResponse(CamelModel):
    """Totals from re-verifying every user known in one server."""

    users_processed: int
    total_verified: int
    total_revoked: int
    errors: list[str]
