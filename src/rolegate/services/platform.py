"""Chat platform REST client used to grant and revoke member roles.

The platform rate-limits role mutations per route. Every failure, including a
429, surfaces as ``RoleMutationFailure`` so callers can isolate it per role and
try again on a later pass instead of retrying inline.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Protocol

import httpx

from rolegate.core.errors import RoleMutationFailure
from rolegate.core.settings import settings
from rolegate.services.nonce import NonceContext

logger = logging.getLogger(__name__)

HTTP_NOT_FOUND = 404
HTTP_TOO_MANY_REQUESTS = 429
HTTP_BAD_REQUEST = 400


class RolePlatform(Protocol):
    """Role mutation and prompt notification capabilities of the chat platform."""

    async def grant_role(self, user_id: str, role_id: str, server_id: str) -> None: ...

    async def revoke_role(self, user_id: str, role_id: str, server_id: str) -> None: ...

    async def show_notice(self, context: NonceContext, content: str) -> None: ...


@dataclass(frozen=True)
class PlatformConfig:
    """Immutable configuration for platform operations."""

    base_url: str
    bot_token: str | None
    timeout_seconds: float


def load_platform_config() -> PlatformConfig:
    """Build configuration object from global settings."""
    return PlatformConfig(
        base_url=settings.platform_api_base_url,
        bot_token=settings.platform_bot_token,
        timeout_seconds=float(settings.platform_http_timeout_seconds),
    )


class RolePlatformClient:
    """HTTP client wrapper for the chat platform's member-role endpoints."""

    def __init__(
        self,
        config: PlatformConfig | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.config = config or load_platform_config()
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self._client_lock = asyncio.Lock()

    async def _ensure_client(self) -> httpx.AsyncClient:
        async with self._client_lock:
            if self._client is None:
                headers = {"Content-Type": "application/json"}
                if self.config.bot_token:
                    headers["Authorization"] = f"Bot {self.config.bot_token}"
                self._client = httpx.AsyncClient(
                    base_url=self.config.base_url,
                    timeout=httpx.Timeout(self.config.timeout_seconds),
                    headers=headers,
                    transport=self._transport,
                )
        return self._client

    @dataclass
    class RequestParams:
        """Parameters for HTTP requests."""

        method: str
        path: str
        json_data: Any | None = None
        reason: str | None = None

    async def _request(self, params: RequestParams) -> httpx.Response:
        client = await self._ensure_client()
        headers: dict[str, str] = {}
        if params.reason:
            headers["X-Audit-Log-Reason"] = params.reason
        try:
            return await client.request(
                params.method,
                params.path,
                json=params.json_data,
                headers=headers,
            )
        except httpx.HTTPError as exc:
            raise RoleMutationFailure(f"Platform request failed: {exc}") from exc

    @staticmethod
    def _retry_after(response: httpx.Response) -> float:
        header = response.headers.get("Retry-After")
        if header:
            try:
                return float(header)
            except ValueError:
                pass
        try:
            return float(response.json().get("retry_after", 1.0))
        except (ValueError, AttributeError):
            return 1.0

    def _raise_for_mutation(self, response: httpx.Response, action: str, role_id: str) -> None:
        if response.status_code == HTTP_TOO_MANY_REQUESTS:
            retry_after = self._retry_after(response)
            raise RoleMutationFailure(
                f"Rate limited while trying to {action} role {role_id}",
                role_id=role_id,
                retry_after=retry_after,
            )
        if response.status_code >= HTTP_BAD_REQUEST:
            raise RoleMutationFailure(
                f"Platform responded with {response.status_code} to {action} role {role_id}",
                role_id=role_id,
            )

    async def grant_role(self, user_id: str, role_id: str, server_id: str) -> None:
        """Add ``role_id`` to the member. Idempotent on the platform side."""
        response = await self._request(
            self.RequestParams(
                method="PUT",
                path=f"/guilds/{server_id}/members/{user_id}/roles/{role_id}",
                reason="Wallet verification: holdings meet criteria",
            )
        )
        self._raise_for_mutation(response, "grant", role_id)
        logger.info("Granted role %s to user %s in server %s", role_id, user_id, server_id)

    async def revoke_role(self, user_id: str, role_id: str, server_id: str) -> None:
        """Remove ``role_id`` from the member. A member who already left counts as done."""
        response = await self._request(
            self.RequestParams(
                method="DELETE",
                path=f"/guilds/{server_id}/members/{user_id}/roles/{role_id}",
                reason="Wallet verification: holdings no longer meet criteria",
            )
        )
        if response.status_code == HTTP_NOT_FOUND:
            logger.info("Member %s or role %s gone from server %s", user_id, role_id, server_id)
            return
        self._raise_for_mutation(response, "revoke", role_id)
        logger.info("Revoked role %s from user %s in server %s", role_id, user_id, server_id)

    async def show_notice(self, context: NonceContext, content: str) -> None:
        """Replace the pending verification prompt with ``content``.

        Delivery is best effort; failures are logged and swallowed.
        """
        if not context.routable:
            return
        try:
            response = await self._request(
                self.RequestParams(
                    method="PATCH",
                    path=f"/channels/{context.channel_id}/messages/{context.message_id}",
                    json_data={"content": content, "embeds": [], "components": []},
                )
            )
        except RoleMutationFailure as exc:
            logger.warning("Could not update verification prompt: %s", exc)
            return
        if response.status_code >= HTTP_BAD_REQUEST:
            logger.warning(
                "Platform responded with %s when updating prompt %s",
                response.status_code,
                context.message_id,
            )

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


class _PlatformClientSingleton:
    _instance: RolePlatformClient | None = None

    @classmethod
    def get_instance(cls) -> RolePlatformClient:
        if cls._instance is None:
            cls._instance = RolePlatformClient()
        return cls._instance


def get_platform_client() -> RolePlatformClient:
    """Return the process-wide platform client."""
    return _PlatformClientSingleton.get_instance()
