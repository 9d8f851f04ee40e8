"""Client for the external asset ownership index."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Protocol

import httpx

from rolegate.core.errors import AssetQueryError
from rolegate.core.settings import settings
from rolegate.services.matching import Asset

logger = logging.getLogger(__name__)

HTTP_OK = 200
HTTP_NOT_FOUND = 404


class AssetSource(Protocol):
    """Anything that can list the assets held by a wallet address."""

    async def get_assets(self, address: str) -> list[Asset]: ...


@dataclass(frozen=True)
class AssetClientConfig:
    """Immutable configuration for the asset index client."""

    base_url: str
    api_key: str | None
    timeout_seconds: float


def load_asset_config() -> AssetClientConfig:
    """Build configuration object from global settings."""
    return AssetClientConfig(
        base_url=settings.asset_api_base_url,
        api_key=settings.asset_api_key,
        timeout_seconds=float(settings.asset_http_timeout_seconds),
    )


class AssetClient:
    """HTTP wrapper around ``GET /owners/{address}/assets``."""

    def __init__(
        self,
        config: AssetClientConfig | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.config = config or load_asset_config()
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self._client_lock = asyncio.Lock()

    async def _ensure_client(self) -> httpx.AsyncClient:
        async with self._client_lock:
            if self._client is None:
                headers = {"Accept": "application/json"}
                if self.config.api_key:
                    headers["Authorization"] = f"Bearer {self.config.api_key}"
                self._client = httpx.AsyncClient(
                    base_url=self.config.base_url,
                    timeout=httpx.Timeout(self.config.timeout_seconds),
                    headers=headers,
                    transport=self._transport,
                )
        return self._client

    async def get_assets(self, address: str) -> list[Asset]:
        """Return every asset currently owned by ``address``.

        Raises:
            AssetQueryError: The index is unreachable or answered with an error.
        """
        normalized = address.lower()
        client = await self._ensure_client()
        try:
            response = await client.get(f"/owners/{normalized}/assets")
        except httpx.HTTPError as exc:
            raise AssetQueryError(f"Asset index request failed: {exc}") from exc

        if response.status_code == HTTP_NOT_FOUND:
            return []
        if response.status_code != HTTP_OK:
            raise AssetQueryError(
                f"Asset index responded with {response.status_code} for {normalized}"
            )

        try:
            payload: Any = response.json()
        except ValueError as exc:
            raise AssetQueryError("Asset index returned invalid JSON") from exc

        records = payload.get("assets", []) if isinstance(payload, dict) else payload
        if not isinstance(records, list):
            raise AssetQueryError("Asset index returned an unexpected payload shape")

        assets = [Asset.from_payload(record) for record in records if isinstance(record, dict)]
        logger.debug("Loaded %d assets for %s", len(assets), normalized)
        return assets

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


class _AssetClientSingleton:
    _instance: AssetClient | None = None

    @classmethod
    def get_instance(cls) -> AssetClient:
        if cls._instance is None:
            cls._instance = AssetClient()
        return cls._instance


def get_asset_client() -> AssetClient:
    """Return the process-wide asset index client."""
    return _AssetClientSingleton.get_instance()
