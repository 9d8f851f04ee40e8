import httpx
import pytest

from rolegate.core.errors import AssetQueryError, RoleMutationFailure
from rolegate.services.assets import AssetClient, AssetClientConfig
from rolegate.services.matching import Asset
from rolegate.services.nonce import NonceContext
from rolegate.services.platform import PlatformConfig, RolePlatformClient

ADDRESS = "0x" + "AB" * 20


def _asset_client(handler) -> AssetClient:
    config = AssetClientConfig(base_url="http://assets.test", api_key="k", timeout_seconds=1.0)
    return AssetClient(config, transport=httpx.MockTransport(handler))


def _platform_client(handler) -> RolePlatformClient:
    config = PlatformConfig(base_url="http://platform.test", bot_token="t", timeout_seconds=1.0)
    return RolePlatformClient(config, transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
async def test_get_assets_parses_list_payload():
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(
            200,
            json=[
                {"slug": "apes", "attributes": {"Fur": "gold"}},
                {"slug": "cats", "values": {"Level": 2}},
            ],
        )

    client = _asset_client(handler)
    assets = await client.get_assets(ADDRESS)
    await client.close()

    assert assets == [Asset("apes", {"Fur": "gold"}), Asset("cats", {"Level": "2"})]
    assert seen[0].url.path == f"/owners/{ADDRESS.lower()}/assets"
    assert seen[0].headers["Authorization"] == "Bearer k"


@pytest.mark.asyncio
async def test_get_assets_accepts_wrapped_payload():
    client = _asset_client(lambda request: httpx.Response(200, json={"assets": [{"slug": "x"}]}))

    assert await client.get_assets(ADDRESS) == [Asset("x")]


@pytest.mark.asyncio
async def test_get_assets_not_found_is_empty():
    client = _asset_client(lambda request: httpx.Response(404))

    assert await client.get_assets(ADDRESS) == []


@pytest.mark.asyncio
async def test_get_assets_server_error_raises():
    client = _asset_client(lambda request: httpx.Response(503))

    with pytest.raises(AssetQueryError):
        await client.get_assets(ADDRESS)


@pytest.mark.asyncio
async def test_get_assets_transport_error_raises():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    client = _asset_client(handler)

    with pytest.raises(AssetQueryError):
        await client.get_assets(ADDRESS)


@pytest.mark.asyncio
async def test_grant_role_puts_member_role():
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(204)

    client = _platform_client(handler)
    await client.grant_role("user-1", "role-1", "server-1")

    assert seen[0].method == "PUT"
    assert seen[0].url.path == "/guilds/server-1/members/user-1/roles/role-1"
    assert seen[0].headers["Authorization"] == "Bot t"


@pytest.mark.asyncio
async def test_rate_limit_surfaces_retry_after():
    client = _platform_client(
        lambda request: httpx.Response(429, json={"retry_after": 2.5, "global": False})
    )

    with pytest.raises(RoleMutationFailure) as excinfo:
        await client.grant_role("user-1", "role-1", "server-1")

    assert excinfo.value.rate_limited
    assert excinfo.value.retry_after == 2.5
    assert excinfo.value.role_id == "role-1"


@pytest.mark.asyncio
async def test_revoke_of_missing_member_is_success():
    client = _platform_client(lambda request: httpx.Response(404))

    await client.revoke_role("user-1", "role-1", "server-1")


@pytest.mark.asyncio
async def test_revoke_forbidden_raises():
    client = _platform_client(lambda request: httpx.Response(403))

    with pytest.raises(RoleMutationFailure) as excinfo:
        await client.revoke_role("user-1", "role-1", "server-1")

    assert not excinfo.value.rate_limited


@pytest.mark.asyncio
async def test_show_notice_edits_prompt_and_swallows_errors():
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(500)

    client = _platform_client(handler)
    await client.show_notice(NonceContext(message_id="m-1", channel_id="c-1"), "done")
    await client.show_notice(NonceContext(), "skipped")

    assert len(seen) == 1
    assert seen[0].method == "PATCH"
    assert seen[0].url.path == "/channels/c-1/messages/m-1"
