import pytest

from rolegate.core.errors import (
    AssetQueryError,
    NoMatchingHoldings,
    NoQualifyingRules,
    RoleMutationFailure,
)
from rolegate.models import RoleAssignment
from rolegate.services.matching import Asset
from rolegate.services.verification import VerificationEngine
from tests.conftest import make_rule

ADDRESS = "0x" + "cd" * 20


@pytest.fixture
def engine(db_session, asset_source, platform):
    return VerificationEngine(db_session, asset_source, platform)


@pytest.mark.asyncio
async def test_bulk_reports_two_of_three_rules(db_session, engine, asset_source, platform):
    apes = make_rule(db_session, slug="apes", role_id="role-apes")
    gold = make_rule(
        db_session,
        slug="apes",
        attribute_key="Fur",
        attribute_value="gold",
        role_id="role-gold",
    )
    cats = make_rule(db_session, slug="cats", role_id="role-cats")
    asset_source.get_assets.return_value = [
        Asset("apes", {"Fur": "Gold"}),
        Asset("apes", {"Fur": "brown"}),
    ]

    result = await engine.verify_user_bulk("user-1", [apes.id, gold.id, cats.id], ADDRESS)

    assert len(result.valid_rules) == 2
    assert set(result.valid_rules) == {apes.id, gold.id}
    assert result.invalid_rules == [cats.id]
    assert result.matching_asset_counts == {apes.id: 2, gold.id: 1, cats.id: 0}
    asset_source.get_assets.assert_awaited_once_with(ADDRESS)
    assert platform.grant_role.await_count == 2
    assert {grant.role_id for grant in result.newly_granted} == {"role-apes", "role-gold"}


@pytest.mark.asyncio
async def test_unknown_rule_ids_are_ignored(db_session, engine, asset_source):
    rule = make_rule(db_session)
    asset_source.get_assets.return_value = [Asset("apes")]

    result = await engine.verify_user_bulk("user-1", [rule.id, 9999], ADDRESS)

    assert result.valid_rules == [rule.id]
    assert 9999 not in result.matching_asset_counts


@pytest.mark.asyncio
async def test_no_rules_skips_asset_lookup(engine, asset_source):
    result = await engine.verify_user_bulk("user-1", [1, 2], ADDRESS)

    asset_source.get_assets.assert_not_awaited()
    with pytest.raises(NoQualifyingRules):
        result.raise_if_unqualified()


@pytest.mark.asyncio
async def test_no_matching_holdings(db_session, engine, asset_source, platform):
    rule = make_rule(db_session, slug="apes")
    asset_source.get_assets.return_value = [Asset("cats")]

    result = await engine.verify_user_bulk("user-1", [rule.id], ADDRESS)

    platform.grant_role.assert_not_awaited()
    with pytest.raises(NoMatchingHoldings):
        result.raise_if_unqualified()


@pytest.mark.asyncio
async def test_grant_failure_does_not_abort_siblings(db_session, engine, asset_source, platform):
    first = make_rule(db_session, role_id="role-1")
    second = make_rule(db_session, role_id="role-2")
    asset_source.get_assets.return_value = [Asset("apes")]

    async def grant(user_id, role_id, server_id):
        if role_id == "role-1":
            raise RoleMutationFailure("rate limited", role_id=role_id, retry_after=2.0)

    platform.grant_role.side_effect = grant

    result = await engine.verify_user_bulk("user-1", [first.id, second.id], ADDRESS)

    assert [failure.role_id for failure in result.failures] == ["role-1"]
    assert [grant.role_id for grant in result.granted] == ["role-2"]
    rows = db_session.query(RoleAssignment).all()
    assert [row.role_id for row in rows] == ["role-2"]


@pytest.mark.asyncio
async def test_role_shared_by_rules_is_granted_once(db_session, engine, asset_source, platform):
    first = make_rule(db_session, slug="apes", role_id="role-1")
    second = make_rule(db_session, slug="ALL", role_id="role-1")
    asset_source.get_assets.return_value = [Asset("apes")]

    result = await engine.verify_user_bulk("user-1", [first.id, second.id], ADDRESS)

    assert result.valid_rules == [first.id, second.id]
    platform.grant_role.assert_awaited_once_with("user-1", "role-1", "server-1")


@pytest.mark.asyncio
async def test_second_verification_reports_existing(db_session, engine, asset_source):
    rule = make_rule(db_session)
    asset_source.get_assets.return_value = [Asset("apes")]

    await engine.verify_user_bulk("user-1", [rule.id], ADDRESS)
    result = await engine.verify_user_bulk("user-1", [rule.id], ADDRESS)

    assert result.newly_granted == []
    assert [grant.role_id for grant in result.already_held] == ["role-1"]


@pytest.mark.asyncio
async def test_channel_scope(db_session, engine, asset_source):
    scoped = make_rule(db_session, channel_id="chan-1", role_id="role-1")
    asset_source.get_assets.return_value = [Asset("apes")]

    elsewhere = await engine.verify_user_bulk(
        "user-1", [scoped.id], ADDRESS, channel_id="chan-2"
    )
    unscoped_call = await engine.verify_user_bulk("user-1", [scoped.id], ADDRESS)

    assert elsewhere.valid_rules == []
    assert unscoped_call.valid_rules == [scoped.id]


@pytest.mark.asyncio
async def test_asset_query_error_propagates(db_session, engine, asset_source):
    rule = make_rule(db_session)
    asset_source.get_assets.side_effect = AssetQueryError("index down")

    with pytest.raises(AssetQueryError):
        await engine.verify_user_bulk("user-1", [rule.id], ADDRESS)


@pytest.mark.asyncio
async def test_verify_user_for_server_uses_server_rules(db_session, engine, asset_source):
    mine = make_rule(db_session, server_id="server-1", role_id="role-1")
    make_rule(db_session, server_id="server-2", role_id="role-2")
    asset_source.get_assets.return_value = [Asset("apes")]

    result = await engine.verify_user_for_server("user-1", "server-1", ADDRESS)

    assert result.valid_rules == [mine.id]
