import pytest
from sqlalchemy.exc import OperationalError

from rolegate.core.errors import PersistenceFailure
from rolegate.models import RoleAssignment
from rolegate.models.role_assignment import (
    ASSIGNMENT_STATUS_ACTIVE,
    ASSIGNMENT_STATUS_EXPIRED,
    ASSIGNMENT_STATUS_REVOKED,
)
from rolegate.services.ledger import AssignmentLedger

ADDRESS = "0x" + "ab" * 20


def _upsert(ledger: AssignmentLedger, **overrides):
    values = {
        "user_id": "user-1",
        "server_id": "server-1",
        "role_id": "role-1",
        "address": ADDRESS.upper().replace("0X", "0x"),
        "rule_id": 1,
    }
    values.update(overrides)
    return ledger.upsert_active(**values)


def _active_rows(db_session):
    return (
        db_session.query(RoleAssignment)
        .filter(RoleAssignment.status == ASSIGNMENT_STATUS_ACTIVE)
        .all()
    )


def test_upsert_inserts_then_refreshes(db_session):
    ledger = AssignmentLedger(db_session)

    row, created = _upsert(ledger)
    again, created_again = _upsert(ledger)

    assert created is True
    assert created_again is False
    assert again.id == row.id
    assert row.address == ADDRESS
    assert len(_active_rows(db_session)) == 1


def test_concurrent_upsert_collision_is_success(db_session, mocker):
    ledger = AssignmentLedger(db_session)
    winner, _ = _upsert(ledger)

    # Simulate a racing writer that checked before the winner committed.
    real_find = ledger.find_active
    mocker.patch.object(ledger, "find_active", side_effect=[None, real_find("user-1", "role-1")])

    row, created = _upsert(ledger)

    assert created is False
    assert row.id == winner.id
    assert len(_active_rows(db_session)) == 1


def test_other_write_errors_surface_as_persistence_failure(db_session, mocker):
    ledger = AssignmentLedger(db_session)
    mocker.patch.object(
        db_session, "commit", side_effect=OperationalError("INSERT", {}, Exception("disk"))
    )

    with pytest.raises(PersistenceFailure):
        _upsert(ledger)


def test_expired_row_is_never_reactivated(db_session):
    ledger = AssignmentLedger(db_session)
    row, _ = _upsert(ledger)
    ledger.mark_expired(row.id)

    fresh, created = _upsert(ledger)

    assert created is True
    assert fresh.id != row.id
    assert db_session.get(RoleAssignment, row.id).status == ASSIGNMENT_STATUS_EXPIRED


def test_mark_revoked(db_session):
    ledger = AssignmentLedger(db_session)
    row, _ = _upsert(ledger)

    ledger.mark_revoked(row.id)

    assert db_session.get(RoleAssignment, row.id).status == ASSIGNMENT_STATUS_REVOKED
    assert ledger.find_active("user-1", "role-1") is None


def test_list_active_orders_by_last_checked_and_pages(db_session):
    ledger = AssignmentLedger(db_session)
    rows = [_upsert(ledger, user_id=f"user-{index}")[0] for index in range(5)]
    # Oldest check first: touch the first two so they move to the back.
    ledger.touch_checked(rows[0].id)
    ledger.touch_checked(rows[1].id)

    first_page = ledger.list_active(3)
    cursor = (first_page[-1].last_checked, first_page[-1].id)
    second_page = ledger.list_active(3, after=cursor)

    ordered = [row.user_id for row in first_page + second_page]
    assert ordered == ["user-2", "user-3", "user-4", "user-0", "user-1"]


def test_count_by_status(db_session):
    ledger = AssignmentLedger(db_session)
    first, _ = _upsert(ledger, role_id="role-1")
    _upsert(ledger, role_id="role-2")
    ledger.mark_expired(first.id)

    assert ledger.count_by_status() == {"active": 1, "expired": 1, "revoked": 0}


def test_latest_address(db_session):
    ledger = AssignmentLedger(db_session)
    _upsert(ledger, role_id="role-1", address="0x" + "11" * 20)
    _upsert(ledger, role_id="role-2", address="0x" + "22" * 20)

    assert ledger.latest_address("user-1") == "0x" + "22" * 20
    assert ledger.latest_address("nobody") is None


def test_list_users_for_server_includes_past_holders(db_session):
    ledger = AssignmentLedger(db_session)
    lapsed, _ = _upsert(ledger, user_id="user-b")
    _upsert(ledger, user_id="user-a", role_id="role-2")
    _upsert(ledger, user_id="user-a", role_id="role-3")
    _upsert(ledger, user_id="user-c", server_id="server-2")
    ledger.mark_expired(lapsed.id)

    assert ledger.list_users_for_server("server-1") == ["user-a", "user-b"]
    assert ledger.list_users_for_server("server-9") == []
