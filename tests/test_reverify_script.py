# tests/test_reverify_script.py
import json
from unittest.mock import AsyncMock

import pytest

from rolegate.scripts import reverify
from rolegate.services.reconciler import ServerReverifyReport


def test_user_requires_server():
    with pytest.raises(SystemExit):
        reverify.main(["--user", "user-1"])


def test_prints_report_as_json(mocker, capsys):
    mocker.patch.object(
        reverify,
        "run",
        new=AsyncMock(return_value={"checked": 2, "still_valid": 1, "expired": 1, "errors": 0}),
    )

    assert reverify.main([]) == 0

    assert json.loads(capsys.readouterr().out)["expired"] == 1


def test_failure_exits_non_zero(mocker, capsys):
    mocker.patch.object(reverify, "run", new=AsyncMock(side_effect=RuntimeError("no db")))

    assert reverify.main(["--rule", "3"]) == 1
    assert "no db" in capsys.readouterr().err


def test_server_alone_reverifies_every_user(mocker, capsys):
    mocker.patch.object(reverify, "SessionLocal")
    mocker.patch.object(reverify, "get_asset_client", return_value=AsyncMock())
    mocker.patch.object(reverify, "get_platform_client", return_value=AsyncMock())
    reconciler_cls = mocker.patch.object(reverify, "RoleReconciler")
    reconciler = reconciler_cls.return_value
    reconciler.reverify_server = AsyncMock(
        return_value=ServerReverifyReport(users_processed=2, total_verified=1)
    )

    assert reverify.main(["--server", "server-1"]) == 0

    reconciler.reverify_server.assert_awaited_once_with("server-1")
    assert json.loads(capsys.readouterr().out)["users_processed"] == 2
