# tests/conftest.py
from __future__ import annotations

import os
import time
from collections.abc import Generator, Iterator
from typing import Any
from unittest.mock import AsyncMock

import pytest
from eth_account import Account
from eth_account.messages import encode_typed_data
from eth_account.signers.local import LocalAccount
from fastapi import FastAPI
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("NONCE_BACKEND", "memory")
os.environ.setdefault("RECONCILE_ENABLED", "false")
os.environ.setdefault("AUTO_CREATE_TABLES", "false")

from rolegate.api.v1 import dependencies as api_dependencies
from rolegate.core.security import build_typed_data, create_service_token
from rolegate.db.session import Base
from rolegate.db.session import get_db as app_get_session
from rolegate.main import app as fastapi_app
from rolegate.models import VerifierRule
from rolegate.schemas.verification import VerificationData
from rolegate.services.assets import AssetClient
from rolegate.services.nonce import MemoryStateStore, NonceStore
from rolegate.services.platform import RolePlatformClient

TEST_DB_URL = "sqlite://"


class FakeClock:
    """Manually advanced wall clock."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture(scope="session")
def db_engine() -> Generator[Engine, None, None]:
    engine = create_engine(
        TEST_DB_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    try:
        yield engine
    finally:
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture()
def db_session(db_engine: Engine) -> Iterator[Session]:
    engine = db_engine
    SessionLocal = sessionmaker(
        bind=engine,
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,
    )
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()

        # Ensure each test sees a clean database even if commits occurred.
        with engine.begin() as cleanup_conn:
            for table in reversed(Base.metadata.sorted_tables):
                cleanup_conn.execute(table.delete())


@pytest.fixture(scope="session")
def app() -> FastAPI:
    return fastapi_app


@pytest.fixture(autouse=True)
def override_session_dependency(app: FastAPI, db_session: Session) -> Iterator[None]:
    def _get_session_override() -> Generator[Session, None, None]:
        yield db_session

    app.dependency_overrides[app_get_session] = _get_session_override
    try:
        yield
    finally:
        app.dependency_overrides.pop(app_get_session, None)


@pytest.fixture()
def nonce_store() -> NonceStore:
    return NonceStore(MemoryStateStore(), ttl_seconds=300)


@pytest.fixture()
def asset_source() -> AsyncMock:
    """Asset index double; set ``get_assets.return_value`` or ``side_effect``."""
    source = AsyncMock(spec=AssetClient)
    source.get_assets.return_value = []
    return source


@pytest.fixture()
def platform() -> AsyncMock:
    return AsyncMock(spec=RolePlatformClient)


@pytest.fixture()
def override_services(
    app: FastAPI,
    nonce_store: NonceStore,
    asset_source: AsyncMock,
    platform: AsyncMock,
) -> Iterator[None]:
    """Route the API's shared clients to test doubles."""
    overrides = {
        api_dependencies.get_nonce_store_dep: lambda: nonce_store,
        api_dependencies.get_asset_client_dep: lambda: asset_source,
        api_dependencies.get_platform_client_dep: lambda: platform,
    }
    app.dependency_overrides.update(overrides)
    try:
        yield
    finally:
        for dependency in overrides:
            app.dependency_overrides.pop(dependency, None)


@pytest.fixture()
def client(app: FastAPI, override_services: None) -> Iterator[TestClient]:
    with TestClient(app, base_url="http://test") as test_client:
        yield test_client


@pytest.fixture()
def service_headers() -> dict[str, str]:
    """Return authorization headers for the chat bot service."""
    return {"Authorization": f"Bearer {create_service_token('test-bot')}"}


@pytest.fixture()
def wallet() -> LocalAccount:
    return Account.create()


def make_rule(db: Session, **overrides: Any) -> VerifierRule:
    """Persist a rule with wildcard criteria unless overridden."""
    values: dict[str, Any] = {
        "server_id": "server-1",
        "server_name": "Test Server",
        "channel_id": None,
        "slug": "ALL",
        "attribute_key": "ALL",
        "attribute_value": "ALL",
        "min_items": 1,
        "role_id": "role-1",
        "role_name": "Holder",
    }
    values.update(overrides)
    rule = VerifierRule(**values)
    db.add(rule)
    db.commit()
    db.refresh(rule)
    return rule


def make_payload(
    account: LocalAccount,
    nonce: str,
    *,
    user_id: str = "user-1",
    server_id: str = "server-1",
    expiry: int | None = None,
) -> VerificationData:
    return VerificationData(
        user_id=user_id,
        user_tag="tester#0001",
        server_id=server_id,
        server_name="Test Server",
        nonce=nonce,
        expiry=expiry if expiry is not None else int(time.time()) + 600,
        address=account.address,
    )


def sign_payload(account: LocalAccount, payload: VerificationData) -> str:
    """Sign the EIP-712 challenge exactly as a wallet frontend would."""
    signable = encode_typed_data(full_message=build_typed_data(payload.typed_message()))
    signed = account.sign_message(signable)
    return "0x" + bytes(signed.signature).hex()
