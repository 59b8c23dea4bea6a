from __future__ import annotations

import os

# Settings are read at import time; keep tests off any real database and scheduler.
os.environ["DATABASE_URL"] = "sqlite:///:memory:"
os.environ["ENABLE_SCHEDULER"] = "false"
os.environ["CRON_SECRET"] = ""

from collections.abc import Callable, Generator
from datetime import datetime, timedelta
from typing import Optional

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.database import Base
from app.models import ApiCredential
from app.services.credentials import encrypt_token
from app.services.platforms import PlatformRegistry
from app.services.time_utils import utcnow
from tests.fakes import FakeRemote, make_registry


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture()
def remote() -> FakeRemote:
    return FakeRemote()


@pytest.fixture()
def registry(remote: FakeRemote) -> PlatformRegistry:
    return make_registry(remote)


@pytest.fixture()
def make_credential(db_session: Session) -> Callable[..., ApiCredential]:
    def _make(
        service: str = "gohighlevel",
        owner: str = "user-1",
        *,
        access_token: Optional[str] = "access-old",
        refresh_token: Optional[str] = "refresh-old",
        expires_at: Optional[datetime] = None,
        expires_in: Optional[int] = 3600,
        realm_id: Optional[str] = "loc-1",
        is_active: bool = True,
    ) -> ApiCredential:
        if expires_at is None and expires_in is not None:
            expires_at = utcnow() + timedelta(seconds=expires_in)
        cred = ApiCredential(
            service=service,
            user_id=owner,
            access_token=encrypt_token(access_token) if access_token else None,
            refresh_token=encrypt_token(refresh_token) if refresh_token else None,
            expires_at=expires_at,
            realm_id=realm_id,
            is_active=is_active,
        )
        db_session.add(cred)
        db_session.commit()
        db_session.refresh(cred)
        return cred

    return _make


@pytest.fixture()
def client(db_session: Session, registry: PlatformRegistry):
    from fastapi.testclient import TestClient

    from app.database import get_db
    from app.http.dependencies import get_platform_registry
    from main import app

    def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_platform_registry] = lambda: registry
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()
