"""Pytest fixtures: file-backed SQLite DB, user, token store, API client."""
import os
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("ENCRYPTION_KEY", "00112233445566778899aabbccddeeff00112233445566778899aabbccddeeff")
os.environ.setdefault("SECRET_KEY", "test-secret")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from jobsync.auth import get_current_user_id
from jobsync.crypto import SecretBox
from jobsync.database import get_sync_db
from jobsync.main import app
from jobsync.models import Base, User
from jobsync.token_store import TokenStore

TEST_KEY = bytes(range(32))


@pytest.fixture
def db_url(tmp_path):
    """File-based sqlite so sessions on different connections see the same data."""
    return f"sqlite:///{tmp_path / 'test.db'}"


@pytest.fixture
def db_engine(db_url):
    engine = create_engine(db_url, connect_args={"check_same_thread": False}, poolclass=StaticPool)
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=db_engine)


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def user(db_session):
    u = User(email="alice@example.com", name="Alice")
    db_session.add(u)
    db_session.commit()
    return u


@pytest.fixture
def box():
    return SecretBox(TEST_KEY)


@pytest.fixture
def token_store(box):
    return TokenStore(box)


@pytest.fixture
def client(session_factory, user):
    user_id = user.id

    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_sync_db] = override_get_db
    app.dependency_overrides[get_current_user_id] = lambda: user_id
    try:
        with TestClient(app) as c:
            yield c
    finally:
        app.dependency_overrides.clear()
