import os
from datetime import datetime

# keep the app module off the on-disk database
os.environ.setdefault("DATABASE_URL", "sqlite://")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from vaultbox import models
from vaultbox.access_requests import AccessRequestStateMachine
from vaultbox.contacts import TrustedContactRegistry
from vaultbox.db import get_db, init_db
from vaultbox.main import app, get_notification_sink
from vaultbox.notifications import RecordingSink
from vaultbox.utils import sign_token

T0 = datetime(2024, 3, 1, 9, 0, 0)


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def machine(db, sink):
    return AccessRequestStateMachine(db, sink)


@pytest.fixture
def registry(db, sink):
    return TrustedContactRegistry(db, sink)


@pytest.fixture
def make_user(db):
    counter = {"n": 0}

    def _make(email=None, full_name="Olive Owner", **kwargs):
        counter["n"] += 1
        email = email or f"owner{counter['n']}@example.com"
        user = models.User(
            username=email.split("@")[0],
            email=email,
            full_name=full_name,
            **kwargs,
        )
        db.add(user)
        db.commit()
        db.refresh(user)
        return user

    return _make


@pytest.fixture
def make_contact(db):
    def _make(owner, email="carol@example.com", status="active", waiting_period="24 hours",
              inactivity_period="30 days", reset_at=T0, **kwargs):
        contact = models.TrustedContact(
            user_id=owner.id,
            name="Carol Contact",
            email=email,
            status=status,
            waiting_period=waiting_period,
            inactivity_period=inactivity_period,
            last_inactivity_reset_date=reset_at,
            **kwargs,
        )
        db.add(contact)
        db.commit()
        db.refresh(contact)
        return contact

    return _make


@pytest.fixture
def make_entry(db):
    def _make(owner, title, allow_emergency_access=False, content="bm90LXJlYWxseS1jaXBoZXJ0ZXh0"):
        entry = models.VaultEntry(
            user_id=owner.id,
            title=title,
            content=content,
            allow_emergency_access=allow_emergency_access,
        )
        db.add(entry)
        db.commit()
        db.refresh(entry)
        return entry

    return _make


@pytest.fixture
def client(session_factory, sink):
    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_notification_sink] = lambda: sink
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def auth_headers():
    def _headers(user):
        return {"Authorization": f"Bearer {sign_token({'sub': user.id})}"}

    return _headers
