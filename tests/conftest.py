"""Pytest configuration and fixtures."""

import os
import random
import tempfile
from datetime import date

os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("ADMIN_TOKEN", "test-admin-token")
os.environ.setdefault("UPLOAD_DIR", tempfile.mkdtemp(prefix="farmchain-uploads-"))

import pytest
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from werkzeug.security import generate_password_hash

from database import init_db, make_engine
from lifecycle import Role
from mockchain import ConfirmationEngine, ManualClock, TaskRegistry
from models import User

PASSWORD = "password123"


class ScriptedRandom(random.Random):
    """Random whose ``random()`` replays the given values; hashes stay random."""

    def __init__(self, values, seed=0):
        super().__init__(seed)
        self.values = list(values)

    def random(self):
        return self.values.pop(0)


@pytest.fixture
def db_engine():
    engine = make_engine("sqlite://", poolclass=StaticPool)
    init_db(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=db_engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def registry(clock) -> TaskRegistry:
    return TaskRegistry(clock)


@pytest.fixture
def chain(session_factory, registry) -> ConfirmationEngine:
    return ConfirmationEngine(session_factory, registry, rng=random.Random(1234))


@pytest.fixture
def make_user(db):
    """Factory creating users straight in the store."""
    counter = {"n": 0}

    def _make(role: Role, name: str = None) -> User:
        counter["n"] += 1
        user = User(
            name=name or f"{role.value.title()} {counter['n']}",
            email=f"{role.value.lower()}{counter['n']}@example.com",
            password_hash=generate_password_hash(PASSWORD),
            role=role.value,
        )
        db.add(user)
        db.commit()
        db.refresh(user)
        return user

    return _make


@pytest.fixture
def farmer(make_user):
    return make_user(Role.FARMER, "Maria Santos")


@pytest.fixture
def distributor(make_user):
    return make_user(Role.DISTRIBUTOR, "FreshRoute Logistics")


@pytest.fixture
def retailer(make_user):
    return make_user(Role.RETAILER, "Corner Market")


@pytest.fixture
def consumer(make_user):
    return make_user(Role.CONSUMER, "Alex")


@pytest.fixture
def client(session_factory, chain, tmp_path):
    from fastapi.testclient import TestClient

    from app import app, get_chain, get_storage
    from config import settings
    from database import get_db
    from storage import ImageStorage

    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    images = ImageStorage(str(tmp_path / "uploads"), 1024, settings.ALLOWED_IMAGE_EXTENSIONS)
    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_chain] = lambda: chain
    app.dependency_overrides[get_storage] = lambda: images
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def make_batch(db):
    """Factory creating batches through the normal creation path."""
    from batches import create_batch
    from schemas import CreateBatch

    def _make(owner: User, **overrides):
        data = dict(title="Organic Tomatoes", variety="Roma", quantity=100, unit="kg",
                    harvest_date=date(2025, 8, 15), location="Salinas")
        data.update(overrides)
        return create_batch(db, owner, CreateBatch(**data))

    return _make


@pytest.fixture
def batch(make_batch, farmer):
    return make_batch(farmer)
