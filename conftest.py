import pytest
from fastapi.testclient import TestClient

from lending.api import app, get_engine
from lending.cli import EngineManager
from lending.engine import BorrowingEngine
from lending.models import Book, User
from lending.store import EntityStore
from lending.ui_helpers import OUTPUT_MODE_ENV


@pytest.fixture
def db_file(tmp_path, request):
    # Unique database file per test
    return str(tmp_path / f"test_{request.node.name}.db")


@pytest.fixture
def store(db_file):
    return EntityStore(db_file)


@pytest.fixture
def engine(store):
    return BorrowingEngine(store)


@pytest.fixture
def make_user(store):
    counter = {"n": 0}

    def _make(**overrides) -> User:
        counter["n"] += 1
        n = counter["n"]
        fields = {"username": f"user{n}", "email": f"user{n}@example.com", "full_name": f"User {n}"}
        fields.update(overrides)
        return store.create_user(User(**fields))

    return _make


@pytest.fixture
def make_book(store):
    counter = {"n": 0}

    def _make(**overrides) -> Book:
        counter["n"] += 1
        n = counter["n"]
        fields = {"isbn": f"978000000{n:04d}", "title": f"Book {n}", "author": "Test Author"}
        fields.update(overrides)
        return store.create_book(Book(**fields))

    return _make


@pytest.fixture
def user(make_user):
    return make_user()


@pytest.fixture
def book(make_book):
    return make_book(total_copies=2)


@pytest.fixture
def client(engine):
    app.dependency_overrides[get_engine] = lambda: engine
    try:
        with TestClient(app) as test_client:
            yield test_client
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def cli_db(db_file, monkeypatch):
    """Point the CLI at the per-test database and reset its cached engine."""
    monkeypatch.setenv("LENDING_DB_FILE", db_file)
    monkeypatch.setenv(OUTPUT_MODE_ENV, "plain")
    monkeypatch.setattr(EngineManager, "_instance", None)
    monkeypatch.setattr(EngineManager, "_db_file", None)
    return db_file
