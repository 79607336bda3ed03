"""
tests/conftest.py
"""
from __future__ import annotations

import datetime as _dt
from pathlib import Path
from typing import Generator

import pytest
from flask.testing import FlaskClient

# The single-file app lives here:
from skinnypoem import poem as poem_app
from skinnypoem.poem import app, get_db, init_db

UTC = _dt.timezone.utc


@pytest.fixture(scope="session")
def _tmp_db_path(tmp_path_factory: pytest.TempPathFactory) -> Path:
    """One temp file for the whole test session (faster than per-test)."""
    db_file = tmp_path_factory.mktemp("data") / "test.sqlite3"
    return db_file


@pytest.fixture(scope="session", autouse=True)
def _configure_app(_tmp_db_path: Path) -> None:
    """
    Configure the Flask app *once* before the first test is collected.
    """
    app.config.update(
        TESTING=True,
        DATABASE=str(_tmp_db_path),
        # rate limiting has its own test, which switches it back on
        RATE_LIMIT_ENABLED=False,
    )
    with app.app_context():
        init_db()


class Clock:
    """Settable stand-in for ``utc_now``; starts 2099-03-01 09:00 UTC."""

    def __init__(self) -> None:
        self.now = _dt.datetime(2099, 3, 1, 9, 0, tzinfo=UTC)

    def set(self, hour: int, minute: int = 0, *, day: int = 1) -> None:
        self.now = _dt.datetime(2099, 3, day, hour, minute, tzinfo=UTC)

    def __call__(self) -> _dt.datetime:
        return self.now


@pytest.fixture(autouse=True)
def clock(monkeypatch: pytest.MonkeyPatch) -> Clock:
    """Every test runs against a frozen clock it can move around."""
    fake = Clock()
    monkeypatch.setattr(poem_app, "utc_now", fake)
    return fake


@pytest.fixture(autouse=True)
def _empty_store() -> None:
    """Each test starts without poem state, poems or ballots."""
    with app.app_context():
        db = get_db()
        db.execute("DELETE FROM kv")
        db.execute("DELETE FROM settings")
        db.commit()


@pytest.fixture
def client() -> Generator[FlaskClient, None, None]:
    """
    Gives each test an isolated application context *and* test client.

    Yields:
        `flask.testing.FlaskClient`
    """
    with app.test_client() as client:
        with app.app_context():
            yield client


@pytest.fixture
def db(client):
    """The sqlite connection of the test's application context."""
    return get_db()
