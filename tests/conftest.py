"""
tests/conftest.py
"""
from __future__ import annotations

import datetime as _dt
import itertools
from pathlib import Path
from typing import Generator

import pytest
from flask.testing import FlaskClient
from pytest import MonkeyPatch

# The single-file app lives here:
from linkbio.bio import (
    SESSION_COOKIE_NAME,
    app,
    create_session_token,
    get_db,
    hash_password,
    init_db,
)

PASSWORD = "correct horse battery staple"
PASSWORD_HASH = hash_password(PASSWORD, salt="test-salt")


@pytest.fixture(scope="session")
def _tmp_db_path(tmp_path_factory: pytest.TempPathFactory) -> Path:
    """One temp file for the whole test session (faster than per-test)."""
    return tmp_path_factory.mktemp("data") / "test.sqlite3"


@pytest.fixture(scope="session", autouse=True)
def _configure_app(_tmp_db_path: Path) -> None:
    """
    Configure the Flask app *once* before the first test is collected.
    """
    app.config.update(
        TESTING=True,
        DATABASE=str(_tmp_db_path),
        DEV_MODE=False,
        ADMIN_PASSWORD_HASH=PASSWORD_HASH,
        SESSION_COOKIE_SECURE=False,   # the test client speaks plain http
        LOGIN_MAX_ATTEMPTS=5,
        LOGIN_WINDOW_MINUTES=15,
        LOGIN_LOCKOUT_MINUTES=30,
    )
    with app.app_context():
        init_db()


@pytest.fixture(autouse=True)
def _clean_tables() -> None:
    """Every test starts from empty tables."""
    with app.app_context():
        db = get_db()
        with db:
            for table in ("links", "sections", "settings", "login_attempts"):
                db.execute(f"DELETE FROM {table}")


@pytest.fixture
def client() -> Generator[FlaskClient, None, None]:
    """
    Gives each test an isolated application context *and* test client.
    """
    with app.test_client() as client:
        with app.app_context():
            yield client


@pytest.fixture
def admin(client: FlaskClient) -> FlaskClient:
    """The same client, carrying a valid admin session cookie."""
    client.set_cookie(SESSION_COOKIE_NAME, create_session_token(PASSWORD_HASH))
    return client


@pytest.fixture(autouse=True, scope="session")
def _ticking_clock():
    """
    Patch linkbio.bio.utc_now for the whole session so every call returns
    an ever-increasing timestamp.
    """
    from linkbio import bio  # import here to avoid early import

    counter = itertools.count()

    base = _dt.datetime(2099, 1, 1, tzinfo=_dt.timezone.utc)
    def _fake_now():
        return base + _dt.timedelta(seconds=next(counter))

    mp = MonkeyPatch()
    mp.setattr(bio, "utc_now", _fake_now)

    yield

    mp.undo()
