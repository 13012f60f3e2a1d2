"""
tests/conftest.py
"""
from __future__ import annotations

import datetime as _dt
import itertools
import os
from pathlib import Path
from typing import Generator

import pytest
from flask.testing import FlaskClient
from pytest import MonkeyPatch

os.environ.setdefault("SECRET_KEY", "test-secret-key")

from quillpress.blog import app, init_db  # noqa: E402
from quillpress.store import MemoryStore, SQLiteStore  # noqa: E402

FAST_HASH = "pbkdf2:sha256:1000"
PASSWORD = "password1"

_names = itertools.count(1)


def unique_name(prefix: str = "user") -> str:
    """The DB lives for the whole session – every test gets fresh usernames."""
    return f"{prefix}{next(_names)}"


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
        STORE_BACKEND="sqlite",
        PASSWORD_HASH_METHOD=FAST_HASH,
    )
    with app.app_context():
        init_db()


@pytest.fixture
def client() -> Generator[FlaskClient, None, None]:
    with app.test_client() as client:
        with app.app_context():
            yield client


@pytest.fixture(autouse=True, scope="session")
def _fast_clock():
    """
    Patch quillpress.auth.utc_now for the whole session so every new post
    (and session) gets a strictly later timestamp.
    """
    from quillpress import auth

    counter = itertools.count()
    base = _dt.datetime(2099, 1, 1, tzinfo=_dt.timezone.utc)

    def _fake_now():
        return base + _dt.timedelta(seconds=next(counter))

    mp = MonkeyPatch()
    mp.setattr(auth, "utc_now", _fake_now)
    yield
    mp.undo()


@pytest.fixture(params=["sqlite", "memory"])
def store(request, tmp_path: Path):
    """A fresh store per test, once per backend."""
    if request.param == "sqlite":
        s = SQLiteStore(str(tmp_path / "core.sqlite3"))
        s.init_schema()
    else:
        s = MemoryStore()
    yield s
    s.close()


# ───────────────────────── HTTP helpers ────────────────────────────────
def register(client: FlaskClient, username: str, password: str = PASSWORD, **kw):
    return client.post(
        "/register", data={"username": username, "password": password}, **kw
    )


def login(client: FlaskClient, username: str, password: str = PASSWORD, **kw):
    return client.post(
        "/login", data={"username": username, "password": password}, **kw
    )


def signed_in(client: FlaskClient, prefix: str = "user") -> str:
    """Register + log in a brand-new account on *client*, return its name."""
    name = unique_name(prefix)
    assert register(client, name).status_code == 302
    assert login(client, name).status_code == 302
    return name
