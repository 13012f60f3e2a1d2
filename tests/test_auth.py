"""
tests/test_auth.py
"""
from __future__ import annotations

import logging
from datetime import timedelta

import pytest
from conftest import FAST_HASH, PASSWORD, login, register, signed_in, unique_name

from quillpress import auth
from quillpress.blog import app, get_store
from quillpress.store import SQLiteSessionStore, StoreError, token_digest


def _register(store, name="alice", password=PASSWORD):
    return auth.register(store.users, name, password, method=FAST_HASH)


# ───────────────────────── credential verifier ────────────────────────
def test_verify_correct_password(store):
    alice = _register(store)
    ident = auth.verify(store.users, "alice", PASSWORD, method=FAST_HASH)
    assert ident == alice
    assert ident.username == "alice"


def test_verify_wrong_password(store):
    _register(store)
    with pytest.raises(auth.IncorrectPassword):
        auth.verify(store.users, "alice", "not-the-password", method=FAST_HASH)


def test_verify_unknown_username(store):
    with pytest.raises(auth.IncorrectUsername):
        auth.verify(store.users, "nobody", PASSWORD, method=FAST_HASH)


def test_both_failures_share_public_message():
    assert issubclass(auth.IncorrectUsername, auth.AuthError)
    assert issubclass(auth.IncorrectPassword, auth.AuthError)
    assert auth.IncorrectUsername.public_message == auth.IncorrectPassword.public_message


def test_hash_is_salted_and_never_the_password(store):
    _register(store, "alice")
    _register(store, "carol")
    a = store.users.find_by_username("alice")
    c = store.users.find_by_username("carol")
    assert PASSWORD not in a.password_hash
    assert a.password_hash != c.password_hash
    assert "password_hash" not in repr(a)


def test_identity_carries_no_secret(store):
    ident = _register(store)
    assert set(vars(ident)) == {"id", "username"}


@pytest.mark.parametrize(
    "username,password,expected",
    [
        ("ab", "password1", ["Username must be at least 3 characters long."]),
        ("  ab  ", "password1", ["Username must be at least 3 characters long."]),
        ("alice", "pass", ["Password must be at least 6 characters long."]),
        ("", "", ["Username is required.", "Password is required."]),
        (
            "ab",
            "pass",
            [
                "Username must be at least 3 characters long.",
                "Password must be at least 6 characters long.",
            ],
        ),
        ("abc", "123456", []),
    ],
)
def test_validate_registration(username, password, expected):
    assert auth.validate_registration(username, password) == expected


def test_register_rejects_invalid_input(store):
    with pytest.raises(auth.ValidationError) as exc:
        auth.register(store.users, "ab", "pass", method=FAST_HASH)
    assert len(exc.value.errors) == 2
    assert store.users.find_by_username("ab") is None


def test_register_duplicate_after_trim_conflicts(store):
    first = _register(store, "alice")
    with pytest.raises(auth.Conflict):
        _register(store, "  alice ", "another-password")
    # first account untouched
    assert auth.verify(store.users, "alice", PASSWORD, method=FAST_HASH) == first


def test_register_stores_trimmed_username(store):
    ident = _register(store, "  dave  ")
    assert ident.username == "dave"
    assert store.users.find_by_username("dave") is not None


# ───────────────────────── session binder ─────────────────────────────
def test_bind_resolve_round_trip(store):
    alice = _register(store)
    token = auth.bind(store.sessions, alice, max_age=60)
    assert auth.resolve(store.sessions, store.users, token) == alice
    assert auth.is_authenticated(store.sessions, store.users, token)


def test_bind_stores_only_the_user_key(store):
    alice = _register(store)
    token = auth.bind(store.sessions, alice, max_age=60)
    row = store.sessions.find(token)
    assert row.user_id == alice.id
    assert set(vars(row)) == {"user_id", "expires_at"}


@pytest.mark.parametrize("token", [None, "", "no-such-token"])
def test_resolve_unknown_token(store, token):
    assert auth.resolve(store.sessions, store.users, token) is None
    assert not auth.is_authenticated(store.sessions, store.users, token)


def test_unbind_invalidates_the_same_token(store):
    alice = _register(store)
    token = auth.bind(store.sessions, alice, max_age=60)
    auth.unbind(store.sessions, token)
    assert auth.resolve(store.sessions, store.users, token) is None
    # second logout is harmless
    auth.unbind(store.sessions, token)


def test_expired_session_resolves_to_none(store, monkeypatch):
    alice = _register(store)
    token = auth.bind(store.sessions, alice, max_age=60)
    later = auth.utc_now() + timedelta(seconds=61)
    monkeypatch.setattr(auth, "utc_now", lambda: later)
    assert auth.resolve(store.sessions, store.users, token) is None
    assert store.sessions.find(token) is None  # purged on the way


def test_purge_expired(store):
    alice = _register(store)
    live = auth.bind(store.sessions, alice, max_age=3600)
    dead = auth.bind(store.sessions, alice, max_age=0)
    assert store.sessions.purge_expired(auth.utc_now()) == 1
    assert store.sessions.find(dead) is None
    assert store.sessions.find(live) is not None


def test_resolve_user_removed_out_of_band():
    from quillpress.store import MemoryStore

    store = MemoryStore()
    alice = _register(store)
    token = auth.bind(store.sessions, alice, max_age=60)
    del store._users[alice.id]
    assert auth.resolve(store.sessions, store.users, token) is None


def test_session_token_is_stored_hashed(client):
    s = get_store()
    ident = auth.register(s.users, unique_name(), PASSWORD, method=FAST_HASH)
    token = auth.bind(s.sessions, ident, max_age=60)
    raw = s.db.execute(
        "SELECT token_hash FROM session WHERE token_hash IN (?, ?)",
        (token, token_digest(token)),
    ).fetchall()
    assert [r["token_hash"] for r in raw] == [token_digest(token)]


# ───────────────────────── HTTP flows ─────────────────────────────────
def test_register_redirects_to_login(client):
    rv = register(client, unique_name())
    assert rv.status_code == 302
    assert rv.headers["Location"].endswith("/login")


def test_register_shows_each_validation_error(client):
    rv = register(client, "ab", "pass")
    assert rv.status_code == 200
    assert b"Username must be at least 3 characters long" in rv.data
    assert b"Password must be at least 6 characters long" in rv.data


def test_register_duplicate_username(client):
    name = unique_name()
    assert register(client, name).status_code == 302
    rv = register(client, name, "other-password")
    assert rv.status_code == 200
    assert b"Username already exists." in rv.data


def test_register_store_error_is_generic(client, monkeypatch):
    def _boom(self, username, password_hash):
        raise StoreError("disk I/O error")

    from quillpress.store import SQLiteUserStore

    monkeypatch.setattr(SQLiteUserStore, "insert", _boom)
    rv = register(client, unique_name())
    assert rv.status_code == 200
    assert b"Something went wrong creating your account" in rv.data
    assert b"disk I/O" not in rv.data


def test_login_success_sets_session(client):
    name = unique_name()
    register(client, name)
    rv = login(client, name)
    assert rv.status_code == 302
    assert rv.headers["Location"].endswith("/my-posts")
    with client.session_transaction() as sess:
        assert sess.get("sid")
    assert client.get("/my-posts").status_code == 200


@pytest.mark.parametrize("wrong", ["username", "password"])
def test_login_failure_is_generic(client, wrong):
    name = unique_name()
    register(client, name)
    if wrong == "username":
        rv = login(client, name + "-nope")
    else:
        rv = login(client, name, "wrong-password")
    assert rv.status_code == 200
    assert b"Incorrect username or password." in rv.data
    with client.session_transaction() as sess:
        assert "sid" not in sess


def test_login_follows_safe_next(client):
    name = unique_name()
    register(client, name)
    rv = client.post(
        "/login",
        data={"username": name, "password": PASSWORD, "next": "/posts/new"},
    )
    assert rv.headers["Location"].endswith("/posts/new")


@pytest.mark.parametrize("nxt", ["https://evil.example", "//evil.example", "/\\evil"])
def test_login_ignores_offsite_next(client, nxt):
    name = unique_name()
    register(client, name)
    rv = client.post(
        "/login", data={"username": name, "password": PASSWORD, "next": nxt}
    )
    assert rv.headers["Location"].endswith("/my-posts")


def test_logout_invalidates_the_old_session(client):
    signed_in(client)
    with client.session_transaction() as sess:
        sid = sess["sid"]

    rv = client.get("/logout")
    assert rv.status_code == 302
    assert rv.headers["Location"].endswith("/login")

    # replaying the old session reference gets you nowhere
    with client.session_transaction() as sess:
        sess["sid"] = sid
    rv = client.get("/my-posts")
    assert rv.status_code == 302
    assert "/login" in rv.headers["Location"]


def test_logout_store_failure_surfaces(client, monkeypatch):
    signed_in(client)

    def _boom(self, token):
        raise StoreError("database is locked")

    monkeypatch.setattr(SQLiteSessionStore, "delete", _boom)
    monkeypatch.setitem(app.config, "PROPAGATE_EXCEPTIONS", False)

    rv = client.get("/logout")
    assert rv.status_code == 500
    with client.session_transaction() as sess:
        assert sess.get("sid")  # cookie not cleared on a failed logout


def test_signed_in_user_skips_login_and_register(client):
    signed_in(client)
    assert client.get("/login").headers["Location"].endswith("/my-posts")
    assert client.get("/register").headers["Location"].endswith("/my-posts")


# ───────────────────────── logging ────────────────────────────────────
def _assert_no_secrets(caplog, name, *passwords):
    for pw in passwords:
        assert pw not in caplog.text
    user = get_store().users.find_by_username(name)
    assert user.password_hash not in caplog.text
    assert "scrypt:" not in caplog.text and "pbkdf2:" not in caplog.text


@pytest.mark.parametrize(
    "wrong,cause", [("username", "IncorrectUsername"), ("password", "IncorrectPassword")]
)
def test_failed_login_logs_cause_but_no_secret(client, caplog, wrong, cause):
    name = unique_name()
    register(client, name)
    bad = "not-the-password-77"
    with caplog.at_level(logging.INFO):
        if wrong == "username":
            login(client, name + "-nope", PASSWORD)
        else:
            login(client, name, bad)

    warnings = [r for r in caplog.records if r.levelno == logging.WARNING]
    assert len(warnings) == 1
    assert cause in warnings[0].getMessage()
    _assert_no_secrets(caplog, name, PASSWORD, bad)


def test_successful_login_logs_no_secret(client, caplog):
    name = unique_name()
    register(client, name)
    with caplog.at_level(logging.INFO):
        login(client, name)
    assert any(f"login {name}" in r.getMessage() for r in caplog.records)
    _assert_no_secrets(caplog, name, PASSWORD)


def test_register_store_error_is_logged_with_traceback(client, caplog, monkeypatch):
    def _boom(self, username, password_hash):
        raise StoreError("disk I/O error")

    from quillpress.store import SQLiteUserStore

    monkeypatch.setattr(SQLiteUserStore, "insert", _boom)
    name = unique_name()
    with caplog.at_level(logging.INFO):
        register(client, name)

    errors = [r for r in caplog.records if r.levelno == logging.ERROR]
    assert len(errors) == 1
    assert "registration failed" in errors[0].getMessage()
    assert errors[0].exc_info and errors[0].exc_info[0] is StoreError
    assert PASSWORD not in caplog.text
