"""
Credentials and sessions.

• Credential verifier – register / verify a username + password pair.
• Session binder      – turn a verified identity into an opaque server-side
                        session token and resolve it back on every request.

Nothing in here touches Flask; the HTTP layer passes stores and tokens in.
"""

from __future__ import annotations

import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from functools import lru_cache

from werkzeug.security import check_password_hash, generate_password_hash

from quillpress.store import SessionStore, UniqueViolation, User, UserStore

MIN_USERNAME_LEN = 3
MIN_PASSWORD_LEN = 6
PASSWORD_METHOD = "scrypt:32768:8:1"  # fixed cost
SESSION_TOKEN_BYTES = 32


################################################################################
# Types + errors
################################################################################
@dataclass(frozen=True)
class Identity:
    """A verified user, minus every secret."""

    id: str
    username: str

    @classmethod
    def from_user(cls, user: User) -> "Identity":
        return cls(id=user.id, username=user.username)


class AuthError(Exception):
    """Bad credentials. The public message never says which half was wrong."""

    public_message = "Incorrect username or password."


class IncorrectUsername(AuthError):
    pass


class IncorrectPassword(AuthError):
    pass


class ValidationError(ValueError):
    def __init__(self, errors: list[str]):
        super().__init__("; ".join(errors))
        self.errors = errors


class Conflict(Exception):
    public_message = "Username already exists."


def utc_now() -> datetime:
    """Return an *aware* datetime in UTC."""
    return datetime.now(timezone.utc)


################################################################################
# Credential verifier
################################################################################
def validate_registration(username: str | None, password: str | None) -> list[str]:
    """One message per rule that isn't met (empty list ⇒ valid)."""
    errors = []
    name = (username or "").strip()
    password = password or ""
    if not name:
        errors.append("Username is required.")
    elif len(name) < MIN_USERNAME_LEN:
        errors.append(
            f"Username must be at least {MIN_USERNAME_LEN} characters long."
        )
    if not password:
        errors.append("Password is required.")
    elif len(password) < MIN_PASSWORD_LEN:
        errors.append(
            f"Password must be at least {MIN_PASSWORD_LEN} characters long."
        )
    return errors


def register(
    users: UserStore,
    username: str | None,
    password: str | None,
    *,
    method: str = PASSWORD_METHOD,
) -> Identity:
    errors = validate_registration(username, password)
    if errors:
        raise ValidationError(errors)

    # hash first – the store never waits on the CPU-bound part
    pw_hash = generate_password_hash(password, method=method)
    try:
        user = users.insert(username.strip(), pw_hash)
    except UniqueViolation as exc:
        raise Conflict(Conflict.public_message) from exc
    return Identity.from_user(user)


@lru_cache(maxsize=4)
def _dummy_hash(method: str) -> str:
    return generate_password_hash(secrets.token_hex(8), method=method)


def verify(
    users: UserStore,
    username: str | None,
    password: str | None,
    *,
    method: str = PASSWORD_METHOD,
) -> Identity:
    """
    Check a username/password pair. Returns the identity or raises
    `IncorrectUsername` / `IncorrectPassword`. No side effects.
    """
    name = (username or "").strip()
    password = password or ""
    user = users.find_by_username(name) if name else None
    if user is None:
        # burn one hash check so both failures take about as long
        check_password_hash(_dummy_hash(method), password)
        raise IncorrectUsername(AuthError.public_message)
    if not check_password_hash(user.password_hash, password):
        raise IncorrectPassword(AuthError.public_message)
    return Identity.from_user(user)


################################################################################
# Session binder
################################################################################
def bind(sessions: SessionStore, identity: Identity, *, max_age: int) -> str:
    """Create a session for *identity*; only its id is stored."""
    token = secrets.token_urlsafe(SESSION_TOKEN_BYTES)
    sessions.insert(token, identity.id, utc_now() + timedelta(seconds=max_age))
    return token


def resolve(
    sessions: SessionStore, users: UserStore, token: str | None
) -> Identity | None:
    """
    Session token ➜ identity, or None for anything that isn't a live session
    of an existing user.
    """
    if not token:
        return None
    row = sessions.find(token)
    if row is None:
        return None
    if row.expires_at <= utc_now():
        sessions.delete(token)
        return None
    user = users.find_by_id(row.user_id)
    return Identity.from_user(user) if user else None


def is_authenticated(
    sessions: SessionStore, users: UserStore, token: str | None
) -> bool:
    return resolve(sessions, users, token) is not None


def unbind(sessions: SessionStore, token: str | None) -> None:
    """Logout. Store errors propagate – a half-done logout must not look done."""
    if token:
        sessions.delete(token)
