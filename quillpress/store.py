"""
Storage layer: records, the store interfaces the core talks to, and the two
interchangeable backends (SQLite and an in-process document store).

Identifiers are opaque strings everywhere outside this module.
"""

from __future__ import annotations

import hashlib
import re
import sqlite3
import threading
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Mapping, Protocol


################################################################################
# Records + errors
################################################################################
@dataclass(frozen=True)
class User:
    id: str
    username: str
    password_hash: str = field(repr=False)


@dataclass(frozen=True)
class Post:
    id: str
    title: str
    content: str
    created_at: datetime
    owner_id: str
    preview_image: str | None = None


@dataclass(frozen=True)
class SessionRow:
    user_id: str
    expires_at: datetime


class StoreError(Exception):
    """Unexpected persistence failure."""


class UniqueViolation(StoreError):
    """A uniqueness constraint (username) was violated."""


def token_digest(token: str) -> str:
    """Session tokens are only ever stored hashed."""
    return hashlib.sha256(token.encode()).hexdigest()


################################################################################
# Interfaces
################################################################################
class UserStore(Protocol):
    def find_by_username(self, username: str) -> User | None: ...

    def find_by_id(self, user_id: str) -> User | None: ...

    def insert(self, username: str, password_hash: str) -> User: ...


class PostStore(Protocol):
    def insert(self, fields: Mapping[str, Any]) -> Post: ...

    def find_many(
        self,
        filter: Mapping[str, str],
        *,
        search: str | None = None,
        newest_first: bool = True,
    ) -> list[Post]: ...

    def find_one(self, filter: Mapping[str, str]) -> Post | None: ...

    def find_one_and_update(
        self, filter: Mapping[str, str], fields: Mapping[str, Any]
    ) -> Post | None: ...

    def delete_one(self, filter: Mapping[str, str]) -> int: ...


class SessionStore(Protocol):
    def insert(self, token: str, user_id: str, expires_at: datetime) -> None: ...

    def find(self, token: str) -> SessionRow | None: ...

    def delete(self, token: str) -> int: ...

    def purge_expired(self, now: datetime) -> int: ...


FILTER_KEYS = ("id", "owner_id")
_DIGITS_RE = re.compile(r"[0-9]{1,18}")
POST_FIELDS = ("title", "content")


def _check_filter(filter: Mapping[str, str]) -> None:
    unknown = set(filter) - set(FILTER_KEYS)
    if unknown:
        raise ValueError(f"unsupported filter keys: {sorted(unknown)}")


################################################################################
# SQLite backend
################################################################################
SCHEMA = """
CREATE TABLE IF NOT EXISTS user (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    username        TEXT UNIQUE NOT NULL,
    password_hash   TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS post (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    title       TEXT NOT NULL DEFAULT 'Untitled',
    content     TEXT NOT NULL DEFAULT '',
    created_at  TEXT NOT NULL,
    user_id     INTEGER NOT NULL REFERENCES user(id) ON DELETE CASCADE
);
CREATE INDEX IF NOT EXISTS post_user_created ON post(user_id, created_at);

CREATE TABLE IF NOT EXISTS session (
    token_hash  TEXT PRIMARY KEY,
    user_id     INTEGER NOT NULL REFERENCES user(id) ON DELETE CASCADE,
    created_at  TEXT NOT NULL,
    expires_at  TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS session_expires ON session(expires_at);
"""


def _row_id(value: str | None) -> int | None:
    """SQLite keys are integers; anything else can never match a row."""
    text = "" if value is None else str(value)
    return int(text) if _DIGITS_RE.fullmatch(text) else None


def _casefold(text: str | None) -> str:
    return (text or "").casefold()


def _post_from_row(row: sqlite3.Row) -> Post:
    return Post(
        id=str(row["id"]),
        title=row["title"],
        content=row["content"],
        created_at=datetime.fromisoformat(row["created_at"]),
        owner_id=str(row["user_id"]),
    )


def _user_from_row(row: sqlite3.Row | None) -> User | None:
    if row is None:
        return None
    return User(
        id=str(row["id"]), username=row["username"], password_hash=row["password_hash"]
    )


class SQLiteUserStore:
    def __init__(self, db: sqlite3.Connection):
        self.db = db

    def find_by_username(self, username: str) -> User | None:
        row = self.db.execute(
            "SELECT * FROM user WHERE username=?", (username,)
        ).fetchone()
        return _user_from_row(row)

    def find_by_id(self, user_id: str) -> User | None:
        uid = _row_id(user_id)
        if uid is None:
            return None
        row = self.db.execute("SELECT * FROM user WHERE id=?", (uid,)).fetchone()
        return _user_from_row(row)

    def insert(self, username: str, password_hash: str) -> User:
        try:
            cur = self.db.execute(
                "INSERT INTO user (username, password_hash) VALUES (?,?)",
                (username, password_hash),
            )
            self.db.commit()
        except sqlite3.IntegrityError as exc:
            self.db.rollback()
            if "UNIQUE" in str(exc).upper():
                raise UniqueViolation("username already exists") from exc
            raise StoreError(str(exc)) from exc
        except sqlite3.Error as exc:
            self.db.rollback()
            raise StoreError(str(exc)) from exc
        return User(id=str(cur.lastrowid), username=username, password_hash=password_hash)


class SQLitePostStore:
    def __init__(self, db: sqlite3.Connection):
        self.db = db

    @staticmethod
    def _where(filter: Mapping[str, str]) -> tuple[str, list[Any]] | None:
        """
        Build one WHERE clause out of every filter key.
        Returns None when a key can't match anything (e.g. a non-numeric id).
        """
        _check_filter(filter)
        clauses, params = [], []
        for key, column in (("id", "id"), ("owner_id", "user_id")):
            if key not in filter:
                continue
            value = _row_id(filter[key])
            if value is None:
                return None
            clauses.append(f"{column}=?")
            params.append(value)
        return (" AND ".join(clauses) or "1"), params

    def insert(self, fields: Mapping[str, Any]) -> Post:
        owner = _row_id(fields["owner_id"])
        if owner is None:
            raise StoreError(f"unknown owner {fields['owner_id']!r}")
        created = fields["created_at"].isoformat(timespec="microseconds")
        try:
            cur = self.db.execute(
                "INSERT INTO post (title, content, created_at, user_id) VALUES (?,?,?,?)",
                (fields["title"], fields["content"], created, owner),
            )
            self.db.commit()
        except sqlite3.IntegrityError as exc:  # owner row is gone
            self.db.rollback()
            raise StoreError(str(exc)) from exc
        return Post(
            id=str(cur.lastrowid),
            title=fields["title"],
            content=fields["content"],
            created_at=fields["created_at"],
            owner_id=str(owner),
        )

    def find_many(self, filter, *, search=None, newest_first=True) -> list[Post]:
        where = self._where(filter)
        if where is None:
            return []
        sql, params = where
        if search:
            needle = search.casefold()
            sql += (
                " AND (instr(casefold(title), ?) > 0"
                " OR instr(casefold(content), ?) > 0)"
            )
            params += [needle, needle]
        direction = "DESC" if newest_first else "ASC"
        rows = self.db.execute(
            f"SELECT * FROM post WHERE {sql} "
            f"ORDER BY created_at {direction}, id {direction}",
            params,
        ).fetchall()
        return [_post_from_row(r) for r in rows]

    def find_one(self, filter) -> Post | None:
        where = self._where(filter)
        if where is None:
            return None
        sql, params = where
        row = self.db.execute(
            f"SELECT * FROM post WHERE {sql} LIMIT 1", params
        ).fetchone()
        return _post_from_row(row) if row else None

    def find_one_and_update(self, filter, fields) -> Post | None:
        """Update the matching row and return it as written, in one statement."""
        where = self._where(filter)
        if where is None:
            return None
        sql, params = where
        cols = [f for f in POST_FIELDS if f in fields]
        if not cols:
            return None
        rows = self.db.execute(
            f"UPDATE post SET {', '.join(f'{c}=?' for c in cols)} "
            f"WHERE {sql} RETURNING *",
            [fields[c] for c in cols] + params,
        ).fetchall()
        self.db.commit()
        return _post_from_row(rows[0]) if rows else None

    def delete_one(self, filter) -> int:
        where = self._where(filter)
        if where is None:
            return 0
        sql, params = where
        cur = self.db.execute(f"DELETE FROM post WHERE {sql}", params)
        self.db.commit()
        return cur.rowcount


class SQLiteSessionStore:
    def __init__(self, db: sqlite3.Connection):
        self.db = db

    def insert(self, token: str, user_id: str, expires_at: datetime) -> None:
        now = datetime.now(expires_at.tzinfo).isoformat(timespec="microseconds")
        self.db.execute(
            "INSERT INTO session (token_hash, user_id, created_at, expires_at) "
            "VALUES (?,?,?,?)",
            (
                token_digest(token),
                _row_id(user_id),
                now,
                expires_at.isoformat(timespec="microseconds"),
            ),
        )
        self.db.commit()

    def find(self, token: str) -> SessionRow | None:
        row = self.db.execute(
            "SELECT user_id, expires_at FROM session WHERE token_hash=?",
            (token_digest(token),),
        ).fetchone()
        if not row:
            return None
        return SessionRow(
            user_id=str(row["user_id"]),
            expires_at=datetime.fromisoformat(row["expires_at"]),
        )

    def delete(self, token: str) -> int:
        cur = self.db.execute(
            "DELETE FROM session WHERE token_hash=?", (token_digest(token),)
        )
        self.db.commit()
        return cur.rowcount

    def purge_expired(self, now: datetime) -> int:
        cur = self.db.execute(
            "DELETE FROM session WHERE expires_at <= ?",
            (now.isoformat(timespec="microseconds"),),
        )
        self.db.commit()
        return cur.rowcount


class SQLiteStore:
    """One connection, three collections."""

    def __init__(self, path: str):
        self.db = sqlite3.connect(path)
        self.db.execute("PRAGMA foreign_keys = ON;")
        self.db.row_factory = sqlite3.Row
        self.db.create_function("casefold", 1, _casefold)
        self.users = SQLiteUserStore(self.db)
        self.posts = SQLitePostStore(self.db)
        self.sessions = SQLiteSessionStore(self.db)

    def init_schema(self) -> None:
        self.db.executescript(SCHEMA)
        self.db.commit()

    def close(self) -> None:
        self.db.close()


################################################################################
# In-memory document backend
################################################################################
def _new_id() -> str:
    return uuid.uuid4().hex


class MemoryStore:
    """
    Process-wide document store. Keys are generated hex strings, every
    operation is one lookup or mutation under a single lock.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._users: dict[str, User] = {}
        self._posts: dict[str, tuple[int, Post]] = {}
        self._sessions: dict[str, SessionRow] = {}
        self._seq = 0
        self.users = _MemoryUsers(self)
        self.posts = _MemoryPosts(self)
        self.sessions = _MemorySessions(self)

    def init_schema(self) -> None:
        pass

    def close(self) -> None:
        pass


class _MemoryUsers:
    def __init__(self, store: MemoryStore):
        self.s = store

    def find_by_username(self, username: str) -> User | None:
        with self.s._lock:
            return next(
                (u for u in self.s._users.values() if u.username == username), None
            )

    def find_by_id(self, user_id: str) -> User | None:
        with self.s._lock:
            return self.s._users.get(str(user_id))

    def insert(self, username: str, password_hash: str) -> User:
        with self.s._lock:
            if any(u.username == username for u in self.s._users.values()):
                raise UniqueViolation("username already exists")
            user = User(id=_new_id(), username=username, password_hash=password_hash)
            self.s._users[user.id] = user
            return user


class _MemoryPosts:
    def __init__(self, store: MemoryStore):
        self.s = store

    @staticmethod
    def _matches(post: Post, filter: Mapping[str, str]) -> bool:
        _check_filter(filter)
        return all(str(getattr(post, k)) == str(v) for k, v in filter.items())

    def insert(self, fields: Mapping[str, Any]) -> Post:
        with self.s._lock:
            if str(fields["owner_id"]) not in self.s._users:
                raise StoreError(f"unknown owner {fields['owner_id']!r}")
            self.s._seq += 1
            post = Post(
                id=_new_id(),
                title=fields["title"],
                content=fields["content"],
                created_at=fields["created_at"],
                owner_id=str(fields["owner_id"]),
            )
            self.s._posts[post.id] = (self.s._seq, post)
            return post

    def find_many(self, filter, *, search=None, newest_first=True) -> list[Post]:
        needle = search.casefold() if search else None
        with self.s._lock:
            hits = [
                (p.created_at, seq, p)
                for seq, p in self.s._posts.values()
                if self._matches(p, filter)
                and (
                    needle is None
                    or needle in p.title.casefold()
                    or needle in p.content.casefold()
                )
            ]
        hits.sort(key=lambda h: (h[0], h[1]), reverse=newest_first)
        return [p for _, _, p in hits]

    def find_one(self, filter) -> Post | None:
        with self.s._lock:
            return next(
                (p for _, p in self.s._posts.values() if self._matches(p, filter)),
                None,
            )

    def find_one_and_update(self, filter, fields) -> Post | None:
        changes = {f: fields[f] for f in POST_FIELDS if f in fields}
        if not changes:
            return None
        with self.s._lock:
            for key, (seq, post) in self.s._posts.items():
                if self._matches(post, filter):
                    post = replace(post, **changes)
                    self.s._posts[key] = (seq, post)
                    return post
        return None

    def delete_one(self, filter) -> int:
        with self.s._lock:
            for key, (_, post) in list(self.s._posts.items()):
                if self._matches(post, filter):
                    del self.s._posts[key]
                    return 1
        return 0


class _MemorySessions:
    def __init__(self, store: MemoryStore):
        self.s = store

    def insert(self, token: str, user_id: str, expires_at: datetime) -> None:
        with self.s._lock:
            self.s._sessions[token_digest(token)] = SessionRow(
                user_id=str(user_id), expires_at=expires_at
            )

    def find(self, token: str) -> SessionRow | None:
        with self.s._lock:
            return self.s._sessions.get(token_digest(token))

    def delete(self, token: str) -> int:
        with self.s._lock:
            return 1 if self.s._sessions.pop(token_digest(token), None) else 0

    def purge_expired(self, now: datetime) -> int:
        with self.s._lock:
            stale = [k for k, row in self.s._sessions.items() if row.expires_at <= now]
            for k in stale:
                del self.s._sessions[k]
            return len(stale)


################################################################################
# Factory
################################################################################
_MEMORY_STORES: dict[str, MemoryStore] = {}


def open_store(config: Mapping[str, Any]):
    """
    Return a store for the current request.
    SQLite gets a fresh connection, the memory store is shared per name.
    """
    backend = config.get("STORE_BACKEND", "sqlite")
    if backend == "sqlite":
        return SQLiteStore(config["DATABASE"])
    if backend == "memory":
        name = config.get("DATABASE", "default")
        return _MEMORY_STORES.setdefault(name, MemoryStore())
    raise ValueError(f"unknown STORE_BACKEND {backend!r}")
