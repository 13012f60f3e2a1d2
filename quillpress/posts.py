"""
Posts, always scoped to their owner.

Every read / update / delete passes ``{"id": …, "owner_id": …}`` to the store
as one filter, so a post that belongs to someone else looks exactly like a
post that doesn't exist.
"""

from __future__ import annotations

import re
from dataclasses import replace

from quillpress import auth
from quillpress.store import Post, PostStore

UNTITLED = "Untitled"

IMG_OPEN_RE = re.compile(r"<img\b", re.I)
IMG_SRC_RE = re.compile(
    r"""(?<![\w-])src\s*=\s*(?:"(?P<dq>[^">]+)"|'(?P<sq>[^'>]+)')""", re.I
)


class NotFound(LookupError):
    """No post with that id for that owner."""


def first_image(html: str | None) -> str | None:
    """
    `src` of the first <img> in *html* (plain scan, never raises).

    Each tag is cut at its first ``>`` and only that slice is searched, so
    the scan stays linear however the markup is mangled.
    """
    if not html:
        return None
    pos = 0
    while m := IMG_OPEN_RE.search(html, pos):
        end = html.find(">", m.end())
        if end < 0:  # nothing closes this tag, or any later one
            return None
        src = IMG_SRC_RE.search(html, m.end(), end)
        if src:
            return src.group("dq") or src.group("sq")
        pos = end + 1
    return None


def _owner(owner_id: str | None) -> str:
    if not owner_id:
        raise ValueError("owner_id is required")
    return str(owner_id)


def _scope(post_id, owner_id) -> dict[str, str]:
    return {"id": str(post_id), "owner_id": _owner(owner_id)}


def list_posts(
    posts: PostStore, owner_id: str, query: str | None = None
) -> list[Post]:
    """Owner's posts, newest first, optionally filtered by *query*."""
    q = (query or "").strip()
    rows = posts.find_many({"owner_id": _owner(owner_id)}, search=q or None)
    return [replace(p, preview_image=first_image(p.content)) for p in rows]


def create_post(
    posts: PostStore, owner_id: str, title: str | None, content: str | None
) -> Post | None:
    """
    Returns None (and writes nothing) when both fields are blank.
    """
    title = (title or "").strip()
    content = (content or "").strip()
    if not title and not content:
        return None
    return posts.insert(
        {
            "title": title or UNTITLED,
            "content": content,
            "created_at": auth.utc_now(),
            "owner_id": _owner(owner_id),
        }
    )


def get_post(posts: PostStore, post_id: str, owner_id: str) -> Post:
    post = posts.find_one(_scope(post_id, owner_id))
    if post is None:
        raise NotFound(post_id)
    return post


def update_post(
    posts: PostStore,
    post_id: str,
    owner_id: str,
    title: str | None,
    content: str | None,
) -> Post:
    """Full replace of title + content. Never creates."""
    scope = _scope(post_id, owner_id)
    fields = {
        "title": (title or "").strip() or UNTITLED,
        "content": (content or "").strip(),
    }
    post = posts.find_one_and_update(scope, fields)
    if post is None:
        raise NotFound(post_id)
    return post


def delete_post(posts: PostStore, post_id: str, owner_id: str) -> bool:
    """True if a row went away, False for a no-op. Idempotent."""
    return posts.delete_one(_scope(post_id, owner_id)) > 0
