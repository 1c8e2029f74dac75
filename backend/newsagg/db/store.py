from __future__ import annotations

from collections.abc import Mapping, Sequence
from datetime import datetime, timezone
from typing import Any

import structlog
from sqlalchemy import select, text
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session

from newsagg.core.errors import InvalidArgumentError, PersistenceError
from newsagg.db.models import Post
from newsagg.db.session import Base, make_session_factory

log = structlog.get_logger()

# Fields refreshed when a link is seen again; id and created_at stay put
UPDATABLE = ("title", "description", "published_at")

_DIALECT_INSERTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


class PostStore:
    """
    Persistence boundary for posts.

    Every upsert_batch call runs in its own transaction, so concurrent calls
    are serialised by the database and converge last-writer-wins per link.
    """

    def __init__(self, engine: Engine):
        self.engine = engine
        self._sessions = make_session_factory(engine)

    def create_schema(self) -> None:
        try:
            Base.metadata.create_all(bind=self.engine)
        except SQLAlchemyError as e:
            raise PersistenceError(f"create schema: {e}") from e

    def ping(self) -> None:
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except SQLAlchemyError as e:
            raise PersistenceError(f"ping database: {e}") from e

    def upsert_batch(self, posts: Sequence[Mapping[str, Any]]) -> int:
        """
        Insert-or-update posts keyed by link, all-or-nothing.

        Records with an empty link are skipped; when one link appears several
        times in the batch the last occurrence wins.

        Returns:
            Number of rows written
        """
        rows = _prepare_rows(posts)
        if not rows:
            return 0

        try:
            with self._sessions.begin() as session:
                insert = _DIALECT_INSERTS.get(self.engine.dialect.name)
                if insert is not None:
                    stmt = insert(Post.__table__)
                    stmt = stmt.on_conflict_do_update(
                        index_elements=["link"],
                        set_={name: getattr(stmt.excluded, name) for name in UPDATABLE},
                    )
                    session.execute(stmt, rows)
                else:
                    _merge_rows(session, rows)
        except SQLAlchemyError as e:
            raise PersistenceError(f"upsert {len(rows)} posts: {e}") from e

        log.debug("posts upserted", count=len(rows))
        return len(rows)

    def latest(self, limit: int) -> list[Post]:
        if isinstance(limit, bool) or not isinstance(limit, int) or limit <= 0:
            raise InvalidArgumentError(f"limit must be a positive integer, got {limit!r}")

        try:
            with self._sessions() as session:
                return list(
                    session.execute(
                        select(Post)
                        .order_by(Post.published_at.desc(), Post.id.desc())
                        .limit(limit)
                    ).scalars().all()
                )
        except SQLAlchemyError as e:
            raise PersistenceError(f"query latest: {e}") from e


def _prepare_rows(posts: Sequence[Mapping[str, Any]]) -> list[dict]:
    now = datetime.now(timezone.utc)
    by_link: dict[str, dict] = {}
    for post in posts:
        link = (post.get("link") or "").strip()
        if not link:
            continue
        by_link[link] = {
            "title": post.get("title") or "",
            "description": post.get("description") or "",
            "link": link,
            "published_at": post.get("published_at") or now,
            "created_at": now,
        }
    return list(by_link.values())


def _merge_rows(session: Session, rows: list[dict]) -> None:
    # Dialects without ON CONFLICT: look up, then update or add in the same transaction
    existing = {
        p.link: p
        for p in session.execute(
            select(Post).where(Post.link.in_([r["link"] for r in rows]))
        ).scalars()
    }
    for row in rows:
        post = existing.get(row["link"])
        if post is None:
            session.add(Post(**row))
            continue
        for name in UPDATABLE:
            setattr(post, name, row[name])
