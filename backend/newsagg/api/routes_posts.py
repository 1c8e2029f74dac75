from fastapi import APIRouter, Depends, Query, Request

from newsagg.db.store import PostStore

router = APIRouter()

DEFAULT_LIMIT = 10


def get_store(request: Request) -> PostStore:
    return request.app.state.store


def parse_limit(raw: str | None, default: int = DEFAULT_LIMIT) -> int:
    """Missing, non-numeric and non-positive limits all fall back to the default."""
    if raw is None:
        return default
    try:
        n = int(raw.strip())
    except ValueError:
        return default
    return n if n > 0 else default


def _latest(store: PostStore, limit: int) -> list[dict]:
    return [p.to_dict() for p in store.latest(limit)]


@router.get("")
def latest_posts(limit: str | None = Query(None), store: PostStore = Depends(get_store)):
    """Most recent posts, newest first (?limit=N, default 10)"""
    return _latest(store, parse_limit(limit))


@router.get("/{limit}")
def latest_posts_n(limit: str, store: PostStore = Depends(get_store)):
    return _latest(store, parse_limit(limit))
