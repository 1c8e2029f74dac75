import threading
from xml.sax.saxutils import escape

import pytest

from newsagg.db.session import make_engine
from newsagg.db.store import PostStore


@pytest.fixture
def store(tmp_path):
    s = PostStore(make_engine(f"sqlite:///{tmp_path / 'news.db'}"))
    s.create_schema()
    yield s
    s.engine.dispose()


class RecordingStore:
    """Stands in for PostStore; keeps every batch it was handed."""

    def __init__(self, fail: bool = False):
        self.batches: list[list[dict]] = []
        self.fail = fail
        self._lock = threading.Lock()

    def upsert_batch(self, posts):
        from newsagg.core.errors import PersistenceError

        with self._lock:
            self.batches.append(list(posts))
        if self.fail:
            raise PersistenceError("database is down")
        return len(posts)

    @property
    def links(self) -> list[str]:
        return [p["link"] for batch in self.batches for p in batch]


@pytest.fixture
def recording_store():
    return RecordingStore()


def _rss(items) -> bytes:
    parts = []
    for it in items:
        fields = "".join(
            f"<{tag}>{escape(value)}</{tag}>"
            for tag, value in (
                ("title", it.get("title", "")),
                ("description", it.get("description", "")),
                ("link", it.get("link", "")),
                ("pubDate", it.get("pubDate", "")),
            )
        )
        parts.append(f"<item>{fields}</item>")
    return (
        '<?xml version="1.0" encoding="UTF-8"?>'
        '<rss version="2.0"><channel><title>Test feed</title>'
        "<link>https://example.com/</link><description>test</description>"
        + "".join(parts)
        + "</channel></rss>"
    ).encode("utf-8")


@pytest.fixture
def make_rss():
    """Builds an RSS 2.0 document from dicts with title/description/link/pubDate."""
    return _rss


@pytest.fixture
def failing_store():
    return RecordingStore(fail=True)
