from __future__ import annotations

import asyncio
import xml.sax
from dataclasses import dataclass
from datetime import datetime

import feedparser
import httpx
import structlog

from newsagg.core.cancel import until_stopped
from newsagg.core.errors import FeedStatusError, ParseError, TransportError
from newsagg.services.ingest.normalize import clean_text, resolve_published_at

log = structlog.get_logger()

DEFAULT_TIMEOUT = 15.0
USER_AGENT = "newsagg/1.0 (RSS reader)"


@dataclass(frozen=True)
class FeedEntry:
    title: str
    description: str
    link: str
    published_at: datetime

    def as_post(self) -> dict:
        return {
            "title": self.title,
            "description": self.description,
            "link": self.link,
            "published_at": self.published_at,
        }


def parse_entries(document: bytes | str, url: str = "") -> list[FeedEntry]:
    """
    Parse a feed document into entries, in document order.

    Raises:
        ParseError: the document is not a readable feed
    """
    if isinstance(document, str):
        # a str would be taken for a URL or file name
        document = document.encode("utf-8")
    # keep descriptions as published: no sanitising, no URI rewriting
    feed = feedparser.parse(document, sanitize_html=False, resolve_relative_uris=False)
    # feedparser recovers what it can from broken XML; a partial feed is still a failure
    if feed.bozo and isinstance(feed.get("bozo_exception"), xml.sax.SAXException):
        raise ParseError(url, f"parse rss: {feed.bozo_exception}")
    if not feed.entries and (feed.bozo or not feed.get("version")):
        reason = feed.get("bozo_exception") or "not a recognised feed document"
        raise ParseError(url, f"parse rss: {reason}")

    items = []
    for e in feed.entries:
        raw_date = e.get("published") or e.get("updated")
        items.append(FeedEntry(
            title=clean_text(e.get("title")),
            description=clean_text(e.get("summary") or e.get("description")),
            link=_entry_link(e),
            published_at=resolve_published_at(raw_date),
        ))
    return items


def _entry_link(e) -> str:
    if not e.get("guidislink"):
        return clean_text(e.get("link"))
    # feedparser copies a permalink <guid> into "link"; only a real link element counts
    for link in e.get("links", []):
        if link.get("rel", "alternate") == "alternate" and link.get("href"):
            return clean_text(link["href"])
    return ""


class FeedFetcher:
    """
    Retrieves one feed per call with a bounded timeout; single attempt, no retries.

    Either the whole entry list comes back or a FetchError is raised.
    """

    def __init__(
        self,
        timeout: float = DEFAULT_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.timeout = timeout
        self._transport = transport

    async def fetch(self, url: str, stop: asyncio.Event | None = None) -> list[FeedEntry]:
        """
        Args:
            url: feed address
            stop: optional stop signal; aborts the request and raises Cancelled

        Returns:
            Normalized entries of the feed
        """
        if stop is None:
            return await self._fetch(url)
        return await until_stopped(self._fetch(url), stop)

    async def _fetch(self, url: str) -> list[FeedEntry]:
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout,
                follow_redirects=True,
                headers={"User-Agent": USER_AGENT},
                transport=self._transport,
            ) as client:
                resp = await client.get(url)
        except httpx.InvalidURL as e:
            raise TransportError(url, f"invalid feed address: {e}") from e
        except httpx.HTTPError as e:
            raise TransportError(url, f"request feed: {e!r}") from e

        if not resp.is_success:
            raise FeedStatusError(url, resp.status_code)

        # feedparser is sync; keep it off the event loop
        items = await asyncio.to_thread(parse_entries, resp.content, url)
        log.debug("feed fetched", url=url, entries=len(items))
        return items
