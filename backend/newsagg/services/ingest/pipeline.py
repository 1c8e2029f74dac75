from __future__ import annotations

import asyncio
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any, Protocol

import structlog

from newsagg.core.cancel import until_stopped
from newsagg.core.errors import Cancelled, FetchError, PersistenceError
from newsagg.services.ingest.rss import FeedEntry

log = structlog.get_logger()

BATCH_SIZE = 25
# Small channel between fetch tasks and the collector
CHANNEL_SIZE = 1


class Fetcher(Protocol):
    async def fetch(self, url: str, stop: asyncio.Event | None = None) -> list[FeedEntry]: ...


class Store(Protocol):
    def upsert_batch(self, posts: Sequence[dict[str, Any]]) -> int: ...


@dataclass(frozen=True)
class FetchFailure:
    url: str
    error: FetchError


# Marks the end of a round on the channel
_DONE = object()


@dataclass
class _RoundStats:
    feeds: int
    posts: int = 0
    batches: int = 0
    failures: int = 0
    cancelled: bool = False


class AggregationPipeline:
    """
    One polling round: fan out a fetch task per feed, fan in through a
    single channel, persist in fixed-size batches.

    A failing feed or a failing flush is logged and never stops the round.
    When the stop signal fires mid-round the partial buffer is dropped
    without a final flush; the next round re-fetches the same feeds and
    upserts are idempotent by link.
    """

    def __init__(
        self,
        fetcher: Fetcher,
        store: Store,
        batch_size: int = BATCH_SIZE,
        channel_size: int = CHANNEL_SIZE,
    ):
        if batch_size <= 0:
            raise ValueError("batch_size must be positive")
        self.fetcher = fetcher
        self.store = store
        self.batch_size = batch_size
        self.channel_size = channel_size

    async def run_once(self, feeds: Sequence[str], stop: asyncio.Event) -> None:
        if stop.is_set():
            return
        stats = _RoundStats(feeds=len(feeds))

        channel: asyncio.Queue = asyncio.Queue(maxsize=self.channel_size)
        fetchers = [
            asyncio.create_task(self._fetch_feed(url, channel, stop), name=f"fetch {url}")
            for url in feeds
        ]
        closer = asyncio.create_task(self._close_after(fetchers, channel, stop))

        try:
            await self._collect(channel, stop, stats)
        finally:
            for task in (*fetchers, closer):
                if not task.done():
                    task.cancel()
            await asyncio.gather(*fetchers, closer, return_exceptions=True)

        log.info(
            "round finished",
            feeds=stats.feeds,
            posts=stats.posts,
            batches=stats.batches,
            failures=stats.failures,
            cancelled=stats.cancelled,
        )

    async def _fetch_feed(self, url: str, channel: asyncio.Queue, stop: asyncio.Event) -> None:
        try:
            items = await self.fetcher.fetch(url, stop)
        except Cancelled:
            return
        except FetchError as e:
            await _send(channel, FetchFailure(url, e), stop)
            return

        for item in items:
            if not await _send(channel, item.as_post(), stop):
                return

    async def _close_after(self, fetchers: list[asyncio.Task], channel: asyncio.Queue, stop: asyncio.Event) -> None:
        results = await asyncio.gather(*fetchers, return_exceptions=True)
        for task, result in zip(fetchers, results):
            if isinstance(result, Exception):
                log.error("fetch task crashed", task=task.get_name(), error=repr(result))
        await _send(channel, _DONE, stop)

    async def _collect(self, channel: asyncio.Queue, stop: asyncio.Event, stats: _RoundStats) -> None:
        buffer: list[dict[str, Any]] = []
        while True:
            try:
                item = await until_stopped(channel.get(), stop)
            except Cancelled:
                stats.cancelled = True
                if buffer:
                    log.warning("round cancelled, dropping partial batch", dropped=len(buffer))
                return

            if item is _DONE:
                break
            if isinstance(item, FetchFailure):
                stats.failures += 1
                log.warning("feed fetch failed", url=item.url, kind=item.error.kind, error=str(item.error))
                continue

            buffer.append(item)
            stats.posts += 1
            if len(buffer) >= self.batch_size:
                await self._flush(buffer, stats)

        await self._flush(buffer, stats)

    async def _flush(self, buffer: list[dict[str, Any]], stats: _RoundStats) -> None:
        if not buffer:
            return
        batch = list(buffer)
        buffer.clear()
        stats.batches += 1
        try:
            await asyncio.to_thread(self.store.upsert_batch, batch)
        except PersistenceError:
            # Not requeued: the next round re-polls every feed
            log.exception("save posts failed", size=len(batch))


async def _send(channel: asyncio.Queue, item: Any, stop: asyncio.Event) -> bool:
    try:
        await until_stopped(channel.put(item), stop)
    except Cancelled:
        return False
    return True
