from __future__ import annotations

import asyncio
from collections.abc import Sequence

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from newsagg.core.errors import ConfigurationError
from newsagg.services.ingest.pipeline import AggregationPipeline

log = structlog.get_logger()


class FeedPoller:
    """
    Drives the aggregation pipeline: one round right away, then one per tick
    of a fixed-rate timer until the stop signal fires.

    Rounds run as their own tasks, so a round that overruns the period does
    not hold back the next tick; overlapping rounds are fine because upserts
    are idempotent by link.
    """

    def __init__(self, feeds: Sequence[str], period_seconds: float, pipeline: AggregationPipeline):
        if period_seconds <= 0:
            raise ConfigurationError("polling period must be greater than zero")
        self.feeds = list(feeds)
        self.period_seconds = period_seconds
        self.pipeline = pipeline
        self._rounds: set[asyncio.Task] = set()

    async def run(self, stop: asyncio.Event) -> None:
        if not self.feeds:
            log.warning("no feeds configured, poller stays idle")
            await stop.wait()
            return

        log.info("poller starting", feeds=len(self.feeds), period_seconds=self.period_seconds)
        self._dispatch(stop)

        scheduler = AsyncIOScheduler(timezone="UTC")
        scheduler.add_job(
            self._tick,
            trigger=IntervalTrigger(seconds=self.period_seconds),
            args=[stop],
            id="ingest",
            replace_existing=True,
            coalesce=False,
            misfire_grace_time=None,
        )
        scheduler.start()
        try:
            await stop.wait()
        finally:
            scheduler.shutdown(wait=False)
            if self._rounds:
                await asyncio.gather(*self._rounds, return_exceptions=True)
            log.info("poller stopped")

    async def _tick(self, stop: asyncio.Event) -> None:
        if not stop.is_set():
            self._dispatch(stop)

    def _dispatch(self, stop: asyncio.Event) -> None:
        task = asyncio.create_task(self._round(stop))
        self._rounds.add(task)
        task.add_done_callback(self._rounds.discard)

    async def _round(self, stop: asyncio.Event) -> None:
        try:
            await self.pipeline.run_once(self.feeds, stop)
        except Exception:
            # Log but keep the poller ticking
            log.exception("polling round failed")
