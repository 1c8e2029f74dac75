# newsagg/main.py
from __future__ import annotations

import asyncio
from pathlib import Path

import fire
import structlog
import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles

from newsagg.api.routes_posts import router as posts_router
from newsagg.core.config import Settings, load_settings
from newsagg.core.errors import ConfigurationError, InvalidArgumentError, PersistenceError
from newsagg.core.logging import configure_logging
from newsagg.db.session import make_engine
from newsagg.db.store import PostStore
from newsagg.services.ingest.pipeline import AggregationPipeline
from newsagg.services.ingest.rss import FeedFetcher
from newsagg.workers.jobs import FeedPoller

VERSION = "1.0.0"

log = structlog.get_logger()


def create_app(
    settings: Settings,
    store: PostStore | None = None,
    *,
    start_poller: bool = True,
) -> FastAPI:
    store = store or PostStore(make_engine(settings.database_url))

    app = FastAPI(title="newsagg")
    app.state.settings = settings
    app.state.store = store
    app.state.stop = None
    app.state.poller_task = None

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(posts_router, prefix="/api/news", tags=["news"])

    @app.exception_handler(InvalidArgumentError)
    async def invalid_argument(request: Request, exc: InvalidArgumentError):
        return JSONResponse(status_code=400, content={"error": str(exc)})

    @app.exception_handler(PersistenceError)
    async def persistence_failure(request: Request, exc: PersistenceError):
        log.error("read query failed", path=request.url.path, error=str(exc))
        return JSONResponse(status_code=500, content={"error": str(exc)})

    @app.get("/health")
    def health_check():
        return {"status": "ok", "version": VERSION}

    @app.on_event("startup")
    async def on_startup():
        store.create_schema()
        if not start_poller:
            return
        fetcher = FeedFetcher(timeout=settings.fetch_timeout)
        pipeline = AggregationPipeline(fetcher, store, batch_size=settings.batch_size)
        poller = FeedPoller(settings.rss, settings.poll_interval_seconds, pipeline)
        app.state.stop = asyncio.Event()
        app.state.poller_task = asyncio.create_task(poller.run(app.state.stop))

    @app.on_event("shutdown")
    async def on_shutdown():
        if app.state.stop is not None:
            app.state.stop.set()
        if app.state.poller_task is not None:
            await app.state.poller_task

    # Static front-end last so it does not shadow the API routes
    if settings.web_dir:
        web_dir = Path(settings.web_dir).resolve()
        if web_dir.is_dir():
            app.mount("/", StaticFiles(directory=str(web_dir), html=True), name="web")
        else:
            log.warning("web directory not found, static files disabled", web_dir=str(web_dir))

    return app


def serve(config: str = "", web: str = "") -> None:
    """
    Run the aggregator and its read API.
    config: path to a JSON config file (rss, request_period, database_url, api_host)
    web: directory with the web front-end to serve at /
    """
    configure_logging()
    try:
        settings = load_settings(config or None)
    except ConfigurationError as e:
        log.error("load config failed", error=str(e))
        raise SystemExit(1) from e

    if web:
        settings = settings.model_copy(update={"web_dir": web})
    configure_logging(settings.log_level)

    store = PostStore(make_engine(settings.database_url))
    try:
        store.ping()
    except PersistenceError as e:
        log.error("database unavailable", error=str(e))
        raise SystemExit(1) from e

    app = create_app(settings, store)
    host, port = settings.bind
    log.info("http server listening", host=host, port=port)
    uvicorn.run(app, host=host, port=port)


def main() -> None:
    fire.Fire(serve)


if __name__ == "__main__":
    main()
