import asyncio

import httpx
from structlog.testing import capture_logs

from newsagg.services.ingest.pipeline import AggregationPipeline
from newsagg.services.ingest.rss import FeedFetcher


def _feeds_transport(routes):
    """routes: url -> (status, body); unknown urls answer 404."""
    def handler(request):
        status, body = routes.get(str(request.url), (404, b""))
        return httpx.Response(status, content=body)
    return httpx.MockTransport(handler)


def _items(prefix: str, n: int) -> list[dict]:
    return [{"title": f"{prefix} {i}", "link": f"https://example.com/{prefix}/{i}"} for i in range(n)]


def _run(pipeline, feeds, stop=None):
    async def scenario():
        await pipeline.run_once(feeds, stop or asyncio.Event())
    asyncio.run(scenario())


def test_failure_isolation(make_rss, recording_store):
    """A failing feed is logged once and the healthy feed is still persisted"""
    feed_a = "https://a.example.com/rss"
    feed_b = "https://b.example.com/rss"
    transport = _feeds_transport({
        feed_a: (500, b"internal error"),
        feed_b: (200, make_rss(_items("b", 3))),
    })
    pipeline = AggregationPipeline(FeedFetcher(transport=transport), recording_store)

    with capture_logs() as logs:
        _run(pipeline, [feed_a, feed_b])

    assert len(recording_store.batches) == 1
    assert recording_store.links == [f"https://example.com/b/{i}" for i in range(3)]

    failures = [e for e in logs if e["event"] == "feed fetch failed"]
    assert len(failures) == 1
    assert failures[0]["url"] == feed_a
    assert failures[0]["kind"] == "status"


def test_batch_threshold_flush(make_rss, recording_store):
    """60 entries across feeds flush as 25, 25, 10 in arrival order"""
    routes = {
        f"https://feed{n}.example.com/rss": (200, make_rss(_items(f"f{n}", 20)))
        for n in range(3)
    }
    pipeline = AggregationPipeline(FeedFetcher(transport=_feeds_transport(routes)), recording_store)

    _run(pipeline, list(routes))

    assert [len(b) for b in recording_store.batches] == [25, 25, 10]
    links = recording_store.links
    assert len(links) == 60
    assert len(set(links)) == 60
    # each feed keeps its own document order across batches
    for n in range(3):
        own = [link for link in links if f"/f{n}/" in link]
        assert own == [f"https://example.com/f{n}/{i}" for i in range(20)]


def test_order_within_feed(make_rss, recording_store):
    feed = "https://one.example.com/rss"
    body = make_rss([{"title": t, "link": f"https://example.com/{t}"} for t in ("X", "Y", "Z")])
    pipeline = AggregationPipeline(FeedFetcher(transport=_feeds_transport({feed: (200, body)})), recording_store)

    _run(pipeline, [feed])

    assert [p["title"] for p in recording_store.batches[0]] == ["X", "Y", "Z"]


def test_persists_post_shaped_records(make_rss, recording_store):
    feed = "https://one.example.com/rss"
    body = make_rss([{"title": " T ", "description": " D ", "link": "https://example.com/p",
                      "pubDate": "Mon, 02 Jan 2006 15:04:05 GMT"}])
    pipeline = AggregationPipeline(FeedFetcher(transport=_feeds_transport({feed: (200, body)})), recording_store)

    _run(pipeline, [feed])

    post = recording_store.batches[0][0]
    assert set(post) == {"title", "description", "link", "published_at"}
    assert post["title"] == "T"
    assert post["description"] == "D"


def test_flush_failure_does_not_abort_round(make_rss, failing_store):
    """Every batch is still attempted when the store keeps failing"""
    routes = {
        f"https://feed{n}.example.com/rss": (200, make_rss(_items(f"f{n}", 20)))
        for n in range(3)
    }
    pipeline = AggregationPipeline(FeedFetcher(transport=_feeds_transport(routes)), failing_store)

    with capture_logs() as logs:
        _run(pipeline, list(routes))

    assert [len(b) for b in failing_store.batches] == [25, 25, 10]
    assert len([e for e in logs if e["event"] == "save posts failed"]) == 3
    summary = [e for e in logs if e["event"] == "round finished"][0]
    assert summary["posts"] == 60
    assert summary["cancelled"] is False


def test_all_feeds_failing_persists_nothing(recording_store):
    feeds = ["https://a.example.com/rss", "https://b.example.com/rss"]
    pipeline = AggregationPipeline(FeedFetcher(transport=_feeds_transport({})), recording_store)

    with capture_logs() as logs:
        _run(pipeline, feeds)

    assert recording_store.batches == []
    assert len([e for e in logs if e["event"] == "feed fetch failed"]) == 2


def test_stop_before_round_does_nothing(make_rss, recording_store):
    feed = "https://one.example.com/rss"
    pipeline = AggregationPipeline(
        FeedFetcher(transport=_feeds_transport({feed: (200, make_rss(_items("x", 3)))})),
        recording_store,
    )

    async def scenario():
        stop = asyncio.Event()
        stop.set()
        await pipeline.run_once([feed], stop)

    asyncio.run(scenario())

    assert recording_store.batches == []


def test_stop_mid_round_skips_final_flush(make_rss, recording_store):
    """A partial buffer is dropped when the stop signal fires mid-round"""
    fast = "https://fast.example.com/rss"
    slow = "https://slow.example.com/rss"
    fast_body = make_rss(_items("fast", 3))

    async def handler(request):
        if str(request.url) == slow:
            await asyncio.sleep(10)
        return httpx.Response(200, content=fast_body)

    pipeline = AggregationPipeline(FeedFetcher(transport=httpx.MockTransport(handler)), recording_store)

    async def scenario():
        stop = asyncio.Event()
        asyncio.get_running_loop().call_later(0.3, stop.set)
        started = asyncio.get_running_loop().time()
        with capture_logs() as logs:
            await pipeline.run_once([fast, slow], stop)
        return asyncio.get_running_loop().time() - started, logs

    elapsed, logs = asyncio.run(scenario())

    assert elapsed < 5
    assert recording_store.batches == []
    summary = [e for e in logs if e["event"] == "round finished"][0]
    assert summary["cancelled"] is True
    assert summary["posts"] == 3
