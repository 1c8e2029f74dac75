from __future__ import annotations


class NewsAggError(Exception):
    """Base class for every error raised by newsagg."""


class FetchError(NewsAggError):
    """A single feed could not be retrieved or read."""

    kind = "fetch"

    def __init__(self, url: str, message: str):
        super().__init__(f"fetch {url}: {message}" if url else message)
        self.url = url


class FeedStatusError(FetchError):
    kind = "status"

    def __init__(self, url: str, status: int):
        super().__init__(url, f"unexpected status {status}")
        self.status = status


class TransportError(FetchError):
    kind = "transport"


class ParseError(FetchError):
    kind = "parse"


class PersistenceError(NewsAggError):
    """A store transaction failed."""


class InvalidArgumentError(NewsAggError, ValueError):
    """Caller contract violation, e.g. a non-positive limit."""


class ConfigurationError(NewsAggError):
    """Missing or invalid settings; fatal at startup."""


class Cancelled(NewsAggError):
    """The stop signal fired while waiting on a blocking operation."""
