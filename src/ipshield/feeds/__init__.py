"""Reputation feed retrieval: models, parsers, errors and the HTTP fetcher."""

from .errors import ContainerParseError, FetchError, TransportError
from .fetcher import FeedFetcher
from .models import DEFAULT_FEEDS, FeedConfig, load_feed_configs

__all__ = [
    "ContainerParseError",
    "DEFAULT_FEEDS",
    "FeedConfig",
    "FeedFetcher",
    "FetchError",
    "TransportError",
    "load_feed_configs",
]
