from __future__ import annotations

import logging
import time
from typing import Iterable, Iterator, Optional

import requests

from ..store import FeedSnapshot
from .errors import TransportError
from .models import FeedConfig
from .parsers import get_parser

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30.0
DEFAULT_MAX_FETCH_SECONDS = 300.0
DEFAULT_USER_AGENT = "ipshield/0.1"


class FeedFetcher:
    """Brief: Download and parse one feed into an immutable FeedSnapshot.

    Inputs (constructor):
      - timeout: Per-request timeout in seconds, applied to connect and each read.
      - max_seconds: Upper bound on the whole download, body included.
      - user_agent: User-Agent header sent to feed sources.
      - session: Optional requests.Session (a module-level requests.get is
        used when omitted).

    Outputs:
      - FeedFetcher whose fetch() returns a FeedSnapshot or raises
        TransportError / ContainerParseError.

    Notes:
      - No retries happen here; the refresh scheduler owns backoff.
      - fetch() never touches the reputation store.

    Example:
      >>> fetcher = FeedFetcher(timeout=10)
      >>> snap = fetcher.fetch(feed)  # doctest: +SKIP
    """

    def __init__(
        self,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        user_agent: str = DEFAULT_USER_AGENT,
        session: Optional[requests.Session] = None,
        max_seconds: float = DEFAULT_MAX_FETCH_SECONDS,
    ) -> None:
        if not timeout or float(timeout) <= 0:
            raise ValueError("fetch timeout must be a positive number of seconds")
        if not max_seconds or float(max_seconds) <= 0:
            raise ValueError("fetch max_seconds must be a positive number of seconds")
        self.timeout = float(timeout)
        self.max_seconds = float(max_seconds)
        self.user_agent = str(user_agent)
        self.session = session

    def _get(self, url: str) -> requests.Response:
        getter = self.session.get if self.session is not None else requests.get
        return getter(
            url,
            timeout=self.timeout,
            stream=True,
            headers={"User-Agent": self.user_agent},
        )

    def _bounded_lines(
        self, feed_id: str, lines: Iterable[str], deadline: float
    ) -> Iterator[str]:
        for line in lines:
            if time.monotonic() > deadline:
                raise TransportError(
                    feed_id, f"download exceeded {self.max_seconds:g}s total"
                )
            yield line

    def fetch(self, feed: FeedConfig) -> FeedSnapshot:
        """Brief: Perform one GET for feed and parse the streamed body.

        Inputs:
          - feed: FeedConfig describing url, format, category and id.

        Outputs:
          - FeedSnapshot with the parsed entries and the count of skipped rows.

        Raises:
          - TransportError: connection/timeout failures, non-2xx status, a
            stream that breaks mid-body, or a body still arriving after
            max_seconds.
          - ContainerParseError: undecodable body for the feed's format.
        """

        parser = get_parser(feed.format)
        started = time.time()
        deadline = time.monotonic() + self.max_seconds
        logger.debug("Fetching feed %s from %s", feed.id, feed.url)

        try:
            resp = self._get(feed.url)
        except requests.RequestException as exc:
            raise TransportError(feed.id, f"request failed: {exc}") from exc

        try:
            try:
                resp.raise_for_status()
            except requests.HTTPError as exc:
                raise TransportError(
                    feed.id,
                    f"HTTP {resp.status_code} from {feed.url}",
                    status_code=resp.status_code,
                ) from exc

            if resp.encoding is None:
                resp.encoding = "utf-8"
            try:
                lines = self._bounded_lines(
                    feed.id, resp.iter_lines(decode_unicode=True), deadline
                )
                result = parser(feed.id, lines)
            except requests.RequestException as exc:
                raise TransportError(feed.id, f"stream interrupted: {exc}") from exc
        finally:
            resp.close()

        snapshot = FeedSnapshot.build(
            feed.id,
            feed.category,
            result.entries,
            fetched_at=started,
            source=feed.url,
            skipped=result.skipped,
        )
        logger.info(
            "Fetched feed %s: %d entries (%d rows skipped) in %.2fs",
            feed.id,
            len(snapshot),
            result.skipped,
            time.time() - started,
        )
        return snapshot
