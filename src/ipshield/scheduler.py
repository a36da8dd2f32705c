from __future__ import annotations

import concurrent.futures
import logging
import threading
import time
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional, Sequence

from .feeds.errors import FetchError
from .feeds.fetcher import FeedFetcher
from .feeds.models import FeedConfig
from .store import ReputationStore

logger = logging.getLogger(__name__)

DEFAULT_REFRESH_INTERVAL_SECONDS = 6 * 60 * 60
DEFAULT_INITIAL_BACKOFF_SECONDS = 5.0
DEFAULT_MAX_BACKOFF_SECONDS = 5 * 60.0


class Backoff:
    """Brief: Doubling retry delay with an upper bound.

    Inputs (constructor):
      - initial: Delay in seconds after the first consecutive failure.
      - maximum: Cap applied to every delay.

    Outputs:
      - Backoff instance; failure() returns the delay to wait before the
        next attempt, reset() forgets all failures.

    Example:
      >>> b = Backoff(5, 300)
      >>> [b.failure() for _ in range(4)]
      [5.0, 10.0, 20.0, 40.0]
      >>> b.reset(); b.failure()
      5.0
    """

    def __init__(self, initial: float, maximum: float) -> None:
        if initial <= 0:
            raise ValueError("initial backoff must be positive")
        if maximum < initial:
            raise ValueError("maximum backoff must be >= initial backoff")
        self.initial = float(initial)
        self.maximum = float(maximum)
        self.failures = 0

    @property
    def delay(self) -> float:
        """Delay for the current failure count (initial when there is none)."""

        if self.failures <= 0:
            return self.initial
        # Clamp the exponent so long outages cannot overflow the float.
        exponent = min(self.failures - 1, 62)
        return min(self.initial * (2**exponent), self.maximum)

    def failure(self) -> float:
        self.failures += 1
        return self.delay

    def reset(self) -> None:
        self.failures = 0


@dataclass
class FeedState:
    """Brief: Refresh bookkeeping for one feed, exposed through status()."""

    feed_id: str
    last_attempt: Optional[float] = None
    last_success: Optional[float] = None
    last_error: Optional[str] = None
    consecutive_failures: int = 0
    next_attempt: Optional[float] = None


class RefreshScheduler:
    """Brief: Keep every feed's snapshot fresh with one thread per feed.

    Inputs (constructor):
      - feeds: FeedConfig list to refresh.
      - fetcher: FeedFetcher used for every attempt.
      - store: ReputationStore receiving successful snapshots.
      - interval: Seconds between successful refreshes of one feed.
      - initial_backoff: First retry delay after a failure.
      - max_backoff: Upper bound for retry delays.

    Outputs:
      - RefreshScheduler; call initial_fetch() before serving, then start().

    Notes:
      - A failed attempt never touches the store, so the last good snapshot
        (or the empty state) stays authoritative.
      - Each feed's backoff only delays that feed's thread.

    Example:
      >>> sched = RefreshScheduler(feeds, FeedFetcher(), store)  # doctest: +SKIP
      >>> failed = sched.initial_fetch(timeout=60)  # doctest: +SKIP
      >>> sched.start()  # doctest: +SKIP
    """

    def __init__(
        self,
        feeds: Sequence[FeedConfig],
        fetcher: FeedFetcher,
        store: ReputationStore,
        *,
        interval: float = DEFAULT_REFRESH_INTERVAL_SECONDS,
        initial_backoff: float = DEFAULT_INITIAL_BACKOFF_SECONDS,
        max_backoff: float = DEFAULT_MAX_BACKOFF_SECONDS,
    ) -> None:
        if interval <= 0:
            raise ValueError("refresh interval must be positive")
        self.feeds: List[FeedConfig] = list(feeds)
        self.fetcher = fetcher
        self.store = store
        self.interval = float(interval)
        self._backoffs: Dict[str, Backoff] = {
            f.id: Backoff(initial_backoff, max_backoff) for f in self.feeds
        }
        self._states: Dict[str, FeedState] = {
            f.id: FeedState(feed_id=f.id) for f in self.feeds
        }
        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._threads: List[threading.Thread] = []
        # Startup fetches still running after the initial_fetch deadline.
        self._startup_futures: Dict[str, concurrent.futures.Future] = {}

    def refresh_feed(self, feed: FeedConfig) -> bool:
        """Brief: Make one fetch attempt and install the result on success.

        Inputs:
          - feed: FeedConfig to refresh.

        Outputs:
          - bool: True when a new snapshot was installed.

        Notes:
          - FetchError is logged and turned into a False return; the feed's
            backoff advances. Success resets the backoff.
        """

        backoff = self._backoffs[feed.id]
        now = time.time()
        try:
            snapshot = self.fetcher.fetch(feed)
        except FetchError as exc:
            delay = backoff.failure()
            with self._lock:
                state = self._states[feed.id]
                state.last_attempt = now
                state.last_error = str(exc)
                state.consecutive_failures = backoff.failures
                state.next_attempt = time.time() + delay
            logger.warning(
                "Refresh of feed %s failed (attempt %d): %s; retrying in %.0fs",
                feed.id,
                backoff.failures,
                exc,
                delay,
            )
            return False

        self.store.replace(feed.id, snapshot)
        backoff.reset()
        with self._lock:
            state = self._states[feed.id]
            state.last_attempt = now
            state.last_success = snapshot.fetched_at
            state.last_error = None
            state.consecutive_failures = 0
            state.next_attempt = time.time() + self.interval
        return True

    def initial_fetch(self, timeout: Optional[float] = None) -> List[str]:
        """Brief: Fetch every feed once, in parallel, before serving starts.

        Inputs:
          - timeout: Optional overall deadline in seconds; None waits for all.

        Outputs:
          - List[str]: ids of feeds that failed or did not finish in time.

        Notes:
          - Feeds still in flight at the deadline keep running in the
            background and install their snapshot when they complete. They
            count as failed for the startup result but not for their backoff;
            the feed's refresh loop waits for that fetch before its own.
        """

        if not self.feeds:
            return []

        pool = concurrent.futures.ThreadPoolExecutor(
            max_workers=len(self.feeds), thread_name_prefix="ipshield-startup"
        )
        try:
            futures = {pool.submit(self.refresh_feed, f): f.id for f in self.feeds}
            done, pending = concurrent.futures.wait(futures, timeout=timeout)
        finally:
            pool.shutdown(wait=False)

        failed: List[str] = []
        for fut in done:
            exc = fut.exception()
            if exc is not None:
                logger.error(
                    "Unexpected error while fetching feed %s: %s", futures[fut], exc
                )
                self._backoffs[futures[fut]].failure()
                failed.append(futures[fut])
            elif not fut.result():
                failed.append(futures[fut])
        for fut in pending:
            logger.warning(
                "Feed %s did not finish the startup pass within %ss",
                futures[fut],
                timeout,
            )
            self._startup_futures[futures[fut]] = fut
            failed.append(futures[fut])
        ordered = [f.id for f in self.feeds if f.id in failed]
        logger.info(
            "Startup fetch pass complete: %d/%d feeds loaded",
            len(self.feeds) - len(ordered),
            len(self.feeds),
        )
        return ordered

    def _wait_for_startup_fetch(self, feed: FeedConfig) -> bool:
        """Block until the feed's unfinished startup fetch completes.

        Returns False when stop() was called first.
        """

        fut = self._startup_futures.pop(feed.id, None)
        if fut is None:
            return True
        while not fut.done():
            if self._stop_event.wait(0.05):
                return False
        exc = fut.exception()
        if exc is not None:
            logger.error("Unexpected error while fetching feed %s: %s", feed.id, exc)
            self._backoffs[feed.id].failure()
        return True

    def _feed_loop(self, feed: FeedConfig) -> None:
        if not self._wait_for_startup_fetch(feed):
            logger.debug("Refresh loop for feed %s stopped", feed.id)
            return
        backoff = self._backoffs[feed.id]
        delay = backoff.delay if backoff.failures else self.interval
        # Event.wait returns True once stop() has been called.
        while not self._stop_event.wait(delay):
            try:
                ok = self.refresh_feed(feed)
            except Exception:
                logger.exception("Unexpected error while refreshing feed %s", feed.id)
                delay = backoff.failure()
                continue
            delay = self.interval if ok else backoff.delay
        logger.debug("Refresh loop for feed %s stopped", feed.id)

    def start(self) -> None:
        """Brief: Start one daemon refresh thread per feed.

        Inputs:
          - None

        Outputs:
          - None; calling start() twice is a no-op.

        Notes:
          - A feed whose startup fetch is still running waits for it first.
          - Feeds whose last attempt failed begin with their backoff delay,
            others wait a full refresh interval first.
        """

        if self._threads:
            return
        self._stop_event.clear()
        for feed in self.feeds:
            t = threading.Thread(
                target=self._feed_loop,
                args=(feed,),
                name=f"ipshield-refresh-{feed.id}",
                daemon=True,
            )
            t.start()
            self._threads.append(t)
        logger.info(
            "Started %d feed refresh threads (interval %.0fs)",
            len(self._threads),
            self.interval,
        )

    def stop(self, timeout: float = 5.0) -> None:
        """Signal every refresh thread to exit and wait up to timeout for each."""

        self._stop_event.set()
        for t in self._threads:
            t.join(timeout=timeout)
        self._threads = []

    def is_running(self) -> bool:
        return any(t.is_alive() for t in self._threads)

    def status(self) -> Dict[str, Dict[str, Any]]:
        with self._lock:
            return {feed_id: asdict(s) for feed_id, s in self._states.items()}
