"""Error taxonomy for feed retrieval.

Brief:
  FetchError is the only exception family that escapes the fetcher. The
  refresh scheduler catches it and applies backoff; nothing else sees it.
"""

from __future__ import annotations

from typing import Optional


class FetchError(Exception):
    """Brief: Base class for a failed fetch of one feed.

    Inputs:
      - feed_id: Identifier of the feed being fetched.
      - message: Human-readable reason.

    Outputs:
      - Exception instance carrying feed_id.
    """

    def __init__(self, feed_id: str, message: str) -> None:
        super().__init__(f"{feed_id}: {message}")
        self.feed_id = feed_id


class TransportError(FetchError):
    """Network or HTTP failure while reaching the feed source."""

    def __init__(
        self, feed_id: str, message: str, status_code: Optional[int] = None
    ) -> None:
        super().__init__(feed_id, message)
        self.status_code = status_code


class ContainerParseError(FetchError):
    """The feed body as a whole could not be decoded (bad JSON/CSV/text)."""
