from __future__ import annotations

import ipaddress
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Mapping, Optional, Sequence, Tuple, Union

from .classifier import (
    CATEGORY_VERDICTS,
    DEFAULT_PRECEDENCE,
    FeedCategory,
    IPAddress,
    IPNetwork,
    Verdict,
)

logger = logging.getLogger(__name__)

Entry = Union[IPAddress, IPNetwork]


@dataclass(frozen=True)
class FeedSnapshot:
    """Brief: Immutable, fully parsed contents of one feed as of one fetch.

    Inputs (constructor fields):
      - feed_id: Identifier of the feed that produced the snapshot.
      - category: FeedCategory the feed contributes to.
      - entries: Tuple of ipaddress networks and/or addresses, source order.
      - fetched_at: Epoch seconds when the snapshot was captured.
      - source: Optional URL the entries were fetched from.
      - skipped: Number of rows rejected while parsing.

    Outputs:
      - FeedSnapshot whose contains() answers membership queries.

    Notes:
      - Networks are scanned linearly per IP version; bare addresses are
        matched by exact equality through a frozenset.

    Example:
      >>> snap = FeedSnapshot.build("flagged", "flagged", [ipaddress.ip_network("10.0.0.0/8")])
      >>> snap.contains(ipaddress.ip_address("10.1.2.3"))
      True
    """

    feed_id: str
    category: FeedCategory
    entries: Tuple[Entry, ...]
    fetched_at: float = 0.0
    source: Optional[str] = None
    skipped: int = 0
    _v4_networks: Tuple[ipaddress.IPv4Network, ...] = field(
        default=(), repr=False, compare=False
    )
    _v6_networks: Tuple[ipaddress.IPv6Network, ...] = field(
        default=(), repr=False, compare=False
    )
    _addresses: FrozenSet[IPAddress] = field(
        default=frozenset(), repr=False, compare=False
    )

    @classmethod
    def build(
        cls,
        feed_id: str,
        category: Union[str, FeedCategory],
        entries,
        *,
        fetched_at: Optional[float] = None,
        source: Optional[str] = None,
        skipped: int = 0,
    ) -> "FeedSnapshot":
        """Brief: Construct a snapshot and its per-version lookup indexes.

        Inputs:
          - feed_id: Feed identifier.
          - category: FeedCategory or its string value.
          - entries: Iterable of ipaddress networks/addresses.
          - fetched_at: Optional capture time (defaults to now).
          - source: Optional source URL.
          - skipped: Count of rejected rows.

        Outputs:
          - FeedSnapshot
        """

        items = tuple(entries)
        v4 = []
        v6 = []
        addrs = set()
        for item in items:
            if isinstance(item, ipaddress.IPv4Network):
                v4.append(item)
            elif isinstance(item, ipaddress.IPv6Network):
                v6.append(item)
            else:
                addrs.add(item)
        return cls(
            feed_id=feed_id,
            category=FeedCategory(category),
            entries=items,
            fetched_at=time.time() if fetched_at is None else float(fetched_at),
            source=source,
            skipped=int(skipped),
            _v4_networks=tuple(v4),
            _v6_networks=tuple(v6),
            _addresses=frozenset(addrs),
        )

    def __len__(self) -> int:
        return len(self.entries)

    def contains(self, address: IPAddress) -> bool:
        """Return True when a network contains address or an entry equals it."""

        if address in self._addresses:
            return True
        networks = self._v4_networks if address.version == 4 else self._v6_networks
        for network in networks:
            if address in network:
                return True
        return False


class ReputationStore:
    """Brief: Process-wide holder of the current snapshot for every feed.

    Inputs (constructor):
      - None

    Outputs:
      - ReputationStore instance, initially empty.

    Notes:
      - The feed -> snapshot mapping is copy-on-write. replace() builds a new
        mapping under self._lock and publishes it with a single reference
        assignment, so its cost depends on the number of feeds, not entries.
      - Readers never take the lock. classify() captures the mapping
        reference once, so one call sees exactly one snapshot per feed.
      - Feeds that never fetched successfully have no snapshot and match
        nothing.

    Example:
      >>> store = ReputationStore()
      >>> store.classify(ipaddress.ip_address("198.51.100.7"))
      <Verdict.SAFE: 'SAFE'>
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._snapshots: Mapping[str, FeedSnapshot] = {}

    def replace(self, feed_id: str, snapshot: FeedSnapshot) -> None:
        """Brief: Install snapshot as the current snapshot for feed_id.

        Inputs:
          - feed_id: Feed identifier (slot key).
          - snapshot: Fully built FeedSnapshot.

        Outputs:
          - None
        """

        with self._lock:
            updated = dict(self._snapshots)
            updated[feed_id] = snapshot
            self._snapshots = updated
        logger.info(
            "Installed snapshot for feed %s (%d entries, %d skipped)",
            feed_id,
            len(snapshot),
            snapshot.skipped,
        )

    def get(self, feed_id: str) -> Optional[FeedSnapshot]:
        return self._snapshots.get(feed_id)

    def snapshots(self) -> Dict[str, FeedSnapshot]:
        """Return a point-in-time copy of the feed -> snapshot mapping."""

        return dict(self._snapshots)

    def contains(self, feed_id: str, address: IPAddress) -> bool:
        snapshot = self._snapshots.get(feed_id)
        return snapshot is not None and snapshot.contains(address)

    def classify(
        self,
        address: IPAddress,
        precedence: Sequence[FeedCategory] = DEFAULT_PRECEDENCE,
    ) -> Verdict:
        """Brief: Classify address against every feed in precedence order.

        Inputs:
          - address: IPv4Address or IPv6Address.
          - precedence: Categories to check, highest priority first.

        Outputs:
          - Verdict for the first category with a containing feed, or
            Verdict.SAFE when nothing matches.
        """

        current = self._snapshots
        for category in precedence:
            for snapshot in current.values():
                if snapshot.category == category and snapshot.contains(address):
                    return CATEGORY_VERDICTS[FeedCategory(category)]
        return Verdict.SAFE

    def status(self) -> Dict[str, Dict[str, Any]]:
        """Brief: Summarize the installed snapshots for status reporting.

        Inputs:
          - None

        Outputs:
          - dict mapping feed id -> {category, entries, skipped, fetched_at, source}.
        """

        out: Dict[str, Dict[str, Any]] = {}
        for feed_id, snapshot in self._snapshots.items():
            out[feed_id] = {
                "category": snapshot.category.value,
                "entries": len(snapshot),
                "skipped": snapshot.skipped,
                "fetched_at": snapshot.fetched_at,
                "source": snapshot.source,
            }
        return out
