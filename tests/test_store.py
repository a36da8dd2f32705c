"""
Brief: Tests for ipshield.store FeedSnapshot containment and ReputationStore.

Inputs:
  - None

Outputs:
  - None
"""

import ipaddress
import threading

from ipshield.classifier import FeedCategory, Verdict
from ipshield.store import FeedSnapshot, ReputationStore


def _ip(text):
    return ipaddress.ip_address(text)


def _net(text):
    return ipaddress.ip_network(text, strict=False)


def test_snapshot_contains_network_and_exact_address():
    """
    Brief: contains() matches addresses inside a CIDR and bare addresses exactly.

    Inputs:
      - snapshot with 10.0.0.0/8 and 192.0.2.99

    Outputs:
      - None: Asserts membership results
    """
    snap = FeedSnapshot.build(
        "f", FeedCategory.FLAGGED, [_net("10.0.0.0/8"), _ip("192.0.2.99")]
    )
    assert snap.contains(_ip("10.1.2.3"))
    assert snap.contains(_ip("192.0.2.99"))
    assert not snap.contains(_ip("192.0.2.98"))
    assert not snap.contains(_ip("11.0.0.1"))
    assert len(snap) == 2


def test_snapshot_keeps_ip_versions_apart():
    """
    Brief: IPv4 networks never match IPv6 addresses and vice versa.

    Inputs:
      - snapshot with 0.0.0.0/0 and 2001:db8::/32

    Outputs:
      - None: Asserts version-separated containment
    """
    snap = FeedSnapshot.build(
        "f", "datacenter", [_net("0.0.0.0/0"), _net("2001:db8::/32")]
    )
    assert snap.contains(_ip("203.0.113.5"))
    assert snap.contains(_ip("2001:db8::1"))
    assert not snap.contains(_ip("2001:db9::1"))
    assert snap.category is FeedCategory.DATACENTER


def test_empty_store_classifies_safe():
    """
    Brief: A store with no snapshots reports SAFE for everything.

    Inputs:
      - None

    Outputs:
      - None: Asserts SAFE verdict
    """
    store = ReputationStore()
    assert store.classify(_ip("198.51.100.7")) is Verdict.SAFE
    assert store.get("missing") is None
    assert not store.contains("missing", _ip("198.51.100.7"))


def test_precedence_flagged_beats_datacenter_and_tor():
    """
    Brief: An address in several categories gets the highest-precedence verdict.

    Inputs:
      - flagged, datacenter and tor feeds all containing 203.0.113.5

    Outputs:
      - None: Asserts precedence order
    """
    store = ReputationStore()
    addr = _ip("203.0.113.5")
    store.replace("tor", FeedSnapshot.build("tor", "tor_exit", [addr]))
    assert store.classify(addr) is Verdict.TOR_EXIT
    store.replace("dc", FeedSnapshot.build("dc", "datacenter", [_net("203.0.113.0/24")]))
    assert store.classify(addr) is Verdict.DATACENTER
    store.replace("fl", FeedSnapshot.build("fl", "flagged", [_net("203.0.0.0/16")]))
    assert store.classify(addr) is Verdict.FLAGGED


def test_classify_accepts_custom_precedence():
    """
    Brief: Precedence can be given as category strings in a different order.

    Inputs:
      - precedence ("tor_exit", "flagged")

    Outputs:
      - None: Asserts TOR_EXIT wins and unlisted categories are ignored
    """
    store = ReputationStore()
    addr = _ip("192.0.2.1")
    store.replace("fl", FeedSnapshot.build("fl", "flagged", [addr]))
    store.replace("tor", FeedSnapshot.build("tor", "tor_exit", [addr]))
    store.replace("dc2", FeedSnapshot.build("dc2", "datacenter", [_ip("192.0.2.2")]))
    assert store.classify(addr, ("tor_exit", "flagged")) is Verdict.TOR_EXIT
    assert store.classify(_ip("192.0.2.2"), ("tor_exit",)) is Verdict.SAFE


def test_replace_swaps_one_feed_and_leaves_others():
    """
    Brief: replace() swaps the named feed's snapshot only.

    Inputs:
      - two feeds, one replaced

    Outputs:
      - None: Asserts the other feed is untouched and old contents are gone
    """
    store = ReputationStore()
    a1 = FeedSnapshot.build("a", "flagged", [_ip("192.0.2.1")])
    b1 = FeedSnapshot.build("b", "datacenter", [_ip("192.0.2.2")])
    store.replace("a", a1)
    store.replace("b", b1)
    before = store.snapshots()

    a2 = FeedSnapshot.build("a", "flagged", [_ip("192.0.2.3")])
    store.replace("a", a2)

    assert store.get("a") is a2
    assert store.get("b") is b1
    assert not store.contains("a", _ip("192.0.2.1"))
    assert store.contains("a", _ip("192.0.2.3"))
    # Earlier point-in-time copies are not mutated.
    assert before["a"] is a1


def test_status_reports_installed_snapshots():
    """
    Brief: status() summarizes category, entry counts and provenance.

    Inputs:
      - one snapshot with fetched_at and source

    Outputs:
      - None: Asserts status payload
    """
    store = ReputationStore()
    store.replace(
        "a",
        FeedSnapshot.build(
            "a", "tor_exit", [_ip("192.0.2.1")], fetched_at=100.0, source="https://x", skipped=2
        ),
    )
    assert store.status() == {
        "a": {
            "category": "tor_exit",
            "entries": 1,
            "skipped": 2,
            "fetched_at": 100.0,
            "source": "https://x",
        }
    }


def test_classify_sees_whole_snapshots_during_concurrent_replace():
    """
    Brief: Readers observe either the old or the new snapshot, never a mix.

    Inputs:
      - writer alternating between two snapshots covering disjoint halves
        of one address set

    Outputs:
      - None: Asserts every classification of a sample address is consistent
        with exactly one of the two snapshots
    """
    store = ReputationStore()
    old = FeedSnapshot.build("f", "flagged", [_net("10.0.0.0/9")])
    new = FeedSnapshot.build("f", "flagged", [_net("10.128.0.0/9")])
    store.replace("f", old)

    low = _ip("10.1.1.1")
    high = _ip("10.200.1.1")
    stop = threading.Event()
    errors = []

    def writer():
        i = 0
        while not stop.is_set():
            store.replace("f", new if i % 2 else old)
            i += 1

    def reader():
        for _ in range(2000):
            snap = store.get("f")
            low_hit = snap.contains(low)
            high_hit = snap.contains(high)
            if low_hit == high_hit:
                errors.append((low_hit, high_hit))
            if store.classify(low) not in (Verdict.FLAGGED, Verdict.SAFE):
                errors.append("bad verdict")

    w = threading.Thread(target=writer)
    readers = [threading.Thread(target=reader) for _ in range(4)]
    w.start()
    for r in readers:
        r.start()
    for r in readers:
        r.join()
    stop.set()
    w.join()
    assert errors == []
