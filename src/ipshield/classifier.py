from __future__ import annotations

import ipaddress
import logging
from enum import Enum
from typing import Sequence, Tuple, Union

logger = logging.getLogger(__name__)

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]
IPNetwork = Union[ipaddress.IPv4Network, ipaddress.IPv6Network]


class Verdict(str, Enum):
    """Brief: Classification result for one address.

    Members are declared highest precedence first; the string value is what
    TXT answers carry verbatim.
    """

    FLAGGED = "FLAGGED"
    DATACENTER = "DATACENTER"
    TOR_EXIT = "TOR_EXIT"
    SAFE = "SAFE"


class FeedCategory(str, Enum):
    """Brief: Kind of reputation list a feed belongs to."""

    FLAGGED = "flagged"
    DATACENTER = "datacenter"
    TOR_EXIT = "tor_exit"


# Verdict reported when a feed of the given category contains the address.
CATEGORY_VERDICTS = {
    FeedCategory.FLAGGED: Verdict.FLAGGED,
    FeedCategory.DATACENTER: Verdict.DATACENTER,
    FeedCategory.TOR_EXIT: Verdict.TOR_EXIT,
}

# Fixed check order; first matching category wins.
DEFAULT_PRECEDENCE: Tuple[FeedCategory, ...] = (
    FeedCategory.FLAGGED,
    FeedCategory.DATACENTER,
    FeedCategory.TOR_EXIT,
)


class QueryMalformed(ValueError):
    """Raised when a query name is not a literal IPv4/IPv6 address."""


def parse_address(text: str) -> IPAddress:
    """Brief: Parse a query name or user string into an ipaddress object.

    Inputs:
      - text: Candidate address, optionally with a trailing root dot as found
        in DNS query names (e.g. '203.0.113.5.').

    Outputs:
      - IPv4Address or IPv6Address.

    Raises:
      - QueryMalformed: when text is not an address literal.

    Example:
      >>> parse_address("203.0.113.5.")
      IPv4Address('203.0.113.5')
    """

    candidate = str(text or "").strip()
    if candidate.endswith("."):
        candidate = candidate[:-1]
    try:
        return ipaddress.ip_address(candidate)
    except ValueError as exc:
        raise QueryMalformed(f"not an IP address literal: {text!r}") from exc


class Classifier:
    """Brief: Apply the verdict precedence policy on top of a reputation store.

    Inputs (constructor):
      - store: Object exposing classify(address, precedence) -> Verdict,
        normally an ipshield.store.ReputationStore.
      - precedence: Category check order, highest priority first.

    Outputs:
      - Classifier instance.

    Example:
      >>> from ipshield.store import ReputationStore
      >>> Classifier(ReputationStore()).classify("198.51.100.7")
      <Verdict.SAFE: 'SAFE'>
    """

    def __init__(
        self, store, precedence: Sequence[FeedCategory] = DEFAULT_PRECEDENCE
    ) -> None:
        self.store = store
        self.precedence: Tuple[FeedCategory, ...] = tuple(
            FeedCategory(c) for c in precedence
        )

    def classify(self, address: Union[str, IPAddress]) -> Verdict:
        """Brief: Return the verdict for a single address.

        Inputs:
          - address: ipaddress object or address string.

        Outputs:
          - Verdict

        Raises:
          - QueryMalformed: when a string address cannot be parsed.
        """

        if isinstance(address, str):
            address = parse_address(address)
        verdict = self.store.classify(address, self.precedence)
        logger.debug("Classified %s as %s", address, verdict.value)
        return verdict
