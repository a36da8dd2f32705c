from __future__ import annotations

import re
from typing import Any, Dict, List, Literal

from pydantic import BaseModel, Field, field_validator

from ..classifier import FeedCategory

FIREHOL_LEVEL1_URL = "https://iplists.firehol.org/files/firehol_level1.netset"
DATACENTERS_URL = (
    "https://raw.githubusercontent.com/jhassine/server-ip-addresses/"
    "master/data/datacenters.txt"
)
OCI_URL = "https://docs.cloud.oracle.com/en-us/iaas/tools/public_ip_ranges.json"
DIGITALOCEAN_URL = "https://www.digitalocean.com/geo/google.csv"
TOR_EXIT_URL = "https://check.torproject.org/torbulkexitlist"


class FeedConfig(BaseModel):
    """Brief: Typed description of one upstream reputation feed.

    Inputs:
      - id: Unique feed identifier ([a-z0-9_-]+).
      - url: HTTP(S) source URL.
      - format: One of netset, ip, json_regions, csv.
      - category: FeedCategory the feed's entries belong to.
      - enabled: When false the feed is neither fetched nor consulted.

    Outputs:
      - FeedConfig instance.

    Example:
      >>> FeedConfig(id="tor", url="https://example/tor", format="ip", category="tor_exit").category
      <FeedCategory.TOR_EXIT: 'tor_exit'>
    """

    id: str
    url: str
    format: Literal["netset", "ip", "json_regions", "csv"] = "netset"
    category: FeedCategory
    enabled: bool = Field(default=True)

    class Config:
        extra = "forbid"

    @field_validator("id")
    @classmethod
    def _check_id(cls, value: str) -> str:
        if not re.fullmatch(r"[a-z0-9_-]+", value):
            raise ValueError("feed id must match [a-z0-9_-]+")
        return value

    @field_validator("url")
    @classmethod
    def _check_url(cls, value: str) -> str:
        if not value.startswith(("http://", "https://")):
            raise ValueError("feed url must be http:// or https://")
        return value


DEFAULT_FEEDS: List[Dict[str, Any]] = [
    {
        "id": "firehol_level1",
        "url": FIREHOL_LEVEL1_URL,
        "format": "netset",
        "category": "flagged",
    },
    {
        "id": "datacenters",
        "url": DATACENTERS_URL,
        "format": "netset",
        "category": "datacenter",
    },
    {
        "id": "oracle_cloud",
        "url": OCI_URL,
        "format": "json_regions",
        "category": "datacenter",
    },
    {
        "id": "digitalocean",
        "url": DIGITALOCEAN_URL,
        "format": "csv",
        "category": "datacenter",
    },
    {
        "id": "tor_exit",
        "url": TOR_EXIT_URL,
        "format": "ip",
        "category": "tor_exit",
    },
]


def load_feed_configs(raw: Any) -> List[FeedConfig]:
    """Brief: Validate raw feed mappings and drop disabled feeds.

    Inputs:
      - raw: List of feed mappings from YAML, or None for DEFAULT_FEEDS.

    Outputs:
      - List[FeedConfig] of enabled feeds, in configuration order.

    Raises:
      - ValueError: on invalid entries or duplicate ids.
    """

    items = DEFAULT_FEEDS if raw is None else raw
    if not isinstance(items, list):
        raise ValueError("config.feeds must be a list of feed definitions")

    feeds: List[FeedConfig] = []
    seen: set[str] = set()
    for item in items:
        if not isinstance(item, dict):
            raise ValueError("each feed entry must be a mapping")
        # 'comment' is a human-only annotation.
        fields = {k: v for k, v in item.items() if k != "comment"}
        try:
            feed = FeedConfig(**fields)
        except Exception as exc:
            raise ValueError(
                f"Invalid configuration for feed {item.get('id')!r}: {exc}"
            ) from exc
        if feed.id in seen:
            raise ValueError(f"duplicate feed id {feed.id!r}")
        seen.add(feed.id)
        if feed.enabled:
            feeds.append(feed)
    return feeds
