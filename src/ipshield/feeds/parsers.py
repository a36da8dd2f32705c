"""Format-specific parsers for reputation feed bodies.

Brief:
  Each parser consumes an iterable of text lines (as streamed from the HTTP
  response) and returns a ParseResult. Rows that cannot be parsed are skipped
  and logged; only an undecodable container raises ContainerParseError.

Inputs:
  - feed_id: Feed identifier used in diagnostics.
  - lines: Iterable[str] of decoded body lines.

Outputs:
  - ParseResult(entries, skipped)
"""

from __future__ import annotations

import csv
import ipaddress
import json
import logging
from typing import Any, Callable, Dict, Iterable, List, NamedTuple, Union

from ..classifier import IPAddress, IPNetwork
from .errors import ContainerParseError

logger = logging.getLogger(__name__)

Entry = Union[IPAddress, IPNetwork]


class ParseResult(NamedTuple):
    entries: List[Entry]
    skipped: int


def _strip_comment(raw: str) -> str:
    return raw.split("#", 1)[0].strip()


def parse_entry(text: str) -> Entry:
    """Brief: Parse one CIDR block or bare address.

    Inputs:
      - text: Stripped row text such as '10.0.0.0/8' or '192.0.2.99'.

    Outputs:
      - IPv4Network/IPv6Network for CIDR text, IPv4Address/IPv6Address otherwise.

    Raises:
      - ValueError: when text is neither.

    Notes:
      - Host bits in CIDR text are masked off ('10.1.2.3/8' -> 10.0.0.0/8).

    Example:
      >>> parse_entry("10.1.2.3/8")
      IPv4Network('10.0.0.0/8')
    """

    if "/" in text:
        return ipaddress.ip_network(text, strict=False)
    return ipaddress.ip_address(text)


def _skip_row(feed_id: str, row: Any, exc: Exception) -> None:
    logger.warning("Feed %s: skipping unparseable row %r: %s", feed_id, row, exc)


def parse_netset(feed_id: str, lines: Iterable[str]) -> ParseResult:
    """Brief: Parse newline-delimited CIDR blocks with '#' comment lines.

    Inputs:
      - feed_id: Feed identifier.
      - lines: Body lines.

    Outputs:
      - ParseResult; bare addresses are accepted alongside CIDR blocks.
    """

    entries: List[Entry] = []
    skipped = 0
    for raw in lines:
        line = _strip_comment(raw)
        if not line:
            continue
        try:
            entries.append(parse_entry(line))
        except ValueError as exc:
            _skip_row(feed_id, line, exc)
            skipped += 1
    return ParseResult(entries, skipped)


def parse_ip_list(feed_id: str, lines: Iterable[str]) -> ParseResult:
    """Brief: Parse newline-delimited bare addresses (e.g. Tor exit lists).

    Inputs:
      - feed_id: Feed identifier.
      - lines: Body lines.

    Outputs:
      - ParseResult containing only IPv4Address/IPv6Address entries.
    """

    entries: List[Entry] = []
    skipped = 0
    for raw in lines:
        line = _strip_comment(raw)
        if not line:
            continue
        try:
            entries.append(ipaddress.ip_address(line))
        except ValueError as exc:
            _skip_row(feed_id, line, exc)
            skipped += 1
    return ParseResult(entries, skipped)


def parse_json_regions(feed_id: str, lines: Iterable[str]) -> ParseResult:
    """Brief: Parse a JSON document shaped as regions[].cidrs[].cidr.

    Inputs:
      - feed_id: Feed identifier.
      - lines: Body lines, joined before decoding.

    Outputs:
      - ParseResult of networks.

    Raises:
      - ContainerParseError: when the body is not JSON or has no regions list.

    Example document:
      {"regions": [{"region": "us-ashburn-1", "cidrs": [{"cidr": "129.213.0.0/16"}]}]}
    """

    body = "\n".join(lines)
    try:
        data = json.loads(body)
    except ValueError as exc:
        raise ContainerParseError(feed_id, f"invalid JSON document: {exc}") from exc

    regions = data.get("regions") if isinstance(data, dict) else None
    if not isinstance(regions, list):
        raise ContainerParseError(feed_id, "JSON document has no 'regions' list")

    entries: List[Entry] = []
    skipped = 0
    for region in regions:
        cidrs = region.get("cidrs") if isinstance(region, dict) else None
        if not isinstance(cidrs, list):
            _skip_row(feed_id, region, ValueError("region without 'cidrs' list"))
            skipped += 1
            continue
        for record in cidrs:
            value = record.get("cidr") if isinstance(record, dict) else None
            try:
                entries.append(parse_entry(str(value or "").strip()))
            except ValueError as exc:
                _skip_row(feed_id, record, exc)
                skipped += 1
    return ParseResult(entries, skipped)


def parse_csv_first_column(feed_id: str, lines: Iterable[str]) -> ParseResult:
    """Brief: Parse a CSV stream whose first column is a CIDR block.

    Inputs:
      - feed_id: Feed identifier.
      - lines: Body lines fed straight into csv.reader.

    Outputs:
      - ParseResult of networks/addresses from column 0.

    Raises:
      - ContainerParseError: when the csv module cannot read the stream.
    """

    entries: List[Entry] = []
    skipped = 0
    try:
        for record in csv.reader(lines):
            if not record:
                continue
            first = record[0].strip()
            if not first or first.startswith("#"):
                continue
            try:
                entries.append(parse_entry(first))
            except ValueError as exc:
                _skip_row(feed_id, record, exc)
                skipped += 1
    except csv.Error as exc:
        raise ContainerParseError(feed_id, f"unreadable CSV stream: {exc}") from exc
    return ParseResult(entries, skipped)


Parser = Callable[[str, Iterable[str]], ParseResult]

PARSERS: Dict[str, Parser] = {
    "netset": parse_netset,
    "ip": parse_ip_list,
    "json_regions": parse_json_regions,
    "csv": parse_csv_first_column,
}


def get_parser(fmt: str) -> Parser:
    """Brief: Look up the parser registered for a feed format name.

    Inputs:
      - fmt: Format name (netset, ip, json_regions, csv).

    Outputs:
      - Parser callable.

    Raises:
      - KeyError: for unknown formats.
    """

    try:
        return PARSERS[str(fmt).lower()]
    except KeyError:
        raise KeyError(
            f"unknown feed format {fmt!r}; expected one of {sorted(PARSERS)}"
        ) from None
