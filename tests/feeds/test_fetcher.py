"""
Brief: Tests for ipshield.feeds.fetcher.FeedFetcher with requests.get stubbed.

Inputs:
  - None

Outputs:
  - None
"""

import ipaddress
import time

import pytest
import requests

import ipshield.feeds.fetcher as fetcher_mod
from ipshield.classifier import FeedCategory
from ipshield.feeds.errors import ContainerParseError, FetchError, TransportError
from ipshield.feeds.fetcher import FeedFetcher
from ipshield.feeds.models import FeedConfig


class DummyResp:
    """
    Brief: Minimal streamed response stand-in.

    Inputs:
      - lines: body lines yielded by iter_lines
      - status_code: HTTP status
      - fail_after: raise ChunkedEncodingError after this many lines
      - line_delay: seconds to sleep before yielding each line

    Outputs:
      - Object exposing raise_for_status/iter_lines/close
    """

    def __init__(self, lines, status_code=200, fail_after=None, encoding=None, line_delay=0):
        self.line_delay = line_delay
        self.lines = lines
        self.status_code = status_code
        self.fail_after = fail_after
        self.encoding = encoding
        self.closed = False

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")

    def iter_lines(self, decode_unicode=False):
        for i, line in enumerate(self.lines):
            if self.fail_after is not None and i >= self.fail_after:
                raise requests.exceptions.ChunkedEncodingError("connection reset")
            if self.line_delay:
                time.sleep(self.line_delay)
            yield line

    def close(self):
        self.closed = True


def _feed(fmt="netset", category="flagged"):
    return FeedConfig(id="test", url="https://feeds.example/list", format=fmt, category=category)


def test_fetch_builds_snapshot(monkeypatch):
    """
    Brief: A successful fetch returns a snapshot with parsed entries.

    Inputs:
      - netset body with one bad row

    Outputs:
      - None: Asserts snapshot fields and request arguments
    """
    seen = {}
    resp = DummyResp(["# header", "10.0.0.0/8", "bad", "192.0.2.1"])

    def fake_get(url, timeout=None, stream=None, headers=None):
        seen.update(url=url, timeout=timeout, stream=stream, headers=headers)
        return resp

    monkeypatch.setattr(fetcher_mod.requests, "get", fake_get)
    snap = FeedFetcher(timeout=7, user_agent="ua/1").fetch(_feed())

    assert snap.feed_id == "test"
    assert snap.category is FeedCategory.FLAGGED
    assert snap.skipped == 1
    assert snap.source == "https://feeds.example/list"
    assert snap.contains(ipaddress.ip_address("10.9.9.9"))
    assert seen == {
        "url": "https://feeds.example/list",
        "timeout": 7.0,
        "stream": True,
        "headers": {"User-Agent": "ua/1"},
    }
    assert resp.encoding == "utf-8"
    assert resp.closed


def test_fetch_http_error_maps_to_transport_error(monkeypatch):
    """
    Brief: Non-2xx responses raise TransportError with the status code.

    Inputs:
      - 500 response

    Outputs:
      - None: Asserts TransportError details and closed response
    """
    resp = DummyResp([], status_code=500)
    monkeypatch.setattr(fetcher_mod.requests, "get", lambda *a, **k: resp)
    with pytest.raises(TransportError) as excinfo:
        FeedFetcher().fetch(_feed())
    assert excinfo.value.status_code == 500
    assert excinfo.value.feed_id == "test"
    assert isinstance(excinfo.value, FetchError)
    assert resp.closed


def test_fetch_connection_error_maps_to_transport_error(monkeypatch):
    """
    Brief: requests exceptions raised by get() become TransportError.

    Inputs:
      - fake get raising ConnectTimeout

    Outputs:
      - None: Asserts TransportError without a status code
    """

    def fake_get(*args, **kwargs):
        raise requests.exceptions.ConnectTimeout("timed out")

    monkeypatch.setattr(fetcher_mod.requests, "get", fake_get)
    with pytest.raises(TransportError) as excinfo:
        FeedFetcher().fetch(_feed())
    assert excinfo.value.status_code is None


def test_fetch_interrupted_stream_is_transport_error(monkeypatch):
    """
    Brief: A body that breaks mid-stream does not produce a partial snapshot.

    Inputs:
      - response failing after one line

    Outputs:
      - None: Asserts TransportError
    """
    resp = DummyResp(["10.0.0.0/8", "11.0.0.0/8"], fail_after=1)
    monkeypatch.setattr(fetcher_mod.requests, "get", lambda *a, **k: resp)
    with pytest.raises(TransportError):
        FeedFetcher().fetch(_feed())
    assert resp.closed


def test_fetch_slow_body_past_total_deadline_is_transport_error(monkeypatch):
    """
    Brief: A body that keeps trickling in is cut off at max_seconds even
    though each read stays under the per-read timeout.

    Inputs:
      - ten lines arriving 0.1s apart, max_seconds 0.25

    Outputs:
      - None: Asserts TransportError, prompt return and a closed response
    """
    resp = DummyResp([f"10.0.{i}.0/24" for i in range(10)], line_delay=0.1)
    monkeypatch.setattr(fetcher_mod.requests, "get", lambda *a, **k: resp)
    started = time.monotonic()
    with pytest.raises(TransportError) as excinfo:
        FeedFetcher(timeout=5, max_seconds=0.25).fetch(_feed())
    assert time.monotonic() - started < 0.8
    assert "total" in str(excinfo.value)
    assert resp.closed

def test_fetch_bad_json_is_container_parse_error(monkeypatch):
    """
    Brief: Undecodable JSON bodies surface as ContainerParseError.

    Inputs:
      - json_regions feed with a truncated document

    Outputs:
      - None: Asserts ContainerParseError
    """
    monkeypatch.setattr(
        fetcher_mod.requests, "get", lambda *a, **k: DummyResp(['{"regions": ['])
    )
    with pytest.raises(ContainerParseError):
        FeedFetcher().fetch(_feed("json_regions", "datacenter"))


def test_fetch_undecodable_line_is_skipped_row(monkeypatch):
    """
    Brief: A line mangled by lossy text decoding is skipped like any bad row.

    Inputs:
      - netset body whose second line holds replacement characters

    Outputs:
      - None: Asserts one entry and one skipped row
    """
    resp = DummyResp(["10.0.0.0/8", "\ufffd\ufffd.0.0.1"])
    monkeypatch.setattr(fetcher_mod.requests, "get", lambda *a, **k: resp)
    snap = FeedFetcher().fetch(_feed())
    assert len(snap) == 1
    assert snap.skipped == 1


def test_fetch_uses_session_when_given():
    """
    Brief: An injected session's get() is used instead of requests.get.

    Inputs:
      - dummy session

    Outputs:
      - None: Asserts session was called
    """

    class DummySession:
        def __init__(self):
            self.urls = []

        def get(self, url, **kwargs):
            self.urls.append(url)
            return DummyResp(["192.0.2.1"])

    session = DummySession()
    snap = FeedFetcher(session=session).fetch(_feed("ip", "tor_exit"))
    assert session.urls == ["https://feeds.example/list"]
    assert len(snap) == 1


def test_fetcher_rejects_non_positive_timeout():
    """
    Brief: Constructor validates the timeout.

    Inputs:
      - timeout 0

    Outputs:
      - None: Asserts ValueError
    """
    with pytest.raises(ValueError):
        FeedFetcher(timeout=0)
    with pytest.raises(ValueError):
        FeedFetcher(max_seconds=-1)
