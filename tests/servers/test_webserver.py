"""Tests for the FastAPI status server in ipshield.servers.webserver.

Inputs:
  - pytest fixtures and FastAPI TestClient

Outputs:
  - Assertions that /health, /api/v1/feeds, /api/v1/classify and the
    optional static docs mount behave as expected.

The tests exercise create_app() directly without starting a real uvicorn
server, except for the disabled-webserver path of start_webserver().
"""

from __future__ import annotations

import ipaddress
import threading

from fastapi.testclient import TestClient

from ipshield.classifier import Classifier
from ipshield.feeds.errors import TransportError
from ipshield.feeds.models import FeedConfig
from ipshield.scheduler import RefreshScheduler
from ipshield.servers.webserver import (
    WebServerHandle,
    build_feed_status,
    create_app,
    start_webserver,
)
from ipshield.store import FeedSnapshot, ReputationStore


class _Fetcher:
    def fetch(self, feed):
        if feed.id == "down":
            raise TransportError("down", "HTTP 502", status_code=502)
        return FeedSnapshot.build(
            feed.id,
            feed.category,
            [ipaddress.ip_network("203.0.113.0/24")],
            fetched_at=0.0,
            source=feed.url,
        )


def _runtime():
    store = ReputationStore()
    feeds = [
        FeedConfig(id="up", url="https://feeds.example/up", category="flagged"),
        FeedConfig(id="down", url="https://feeds.example/down", category="tor_exit"),
    ]
    scheduler = RefreshScheduler(feeds, _Fetcher(), store, interval=60)
    scheduler.initial_fetch(timeout=5)
    return store, Classifier(store), scheduler


def test_health_endpoint_returns_ok() -> None:
    """Brief: /health must respond with HTTP 200 and status "ok".

    Inputs:
      - App created without a scheduler.

    Outputs:
      - JSON body with status and server_time.
    """

    store = ReputationStore()
    client = TestClient(create_app(store, Classifier(store)))
    resp = client.get("/health")
    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "ok"
    assert body["server_time"].endswith("Z")


def test_feeds_endpoint_merges_store_and_scheduler() -> None:
    """Brief: /api/v1/feeds reports loaded feeds and refresh failures.

    Inputs:
      - One successful and one failing feed after the startup pass.

    Outputs:
      - Per-feed payload with loaded flags and error details.
    """

    store, classifier, scheduler = _runtime()
    client = TestClient(create_app(store, classifier, scheduler))
    feeds = client.get("/api/v1/feeds").json()["feeds"]

    assert list(feeds) == ["up", "down"]
    assert feeds["up"]["loaded"] is True
    assert feeds["up"]["category"] == "flagged"
    assert feeds["up"]["entries"] == 1
    assert feeds["up"]["fetched_at"] == "1970-01-01T00:00:00Z"
    assert feeds["up"]["source"] == "https://feeds.example/up"
    assert feeds["down"]["loaded"] is False
    assert feeds["down"]["consecutive_failures"] == 1
    assert "HTTP 502" in feeds["down"]["last_error"]


def test_build_feed_status_without_scheduler() -> None:
    """Brief: Store-only status still lists installed snapshots.

    Inputs:
      - Store with one snapshot, scheduler None.

    Outputs:
      - Single loaded entry without refresh fields.
    """

    store = ReputationStore()
    store.replace("x", FeedSnapshot.build("x", "datacenter", [], fetched_at=0.0))
    status = build_feed_status(store, None)
    assert status["x"]["loaded"] is True
    assert status["x"]["last_error"] is None
    assert status["x"]["next_attempt"] is None


def test_classify_endpoint() -> None:
    """Brief: /api/v1/classify returns verdicts and 400 for malformed input.

    Inputs:
      - Flagged, safe and malformed addresses.

    Outputs:
      - Verdict JSON or HTTP 400.
    """

    store, classifier, scheduler = _runtime()
    client = TestClient(create_app(store, classifier, scheduler))

    resp = client.get("/api/v1/classify/203.0.113.5")
    assert resp.status_code == 200
    assert resp.json() == {"address": "203.0.113.5", "verdict": "FLAGGED"}

    assert client.get("/api/v1/classify/192.0.2.1").json()["verdict"] == "SAFE"
    assert client.get("/api/v1/classify/not-an-ip").status_code == 400


def test_docs_dir_served_at_root(tmp_path) -> None:
    """Brief: webserver.docs_dir is mounted at '/' with index.html support.

    Inputs:
      - Temporary directory containing index.html.

    Outputs:
      - HTML body served for '/', API routes still reachable.
    """

    (tmp_path / "index.html").write_text("<h1>ipshield docs</h1>")
    store = ReputationStore()
    cfg = {"webserver": {"docs_dir": str(tmp_path)}}
    client = TestClient(create_app(store, Classifier(store), None, cfg))

    resp = client.get("/")
    assert resp.status_code == 200
    assert "ipshield docs" in resp.text
    assert client.get("/health").status_code == 200


def test_missing_docs_dir_is_not_fatal(tmp_path) -> None:
    """Brief: A docs_dir that does not exist is skipped.

    Inputs:
      - Non-existent path.

    Outputs:
      - App without a '/' route.
    """

    store = ReputationStore()
    cfg = {"webserver": {"docs_dir": str(tmp_path / "missing")}}
    client = TestClient(create_app(store, Classifier(store), None, cfg))
    assert client.get("/").status_code == 404


def test_start_webserver_disabled_returns_none() -> None:
    """Brief: start_webserver() does nothing unless webserver.enabled is true.

    Inputs:
      - Config with the webserver disabled.

    Outputs:
      - None.
    """

    store = ReputationStore()
    assert start_webserver(store, Classifier(store), None, {"webserver": {"enabled": False}}) is None
    assert start_webserver(store, Classifier(store), None, {}) is None


def test_webserver_handle_stop_sets_should_exit() -> None:
    """Brief: WebServerHandle.stop() asks the server to exit and joins.

    Inputs:
      - Dummy server object and a thread waiting on should_exit.

    Outputs:
      - should_exit True and thread finished.
    """

    class DummyServer:
        should_exit = False

    server = DummyServer()
    done = threading.Event()

    def _run():
        while not server.should_exit:
            done.wait(0.01)

    t = threading.Thread(target=_run, daemon=True)
    t.start()
    handle = WebServerHandle(t, server)
    assert handle.is_running()
    handle.stop(timeout=2)
    assert server.should_exit is True
    assert not handle.is_running()
