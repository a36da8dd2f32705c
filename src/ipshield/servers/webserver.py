"""Optional HTTP status server for ipshield.

Brief:
  A small FastAPI application exposing liveness, per-feed status and an
  ad-hoc classification endpoint, optionally serving a static documentation
  directory at '/'. start_webserver() runs it under uvicorn in a daemon
  thread so the DNS listeners keep the main thread.
"""

from __future__ import annotations

import logging
import os
import threading
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import FastAPI, HTTPException
from fastapi.staticfiles import StaticFiles

from ..classifier import Classifier, QueryMalformed
from ..scheduler import RefreshScheduler
from ..store import ReputationStore

logger = logging.getLogger("ipshield.webserver")


def _utc_now_iso() -> str:
    """Return the current UTC time as ISO-8601 with a Z suffix."""

    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _ts_to_utc_iso(ts: Optional[float]) -> Optional[str]:
    if ts is None:
        return None
    return datetime.fromtimestamp(float(ts), tz=timezone.utc).strftime(
        "%Y-%m-%dT%H:%M:%SZ"
    )


def build_feed_status(
    store: ReputationStore, scheduler: Optional[RefreshScheduler]
) -> Dict[str, Dict[str, Any]]:
    """Brief: Merge store and scheduler views into one per-feed payload.

    Inputs:
      - store: ReputationStore with installed snapshots.
      - scheduler: Optional RefreshScheduler with refresh bookkeeping.

    Outputs:
      - dict feed_id -> {loaded, category, entries, skipped, fetched_at,
        source, last_error, consecutive_failures, next_attempt}.
    """

    snap_status = store.status()
    sched_status = scheduler.status() if scheduler is not None else {}
    out: Dict[str, Dict[str, Any]] = {}
    for feed_id in list(sched_status) + [k for k in snap_status if k not in sched_status]:
        snap = snap_status.get(feed_id) or {}
        sched = sched_status.get(feed_id) or {}
        out[feed_id] = {
            "loaded": bool(snap),
            "category": snap.get("category"),
            "entries": int(snap.get("entries", 0)),
            "skipped": int(snap.get("skipped", 0)),
            "fetched_at": _ts_to_utc_iso(snap.get("fetched_at")),
            "source": snap.get("source"),
            "last_error": sched.get("last_error"),
            "consecutive_failures": int(sched.get("consecutive_failures", 0)),
            "next_attempt": _ts_to_utc_iso(sched.get("next_attempt")),
        }
    return out


def create_app(
    store: ReputationStore,
    classifier: Classifier,
    scheduler: Optional[RefreshScheduler] = None,
    config: Optional[Dict[str, Any]] = None,
) -> FastAPI:
    """Create the FastAPI status application.

    Inputs:
      - store: Shared ReputationStore.
      - classifier: Classifier used by /api/v1/classify.
      - scheduler: Optional RefreshScheduler for refresh status.
      - config: Full configuration mapping; webserver.docs_dir is honoured.

    Outputs:
      - Configured FastAPI application.

    Example:
      >>> app = create_app(ReputationStore(), Classifier(ReputationStore()))
    """

    web_cfg = ((config or {}).get("webserver") or {}) if isinstance(config, dict) else {}
    app = FastAPI(title="ipshield status API")
    app.state.store = store
    app.state.scheduler = scheduler

    @app.get("/health")
    async def health() -> Dict[str, Any]:
        return {"status": "ok", "server_time": _utc_now_iso()}

    @app.get("/api/v1/feeds")
    async def feeds() -> Dict[str, Any]:
        """Return per-feed snapshot and refresh status."""

        return {"server_time": _utc_now_iso(), "feeds": build_feed_status(store, scheduler)}

    @app.get("/api/v1/classify/{address}")
    async def classify(address: str) -> Dict[str, Any]:
        """Classify a single address; 400 when it is not an IP literal."""

        try:
            verdict = classifier.classify(address)
        except QueryMalformed as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return {"address": address, "verdict": verdict.value}

    docs_dir = web_cfg.get("docs_dir")
    if docs_dir:
        path = os.path.abspath(os.path.expanduser(str(docs_dir)))
        if os.path.isdir(path):
            app.mount("/", StaticFiles(directory=path, html=True), name="docs")
        else:
            logger.warning("webserver.docs_dir %s is not a directory; not serving docs", path)

    return app


class WebServerHandle:
    """Handle for a background webserver thread.

    Inputs (constructor):
      - thread: Thread running the uvicorn server loop.
      - server: Optional uvicorn.Server used to request exit.

    Outputs:
      - WebServerHandle instance with stop() and is_running().
    """

    def __init__(self, thread: threading.Thread, server: Any | None = None) -> None:
        self._thread = thread
        self._server = server

    def is_running(self) -> bool:
        return self._thread.is_alive()

    def stop(self, timeout: float = 5.0) -> None:
        """Ask uvicorn to exit and wait up to timeout for the thread."""

        if self._server is not None:
            self._server.should_exit = True
        self._thread.join(timeout=timeout)


def start_webserver(
    store: ReputationStore,
    classifier: Classifier,
    scheduler: Optional[RefreshScheduler],
    config: Dict[str, Any],
) -> Optional[WebServerHandle]:
    """Start the status server under uvicorn in a daemon thread.

    Inputs:
      - store, classifier, scheduler: Shared runtime objects.
      - config: Full configuration mapping; reads the webserver block.

    Outputs:
      - WebServerHandle when webserver.enabled is true; otherwise None.
    """

    web_cfg = config.get("webserver") or {}
    if not bool(web_cfg.get("enabled", False)):
        return None

    import uvicorn

    host = str(web_cfg.get("host", "127.0.0.1"))
    port = int(web_cfg.get("port", 8080))
    if host in ("0.0.0.0", "::"):
        logger.warning(
            "ipshield webserver is bound to %s without authentication; consider restricting host",
            host,
        )

    app = create_app(store, classifier, scheduler, config)
    server = uvicorn.Server(uvicorn.Config(app, host=host, port=port, log_level="warning"))

    def _runner() -> None:
        try:
            server.run()
        except Exception:
            logger.exception("Unhandled exception in webserver thread")

    thread = threading.Thread(target=_runner, name="ipshield-webserver", daemon=True)
    thread.start()
    logger.info("Started ipshield webserver on %s:%d", host, port)
    return WebServerHandle(thread, server)
