from __future__ import annotations

import argparse
import logging
import signal
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple, Union

from .classifier import Classifier
from .config.config_parser import DEFAULT_CONFIG_PATH, load_config
from .config.logging_config import init_logging
from .feeds.fetcher import FeedFetcher
from .feeds.models import load_feed_configs
from .scheduler import RefreshScheduler
from .servers.responder import QueryResponder
from .servers.tcp_server import DNSTCPServer
from .servers.udp_server import DNSServer
from .servers.webserver import start_webserver
from .store import ReputationStore

Listener = Union[DNSServer, DNSTCPServer]


@dataclass
class Runtime:
    """Brief: Every long-lived object main() wires together.

    Inputs:
      - store, classifier, scheduler, responder: Core service objects.

    Outputs:
      - Runtime; listeners and threads are filled in by start_listeners().
    """

    store: ReputationStore
    classifier: Classifier
    scheduler: RefreshScheduler
    responder: QueryResponder
    listeners: List[Tuple[str, Listener, threading.Thread]] = field(default_factory=list)


def build_runtime(cfg: Dict[str, Any]) -> Runtime:
    """Brief: Construct store, fetcher, scheduler, classifier and responder from cfg.

    Inputs:
      - cfg: Normalized configuration (see config_parser.normalize_config).

    Outputs:
      - Runtime with nothing started yet.

    Raises:
      - ValueError: on invalid feed definitions or DNS/refresh settings.
    """

    feeds = load_feed_configs(cfg.get("feeds"))
    fetch_cfg = cfg["fetch"]
    refresh_cfg = cfg["refresh"]
    dns_cfg = cfg["dns"]

    store = ReputationStore()
    fetcher = FeedFetcher(
        timeout=float(fetch_cfg["timeout_seconds"]),
        user_agent=str(fetch_cfg["user_agent"]),
        max_seconds=float(fetch_cfg["max_seconds"]),
    )
    scheduler = RefreshScheduler(
        feeds,
        fetcher,
        store,
        interval=float(refresh_cfg["interval_seconds"]),
        initial_backoff=float(refresh_cfg["initial_backoff_seconds"]),
        max_backoff=float(refresh_cfg["max_backoff_seconds"]),
    )
    classifier = Classifier(store)
    responder = QueryResponder(
        classifier,
        ttl=int(dns_cfg["ttl"]),
        safe_address=str(dns_cfg["safe_address"]),
        flagged_address=str(dns_cfg["flagged_address"]),
    )
    return Runtime(store, classifier, scheduler, responder)


def start_listeners(runtime: Runtime, listen_cfg: Dict[str, Dict[str, Any]]) -> None:
    """Brief: Bind the enabled UDP/TCP listeners and serve each in a daemon thread.

    Inputs:
      - runtime: Runtime whose responder answers queries.
      - listen_cfg: {'udp': {...}, 'tcp': {...}} listener dicts.

    Outputs:
      - None; runtime.listeners is populated.

    Raises:
      - OSError: when a socket cannot be bound. Listeners already started
        are stopped first.
    """

    log = logging.getLogger("ipshield.main")
    resolver = runtime.responder.resolve_query_bytes
    factories = (("udp", DNSServer), ("tcp", DNSTCPServer))
    for proto, factory in factories:
        lcfg = listen_cfg.get(proto) or {}
        if not lcfg.get("enabled"):
            continue
        try:
            server = factory(str(lcfg["host"]), int(lcfg["port"]), resolver)
        except OSError:
            stop_listeners(runtime)
            raise
        thread = threading.Thread(
            target=server.serve_forever, name=f"ipshield-{proto}", daemon=True
        )
        thread.start()
        runtime.listeners.append((proto, server, thread))
        host, port = server.address[:2]
        log.info("Listening for DNS over %s on %s:%d", proto.upper(), host, port)


def stop_listeners(runtime: Runtime) -> None:
    log = logging.getLogger("ipshield.main")
    while runtime.listeners:
        proto, server, thread = runtime.listeners.pop()
        server.stop()
        thread.join(timeout=5.0)
        log.info("Stopped %s listener", proto.upper())


def main(argv: Optional[List[str]] = None) -> int:
    """
    Entry point: load config, fill the store, then serve DNS until signalled.

    Inputs:
      - argv: Optional argument list (defaults to sys.argv[1:]).

    Outputs:
      - int exit code: 0 on clean shutdown (SIGHUP, SIGINT, KeyboardInterrupt),
        2 on SIGTERM, 1 on configuration, startup or bind failures.

    Example use:
        $ ipshield --config config.yaml -v PORT=5353
    """

    parser = argparse.ArgumentParser(description="DNS IP reputation responder")
    parser.add_argument(
        "--config",
        default=DEFAULT_CONFIG_PATH,
        help="Path to YAML config (built-in defaults are used when missing)",
    )
    parser.add_argument(
        "-v",
        "--var",
        action="append",
        default=[],
        metavar="KEY=YAML",
        help="Override a config variable; may be repeated",
    )
    args = parser.parse_args(argv)

    try:
        cfg = load_config(args.config, cli_vars=args.var)
        init_logging(cfg.get("logging"))
        runtime = build_runtime(cfg)
    except (OSError, ValueError) as exc:
        print(str(exc))
        return 1

    logger = logging.getLogger("ipshield.main")
    scheduler = runtime.scheduler
    logger.info(
        "Starting ipshield with %d feeds: %s",
        len(scheduler.feeds),
        ", ".join(f.id for f in scheduler.feeds) or "<none>",
    )

    startup_cfg = cfg["startup"]
    timeout = startup_cfg.get("timeout_seconds")
    failed = scheduler.initial_fetch(None if timeout is None else float(timeout))
    if failed:
        if startup_cfg.get("require_all_feeds"):
            logger.error("Feeds failed to load at startup: %s", ", ".join(failed))
            return 1
        logger.warning("Serving without feeds: %s (retrying in background)", ", ".join(failed))

    scheduler.start()

    try:
        start_listeners(runtime, cfg["listen"])
    except OSError as exc:
        logger.error("Could not start DNS listeners: %s", exc)
        scheduler.stop()
        return 1
    if not runtime.listeners:
        logger.warning("No DNS listeners enabled in config.listen")

    web_handle = start_webserver(runtime.store, runtime.classifier, scheduler, cfg)

    shutdown_event = threading.Event()
    exit_code = 0

    def _request_shutdown(reason: str, code: int) -> None:
        nonlocal exit_code
        if shutdown_event.is_set():
            return
        exit_code = code
        shutdown_event.set()
        logger.info("Received %s, initiating shutdown (exit code=%d)", reason, code)

    for signame, code in (("SIGHUP", 0), ("SIGTERM", 2), ("SIGINT", 0)):
        signum = getattr(signal, signame, None)
        if signum is None:
            continue
        try:
            signal.signal(signum, lambda _s, _f, n=signame, c=code: _request_shutdown(n, c))
        except ValueError:
            # Not running in the main thread.
            logger.warning("Could not install %s handler", signame)

    logger.info("Startup Completed")

    try:
        while not shutdown_event.is_set():
            if runtime.listeners and not any(t.is_alive() for _, _, t in runtime.listeners):
                logger.error("All DNS listener threads exited unexpectedly")
                exit_code = 1
                break
            shutdown_event.wait(1.0)
    except KeyboardInterrupt:
        logger.info("Received interrupt, shutting down")
    finally:
        stop_listeners(runtime)
        scheduler.stop()
        if web_handle is not None:
            logger.info("Stopping webserver")
            web_handle.stop()

    return exit_code


if __name__ == "__main__":
    raise SystemExit(main())
