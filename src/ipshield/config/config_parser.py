"""Configuration parsing and normalization helpers for ipshield.

Brief:
  Used by the CLI entrypoint to:
    - read the YAML config file (or fall back to built-in defaults)
    - merge variables from config/env/CLI
    - run JSON Schema validation (which expands variables)
    - fill in defaults for every section so callers never guess

Inputs:
  - YAML config paths and dicts

Outputs:
  - Normalized config dicts
"""

from __future__ import annotations

import copy
import logging
import os
import re
from typing import Any, Dict, List, Optional

import yaml

from ..feeds.fetcher import (
    DEFAULT_MAX_FETCH_SECONDS,
    DEFAULT_TIMEOUT_SECONDS,
    DEFAULT_USER_AGENT,
)
from ..scheduler import (
    DEFAULT_INITIAL_BACKOFF_SECONDS,
    DEFAULT_MAX_BACKOFF_SECONDS,
    DEFAULT_REFRESH_INTERVAL_SECONDS,
)
from ..servers.responder import DEFAULT_FLAGGED_ADDRESS, DEFAULT_SAFE_ADDRESS, DEFAULT_TTL
from .config_schema import validate_config

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "config.yaml"
DEFAULT_LISTEN_HOST = "0.0.0.0"
DEFAULT_LISTEN_PORT = 53
DEFAULT_STARTUP_TIMEOUT_SECONDS = 120.0

DEFAULTS: Dict[str, Any] = {
    "dns": {
        "ttl": DEFAULT_TTL,
        "safe_address": DEFAULT_SAFE_ADDRESS,
        "flagged_address": DEFAULT_FLAGGED_ADDRESS,
    },
    "refresh": {
        "interval_seconds": float(DEFAULT_REFRESH_INTERVAL_SECONDS),
        "initial_backoff_seconds": DEFAULT_INITIAL_BACKOFF_SECONDS,
        "max_backoff_seconds": DEFAULT_MAX_BACKOFF_SECONDS,
    },
    "fetch": {
        "timeout_seconds": DEFAULT_TIMEOUT_SECONDS,
        "max_seconds": DEFAULT_MAX_FETCH_SECONDS,
        "user_agent": DEFAULT_USER_AGENT,
    },
    "startup": {
        "timeout_seconds": DEFAULT_STARTUP_TIMEOUT_SECONDS,
        "require_all_feeds": False,
    },
    "logging": {"level": "info", "stderr": True},
    "webserver": {
        "enabled": False,
        "host": "127.0.0.1",
        "port": 8080,
        "docs_dir": None,
    },
}


def _is_var_key(key: str) -> bool:
    return bool(key) and re.fullmatch(r"[A-Z_][A-Z0-9_]*", key) is not None


def _parse_yaml_value(text: str) -> Any:
    """Parse a CLI/environment value as YAML, keeping the raw text on errors."""

    try:
        return yaml.safe_load(text)
    except yaml.YAMLError:
        return text


def parse_config_variables(
    cfg: Dict[str, Any],
    *,
    cli_vars: Optional[List[str]] = None,
    environ: Optional[Dict[str, str]] = None,
) -> Dict[str, Any]:
    """Brief: Merge config/environment/CLI variables into cfg['vars'].

    Inputs:
      - cfg: Parsed YAML configuration mapping (mutated in-place).
      - cli_vars: Optional list of `KEY=YAML` assignments from -v/--var.
      - environ: Optional environment mapping (defaults to os.environ).

    Outputs:
      - dict: The merged variables mapping stored back onto cfg['vars'].

    Precedence:
      - CLI overrides environment overrides the config file.

    Notes:
      - The environment only overrides variables the config file declares,
        so unrelated process environment never leaks into the config.

    Example:
      >>> cfg = {'vars': {'TTL': 100}}
      >>> parse_config_variables(cfg, cli_vars=['TTL=300'], environ={})['TTL']
      300
    """

    base = cfg.get("vars", cfg.get("variables"))
    if base is None:
        merged: Dict[str, Any] = {}
    elif isinstance(base, dict):
        merged = dict(base)
    else:
        raise ValueError("config.vars must be a mapping when present")

    env = os.environ if environ is None else environ
    for k in list(merged):
        if k in env:
            merged[k] = _parse_yaml_value(str(env[k]))

    for assignment in cli_vars or []:
        if "=" not in assignment:
            raise ValueError(f"Invalid -v/--var value (expected KEY=YAML), got: {assignment!r}")
        k, raw = assignment.split("=", 1)
        k = k.strip()
        if not _is_var_key(k):
            raise ValueError(
                f"Invalid variable name {k!r} (must be ALL_UPPERCASE and match [A-Z_][A-Z0-9_]*)"
            )
        merged[k] = _parse_yaml_value(raw)

    cfg.pop("variables", None)
    cfg["vars"] = merged
    return merged


def _merge_section(name: str, value: Any) -> Dict[str, Any]:
    out = copy.deepcopy(DEFAULTS.get(name, {}))
    if value is None:
        return out
    if not isinstance(value, dict):
        raise ValueError(f"config.{name} must be a mapping")
    out.update(value)
    return out


def _listeners(listen_cfg: Dict[str, Any]) -> Dict[str, Dict[str, Any]]:
    host = str(listen_cfg.get("host", DEFAULT_LISTEN_HOST))
    port = int(listen_cfg.get("port", DEFAULT_LISTEN_PORT))
    out: Dict[str, Dict[str, Any]] = {}
    for proto, enabled in (("udp", True), ("tcp", False)):
        sub = listen_cfg.get(proto) or {}
        if not isinstance(sub, dict):
            raise ValueError(f"config.listen.{proto} must be a mapping")
        out[proto] = {
            "enabled": bool(sub.get("enabled", enabled)),
            "host": str(sub.get("host", host)),
            "port": int(sub.get("port", port)),
        }
    return out


def normalize_config(cfg: Dict[str, Any]) -> Dict[str, Any]:
    """Brief: Fill defaults for every section of a validated config.

    Inputs:
      - cfg: Validated configuration mapping (variables already expanded).

    Outputs:
      - New dict with keys listen (udp/tcp listener dicts), dns, refresh,
        fetch, startup, feeds (raw list or None for the built-in feeds),
        logging and webserver.

    Raises:
      - ValueError: when a section has the wrong shape.

    Example:
      >>> normalize_config({})["listen"]["udp"]
      {'enabled': True, 'host': '0.0.0.0', 'port': 53}
    """

    listen_raw = cfg.get("listen") or {}
    if not isinstance(listen_raw, dict):
        raise ValueError("config.listen must be a mapping")

    out: Dict[str, Any] = {"listen": _listeners(listen_raw)}
    for name in ("dns", "refresh", "fetch", "startup", "logging", "webserver"):
        out[name] = _merge_section(name, cfg.get(name))
    out["feeds"] = cfg.get("feeds")
    return out


def parse_config_file(
    config_path: str,
    *,
    cli_vars: Optional[List[str]] = None,
    environ: Optional[Dict[str, str]] = None,
) -> Dict[str, Any]:
    """Brief: Read, variable-merge, validate and normalize a YAML config file.

    Inputs:
      - config_path: Path to the YAML configuration file.
      - cli_vars: Optional `KEY=YAML` assignments (from -v/--var).
      - environ: Optional environment mapping for variable overrides.

    Outputs:
      - dict: Normalized configuration (see normalize_config).

    Raises:
      - ValueError: on YAML syntax errors, schema failures or bad variables.
      - OSError: when the file exists but cannot be read.
    """

    with open(config_path, "r", encoding="utf-8") as f:
        try:
            cfg = yaml.safe_load(f) or {}
        except yaml.YAMLError as exc:
            raise ValueError(f"Invalid YAML in {config_path}: {exc}") from exc

    if not isinstance(cfg, dict):
        raise ValueError("Configuration root must be a mapping")

    parse_config_variables(cfg, cli_vars=list(cli_vars or []), environ=environ)
    validate_config(cfg, config_path=config_path)
    return normalize_config(cfg)


def load_config(
    config_path: Optional[str],
    *,
    cli_vars: Optional[List[str]] = None,
    environ: Optional[Dict[str, str]] = None,
) -> Dict[str, Any]:
    """Brief: Load config_path, or return the built-in defaults when it is absent.

    Inputs:
      - config_path: Path to a YAML file; None or a missing file means defaults.
      - cli_vars, environ: As for parse_config_file.

    Outputs:
      - Normalized configuration dict.
    """

    if config_path and os.path.exists(config_path):
        return parse_config_file(config_path, cli_vars=cli_vars, environ=environ)
    if config_path:
        logger.info("Config file %s not found; using built-in defaults", config_path)
    if cli_vars:
        logger.warning(
            "Ignoring -v %s: variables only apply to a loaded config file",
            ", ".join(cli_vars),
        )
    return normalize_config({})
