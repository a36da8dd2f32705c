"""JSON Schema-based validation for ipshield YAML configuration.

The schema document lives under ``assets/config-schema.json``. Variable
expansion (``vars``) happens here, before validation, so the schema never
sees ``${VAR}`` placeholders.
"""

from __future__ import annotations

import copy
import json
import logging
import re
from pathlib import Path
from typing import Any, Dict, List, Optional

from jsonschema import Draft202012Validator, ValidationError
from jsonschema.exceptions import SchemaError

logger = logging.getLogger(__name__)

_VAR_NAME = re.compile(r"[A-Z_][A-Z0-9_]*")
_VAR_PATTERN = re.compile(r"\$\{([A-Z_][A-Z0-9_]*)\}")


def _scalar_text(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return "null"
    if isinstance(value, (int, float, str)):
        return str(value)
    return json.dumps(value)


def expand_variables(cfg: Dict[str, Any]) -> None:
    """Brief: Expand top-level `vars` into the config and remove the group.

    Inputs:
      - cfg: Parsed YAML configuration mapping (mutated in-place).

    Outputs:
      - None.

    Behavior:
      - A string value that is exactly `$KEY` or `${KEY}` is replaced by the
        variable's YAML value (list, int, bool, ...).
      - `${KEY}` inside a longer string is substituted textually.
      - Unknown references are left untouched.
      - `vars` (and the alias `variables`) are removed afterwards.

    Raises:
      - ValueError: when vars is not a mapping, a key is not ALL_UPPERCASE,
        or variables reference each other in a cycle.

    Example:
      >>> cfg = {"vars": {"PORT": 5353}, "listen": {"port": "$PORT"}}
      >>> expand_variables(cfg); cfg
      {'listen': {'port': 5353}}
    """

    variables = cfg.get("vars")
    if variables is None and "variables" in cfg:
        variables = cfg.get("variables")
    if variables is None:
        cfg.pop("vars", None)
        cfg.pop("variables", None)
        return
    if not isinstance(variables, dict):
        raise ValueError("config.vars must be a mapping when present")

    for k in variables:
        if not isinstance(k, str) or not _VAR_NAME.fullmatch(k):
            raise ValueError(f"config.vars key {k!r} must be ALL_UPPERCASE ([A-Z_][A-Z0-9_]*)")

    resolved: Dict[str, Any] = {}

    def _resolve(key: str, stack: List[str]) -> Any:
        if key in resolved:
            return resolved[key]
        if key in stack:
            raise ValueError("config.vars contains a cycle: " + " -> ".join(stack + [key]))
        value = _expand(variables[key], stack + [key])
        resolved[key] = value
        return value

    def _whole(text: str) -> Optional[str]:
        if text.startswith("${") and text.endswith("}"):
            name = text[2:-1]
        elif text.startswith("$"):
            name = text[1:]
        else:
            return None
        return name if name in variables else None

    def _expand(obj: Any, stack: List[str]) -> Any:
        if isinstance(obj, str):
            name = _whole(obj)
            if name is not None:
                return copy.deepcopy(_resolve(name, stack))
            return _VAR_PATTERN.sub(
                lambda m: _scalar_text(_resolve(m.group(1), stack))
                if m.group(1) in variables
                else m.group(0),
                obj,
            )
        if isinstance(obj, list):
            return [_expand(item, stack) for item in obj]
        if isinstance(obj, dict):
            return {k: _expand(v, stack) for k, v in obj.items()}
        return obj

    for key in list(variables):
        _resolve(key, [])

    cfg.pop("vars", None)
    cfg.pop("variables", None)
    for top_key in list(cfg):
        cfg[top_key] = _expand(cfg[top_key], [])


def get_default_schema_path() -> Path:
    """Brief: Locate ``assets/config-schema.json`` in an ancestor directory.

    Outputs:
      - Path to the schema file (may not exist when assets were not shipped).
    """

    here = Path(__file__).resolve()
    for ancestor in here.parents:
        candidate = ancestor / "assets" / "config-schema.json"
        if candidate.is_file():
            return candidate
    return here.parents[3] / "assets" / "config-schema.json"


def _format_errors(errors: List[ValidationError], *, config_path: Optional[str]) -> str:
    lines: List[str] = [f"Invalid configuration in {config_path or '<config dict>'}:"]
    for err in errors:
        instance_path = "/".join(str(p) for p in err.path) or "<root>"
        schema_path = "/".join(str(p) for p in err.schema_path)
        lines.append(f"- {instance_path}: {err.message} (schema: {schema_path})")
    return "\n".join(lines)


def validate_config(
    cfg: Dict[str, Any],
    *,
    schema_path: Optional[Path] = None,
    config_path: Optional[str] = None,
    unknown_keys: str = "warn",
) -> None:
    """Brief: Expand variables and validate a config mapping against the schema.

    Inputs:
      - cfg: Dict loaded from YAML (mutated: variables are expanded).
      - schema_path: Optional explicit schema path.
      - config_path: Optional YAML path, used only in messages.
      - unknown_keys: "ignore", "warn" (default) or "error" for keys the
        schema does not describe.

    Outputs:
      - None on success.

    Raises:
      - ValueError: on any non-extra-property validation error, or on
        extra-property errors when unknown_keys is "error".
    """

    if unknown_keys not in {"ignore", "warn", "error"}:
        raise ValueError(
            f"unknown_keys policy must be 'ignore', 'warn', or 'error', got {unknown_keys!r}"
        )

    expand_variables(cfg)

    path = schema_path or get_default_schema_path()
    if not path.is_file():
        logger.warning("Configuration schema %s not found; skipping validation", path)
        return None
    try:
        with path.open("r", encoding="utf-8") as f:
            schema = json.load(f)
        Draft202012Validator.check_schema(schema)
    except (OSError, json.JSONDecodeError, SchemaError) as exc:
        logger.warning("Failed to load configuration schema %s: %s; skipping validation", path, exc)
        return None

    errors = sorted(Draft202012Validator(schema).iter_errors(cfg), key=lambda e: list(e.path))
    if not errors:
        return None

    extra: List[ValidationError] = []
    other: List[ValidationError] = []
    for err in errors:
        if err.validator in {"additionalProperties", "unevaluatedProperties"}:
            extra.append(err)
        else:
            other.append(err)

    if other:
        raise ValueError(_format_errors(other + extra, config_path=config_path))

    message = _format_errors(extra, config_path=config_path)
    if unknown_keys == "warn":
        logger.warning(message)
    elif unknown_keys == "error":
        raise ValueError(message)
    return None
