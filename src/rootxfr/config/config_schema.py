"""Validation for the rootxfr YAML configuration.

Brief:
  Two passes run over the parsed mapping. The packaged JSON Schema
  (``assets/config-schema.json``) checks shape and types; the transfer checks
  then look at values the schema cannot judge on its own: the allow-list must
  hold addresses or networks, the origin must be a domain name, and an
  enabled merge needs at least one usable upstream server.

Inputs:
  - Parsed YAML mapping.

Outputs:
  - None on success; ValueError listing every problem otherwise.
"""

from __future__ import annotations

import functools
import ipaddress
import json
import logging
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple

import dns.exception
import dns.name
from jsonschema import Draft202012Validator, ValidationError

from rootxfr.transports.axfr import parse_endpoint

logger = logging.getLogger(__name__)

UNKNOWN_KEY_POLICIES = ("ignore", "warn", "error")


def get_default_schema_path() -> Path:
    return Path(__file__).resolve().parents[1] / "assets" / "config-schema.json"


@functools.lru_cache(maxsize=4)
def _validator(schema_path: Path) -> Draft202012Validator:
    with schema_path.open("r", encoding="utf-8") as f:
        return Draft202012Validator(json.load(f))


def _dotted(parts) -> str:
    """Brief: Render a jsonschema path as ``axfr.merge.servers[1]``."""

    out = ""
    for p in parts:
        if isinstance(p, int):
            out += f"[{p}]"
        else:
            out += f".{p}" if out else str(p)
    return out or "<top level>"


def _unknown_keys(err: ValidationError) -> List[str]:
    known = set(err.schema.get("properties", {}))
    prefix = _dotted(err.path)
    names = sorted(k for k in err.instance if k not in known)
    if prefix == "<top level>":
        return names
    return [f"{prefix}.{k}" for k in names]


def schema_problems(
    cfg: Dict[str, Any], schema_path: Optional[Path] = None
) -> Tuple[List[str], List[str]]:
    """Brief: Run the JSON Schema over *cfg*.

    Inputs:
      - cfg: Parsed configuration mapping.
      - schema_path: Optional schema file (default: the packaged one).

    Outputs:
      - (problems, unknown): readable problem lines, and dotted names of keys
        the schema does not describe.
    """

    validator = _validator(schema_path or get_default_schema_path())
    problems: List[str] = []
    unknown: List[str] = []
    for err in sorted(validator.iter_errors(cfg), key=lambda e: list(map(str, e.path))):
        if err.validator == "additionalProperties":
            unknown.extend(_unknown_keys(err))
        else:
            problems.append(f"{_dotted(err.path)}: {err.message}")
    return problems, sorted(unknown)


def _transfer_problems(axfr: Dict[str, Any]) -> Iterator[str]:
    origin = axfr.get("origin", ".")
    try:
        dns.name.from_text(origin)
    except dns.exception.DNSException as exc:
        yield f"axfr.origin: {origin!r} is not a domain name ({exc})"

    for i, entry in enumerate(axfr.get("allow") or []):
        try:
            ipaddress.ip_network(entry, strict=False)
        except ValueError:
            yield f"axfr.allow[{i}]: {entry!r} is not an IP address or network"

    merge = axfr.get("merge") or {}
    servers = merge.get("servers") or []
    if merge.get("enabled") and not servers:
        yield "axfr.merge.enabled requires at least one server"
    for i, entry in enumerate(servers):
        try:
            endpoint = parse_endpoint(entry)
        except ValueError as exc:
            yield f"axfr.merge.servers[{i}]: {exc}"
            continue
        if not 0 < endpoint.port < 65536:
            yield f"axfr.merge.servers[{i}]: port {endpoint.port} out of range"


def validate_config(
    cfg: Dict[str, Any],
    *,
    schema_path: Optional[Path] = None,
    config_path: Optional[str] = None,
    unknown_keys: str = "warn",
) -> None:
    """Brief: Check a parsed configuration before it is turned into models.

    Inputs:
      - cfg: Parsed YAML mapping.
      - schema_path: Optional schema file.
      - config_path: Path shown in messages.
      - unknown_keys: "ignore", "warn" (default) or "error".

    Outputs:
      - None.

    Raises:
      - ValueError: on any schema or transfer problem, or on unknown keys when
        the policy is "error".

    Example:
      >>> validate_config({"axfr": {"zone_file": "root.zone"}})
    """

    if unknown_keys not in UNKNOWN_KEY_POLICIES:
        raise ValueError(
            f"unknown_keys policy must be one of {', '.join(UNKNOWN_KEY_POLICIES)}, "
            f"got {unknown_keys!r}"
        )
    where = config_path or "<config dict>"

    problems, unknown = schema_problems(cfg, schema_path)
    # Value checks assume the schema's shapes hold.
    if not problems and isinstance(cfg.get("axfr"), dict):
        problems.extend(_transfer_problems(cfg["axfr"]))

    if problems:
        lines = [f"Invalid configuration in {where}:"]
        lines.extend(f"- {p}" for p in problems)
        if unknown:
            lines.append(f"- unknown keys: {', '.join(unknown)}")
        raise ValueError("\n".join(lines))

    if not unknown or unknown_keys == "ignore":
        return
    message = f"Unknown configuration keys in {where}: {', '.join(unknown)}"
    if unknown_keys == "error":
        raise ValueError(message)
    logger.warning(message)
