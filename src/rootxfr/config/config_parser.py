"""Configuration parsing and normalization helpers for rootxfr.

Brief:
  Read the YAML config file, validate it against the packaged JSON Schema and
  normalize it into typed Pydantic models used by the CLI entrypoint.

Inputs:
  - YAML config paths or already-parsed dicts.

Outputs:
  - AppConfig instances.
"""

from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional, Union

import yaml
from pydantic import BaseModel, Field

from .config_schema import validate_config


class ListenerConfig(BaseModel):
    """Brief: One listener (tcp or udp).

    Inputs:
      - enabled: Whether the listener is started.
      - host: Listen address.
      - port: Listen port.
    """

    enabled: bool = False
    host: str = "127.0.0.1"
    port: int = 5353


class ListenConfig(BaseModel):
    tcp: ListenerConfig = Field(default_factory=lambda: ListenerConfig(enabled=True))
    udp: ListenerConfig = Field(default_factory=ListenerConfig)


class MergeConfig(BaseModel):
    """Brief: External zone merge settings.

    Inputs:
      - enabled: Fetch and merge an external zone into transfers.
      - prefer: "local" or "external" when a name exists in both.
      - servers: External servers, tried in order with failover.
      - timeout_ms: Idle timeout per transfer attempt.
      - max_attempts: Attempts across servers before giving up.
      - max_messages: Ceiling on messages in one transfer.
      - refresh_interval: Seconds a validated snapshot is reused.
      - trust_anchors: DS/DNSKEY lines; empty means the IANA root anchors.
      - state_file: Optional JSON file remembering trusted key tags.
    """

    enabled: bool = False
    prefer: Literal["local", "external"] = "local"
    servers: List[Union[str, Dict[str, Any]]] = Field(default_factory=list)
    timeout_ms: int = 6000
    max_attempts: int = 6
    max_messages: int = 1000
    refresh_interval: float = 3600
    trust_anchors: List[str] = Field(default_factory=list)
    state_file: Optional[str] = None


class AXFRConfig(BaseModel):
    """Brief: Transfer responder settings.

    Inputs:
      - zone_file: Master file holding the local zone.
      - origin: Zone origin (default: the root).
      - allow: IPs/CIDRs allowed to request transfers.
      - chunk_length: Soft cap on records per response message.
      - idle_timeout: Seconds before an idle TCP connection is closed.
      - merge: MergeConfig.
    """

    zone_file: str
    origin: str = "."
    allow: List[str] = Field(default_factory=lambda: ["127.0.0.1"])
    chunk_length: int = 1500
    idle_timeout: float = 15.0
    merge: MergeConfig = Field(default_factory=MergeConfig)


class AppConfig(BaseModel):
    logging: Dict[str, Any] = Field(default_factory=dict)
    listen: ListenConfig = Field(default_factory=ListenConfig)
    axfr: AXFRConfig


def parse_config(
    cfg: Dict[str, Any],
    *,
    config_path: Optional[str] = None,
    unknown_keys: str = "warn",
) -> AppConfig:
    """Brief: Validate and normalize a parsed configuration mapping.

    Inputs:
      - cfg: Parsed YAML mapping.
      - config_path: Optional path used in error messages.
      - unknown_keys: Policy for keys not in the schema.

    Outputs:
      - AppConfig.

    Raises:
      - ValueError: on schema, transfer-setting or model validation failure.

    Example:
      >>> parse_config({"axfr": {"zone_file": "root.zone"}}).axfr.chunk_length
      1500
    """

    validate_config(cfg, config_path=config_path, unknown_keys=unknown_keys)
    if cfg.get("logging") is None:
        cfg = {k: v for k, v in cfg.items() if k != "logging"}
    return AppConfig(**cfg)


def load_config(config_path: str, *, unknown_keys: str = "warn") -> AppConfig:
    """Brief: Read, schema-validate and normalize a YAML config file.

    Inputs:
      - config_path: Path to the YAML file.
      - unknown_keys: Policy for keys not in the schema.

    Outputs:
      - AppConfig.
    """

    with open(config_path, "r", encoding="utf-8") as f:
        cfg = yaml.safe_load(f) or {}
    if not isinstance(cfg, dict):
        raise ValueError(f"{config_path}: top-level configuration must be a mapping")
    return parse_config(cfg, config_path=config_path, unknown_keys=unknown_keys)
