"""Configuration loading utilities for the relay server.

This module handles layered configuration:
1. Explicit path argument (highest precedence)
2. Environment variable PROMPT_RELAY_CONFIG
3. Fallback to "config/default.yaml"

It also supports optional overrides from environment variables with prefix
``PROMPT_RELAY__`` (e.g., PROMPT_RELAY__UPSTREAM__MODEL=gpt-4o-mini).

The resulting dict is turned into a :class:`Settings` object by the process
entry point and handed to every component explicitly.
"""

from __future__ import annotations

import copy
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml

logger = logging.getLogger(__name__)

ENV_PREFIX = "PROMPT_RELAY__"
API_KEY_ENV = "PROMPT_RELAY_API_KEY"

# Env overrides coerce digit-only values to numbers; these must stay text.
_UPSTREAM_STRINGS = ("api_style", "base_url", "api_key", "model", "model_label", "anthropic_version")

DEFAULT_CONFIG: Dict[str, Any] = {
    "server": {"host": "127.0.0.1", "port": 3001, "cors_origins": ["*"]},
    "upstream": {
        "api_style": "openai",
        "base_url": "https://api.openai.com/v1",
        "model": "gpt-4o-mini",
    },
    "relay": {},
    "storage": {"log_dir": "logs"},
    "logging": {"level": "INFO"},
}


def _coerce(value: str) -> Any:
    # Attempt to parse simple types (bool, int, float)
    if value.lower() in {"true", "false"}:
        return value.lower() == "true"
    try:
        if "." in value:
            return float(value)
        return int(value)
    except ValueError:
        return value


def _apply_env_overrides(cfg: Dict[str, Any]) -> Dict[str, Any]:
    """Apply environment variable overrides with prefix PROMPT_RELAY__."""
    for key, value in os.environ.items():
        if not key.startswith(ENV_PREFIX):
            continue
        # e.g., PROMPT_RELAY__UPSTREAM__BASE_URL -> cfg["upstream"]["base_url"]
        parts = key[len(ENV_PREFIX):].lower().split("__")
        sub = cfg
        for p in parts[:-1]:
            if p not in sub or not isinstance(sub[p], dict):
                sub[p] = {}
            sub = sub[p]
        sub[parts[-1]] = _coerce(value)
    return cfg


def load_config(path: str | None = None) -> Dict[str, Any]:
    """Load YAML configuration for the relay server.

    Parameters
    ----------
    path : str | None
        Optional path to a configuration file. If not provided, the
        environment variable ``PROMPT_RELAY_CONFIG`` is consulted. As a
        last resort ``config/default.yaml`` is used.

    Returns
    -------
    Dict[str, Any]
        Parsed configuration dictionary with environment overrides applied.
    """
    if path is None:
        path = os.environ.get("PROMPT_RELAY_CONFIG", "config/default.yaml")

    path_obj = Path(path)
    if not path_obj.exists():
        logger.warning("Config file not found at %s. Using defaults.", path_obj)
        return _apply_env_overrides(copy.deepcopy(DEFAULT_CONFIG))

    with path_obj.open("r", encoding="utf-8") as f:
        try:
            cfg = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise RuntimeError(f"Failed to parse config file {path_obj}: {e}")

    if not isinstance(cfg, dict):
        raise RuntimeError(f"Invalid config format in {path_obj}, expected dict.")

    return _apply_env_overrides(cfg)


# -----------------------------
# Typed settings
# -----------------------------
@dataclass(frozen=True)
class ServerSettings:
    host: str = "127.0.0.1"
    port: int = 3001
    cors_origins: Tuple[str, ...] = ("*",)


@dataclass(frozen=True)
class UpstreamSettings:
    api_style: str = "openai"            # "openai" | "anthropic"
    base_url: str = "https://api.openai.com/v1"
    api_key: Optional[str] = None
    model: str = "gpt-4o-mini"
    model_label: Optional[str] = None    # display name echoed to clients
    anthropic_version: str = "2023-06-01"
    max_tokens: int = 4000
    temperature: float = 0.7
    top_p: float = 0.999
    top_k: Optional[int] = 250           # anthropic dialect only
    connect_timeout: float = 10.0
    read_timeout: float = 120.0          # idle time between increments

    @property
    def display_model(self) -> str:
        return self.model_label or self.model


@dataclass(frozen=True)
class RelaySettings:
    source: str = "prompt-relay"
    system_prompt: Optional[str] = None
    default_references: Tuple[Dict[str, Any], ...] = ()


@dataclass(frozen=True)
class StorageSettings:
    log_dir: str = "logs"
    history_limit: int = 10


@dataclass(frozen=True)
class LoggingSettings:
    level: str = "INFO"
    format: str = "%(asctime)s %(levelname)s %(name)s: %(message)s"


@dataclass(frozen=True)
class Settings:
    """Process-wide configuration, built once at startup."""

    server: ServerSettings = field(default_factory=ServerSettings)
    upstream: UpstreamSettings = field(default_factory=UpstreamSettings)
    relay: RelaySettings = field(default_factory=RelaySettings)
    storage: StorageSettings = field(default_factory=StorageSettings)
    logging: LoggingSettings = field(default_factory=LoggingSettings)

    @classmethod
    def from_config(cls, cfg: Dict[str, Any]) -> "Settings":
        srv = cfg.get("server") or {}
        up = dict(cfg.get("upstream") or {})
        rel = cfg.get("relay") or {}
        sto = cfg.get("storage") or {}
        log = cfg.get("logging") or {}

        for key in _UPSTREAM_STRINGS:
            if up.get(key) is not None:
                up[key] = str(up[key])

        # Secrets normally live in the environment, not the YAML file.
        if not up.get("api_key"):
            up["api_key"] = os.environ.get(API_KEY_ENV) or None

        origins: List[str] = list(srv.get("cors_origins") or ["*"])
        return cls(
            server=ServerSettings(
                host=str(srv.get("host", ServerSettings.host)),
                port=int(srv.get("port", ServerSettings.port)),
                cors_origins=tuple(origins),
            ),
            upstream=_build(UpstreamSettings, up),
            relay=RelaySettings(
                source=str(rel.get("source", RelaySettings.source)),
                system_prompt=rel.get("system_prompt") or None,
                default_references=tuple(rel.get("default_references") or ()),
            ),
            storage=StorageSettings(
                log_dir=str(sto.get("log_dir", StorageSettings.log_dir)),
                history_limit=int(sto.get("history_limit", StorageSettings.history_limit)),
            ),
            logging=_build(LoggingSettings, log),
        )


def _build(kind: type, values: Dict[str, Any]) -> Any:
    """Instantiate a settings dataclass, ignoring unknown keys."""
    known = {k: v for k, v in values.items() if k in kind.__dataclass_fields__ and v is not None}
    return kind(**known)


def load_settings(path: str | None = None) -> Settings:
    return Settings.from_config(load_config(path))


def configure_logging(settings: LoggingSettings, level: str | None = None) -> None:
    logging.basicConfig(
        level=(level or settings.level).upper(),
        format=settings.format,
    )
