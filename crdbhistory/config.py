"""Configuration loading from a clusters YAML file and environment variables.

Source list resolution order:

1. the YAML file named by ``CRDBHISTORY_CLUSTERS_CONFIG``;
2. ``clusters.yaml`` in the working directory;
3. a single source ``default`` built from ``CRDBHISTORY_DATABASE_URL``.

Scalar settings come from ``CRDBHISTORY_*`` environment variables, which take
precedence over the YAML file.
"""

from __future__ import annotations

import os
import re
from datetime import timedelta
from pathlib import Path
from typing import Any

import yaml

from crdbhistory.models.config import APIConfig, CRDBHistoryConfig, LogConfig, SourceConfig

DEFAULT_CONFIG_FILE = "clusters.yaml"
DEFAULT_POLL_INTERVAL = timedelta(minutes=15)
MIN_POLL_INTERVAL = timedelta(seconds=1)

_SOURCE_ID_RE = re.compile(r"[A-Za-z0-9_-]+")
_DURATION_PART_RE = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h|d)")
_DURATION_UNITS = {
    "ms": timedelta(milliseconds=1),
    "s": timedelta(seconds=1),
    "m": timedelta(minutes=1),
    "h": timedelta(hours=1),
    "d": timedelta(days=1),
}


class ConfigError(ValueError):
    """Invalid or incomplete configuration.  Fatal at startup."""


def _env(key: str, default: str = "") -> str:
    return os.environ.get(f"CRDBHISTORY_{key}", default)


def _env_int(key: str, default: int, min_val: int | None = None, max_val: int | None = None) -> int:
    raw = _env(key, str(default))
    try:
        val = int(raw)
    except ValueError as exc:
        raise ConfigError(f"CRDBHISTORY_{key} must be an integer, got {raw!r}") from exc
    if min_val is not None:
        val = max(val, min_val)
    if max_val is not None:
        val = min(val, max_val)
    return val


def parse_duration(value: str | int | float | None) -> timedelta | None:
    """Parse ``30s``, ``15m``, ``1h30m``, ``7d`` style durations.

    Bare numbers are seconds.  Empty values return None.
    """
    if value is None:
        return None
    if isinstance(value, int | float):
        return timedelta(seconds=value)
    text = value.strip()
    if not text:
        return None
    if text == "0":
        return timedelta(0)

    total = timedelta(0)
    pos = 0
    for match in _DURATION_PART_RE.finditer(text):
        if match.start() != pos:
            break
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()
    if pos != len(text) or pos == 0:
        raise ConfigError(f"invalid duration {value!r}")
    return total


def _validate_log_level(value: str) -> str:
    valid = {"debug", "info", "warning", "error"}
    if value.lower() not in valid:
        raise ConfigError(f"Invalid log level: {value}. Must be one of {sorted(valid)}")
    return value.lower()


def load_config_file(path: str | Path) -> CRDBHistoryConfig:
    """Build a config from a clusters YAML file.

    Expected layout::

        history_database_url: postgresql://...
        poll_interval: 15m
        retention: 720h
        api_port: 8080
        clusters:
          - id: prod
            name: Production
            database_url: postgresql://...
    """
    try:
        raw = yaml.safe_load(Path(path).read_text(encoding="utf-8")) or {}
    except OSError as exc:
        raise ConfigError(f"failed to read config file {path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ConfigError(f"failed to parse config file {path}: {exc}") from exc
    if not isinstance(raw, dict):
        raise ConfigError(f"config file {path} must contain a mapping")

    clusters = raw.get("clusters") or []
    if not isinstance(clusters, list):
        raise ConfigError("clusters must be a list")

    sources = [_source_from_mapping(i, entry) for i, entry in enumerate(clusters)]
    return CRDBHistoryConfig(
        history_database_url=str(raw.get("history_database_url") or ""),
        sources=sources,
        poll_interval=parse_duration(raw.get("poll_interval")) or DEFAULT_POLL_INTERVAL,
        retention=parse_duration(raw.get("retention")) or timedelta(0),
        api=APIConfig(port=_port_from_file(raw.get("api_port"))),
    )


def _port_from_file(value: Any) -> int:
    if value is None or value == "":
        return 8080
    try:
        port = int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"api_port must be an integer, got {value!r}") from exc
    return min(max(port, 1), 65535)


def _source_from_mapping(index: int, entry: Any) -> SourceConfig:
    if not isinstance(entry, dict):
        raise ConfigError(f"clusters[{index}] must be a mapping")
    return SourceConfig(
        id=str(entry.get("id") or ""),
        name=str(entry.get("name") or ""),
        database_url=str(entry.get("database_url") or ""),
    )


def load_config_from_env() -> CRDBHistoryConfig:
    """Single-source configuration for deployments without a clusters file."""
    sources: list[SourceConfig] = []
    source_url = _env("DATABASE_URL")
    if source_url:
        sources.append(SourceConfig(id="default", name="Default", database_url=source_url))
    return CRDBHistoryConfig(sources=sources)


def load_config() -> CRDBHistoryConfig:
    """Load, apply environment overrides and validate."""
    config_path = _env("CLUSTERS_CONFIG")
    if config_path:
        config = load_config_file(config_path)
    elif Path(DEFAULT_CONFIG_FILE).is_file():
        config = load_config_file(DEFAULT_CONFIG_FILE)
    else:
        config = load_config_from_env()

    if history_url := _env("HISTORY_DATABASE_URL"):
        config.history_database_url = history_url
    if (poll_interval := parse_duration(_env("POLL_INTERVAL"))) is not None:
        config.poll_interval = poll_interval
    if (retention := parse_duration(_env("RETENTION"))) is not None:
        config.retention = retention
    config.api = APIConfig(
        host=_env("API_HOST", config.api.host),
        port=_env_int("API_PORT", config.api.port, min_val=1, max_val=65535),
    )
    config.log = LogConfig(level=_validate_log_level(_env("LOG_LEVEL", "info")))

    validate_config(config)
    return config


def validate_config(config: CRDBHistoryConfig) -> None:
    """Reject configurations that must not reach collector startup."""
    if not config.history_database_url:
        raise ConfigError("history_database_url is required")
    if not config.sources:
        raise ConfigError("at least one cluster must be configured")

    seen: set[str] = set()
    for i, source in enumerate(config.sources):
        if not source.id:
            raise ConfigError(f"cluster[{i}]: id is required")
        if not source.name:
            raise ConfigError(f"cluster[{i}]: name is required")
        if not source.database_url:
            raise ConfigError(f"cluster[{i}] ({source.id}): database_url is required")
        if not is_valid_source_id(source.id):
            raise ConfigError(
                f"cluster[{i}]: id {source.id!r} contains invalid characters "
                "(use only alphanumeric, hyphens, underscores)"
            )
        if source.id in seen:
            raise ConfigError(f"duplicate cluster id: {source.id}")
        seen.add(source.id)

    if config.poll_interval < MIN_POLL_INTERVAL:
        raise ConfigError("poll_interval must be at least 1 second")
    if config.retention < timedelta(0):
        raise ConfigError("retention must not be negative")


def is_valid_source_id(value: str) -> bool:
    return bool(_SOURCE_ID_RE.fullmatch(value))
