"""Configuration data structures."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta


@dataclass
class SourceConfig:
    """A single monitored cluster."""

    id: str  # slug, e.g. "prod", "staging"
    name: str  # display name, e.g. "Production"
    database_url: str


@dataclass
class APIConfig:
    """REST API configuration."""

    host: str = "0.0.0.0"
    port: int = 8080


@dataclass
class LogConfig:
    """Logging configuration."""

    level: str = "info"


@dataclass
class CRDBHistoryConfig:
    """Top-level configuration."""

    history_database_url: str = ""
    sources: list[SourceConfig] = field(default_factory=list)
    poll_interval: timedelta = timedelta(minutes=15)
    retention: timedelta = timedelta(0)  # zero disables cleanup
    api: APIConfig = field(default_factory=APIConfig)
    log: LogConfig = field(default_factory=LogConfig)

    def get_source(self, source_id: str) -> SourceConfig | None:
        for source in self.sources:
            if source.id == source_id:
                return source
        return None

    def source_ids(self) -> list[str]:
        return [source.id for source in self.sources]
