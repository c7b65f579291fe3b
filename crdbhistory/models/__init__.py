"""Core data structures for crdbhistory."""

from crdbhistory.models.config import (
    APIConfig,
    CRDBHistoryConfig,
    LogConfig,
    SourceConfig,
)
from crdbhistory.models.history import (
    Annotation,
    Change,
    ChangeKind,
    ChangeWithAnnotation,
    Setting,
    SettingDiff,
    SnapshotInfo,
    SnapshotResult,
    change_kind,
)

__all__ = [
    "APIConfig",
    "Annotation",
    "CRDBHistoryConfig",
    "Change",
    "ChangeKind",
    "ChangeWithAnnotation",
    "LogConfig",
    "Setting",
    "SettingDiff",
    "SnapshotInfo",
    "SnapshotResult",
    "SourceConfig",
    "change_kind",
]
