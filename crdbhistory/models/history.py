"""History data structures: settings, snapshots, changes and annotations."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum


class ChangeKind(StrEnum):
    """How a setting moved between two consecutive snapshots."""

    ADDED = "added"
    MODIFIED = "modified"
    REMOVED = "removed"


def change_kind(old_value: str | None, new_value: str | None) -> ChangeKind:
    """Classify a transition; None stands for an absent setting."""
    if old_value is None:
        return ChangeKind.ADDED
    if new_value is None:
        return ChangeKind.REMOVED
    return ChangeKind.MODIFIED


@dataclass(frozen=True)
class Setting:
    """One cluster setting captured at a single collection instant."""

    variable: str
    value: str
    setting_type: str = ""
    description: str = ""


@dataclass(frozen=True)
class SettingDiff:
    """A single entry of a three-way settings diff.

    ``old_value`` is None for added settings, ``new_value`` is None for
    removed ones.
    """

    variable: str
    old_value: str | None
    new_value: str | None
    description: str

    @property
    def kind(self) -> ChangeKind:
        return change_kind(self.old_value, self.new_value)


@dataclass(frozen=True)
class Change:
    """A persisted change-log row.  Never mutated after creation."""

    source_id: str
    detected_at: datetime
    variable: str
    old_value: str | None
    new_value: str | None
    description: str = ""
    version: str = ""
    id: int | None = None

    @property
    def kind(self) -> ChangeKind:
        return change_kind(self.old_value, self.new_value)


@dataclass(frozen=True)
class SnapshotInfo:
    """Snapshot header without its settings."""

    id: int
    source_id: str
    collected_at: datetime


@dataclass(frozen=True)
class SnapshotResult:
    """Outcome of a successful save_snapshot call."""

    snapshot_id: int
    source_id: str
    collected_at: datetime
    setting_count: int
    changes: list[Change] = field(default_factory=list)


@dataclass(frozen=True)
class Annotation:
    """Operator note attached 1:1 to a change."""

    id: int
    change_id: int
    content: str
    created_by: str
    created_at: datetime
    updated_by: str = ""  # empty if never updated
    updated_at: datetime | None = None


@dataclass(frozen=True)
class ChangeWithAnnotation:
    """A change together with its optional annotation."""

    change: Change
    annotation: Annotation | None = None
