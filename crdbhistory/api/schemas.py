"""Request and response models for the crdbhistory REST API."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field

from crdbhistory.models.history import Annotation, Change, ChangeWithAnnotation, Setting, SnapshotInfo


class ErrorResponse(BaseModel):
    """Uniform error envelope returned by every failing endpoint."""

    error: str
    detail: str


class HealthResponse(BaseModel):
    status: str
    version: str
    sources: list[str]


class SourcesResponse(BaseModel):
    configured: list[str]
    stored: list[str]


class SettingOut(BaseModel):
    variable: str
    value: str
    setting_type: str
    description: str

    @classmethod
    def from_setting(cls, setting: Setting) -> SettingOut:
        return cls(
            variable=setting.variable,
            value=setting.value,
            setting_type=setting.setting_type,
            description=setting.description,
        )


class SettingsResponse(BaseModel):
    source_id: str | None = None
    snapshot_id: str | None = None
    settings: list[SettingOut]


class SnapshotInfoOut(BaseModel):
    # Serialised as a string so JavaScript clients do not lose precision on
    # large CockroachDB row ids.
    id: str
    source_id: str
    collected_at: datetime

    @classmethod
    def from_info(cls, info: SnapshotInfo) -> SnapshotInfoOut:
        return cls(id=str(info.id), source_id=info.source_id, collected_at=info.collected_at)


class AnnotationOut(BaseModel):
    id: str
    change_id: str
    content: str
    created_by: str
    created_at: datetime
    updated_by: str = ""
    updated_at: datetime | None = None

    @classmethod
    def from_annotation(cls, annotation: Annotation) -> AnnotationOut:
        return cls(
            id=str(annotation.id),
            change_id=str(annotation.change_id),
            content=annotation.content,
            created_by=annotation.created_by,
            created_at=annotation.created_at,
            updated_by=annotation.updated_by,
            updated_at=annotation.updated_at,
        )


class ChangeOut(BaseModel):
    id: str | None
    source_id: str
    detected_at: datetime
    variable: str
    kind: str
    old_value: str | None
    new_value: str | None
    description: str
    version: str
    annotation: AnnotationOut | None = None

    @classmethod
    def from_change(cls, change: Change, annotation: Annotation | None = None) -> ChangeOut:
        return cls(
            id=str(change.id) if change.id is not None else None,
            source_id=change.source_id,
            detected_at=change.detected_at,
            variable=change.variable,
            kind=change.kind.value,
            old_value=change.old_value,
            new_value=change.new_value,
            description=change.description,
            version=change.version,
            annotation=AnnotationOut.from_annotation(annotation) if annotation else None,
        )

    @classmethod
    def from_annotated(cls, item: ChangeWithAnnotation) -> ChangeOut:
        return cls.from_change(item.change, item.annotation)


class MetadataResponse(BaseModel):
    source_id: str
    metadata: dict[str, str]


class CollectSummary(BaseModel):
    snapshot_id: str
    settings: int
    changes: int


class CollectResponse(BaseModel):
    collected: dict[str, CollectSummary]
    errors: dict[str, str] = Field(default_factory=dict)


class AnnotationCreate(BaseModel):
    content: str = Field(min_length=1, max_length=10_000)
    author: str = Field(default="", max_length=200)


class AnnotationUpdate(BaseModel):
    content: str = Field(min_length=1, max_length=10_000)
    author: str = Field(default="", max_length=200)
