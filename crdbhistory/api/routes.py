"""Route handlers for the crdbhistory REST API.

Every handler reads its collaborators from ``request.app.state``:
``store`` (SnapshotStore), ``supervisor`` (CollectorSupervisor or None) and
``config``.
"""

from __future__ import annotations

from typing import Annotated, Any

import structlog
from fastapi import APIRouter, Path, Query, Request, Response
from fastapi.responses import JSONResponse

from crdbhistory.api.schemas import (
    AnnotationCreate,
    AnnotationOut,
    AnnotationUpdate,
    ChangeOut,
    CollectResponse,
    CollectSummary,
    ErrorResponse,
    HealthResponse,
    MetadataResponse,
    SettingOut,
    SettingsResponse,
    SnapshotInfoOut,
    SourcesResponse,
)
from crdbhistory.collector.supervisor import CollectionError
from crdbhistory.storage.store import (
    AnnotationExistsError,
    AnnotationNotFoundError,
    ChangeNotFoundError,
)

_log = structlog.get_logger(component="api.routes")

router = APIRouter()

SourceID = Annotated[str, Path(pattern=r"^[A-Za-z0-9_-]+$", max_length=128)]
Limit = Annotated[int, Query(ge=1, le=10_000)]


def _error(status_code: int, error: str, detail: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=error, detail=detail).model_dump(),
    )


def _configured_sources(request: Request) -> list[str]:
    supervisor: Any = request.app.state.supervisor
    if supervisor is None:
        return []
    return supervisor.source_ids()


# ---------------------------------------------------------------------------
# Health and sources
# ---------------------------------------------------------------------------


@router.get("/health", response_model=HealthResponse)
async def health(request: Request) -> HealthResponse:
    from crdbhistory import __version__

    return HealthResponse(status="ok", version=__version__, sources=_configured_sources(request))


@router.get("/sources", response_model=SourcesResponse)
async def list_sources(request: Request) -> SourcesResponse:
    stored = await request.app.state.store.list_sources()
    return SourcesResponse(configured=_configured_sources(request), stored=stored)


# ---------------------------------------------------------------------------
# Snapshots
# ---------------------------------------------------------------------------


@router.get("/sources/{source_id}/settings", response_model=SettingsResponse)
async def latest_settings(request: Request, source_id: SourceID) -> SettingsResponse:
    settings = await request.app.state.store.get_latest_snapshot(source_id)
    return SettingsResponse(
        source_id=source_id,
        settings=[SettingOut.from_setting(settings[name]) for name in sorted(settings)],
    )


@router.get("/sources/{source_id}/snapshots", response_model=list[SnapshotInfoOut])
async def list_snapshots(request: Request, source_id: SourceID, limit: Limit = 100) -> list[SnapshotInfoOut]:
    snapshots = await request.app.state.store.list_snapshots(source_id, limit)
    return [SnapshotInfoOut.from_info(info) for info in snapshots]


@router.get("/snapshots/{snapshot_id}", response_model=SettingsResponse)
async def get_snapshot(request: Request, snapshot_id: int) -> Any:
    settings = await request.app.state.store.get_snapshot(snapshot_id)
    if settings is None:
        return _error(404, "SNAPSHOT_NOT_FOUND", f"snapshot {snapshot_id} does not exist")
    return SettingsResponse(
        snapshot_id=str(snapshot_id),
        settings=[SettingOut.from_setting(settings[name]) for name in sorted(settings)],
    )


# ---------------------------------------------------------------------------
# Changes and metadata
# ---------------------------------------------------------------------------


@router.get("/sources/{source_id}/changes", response_model=list[ChangeOut])
async def list_changes(request: Request, source_id: SourceID, limit: Limit = 100) -> list[ChangeOut]:
    changes = await request.app.state.store.get_changes_with_annotations(source_id, limit)
    return [ChangeOut.from_annotated(item) for item in changes]


@router.get("/changes", response_model=list[ChangeOut])
async def list_all_changes(request: Request, limit: Limit = 1000) -> list[ChangeOut]:
    changes = await request.app.state.store.get_all_changes(limit)
    return [ChangeOut.from_change(change) for change in changes]


@router.get("/sources/{source_id}/metadata", response_model=MetadataResponse)
async def source_metadata(request: Request, source_id: SourceID) -> MetadataResponse:
    metadata = await request.app.state.store.list_metadata(source_id)
    return MetadataResponse(source_id=source_id, metadata=metadata)


# ---------------------------------------------------------------------------
# Manual collection
# ---------------------------------------------------------------------------


@router.post("/collect", response_model=CollectResponse)
async def trigger_collection(request: Request) -> Any:
    """Run one collection cycle on every configured source now."""
    supervisor: Any = request.app.state.supervisor
    if supervisor is None:
        return _error(503, "COLLECTORS_UNAVAILABLE", "no collectors are running")

    errors: dict[str, str] = {}
    try:
        results = await supervisor.collect()
    except CollectionError as exc:
        results = exc.results
        errors = {source_id: str(err) for source_id, err in exc.errors.items()}

    body = CollectResponse(
        collected={
            source_id: CollectSummary(
                snapshot_id=str(result.snapshot_id),
                settings=result.setting_count,
                changes=len(result.changes),
            )
            for source_id, result in results.items()
        },
        errors=errors,
    )
    _log.info("manual_collection", collected=sorted(body.collected), failed=sorted(errors))
    if errors:
        return JSONResponse(status_code=502, content=body.model_dump(mode="json"))
    return body


# ---------------------------------------------------------------------------
# Annotations
# ---------------------------------------------------------------------------


@router.post("/changes/{change_id}/annotation", response_model=AnnotationOut, status_code=201)
async def create_annotation(request: Request, change_id: int, body: AnnotationCreate) -> Any:
    try:
        annotation = await request.app.state.store.create_annotation(change_id, body.content, body.author)
    except ChangeNotFoundError as exc:
        return _error(404, "CHANGE_NOT_FOUND", str(exc))
    except AnnotationExistsError as exc:
        return _error(409, "ANNOTATION_EXISTS", str(exc))
    return AnnotationOut.from_annotation(annotation)


@router.put("/annotations/{annotation_id}", response_model=AnnotationOut)
async def update_annotation(request: Request, annotation_id: int, body: AnnotationUpdate) -> Any:
    store = request.app.state.store
    try:
        await store.update_annotation(annotation_id, body.content, body.author)
    except AnnotationNotFoundError as exc:
        return _error(404, "ANNOTATION_NOT_FOUND", str(exc))
    annotation = await store.get_annotation(annotation_id)
    if annotation is None:
        return _error(404, "ANNOTATION_NOT_FOUND", f"annotation {annotation_id} not found")
    return AnnotationOut.from_annotation(annotation)


@router.delete("/annotations/{annotation_id}", status_code=204, response_model=None)
async def delete_annotation(request: Request, annotation_id: int) -> Response:
    try:
        await request.app.state.store.delete_annotation(annotation_id)
    except AnnotationNotFoundError as exc:
        return _error(404, "ANNOTATION_NOT_FOUND", str(exc))
    return Response(status_code=204)
