"""FastAPI application factory for crdbhistory.

Usage::

    from crdbhistory.api.app import create_app

    app = create_app(store=store, supervisor=supervisor, config=config)

Used both by the production bootstrap (``crdbhistory.app``) and by tests,
which pass mocks for the store and supervisor.
"""

from __future__ import annotations

from typing import Any

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from crdbhistory.api.routes import router
from crdbhistory.api.schemas import ErrorResponse

_log = structlog.get_logger(component="api.app")

_API_PREFIX = "/api/v1"


def create_app(store: Any, supervisor: Any = None, config: Any = None) -> FastAPI:
    """Create the read API over the history store.

    Args:
        store:      SnapshotStore instance.
        supervisor: Optional CollectorSupervisor.  Without it the configured
                    source list is empty and manual collection returns 503.
        config:     CRDBHistoryConfig, kept on ``app.state`` for handlers.

    Returns:
        Configured FastAPI application, ready to be served by uvicorn.
    """
    from crdbhistory import __version__

    app = FastAPI(
        title="crdbhistory",
        summary="CockroachDB cluster settings history",
        version=__version__,
        description=(
            "Periodic snapshots of CockroachDB cluster settings and the change "
            "log derived from consecutive snapshots."
        ),
        docs_url=f"{_API_PREFIX}/docs",
        redoc_url=f"{_API_PREFIX}/redoc",
        openapi_url=f"{_API_PREFIX}/openapi.json",
    )

    app.state.store = store
    app.state.supervisor = supervisor
    app.state.config = config

    app.include_router(router, prefix=_API_PREFIX)

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(
        _request: Request,
        exc: RequestValidationError,
    ) -> JSONResponse:
        """Map validation errors onto the error envelope with a field-specific code."""
        errors = exc.errors()
        first_field = ""
        first_msg = ""
        if errors:
            locs = errors[0].get("loc", ())
            first_field = str(locs[-1]) if locs else ""
            first_msg = str(errors[0].get("msg", ""))

        if first_field == "source_id":
            error_code = "INVALID_SOURCE_ID"
        elif first_field == "limit":
            error_code = "INVALID_LIMIT"
        else:
            error_code = "INVALID_REQUEST"

        return JSONResponse(
            status_code=400,
            content=ErrorResponse(error=error_code, detail=first_msg).model_dump(),
        )

    @app.exception_handler(Exception)
    async def generic_exception_handler(
        request: Request,
        exc: Exception,
    ) -> JSONResponse:
        """Storage failures surface as 500 without leaking internals."""
        _log.error(
            "unhandled_exception",
            path=str(request.url.path),
            method=request.method,
            error=str(exc),
            error_type=type(exc).__name__,
        )
        return JSONResponse(
            status_code=500,
            content=ErrorResponse(
                error="INTERNAL_ERROR",
                detail="An unexpected error occurred.",
            ).model_dump(),
        )

    return app
