"""FastAPI application for the job endpoints."""
from __future__ import annotations

from typing import Any, Dict

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from api.field_jobs import router as field_router
from core.errors import (
    FieldSyncError,
    IllegalTransition,
    JobNotFound,
    PhotoRejected,
    TransitionConflict,
)
from core.log import get_logger
from services.job_lifecycle import JobLifecycle
from services.job_photos import JobPhotoService


logger = get_logger("api")


def _error_body(exc: FieldSyncError) -> Dict[str, Any]:
    body: Dict[str, Any] = {"error": str(exc)}
    if isinstance(exc, IllegalTransition):
        if exc.current_status is not None:
            body["currentStatus"] = exc.current_status
        if exc.current_status is not None or exc.allowed:
            body["allowedTransitions"] = exc.allowed
    return body


def _status_for(exc: FieldSyncError) -> int:
    if isinstance(exc, JobNotFound):
        return 404
    if isinstance(exc, TransitionConflict):
        return 409
    if isinstance(exc, (IllegalTransition, PhotoRejected)):
        return 400
    return 500


def create_app(lifecycle: JobLifecycle, photos: JobPhotoService) -> FastAPI:
    app = FastAPI(title="FieldSync Job API", version="0.1.0")
    app.state.lifecycle = lifecycle
    app.state.photos = photos

    @app.exception_handler(FieldSyncError)
    async def handle_field_error(request: Request, exc: FieldSyncError):
        status = _status_for(exc)
        if status >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc)
        else:
            logger.info("%s %s rejected (%s): %s", request.method, request.url.path, status, exc)
        return JSONResponse(status_code=status, content=_error_body(exc))

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(request: Request, exc: RequestValidationError):
        return JSONResponse(status_code=400, content={"error": "Invalid request body"})

    @app.get("/api/health")
    def health() -> Dict[str, str]:
        return {"status": "ok"}

    app.include_router(field_router)
    return app


__all__ = ["create_app"]
