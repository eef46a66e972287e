"""HTTP surface the field app replays its queued writes into."""
from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, File, Form, Header, Request, UploadFile
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from core.errors import IllegalTransition, PhotoRejected
from datetime_utils import to_rfc3339_utc
from models.job import Job, JobPhoto, JobStatus
from services.job_lifecycle import JobLifecycle, allowed_targets
from services.job_photos import JobPhotoService

router = APIRouter(prefix="/api/field", tags=["field"])


class TransitionRequest(BaseModel):
    status: Optional[str] = None
    action: Optional[str] = None
    skipReason: Optional[str] = None
    notes: Optional[str] = None


def _lifecycle(request: Request) -> JobLifecycle:
    return request.app.state.lifecycle


def _photos(request: Request) -> JobPhotoService:
    return request.app.state.photos


def _timestamp(value) -> Optional[str]:
    return to_rfc3339_utc(value) if value is not None else None


def job_to_dict(job: Job) -> Dict[str, Any]:
    return {
        "id": job.id,
        "status": job.status,
        "scheduledDate": job.scheduled_date.isoformat() if job.scheduled_date else None,
        "startedAt": _timestamp(job.started_at),
        "completedAt": _timestamp(job.completed_at),
        "skipReason": job.skip_reason,
        "notes": job.notes,
        "internalNotes": job.internal_notes,
        "allowedTransitions": [s.value for s in allowed_targets(JobStatus(job.status))],
    }


def photo_to_dict(photo: JobPhoto) -> Dict[str, Any]:
    return {
        "id": photo.id,
        "type": photo.photo_type,
        "contentType": photo.content_type,
        "sizeBytes": photo.size_bytes,
        "url": photo.storage_path,
        "position": photo.position,
        "uploadedAt": _timestamp(photo.uploaded_at),
        "uploadedBy": photo.uploaded_by,
    }


@router.get("/job/{job_id}")
def get_job(job_id: str, request: Request):
    job = _lifecycle(request).get(job_id)
    detail = job_to_dict(job)
    detail["photos"] = [photo_to_dict(p) for p in _photos(request).list(job_id)]
    return {"job": detail}


@router.put("/job/{job_id}")
def update_job_status(
    job_id: str,
    body: TransitionRequest,
    request: Request,
    idempotency_key: Optional[str] = Header(default=None, alias="Idempotency-Key"),
    actor: Optional[str] = Header(default=None, alias="X-Actor"),
    device_id: Optional[str] = Header(default=None, alias="X-Device-Id"),
):
    target = body.status or body.action
    if not target:
        raise IllegalTransition("Action is required")
    job = _lifecycle(request).transition(
        job_id,
        target,
        actor=actor or device_id or "field-app",
        skip_reason=body.skipReason,
        notes=body.notes,
        operation_id=idempotency_key,
    )
    return {"job": job_to_dict(job), "message": f"Job status updated to {job.status}"}


@router.get("/job/{job_id}/photos")
def list_photos(job_id: str, request: Request):
    photos = _photos(request).list(job_id)
    return {"photos": [photo_to_dict(p) for p in photos]}


@router.post("/job/{job_id}/photos")
def upload_photo(
    job_id: str,
    request: Request,
    photo: Optional[UploadFile] = File(default=None),
    photo_type: Optional[str] = Form(default=None, alias="type"),
    idempotency_key: Optional[str] = Header(default=None, alias="Idempotency-Key"),
    actor: Optional[str] = Header(default=None, alias="X-Actor"),
    device_id: Optional[str] = Header(default=None, alias="X-Device-Id"),
):
    if photo is None:
        raise PhotoRejected("No photo file provided")
    content = photo.file.read()
    stored, created = _photos(request).attach(
        job_id,
        content=content,
        content_type=photo.content_type,
        photo_type=photo_type,
        idempotency_key=idempotency_key,
        uploaded_by=actor or device_id,
    )
    message = "Photo uploaded successfully" if created else "Photo already uploaded"
    return JSONResponse(
        status_code=201 if created else 200,
        content={"photo": photo_to_dict(stored), "message": message},
    )


@router.delete("/job/{job_id}/photos")
def delete_photo(job_id: str, request: Request, photoId: Optional[str] = None):
    if not photoId:
        return JSONResponse(status_code=400, content={"error": "photoId query parameter is required"})
    # Raises JobNotFound for an unknown job before looking at the photo.
    _lifecycle(request).get(job_id)
    if not _photos(request).delete(job_id, photoId):
        return JSONResponse(status_code=404, content={"error": "Photo not found"})
    return {"message": "Photo deleted successfully"}
