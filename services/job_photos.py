from __future__ import annotations

import uuid
from pathlib import Path
from typing import List, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import select

from core.errors import JobNotFound, PhotoRejected
from core.log import get_logger
from core.settings import PHOTOS, PhotoSettings
from datetime_utils import epoch_millis, utc_now
from models.job import Job, JobPhoto
from storage.db import Database


_EXTENSIONS = {"image/jpeg": "jpg", "image/png": "png", "image/webp": "webp"}

logger = get_logger("photos")


class JobPhotoService:
    """Stores job photos on disk and records them against the job.

    Photos are accepted for jobs in any status. A replayed upload carrying
    an idempotency key that was already stored returns the first photo
    instead of creating a second one.
    """

    def __init__(self, db: Database, *, settings: PhotoSettings = PHOTOS, root: Optional[Path] = None):
        self.db = db
        self.settings = settings
        self.root = Path(root or settings.directory)

    def validate(self, content: bytes, content_type: Optional[str], photo_type: Optional[str]) -> str:
        if not content:
            raise PhotoRejected("No photo file provided")
        if len(content) > self.settings.max_bytes:
            limit_mb = self.settings.max_bytes // (1024 * 1024)
            raise PhotoRejected(f"File too large. Maximum size is {limit_mb}MB")
        if content_type not in self.settings.allowed_types:
            raise PhotoRejected("Invalid file type. Use JPEG, PNG, or WebP")
        kind = (photo_type or self.settings.default_type).strip().lower()
        if kind not in self.settings.photo_types:
            raise PhotoRejected(
                f"Invalid photo type. Allowed: {', '.join(self.settings.photo_types)}"
            )
        return kind

    def attach(
        self,
        job_id: str,
        *,
        content: bytes,
        content_type: Optional[str],
        photo_type: Optional[str] = None,
        idempotency_key: Optional[str] = None,
        uploaded_by: Optional[str] = None,
    ) -> Tuple[JobPhoto, bool]:
        """Store the photo. Returns ``(photo, created)``."""

        kind = self.validate(content, content_type, photo_type)
        if idempotency_key:
            existing = self._by_key(idempotency_key)
            if existing is not None:
                if existing.job_id != job_id:
                    raise PhotoRejected(
                        f"Idempotency key {idempotency_key} was used for another job"
                    )
                logger.info("Photo upload %s already stored as %s", idempotency_key, existing.id)
                return existing, False

        with self.db.session() as session:
            job = session.get(Job, job_id)
            if job is None:
                raise JobNotFound(job_id)
            org_id = job.org_id

        photo_id = uuid.uuid4().hex
        target = self.root / org_id / job_id / f"{photo_id}-{epoch_millis()}.{_EXTENSIONS[content_type]}"
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(content)

        try:
            with self.db.session() as session:
                position = session.exec(
                    select(func.coalesce(func.max(JobPhoto.position), 0)).where(JobPhoto.job_id == job_id)
                ).one() + 1
                photo = JobPhoto(
                    id=photo_id,
                    job_id=job_id,
                    photo_type=kind,
                    content_type=content_type,
                    size_bytes=len(content),
                    storage_path=str(target.relative_to(self.root).as_posix()),
                    position=position,
                    idempotency_key=idempotency_key,
                    uploaded_at=utc_now(),
                    uploaded_by=uploaded_by,
                )
                session.add(photo)
                session.commit()
        except IntegrityError:
            self._remove_file(target)
            existing = self._by_key(idempotency_key) if idempotency_key else None
            if existing is None:
                raise
            return existing, False
        except SQLAlchemyError:
            # The row never landed, so the file would be an orphan.
            self._remove_file(target)
            raise

        logger.info("Photo %s (%s) attached to job %s", photo_id, kind, job_id)
        return photo, True

    def list(self, job_id: str) -> List[JobPhoto]:
        with self.db.session() as session:
            if session.get(Job, job_id) is None:
                raise JobNotFound(job_id)
            stmt = select(JobPhoto).where(JobPhoto.job_id == job_id).order_by(JobPhoto.position)
            return list(session.exec(stmt))

    def read(self, photo: JobPhoto) -> bytes:
        return (self.root / photo.storage_path).read_bytes()

    def delete(self, job_id: str, photo_id: str) -> bool:
        with self.db.session() as session:
            photo = session.get(JobPhoto, photo_id)
            if photo is None or photo.job_id != job_id:
                return False
            path = self.root / photo.storage_path
            session.delete(photo)
            session.commit()
        self._remove_file(path)
        logger.info("Photo %s removed from job %s", photo_id, job_id)
        return True

    def _by_key(self, idempotency_key: str) -> Optional[JobPhoto]:
        with self.db.session() as session:
            return session.exec(
                select(JobPhoto).where(JobPhoto.idempotency_key == idempotency_key)
            ).first()

    @staticmethod
    def _remove_file(path: Path) -> None:
        try:
            path.unlink()
        except FileNotFoundError:
            pass
        except OSError as exc:
            logger.warning("Could not remove photo file %s: %s", path, exc)


__all__ = ["JobPhotoService"]
