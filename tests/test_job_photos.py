from datetime import date

import pytest
from sqlalchemy.exc import OperationalError

from core.errors import JobNotFound, PhotoRejected
from core.settings import PhotoSettings
from services.job_lifecycle import JobLifecycle
from services.job_photos import JobPhotoService


JPEG = b"\xff\xd8\xff\xe0fake-jpeg"


@pytest.fixture()
def photos(server_db, tmp_path):
    JobLifecycle(server_db).schedule("job-1", org_id="org-1", scheduled_date=date(2024, 5, 2))
    return JobPhotoService(server_db, root=tmp_path / "photos")


def test_attach_writes_file_and_row(photos, tmp_path):
    photo, created = photos.attach("job-1", content=JPEG, content_type="image/jpeg", photo_type="before")
    assert created is True
    assert photo.photo_type == "before"
    assert photo.position == 1
    assert photo.storage_path.startswith("org-1/job-1/")
    assert photo.storage_path.endswith(".jpg")
    assert photos.read(photo) == JPEG


def test_type_defaults_to_after(photos):
    photo, _ = photos.attach("job-1", content=JPEG, content_type="image/png")
    assert photo.photo_type == "after"
    assert photo.storage_path.endswith(".png")


def test_photos_keep_attach_order(photos):
    ids = [
        photos.attach("job-1", content=JPEG, content_type="image/jpeg", photo_type=t)[0].id
        for t in ("before", "issue", "after")
    ]
    listed = photos.list("job-1")
    assert [p.id for p in listed] == ids
    assert [p.position for p in listed] == [1, 2, 3]


def test_same_idempotency_key_stores_once(photos, tmp_path):
    first, created = photos.attach("job-1", content=JPEG, content_type="image/jpeg", idempotency_key="op-1")
    again, created_again = photos.attach("job-1", content=JPEG, content_type="image/jpeg", idempotency_key="op-1")
    assert created and not created_again
    assert again.id == first.id
    assert len(photos.list("job-1")) == 1
    assert len(list((tmp_path / "photos").rglob("*.jpg"))) == 1


@pytest.mark.parametrize(
    "content,content_type,photo_type,message",
    [
        (b"", "image/jpeg", "after", "No photo file provided"),
        (JPEG, "image/gif", "after", "Invalid file type"),
        (JPEG, "image/jpeg", "selfie", "Invalid photo type"),
    ],
)
def test_validation(photos, content, content_type, photo_type, message):
    with pytest.raises(PhotoRejected, match=message):
        photos.attach("job-1", content=content, content_type=content_type, photo_type=photo_type)


def test_size_limit(server_db, tmp_path):
    JobLifecycle(server_db).schedule("job-9", org_id="org-1", scheduled_date=date(2024, 5, 2))
    small = JobPhotoService(server_db, settings=PhotoSettings(max_bytes=1024 * 1024), root=tmp_path)
    with pytest.raises(PhotoRejected, match="File too large. Maximum size is 1MB"):
        small.attach("job-9", content=b"x" * (1024 * 1024 + 1), content_type="image/jpeg")


def test_unknown_job(photos):
    with pytest.raises(JobNotFound):
        photos.attach("missing", content=JPEG, content_type="image/jpeg")
    with pytest.raises(JobNotFound):
        photos.list("missing")


def test_failed_row_write_removes_file(photos, tmp_path, monkeypatch):
    original = photos.db.session
    calls = {"n": 0}

    def failing_session():
        calls["n"] += 1
        session = original()
        if calls["n"] == 2:
            def boom():
                raise OperationalError("INSERT", {}, Exception("disk full"))

            session.commit = boom
        return session

    monkeypatch.setattr(photos.db, "session", failing_session)
    with pytest.raises(OperationalError):
        photos.attach("job-1", content=JPEG, content_type="image/jpeg")
    assert list((tmp_path / "photos").rglob("*.jpg")) == []


def test_delete(photos, tmp_path):
    photo, _ = photos.attach("job-1", content=JPEG, content_type="image/jpeg")
    assert photos.delete("job-1", photo.id) is True
    assert photos.list("job-1") == []
    assert list((tmp_path / "photos").rglob("*.jpg")) == []
    assert photos.delete("job-1", photo.id) is False
