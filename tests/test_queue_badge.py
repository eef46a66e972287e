from services.notification_bridge import ReplayEvent, ReplayEventKind
from services.queue_store import DurableQueueStore
from ui.queue_badge import badge_hint, badge_text, event_message


def test_empty_queue(client_db):
    status = DurableQueueStore(client_db).status()
    assert badge_text(status) == "All changes uploaded"
    assert badge_hint(status) == ""


def test_pending_photos_and_updates(client_db):
    store = DurableQueueStore(client_db)
    store.create("/api/field/job/1/photos", "{}")
    store.create("/api/field/job/1/photos", "{}")
    store.create("/api/field/job/1", "{}", method="PUT")

    status = store.status()
    assert badge_text(status) == "2 photos pending, 1 update pending"
    assert badge_hint(status) == "Will upload when online"


def test_dead_letters_need_attention(client_db):
    store = DurableQueueStore(client_db)
    op = store.create("/api/field/job/1/photos", "{}")
    store.mark_dead_letter(op.id, "HTTP 400: Invalid file type")

    status = store.status()
    assert badge_text(status) == "1 needs your attention"
    assert badge_hint(status) == "Retry or discard the items below"


def test_event_messages():
    retry = ReplayEvent(ReplayEventKind.UPLOAD_FAILED_WILL_RETRY, "op", "/x", "HTTP 503")
    dead = ReplayEvent(ReplayEventKind.DEAD_LETTER, "op", "/x", "HTTP 400: bad")
    done = ReplayEvent(ReplayEventKind.UPLOADED, "op", "/x")
    assert event_message(retry) == "Upload failed, will retry"
    assert event_message(dead) == "Upload failed and needs your attention: HTTP 400: bad"
    assert event_message(done) is None
