import asyncio
from datetime import date

import httpx
import pytest

from api.app import create_app
from core.errors import InvalidOperationState
from models.queued_operation import FailureKind, OperationState
from services.connectivity import ConnectivityProbe
from services.field_sync import FieldSyncEngine
from services.job_lifecycle import JobLifecycle
from services.job_photos import JobPhotoService
from services.notification_bridge import ReplayEventKind
from services.response_cache import CACHE_HEADER


JPEG = b"\xff\xd8\xff\xe0" + b"photo-bytes" * 100


class Uplink(httpx.AsyncBaseTransport):
    """ASGI transport to the job server that can lose the network."""

    def __init__(self, app):
        self.inner = httpx.ASGITransport(app=app)
        self.online = False
        self.drop_responses = 0
        self.requests = []

    async def handle_async_request(self, request):
        if not self.online:
            raise httpx.ConnectError("no signal", request=request)
        self.requests.append((request.method, request.url.path, request.headers.get("Idempotency-Key")))
        response = await self.inner.handle_async_request(request)
        if self.drop_responses:
            # The server handled the request but the reply never arrived.
            self.drop_responses -= 1
            await response.aread()
            raise httpx.ReadError("connection reset", request=request)
        return response


@pytest.fixture()
def server(server_db, tmp_path):
    lifecycle = JobLifecycle(server_db)
    lifecycle.schedule("job-1", org_id="org-1", scheduled_date=date(2024, 5, 2))
    photos = JobPhotoService(server_db, root=tmp_path / "server-photos")
    return lifecycle, photos, create_app(lifecycle, photos)


def _engine(tmp_path, uplink, name="client.db"):
    return FieldSyncEngine("http://field.test", db_path=tmp_path / name, transport=uplink, device_id="TABLET-1")


def test_offline_visit_syncs_in_order_when_signal_returns(server, tmp_path):
    lifecycle, photos, app = server
    uplink = Uplink(app)

    async def scenario():
        async with _engine(tmp_path, uplink) as engine:
            events = []
            engine.subscribe(events.append)
            ids = [
                engine.enqueue_transition("job-1", "EN_ROUTE"),
                engine.enqueue_transition("job-1", "IN_PROGRESS"),
                engine.enqueue_photo("job-1", "before", JPEG, "image/jpeg"),
                engine.enqueue_photo("job-1", "after", JPEG, "image/jpeg"),
                engine.enqueue_transition("job-1", "COMPLETED", notes="All clear"),
            ]
            offline = await engine.drain_now()
            status_offline = engine.query_queue_status()

            uplink.online = True
            assert engine.connectivity_restored() is True
            online = await engine.drain_now()
            return ids, offline, status_offline, online, engine.query_queue_status(), events

    ids, offline, status_offline, online, status_after, events = asyncio.run(scenario())

    assert offline.retrying == [ids[0]]
    assert offline.held == ids[1:]
    assert status_offline.count(OperationState.PENDING) == 5
    assert online.delivered == ids
    assert status_after.total == 0
    assert [e.kind for e in events].count(ReplayEventKind.UPLOADED) == 5

    job = lifecycle.get("job-1")
    assert job.status == "COMPLETED"
    assert job.internal_notes == "All clear"
    assert [p.photo_type for p in photos.list("job-1")] == ["before", "after"]
    assert [a.operation_id for a in lifecycle.audit_trail("job-1")] == [ids[0], ids[1], ids[4]]
    assert [key for _, _, key in uplink.requests] == ids


def test_queue_survives_a_restart(server, tmp_path):
    lifecycle, photos, app = server
    uplink = Uplink(app)

    async def before_restart():
        async with _engine(tmp_path, uplink) as engine:
            op_id = engine.enqueue_photo("job-1", "issue", JPEG, "image/webp")
            await engine.drain_now()
            # Simulate a crash mid-upload.
            engine.store.mark_in_flight(op_id)
            return op_id

    async def after_restart():
        uplink.online = True
        async with _engine(tmp_path, uplink) as engine:
            pending = [op.id for op in engine.store.list_pending()]
            report = await engine.drain_now()
            return pending, report

    op_id = asyncio.run(before_restart())
    pending, report = asyncio.run(after_restart())

    assert pending == [op_id]
    assert report.delivered == [op_id]
    assert len(photos.list("job-1")) == 1


def test_lost_response_does_not_duplicate_the_photo(server, tmp_path):
    lifecycle, photos, app = server
    uplink = Uplink(app)
    uplink.online = True
    uplink.drop_responses = 1

    async def scenario():
        async with _engine(tmp_path, uplink) as engine:
            op_id = engine.enqueue_photo("job-1", "before", JPEG, "image/jpeg")
            first = await engine.drain_now()
            second = await engine.drain_now()
            return op_id, first, second

    op_id, first, second = asyncio.run(scenario())

    assert first.retrying == [op_id]
    assert second.delivered == [op_id]
    assert [key for _, _, key in uplink.requests] == [op_id, op_id]
    assert len(photos.list("job-1")) == 1


def test_rejected_photo_holds_completion_until_discarded(server, tmp_path):
    lifecycle, photos, app = server
    lifecycle.transition("job-1", "en_route", actor="setup")
    lifecycle.transition("job-1", "start", actor="setup")
    uplink = Uplink(app)
    uplink.online = True

    async def scenario():
        async with _engine(tmp_path, uplink) as engine:
            bad = engine.enqueue_photo("job-1", "selfie", JPEG, "image/jpeg")
            done = engine.enqueue_transition("job-1", "COMPLETED")
            first = await engine.drain_now()
            status = engine.query_queue_status()
            job_status = lifecycle.get("job-1").status

            with pytest.raises(InvalidOperationState):
                engine.cancel(bad)
            engine.discard_dead_letter(bad)
            second = await engine.drain_now()
            return bad, done, first, status, job_status, second

    bad, done, first, status, job_status, second = asyncio.run(scenario())

    assert first.dead_lettered == [bad]
    assert first.held == [done]
    assert status.needs_attention == 1
    dead = [op for op in status.operations if op.id == bad][0]
    assert dead.failure_kind is FailureKind.PERMANENT
    assert "Invalid photo type" in dead.last_error
    assert job_status == "IN_PROGRESS"
    assert second.delivered == [done]
    assert lifecycle.get("job-1").status == "COMPLETED"


def test_illegal_queued_transition_is_dead_lettered(server, tmp_path):
    lifecycle, photos, app = server
    uplink = Uplink(app)
    uplink.online = True

    async def scenario():
        async with _engine(tmp_path, uplink) as engine:
            op_id = engine.enqueue_transition("job-1", "COMPLETED")
            await engine.drain_now()
            return engine.store.get(op_id)

    record = asyncio.run(scenario())
    assert record.state is OperationState.DEAD_LETTER
    assert "Cannot transition from SCHEDULED to COMPLETED" in record.last_error
    assert lifecycle.get("job-1").status == "SCHEDULED"


def test_user_can_cancel_pending_write(server, tmp_path):
    _, photos, app = server
    uplink = Uplink(app)

    async def scenario():
        async with _engine(tmp_path, uplink) as engine:
            op_id = engine.enqueue_photo("job-1", "before", JPEG, "image/jpeg")
            await engine.drain_now()
            engine.cancel(op_id)
            uplink.online = True
            return await engine.drain_now()

    assert asyncio.run(scenario()).outcomes == {}
    assert photos.list("job-1") == []


def test_job_reads_fall_back_to_cache_offline(server, tmp_path):
    _, _, app = server
    uplink = Uplink(app)
    uplink.online = True

    async def scenario():
        async with _engine(tmp_path, uplink) as engine:
            fresh = await engine.fetch("/api/field/job/job-1")
            uplink.online = False
            cached = await engine.fetch("/api/field/job/job-1")
            missing = await engine.fetch("/api/field/job/other")
            return fresh, cached, missing

    fresh, cached, missing = asyncio.run(scenario())
    assert fresh.json() == cached.json()
    assert cached.headers[CACHE_HEADER].startswith("fieldsync-dynamic-")
    assert missing.status_code == 503


def test_photos_taken_without_signal_wait_with_full_attempt_budget(server, tmp_path):
    _, photos, app = server
    uplink = Uplink(app)

    async def scenario():
        async with _engine(tmp_path, uplink) as engine:
            ids = []
            for shot in ("before", "after", "issue"):
                ids.append(engine.enqueue_photo("job-1", shot, JPEG, "image/jpeg"))
                await asyncio.sleep(0.05)
            waiting = [engine.store.get(op_id) for op_id in ids]

            uplink.online = True
            engine.connectivity_restored()
            report = await engine.drain_now()
            return ids, waiting, report

    ids, waiting, report = asyncio.run(scenario())

    assert [op.state for op in waiting] == [OperationState.PENDING] * 3
    assert [op.attempt_count for op in waiting] == [0, 0, 0]
    assert report.delivered == ids
    assert [p.photo_type for p in photos.list("job-1")] == ["before", "after", "issue"]


def test_probe_drives_engine_online_state(server, tmp_path):
    _, photos, app = server
    uplink = Uplink(app)
    uplink.online = True

    async def scenario():
        async with _engine(tmp_path, uplink) as engine:
            probe = ConnectivityProbe(
                engine.client, engine.connectivity_restored, on_lost=engine.connectivity_lost
            )
            await probe.check()
            assert engine.online
            await engine.drain_now()

            uplink.online = False
            await probe.check()
            offline_id = engine.enqueue_photo("job-1", "before", JPEG, "image/jpeg")
            await asyncio.sleep(0.05)
            offline_attempts = engine.store.get(offline_id).attempt_count

            uplink.online = True
            await probe.check()
            report = await engine.drain_now()
            return engine.online, offline_id, offline_attempts, report

    online, offline_id, offline_attempts, report = asyncio.run(scenario())

    assert online is True
    assert offline_attempts == 0
    assert report.delivered == [offline_id]
    assert len(photos.list("job-1")) == 1


def test_queue_status_for_one_job(server, tmp_path):
    lifecycle, _, app = server
    lifecycle.schedule("job-2", org_id="org-1", scheduled_date=date(2024, 5, 3))
    uplink = Uplink(app)

    async def scenario():
        async with _engine(tmp_path, uplink) as engine:
            mine = engine.enqueue_photo("job-1", "before", JPEG, "image/jpeg")
            engine.enqueue_photo("job-2", "before", JPEG, "image/jpeg")
            return mine, engine.query_queue_status("job-1"), engine.query_queue_status()

    mine, one_job, everything = asyncio.run(scenario())
    assert [op.id for op in one_job.operations] == [mine]
    assert everything.total == 2
