from services.notification_bridge import NotificationBridge, ReplayEvent, ReplayEventKind


def test_every_subscriber_gets_the_event():
    bridge = NotificationBridge()
    seen_a, seen_b = [], []
    bridge.subscribe(seen_a.append)
    bridge.subscribe(seen_b.append)

    assert bridge.uploaded("op-1", "/api/field/job/1/photos") == 2
    assert seen_a == seen_b == [ReplayEvent(ReplayEventKind.UPLOADED, "op-1", "/api/field/job/1/photos")]


def test_failing_subscriber_does_not_stop_the_others():
    bridge = NotificationBridge()
    seen = []

    def broken(event):
        raise RuntimeError("ui went away")

    bridge.subscribe(broken)
    bridge.subscribe(seen.append)

    assert bridge.will_retry("op-1", "/x", "HTTP 503") == 1
    assert seen[0].kind is ReplayEventKind.UPLOAD_FAILED_WILL_RETRY
    assert seen[0].error == "HTTP 503"


def test_unsubscribe_and_no_buffering():
    bridge = NotificationBridge()
    bridge.queued("op-early", "/x")

    seen = []
    unsubscribe = bridge.subscribe(seen.append)
    bridge.queued("op-1", "/x")
    unsubscribe()
    unsubscribe()
    bridge.queued("op-2", "/x")

    assert [e.operation_id for e in seen] == ["op-1"]


def test_dead_letter_needs_attention():
    bridge = NotificationBridge()
    seen = []
    bridge.subscribe(seen.append)
    bridge.dead_letter("op-1", "/x", "HTTP 422: bad photo")
    bridge.will_retry("op-2", "/x", "timeout")
    assert [e.needs_attention for e in seen] == [True, False]


def test_bridges_do_not_share_listeners():
    first, second = NotificationBridge(), NotificationBridge()
    seen = []
    first.subscribe(seen.append)
    assert second.queued("op-1", "/x") == 0
    assert seen == []
