from chat_relay.services.observability import (
    RELAY_TURN_METRIC,
    configure_audit_buffer,
    emit_audit_event,
    get_audit_events,
    get_metric_snapshot,
    record_relay_turn,
    reset,
)


def test_relay_turn_snapshot():
    record_relay_turn(10.0, fragments=3)
    record_relay_turn(30.0, failure_kind="upstream_stream", fragments=1)
    record_relay_turn(20.0, fragments=5, client_disconnected=True, upstream_aborted=True)
    record_relay_turn(20.0, failure_kind="persistence", fragments=2, reply_lost=True)

    snapshot = get_metric_snapshot()[RELAY_TURN_METRIC]
    assert snapshot["count"] == 4
    assert snapshot["failures"] == 2
    assert snapshot["failures_by_kind"] == {"upstream_stream": 1, "persistence": 1}
    assert snapshot["error_rate"] == 0.5
    assert snapshot["avg_latency_ms"] == 20.0
    assert snapshot["fragments"] == 11
    assert snapshot["client_disconnects"] == 1
    assert snapshot["upstream_aborts"] == 1
    assert snapshot["lost_replies"] == 1


def test_snapshot_is_empty_until_a_turn_finishes():
    assert get_metric_snapshot() == {}
    record_relay_turn(5.0)
    reset()
    assert get_metric_snapshot() == {}


def test_audit_buffer_is_bounded():
    configure_audit_buffer(3)
    try:
        for i in range(5):
            emit_audit_event("assistant_turn.lost", index=i)
        assert [e["index"] for e in get_audit_events()] == [2, 3, 4]
        assert [e["index"] for e in get_audit_events(limit=1)] == [4]
        assert get_audit_events(limit=0) == []
    finally:
        configure_audit_buffer(1000)
