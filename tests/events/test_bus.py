"""Tests for the lifecycle event log."""

from procwarden.events.bus import EventBus


def test_emit_records_event():
    bus = EventBus()
    event = bus.emit("process.running", {"name": "worker", "os_pid": 42})

    assert event.topic == "process.running"
    assert event.data == {"name": "worker", "os_pid": 42}
    assert event.source == "supervisor"
    assert event.timestamp.tzinfo is not None
    assert bus.history() == [event]


def test_sequence_numbers_increase():
    bus = EventBus()
    seqs = [bus.emit("process.starting").seq for _ in range(3)]
    assert seqs == sorted(seqs)
    assert len(set(seqs)) == 3


def test_emitted_data_is_copied():
    bus = EventBus()
    payload = {"name": "worker"}
    bus.emit("process.failed", payload)
    payload["name"] = "primary"
    assert bus.history()[0].data == {"name": "worker"}


def test_history_newest_first_and_filtered():
    bus = EventBus()
    bus.emit("process.starting", {"name": "worker"})
    bus.emit("process.running", {"name": "worker"})
    bus.emit("supervisor.stopping", {})
    bus.emit("process.stopped", {"name": "worker"})

    assert [e.topic for e in bus.history()] == [
        "process.stopped", "supervisor.stopping", "process.running", "process.starting",
    ]
    assert [e.topic for e in bus.history(topic_filter="process.*", limit=2)] == [
        "process.stopped", "process.running",
    ]
    assert bus.history(topic_filter="supervisor.stopped") == []


def test_history_is_bounded():
    bus = EventBus(history_limit=5)
    for i in range(10):
        bus.emit("process.restarting", {"attempt": i})

    assert [e.data["attempt"] for e in bus.history()] == [9, 8, 7, 6, 5]


def test_non_positive_limit_returns_nothing():
    bus = EventBus()
    bus.emit("process.running")
    assert bus.history(limit=0) == []
    assert bus.history(limit=-3) == []
