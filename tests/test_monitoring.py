from __future__ import annotations

import asyncio
import logging

import pytest

from eas_listener.monitoring import MonitoringHub, MonitoringLogHandler


class _Clock:
    def __init__(self, now: float = 1_700_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def test_log_ids_and_newest_first_history():
    clock = _Clock()
    hub = MonitoringHub(max_logs=3, clock=clock)

    for n in range(5):
        hub.record_log("INFO", "eas_archive", f"message {n}")

    logs = hub.recent_logs(10)
    assert [entry["id"] for entry in logs] == [5, 4, 3]
    assert logs[0]["timestamp"] == int(clock.now * 1000)
    assert logs[0]["fields"] == {}
    assert [entry["id"] for entry in hub.recent_logs(1)] == [5]
    assert hub.recent_logs(0) == []


def test_stream_telemetry_and_activity_window():
    clock = _Clock()
    hub = MonitoringHub(inactivity_timeout=30, clock=clock)

    hub.note_connecting("http://radio-b/stream")
    hub.note_connecting("http://radio-a/stream")
    hub.note_connected("http://radio-a/stream")

    clock.now += 20
    streams = hub.stream_snapshots()
    assert [s["stream_url"] for s in streams] == ["http://radio-a/stream", "http://radio-b/stream"]
    radio_a = streams[0]
    assert radio_a["is_connected"] is True
    assert radio_a["is_receiving_audio"] is True
    assert radio_a["uptime_seconds"] == 20
    assert radio_a["connection_attempts"] == 1

    clock.now += 20
    assert hub.stream_snapshots()[0]["is_receiving_audio"] is False
    hub.note_activity("http://radio-a/stream")
    assert hub.stream_snapshots()[0]["is_receiving_audio"] is True

    hub.note_error("http://radio-a/stream", "connection reset")
    radio_a = hub.stream_snapshots()[0]
    assert radio_a["is_connected"] is False
    assert radio_a["last_error"] == "connection reset"
    assert radio_a["last_disconnect"] == int(clock.now)
    assert radio_a["uptime_seconds"] is None


def test_broadcast_alerts_counts_per_stream():
    hub = MonitoringHub(clock=_Clock())
    alert = {"received_at": 1, "raw_header": "ZCZC-WXR-RWT-000000+0015-0011200-KCLE/NWS-"}

    hub.broadcast_alerts([alert], source_stream="http://radio-a/stream")

    assert hub.active_alerts() == [alert]
    assert hub.stream_snapshots()[0]["alerts_received"] == 1
    snapshot = hub.snapshot()
    assert set(snapshot) == {"streams", "active_alerts", "logs"}


def test_subscriber_gets_snapshot_then_deltas():
    async def runner():
        hub = MonitoringHub(clock=_Clock())
        hub.record_log("INFO", "eas_archive", "before subscribe")

        queue = await hub.subscribe()
        first = queue.get_nowait()
        assert first["type"] == "Snapshot"
        assert [entry["message"] for entry in first["payload"]["logs"]] == ["before subscribe"]

        hub.record_log("WARNING", "eas_archive", "after subscribe")
        hub.note_connected("http://radio-a/stream")
        hub.broadcast_alerts([])

        received = [await asyncio.wait_for(queue.get(), timeout=1) for _ in range(3)]
        assert [item["type"] for item in received] == ["Log", "Stream", "Alerts"]
        assert received[0]["payload"]["message"] == "after subscribe"

        hub.unsubscribe(queue)
        hub.record_log("INFO", "eas_archive", "unseen")
        await asyncio.sleep(0)
        assert queue.empty()

    asyncio.run(runner())


def test_slow_subscriber_drops_oldest():
    async def runner():
        hub = MonitoringHub(max_queue_size=2, clock=_Clock())
        queue = await hub.subscribe()

        for n in range(4):
            hub.record_log("INFO", "eas_archive", f"m{n}")
        await asyncio.sleep(0)
        await asyncio.sleep(0)

        messages = [queue.get_nowait()["payload"]["message"] for _ in range(queue.qsize())]
        assert messages == ["m2", "m3"]

    asyncio.run(runner())


def test_log_handler_mirrors_records_into_hub():
    hub = MonitoringHub(clock=_Clock())
    logger = logging.getLogger("eas_archive.test_handler")
    handler = MonitoringLogHandler(hub)
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)
    try:
        logger.info("archive ready with %d recordings", 3)
        logger.debug("not mirrored")
        try:
            raise ValueError("boom")
        except ValueError:
            logger.exception("delivery failed")
    finally:
        logger.removeHandler(handler)

    logs = hub.recent_logs(10)
    assert [entry["message"] for entry in logs] == [
        "delivery failed",
        "archive ready with 3 recordings",
    ]
    assert logs[0]["level"] == "ERROR"
    assert logs[0]["target"] == "eas_archive.test_handler"
    assert "ValueError: boom" in logs[0]["fields"]["exception"]


def test_rejects_non_positive_capacity():
    with pytest.raises(ValueError):
        MonitoringHub(max_logs=0)
