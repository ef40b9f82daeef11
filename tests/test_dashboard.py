from __future__ import annotations

import asyncio
import logging
import wave

import aiohttp
from aiohttp.test_utils import TestServer

from eas_listener.dashboard import DashboardMonitor
from eas_listener.monitoring import MonitoringHub
from eas_listener.web_server import build_app


ALERT = {
    "received_at": 1_736_099_112,
    "raw_header": "ZCZC-WXR-SVR-039173+0045-1231745-KCLE/NWS-",
    "data": {
        "event_code": "SVR",
        "event_text": "Severe Thunderstorm Warning",
        "alert_severity": "warning",
        "locations": "Wood County, OH",
    },
}


def _cfg(tmp_path, api_base: str = "http://127.0.0.1:1") -> dict:
    return {
        "paths": {
            "recording_dir": str(tmp_path / "recordings"),
            "shared_state_dir": str(tmp_path),
            "alert_log_file": "alerts.log",
        },
        "monitoring": {
            "api_base": api_base,
            "audio_holdoff_sec": 0,
            "audio_poll_sec": 0.05,
            "status_poll_sec": 3600,
        },
        "timezone": "UTC",
    }


def test_callbacks_feed_prober_and_log_transitions(tmp_path, caplog):
    async def runner():
        async with aiohttp.ClientSession() as session:
            monitor = DashboardMonitor(_cfg(tmp_path), session=session)
            monitor._build(session)

            with caplog.at_level(logging.INFO, logger="eas_monitor"):
                monitor._on_stream_changed({"stream_url": "http://radio-a/stream", "is_connected": True})
                monitor._on_stream_changed({"stream_url": "http://radio-a/stream", "is_connected": True})
                monitor._on_stream_changed(
                    {"stream_url": "http://radio-a/stream", "is_connected": False, "last_error": "reset"}
                )
                monitor._on_alerts_changed([ALERT])

            assert caplog.text.count("stream http://radio-a/stream connected") == 1
            assert "disconnected" in caplog.text and "reset" in caplog.text
            assert "SVR Severe Thunderstorm Warning [WARNING] Wood County, OH" in caplog.text
            assert monitor.prober.pending_indexes() == [0]
            assert monitor.prober.holdoff == 0
            assert monitor.sync.backoff.initial == 2.0

    asyncio.run(runner())


def test_monitor_finds_alert_audio_end_to_end(tmp_path):
    recordings = tmp_path / "recordings"
    recordings.mkdir()
    with wave.open(str(recordings / "EAS_Recording_1.wav"), "wb") as handle:
        handle.setnchannels(1)
        handle.setsampwidth(2)
        handle.setframerate(8000)
        handle.writeframes(b"\x00\x01" * 400)

    async def runner():
        hub = MonitoringHub()
        server = TestServer(build_app(_cfg(tmp_path), hub=hub))
        await server.start_server()
        monitor = DashboardMonitor(_cfg(tmp_path, f"http://{server.host}:{server.port}"))
        task = asyncio.create_task(monitor.run())
        try:
            deadline = asyncio.get_running_loop().time() + 5
            while monitor.prober is None or monitor.prober.audio_src is None:
                assert asyncio.get_running_loop().time() < deadline, "audio never confirmed"
                hub.broadcast_alerts([ALERT])
                await asyncio.sleep(0.05)
            assert monitor.prober.audio_src.endswith("/archive?recording_id=0")
        finally:
            monitor.stop()
            await asyncio.wait_for(task, timeout=5)
            await server.close()

    asyncio.run(runner())


def test_report_alert_history_logs_newest_alert(tmp_path, caplog):
    (tmp_path / "recordings").mkdir()
    (tmp_path / "alerts.log").write_text(
        "ZCZC-WXR-SVR-039173+0045-1231745-KCLE/NWS-: The National Weather Service in "
        "Cleveland, OH has issued a Severe Thunderstorm Warning for Wood County, OH. "
        "Message from KCLE/NWS. (Received @ 2025-01-05  5:45:12 PM)\n\n",
        encoding="utf-8",
    )

    async def runner():
        server = TestServer(build_app(_cfg(tmp_path), hub=MonitoringHub()))
        await server.start_server()
        try:
            async with aiohttp.ClientSession() as session:
                monitor = DashboardMonitor(_cfg(tmp_path, f"http://{server.host}:{server.port}"), session=session)
                monitor._build(session)
                with caplog.at_level(logging.INFO, logger="eas_monitor"):
                    alerts = await monitor.report_alert_history()
        finally:
            await server.close()
        assert [a["data"]["event_code"] for a in alerts] == ["SVR"]
        assert "1 alert(s) on file, newest: SVR Severe Thunderstorm Warning" in caplog.text

    asyncio.run(runner())


def test_report_alert_history_unavailable(tmp_path, caplog):
    async def runner():
        async with aiohttp.ClientSession() as session:
            monitor = DashboardMonitor(_cfg(tmp_path), session=session)
            monitor._build(session)
            with caplog.at_level(logging.WARNING, logger="eas_monitor"):
                assert await monitor.report_alert_history() is None
        assert "alert history unavailable" in caplog.text

    asyncio.run(runner())
