#!/usr/bin/env python3
"""
Console monitor for a running EAS listener.

Mirrors stream, alert and log state from the monitoring channel and reports
when each active alert's recording becomes playable.
"""
from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
from typing import Any

import aiohttp

from . import config as config_module
from .archive_client import ArchiveClient
from .audio_prober import AlertAudioProber, ProbeBackoff
from .realtime_client import RealtimeSyncClient, ReconnectBackoff, SyncState


class DashboardMonitor:
    def __init__(self, cfg: dict[str, Any] | None = None, *, session: aiohttp.ClientSession | None = None):
        self.cfg = cfg if cfg is not None else config_module.get_cfg()
        self.log = logging.getLogger("eas_monitor")
        self._session = session
        self._owns_session = session is None
        self._stream_connected: dict[str, bool] = {}
        self.sync: RealtimeSyncClient | None = None
        self.prober: AlertAudioProber | None = None
        self.client: ArchiveClient | None = None
        self._prober_task: asyncio.Task | None = None
        self._stop = asyncio.Event()

    def _build(self, session: aiohttp.ClientSession) -> None:
        mon = self.cfg.get("monitoring", {})
        client = self.client = ArchiveClient(
            str(mon.get("api_base", "http://127.0.0.1:8080")),
            session=session,
            token=str(mon.get("token") or "") or None,
        )
        max_logs = int(mon.get("max_logs", 500))
        self.prober = AlertAudioProber(
            client,
            holdoff=float(mon.get("audio_holdoff_sec", 10.0)),
            poll_interval=float(mon.get("audio_poll_sec", 10.0)),
            concurrency=int(mon.get("probe_concurrency", 2)),
            playability_timeout=float(mon.get("playability_timeout_sec", 5.0)),
            backoff=ProbeBackoff(
                float(mon.get("probe_backoff_base_sec", 2.0)),
                float(mon.get("probe_backoff_max_sec", 60.0)),
                capacity=int(mon.get("probe_state_capacity", 256)),
            ),
            on_audio_changed=self._on_audio_changed,
        )
        self.sync = RealtimeSyncClient(
            client,
            state=SyncState(max_logs=max_logs),
            backoff=ReconnectBackoff(
                float(mon.get("reconnect_initial_sec", 2.0)),
                float(mon.get("reconnect_factor", 1.8)),
                float(mon.get("reconnect_max_sec", 30.0)),
            ),
            poll_interval=float(mon.get("status_poll_sec", 60.0)),
            log_tail=min(max_logs, 500),
            on_alerts_changed=self._on_alerts_changed,
            on_stream_changed=self._on_stream_changed,
        )

    def _on_stream_changed(self, stream: dict[str, Any]) -> None:
        url = stream.get("stream_url", "?")
        connected = bool(stream.get("is_connected"))
        previous = self._stream_connected.get(url)
        self._stream_connected[url] = connected
        if previous == connected:
            return
        if connected:
            self.log.info(
                "stream %s connected (%s)",
                url,
                "receiving audio" if stream.get("is_receiving_audio") else "no audio activity",
            )
        else:
            self.log.warning(
                "stream %s disconnected (attempts=%s, last error: %s)",
                url,
                stream.get("connection_attempts"),
                stream.get("last_error") or "-",
            )

    def _on_alerts_changed(self, alerts: list[dict[str, Any]]) -> None:
        if self.prober is not None:
            self.prober.set_active_alerts(alerts)
        if not alerts:
            self.log.info("no active alerts")
            return
        self.log.info("%d active alert(s)", len(alerts))
        for alert in alerts:
            data = alert.get("data") or {}
            self.log.info(
                "  %s %s [%s] %s",
                data.get("event_code", "???"),
                data.get("event_text") or "",
                (data.get("alert_severity") or "unknown").upper(),
                data.get("locations") or "-",
            )

    def _on_audio_changed(self, sources: dict[int, str]) -> None:
        if not sources:
            self.log.info("alert audio not currently available")
            return
        for index, src in sources.items():
            self.log.info("alert #%d audio available at %s", index, src)

    async def report_alert_history(self) -> list[dict[str, Any]] | None:
        """Log how many alerts the archive has on file and the newest one."""
        assert self.client is not None
        watched_only = bool(self.cfg.get("monitoring", {}).get("watched_only"))
        alerts = await self.client.fetch_alerts(watched_only=watched_only)
        if alerts is None:
            self.log.warning("alert history unavailable")
            return None
        if not alerts:
            self.log.info("alert log is empty")
            return alerts
        newest = alerts[-1].get("data") or {}
        self.log.info(
            "%d alert(s) on file, newest: %s %s",
            len(alerts),
            newest.get("event_code", "???"),
            newest.get("event_text") or "",
        )
        return alerts

    async def run(self) -> None:
        session = self._session or aiohttp.ClientSession()
        try:
            self._build(session)
            assert self.sync is not None and self.prober is not None
            await self.report_alert_history()
            await self.sync.start()
            self._prober_task = asyncio.create_task(self.prober.run(), name="eas_monitor_audio")
            await self._stop.wait()
        finally:
            if self.sync is not None:
                await self.sync.stop()
            if self._prober_task is not None:
                self._prober_task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await self._prober_task
            if self._owns_session:
                await session.close()

    def stop(self) -> None:
        self._stop.set()


def cli_main():
    parser = argparse.ArgumentParser(description="Console monitor for the EAS listener.")
    parser.add_argument("--api-base", help="Override the monitoring API base URL (defaults to config).")
    parser.add_argument("--token", help="Bearer token sent with every request.")
    parser.add_argument("--log-level", default="INFO", help="Python logging level (default: INFO).")
    args = parser.parse_args()

    cfg = config_module.reload_cfg()
    level_name = "DEBUG" if cfg.get("logging", {}).get("dev_mode") else args.log_level
    logging.basicConfig(
        level=getattr(logging, level_name.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    if args.api_base:
        cfg.setdefault("monitoring", {})["api_base"] = args.api_base
    if args.token:
        cfg.setdefault("monitoring", {})["token"] = args.token

    monitor = DashboardMonitor(cfg)
    try:
        asyncio.run(monitor.run())
    except KeyboardInterrupt:
        return 0
    return 0


if __name__ == "__main__":
    raise SystemExit(cli_main())
