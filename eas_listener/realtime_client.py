"""Mirror the monitoring hub's state over its WebSocket channel.

The server pushes a ``Snapshot`` on connect followed by ``Stream``, ``Log`` and
``Alerts`` deltas. The client keeps a local copy, reconnects with capped
exponential backoff and re-fetches the full state on a slow fixed interval as a
consistency backstop.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from typing import Any, Callable, Iterable

import aiohttp

from .archive_client import ArchiveClient

DEFAULT_MAX_LOGS = 500
DEFAULT_STATUS_POLL_SECONDS = 60.0
WS_HEARTBEAT_SECONDS = 30.0

_LOG = logging.getLogger("eas_monitor")

AlertsCallback = Callable[[list[dict[str, Any]]], None]
StreamCallback = Callable[[dict[str, Any]], None]


class ReconnectBackoff:
    """Delay sequence ``initial, initial*factor, ...`` capped at ``maximum``."""

    def __init__(self, initial: float = 2.0, factor: float = 1.8, maximum: float = 30.0) -> None:
        if initial <= 0 or maximum <= 0:
            raise ValueError("backoff delays must be positive")
        if factor < 1.0:
            raise ValueError("backoff factor must be >= 1.0")
        self.initial = float(initial)
        self.factor = float(factor)
        self.maximum = float(maximum)
        self._current = min(self.initial, self.maximum)

    @property
    def current(self) -> float:
        return self._current

    def next_delay(self) -> float:
        delay = self._current
        self._current = min(self._current * self.factor, self.maximum)
        return delay

    def reset(self) -> None:
        self._current = min(self.initial, self.maximum)


def alert_signature(alerts: Iterable[dict[str, Any]]) -> str:
    """Composite identity of an alert list; alerts carry no stable id."""
    parts = []
    for alert in alerts:
        data = alert.get("data") or {}
        raw_header = alert.get("raw_header") or data.get("raw_zczc") or ""
        parts.append(
            f"{alert.get('received_at') or ''}:{data.get('event_code') or ''}:{raw_header}"
        )
    return "|".join(parts)


def _log_id(entry: dict[str, Any]) -> int:
    try:
        return int(entry.get("id", 0))
    except (TypeError, ValueError):
        return 0


class SyncState:
    def __init__(self, max_logs: int = DEFAULT_MAX_LOGS) -> None:
        if max_logs <= 0:
            raise ValueError("max_logs must be positive")
        self.max_logs = max_logs
        self.streams: dict[str, dict[str, Any]] = {}
        self.active_alerts: list[dict[str, Any]] = []
        self.signature = ""
        self.logs: list[dict[str, Any]] = []

    def set_alerts(self, alerts: Iterable[dict[str, Any]]) -> bool:
        """Replace the alert list; returns True when its signature changed."""
        alerts = list(alerts)
        signature = alert_signature(alerts)
        self.active_alerts = alerts
        if signature == self.signature:
            return False
        self.signature = signature
        return True

    def update_stream(self, stream: dict[str, Any]) -> bool:
        url = stream.get("stream_url")
        if not url:
            return False
        self.streams[url] = dict(stream)
        return True

    def replace_logs(self, logs: Iterable[dict[str, Any]]) -> None:
        self.logs = []
        self.merge_logs(logs)

    def merge_logs(self, logs: Iterable[dict[str, Any]]) -> None:
        by_id = {_log_id(entry): entry for entry in self.logs}
        for entry in logs:
            if isinstance(entry, dict):
                by_id[_log_id(entry)] = entry
        merged = sorted(by_id.values(), key=_log_id, reverse=True)
        self.logs = merged[: self.max_logs]

    def apply_status(self, payload: dict[str, Any]) -> bool:
        streams = payload.get("streams")
        if isinstance(streams, list):
            self.streams = {}
            for stream in streams:
                if isinstance(stream, dict):
                    self.update_stream(stream)
        alerts = payload.get("active_alerts")
        if isinstance(alerts, list):
            return self.set_alerts(alerts)
        return False

    def apply_message(self, envelope: dict[str, Any]) -> bool:
        """Apply one pushed envelope; returns True when the alert signature changed."""
        kind = envelope.get("type")
        payload = envelope.get("payload")
        if kind == "Snapshot" and isinstance(payload, dict):
            changed = self.apply_status(payload)
            if isinstance(payload.get("logs"), list):
                self.replace_logs(payload["logs"])
            return changed
        if kind == "Stream" and isinstance(payload, dict):
            self.update_stream(payload)
            return False
        if kind == "Log" and isinstance(payload, dict):
            self.merge_logs([payload])
            return False
        if kind == "Alerts" and isinstance(payload, list):
            return self.set_alerts(payload)
        _LOG.warning("unhandled realtime message type %r", kind)
        return False


class RealtimeSyncClient:
    def __init__(
        self,
        client: ArchiveClient,
        *,
        state: SyncState | None = None,
        backoff: ReconnectBackoff | None = None,
        poll_interval: float = DEFAULT_STATUS_POLL_SECONDS,
        log_tail: int = DEFAULT_MAX_LOGS,
        on_alerts_changed: AlertsCallback | None = None,
        on_stream_changed: StreamCallback | None = None,
    ) -> None:
        self.client = client
        self.state = state or SyncState()
        self.backoff = backoff or ReconnectBackoff()
        self.poll_interval = float(poll_interval)
        self.log_tail = max(1, min(int(log_tail), self.state.max_logs))
        self.on_alerts_changed = on_alerts_changed
        self.on_stream_changed = on_stream_changed
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._wake = asyncio.Event()
        self._stopping = False
        self._tasks: list[asyncio.Task] = []

    @property
    def connected(self) -> bool:
        return self._ws is not None and not self._ws.closed

    async def load_initial_data(self) -> None:
        status, logs = await asyncio.gather(
            self.client.fetch_status(), self.client.fetch_logs(self.log_tail)
        )
        if status is not None:
            changed = self.state.apply_status(status)
            self._emit_streams(self.state.streams.values())
            if changed:
                self._emit_alerts()
        if logs is not None:
            self.state.replace_logs(logs)

    def handle_envelope(self, envelope: dict[str, Any]) -> None:
        changed = self.state.apply_message(envelope)
        kind = envelope.get("type")
        if kind == "Snapshot":
            self._emit_streams(self.state.streams.values())
        elif kind == "Stream" and isinstance(envelope.get("payload"), dict):
            self._emit_streams([envelope["payload"]])
        if changed:
            self._emit_alerts()

    def notify_foreground(self) -> None:
        """Reconnect right away if the channel is down."""
        if self.connected:
            return
        self.backoff.reset()
        self._wake.set()

    async def start(self) -> None:
        if self._tasks:
            return
        self._stopping = False
        self._tasks = [
            asyncio.create_task(self._connection_loop(), name="eas_monitor_ws"),
            asyncio.create_task(self._poll_loop(), name="eas_monitor_poll"),
        ]

    async def stop(self) -> None:
        self._stopping = True
        self._wake.set()
        ws = self._ws
        if ws is not None and not ws.closed:
            with contextlib.suppress(aiohttp.ClientError, OSError):
                await ws.close()
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._tasks = []

    def _emit_alerts(self) -> None:
        if self.on_alerts_changed is None:
            return
        try:
            self.on_alerts_changed(list(self.state.active_alerts))
        except Exception:
            _LOG.exception("alert change callback failed")

    def _emit_streams(self, streams: Iterable[dict[str, Any]]) -> None:
        if self.on_stream_changed is None:
            return
        for stream in list(streams):
            try:
                self.on_stream_changed(stream)
            except Exception:
                _LOG.exception("stream change callback failed")

    async def _connection_loop(self) -> None:
        await self.load_initial_data()
        while not self._stopping:
            try:
                await self._run_connection()
            except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as exc:
                _LOG.warning("realtime channel error: %s", exc)
            if self._stopping:
                break
            delay = self.backoff.next_delay()
            _LOG.info("realtime channel disconnected; reconnecting in %.1fs", delay)
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(self._wake.wait(), timeout=delay)
            self._wake.clear()

    async def _run_connection(self) -> None:
        _LOG.debug("connecting to %s", self.client.ws_url())
        async with self.client.session.ws_connect(
            self.client.ws_url(), heartbeat=WS_HEARTBEAT_SECONDS
        ) as ws:
            self._ws = ws
            self.backoff.reset()
            _LOG.info("realtime channel connected")
            try:
                async for msg in ws:
                    if msg.type == aiohttp.WSMsgType.TEXT:
                        self._handle_text(msg.data)
                    elif msg.type == aiohttp.WSMsgType.ERROR:
                        _LOG.warning("realtime channel error: %s", ws.exception())
                        break
            finally:
                self._ws = None

    def _handle_text(self, data: str) -> None:
        try:
            envelope = json.loads(data)
        except ValueError:
            _LOG.error("failed to parse realtime message")
            return
        if isinstance(envelope, dict):
            self.handle_envelope(envelope)

    async def _poll_loop(self) -> None:
        while not self._stopping:
            await asyncio.sleep(self.poll_interval)
            await self.load_initial_data()
