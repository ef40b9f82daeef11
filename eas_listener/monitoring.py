"""In-process monitoring hub feeding the realtime channel.

Tracks per-stream telemetry, a bounded log history and the active alert list,
and fans out ``{"type", "payload"}`` envelopes to WebSocket subscribers. Every
subscriber first receives a ``Snapshot`` and then only deltas.
"""

from __future__ import annotations

import asyncio
import copy
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Deque, Set

SNAPSHOT_LOG_COUNT = 100


@dataclass
class _StreamTelemetry:
    stream_url: str
    is_connected: bool = False
    connected_since: float | None = None
    last_activity: float | None = None
    last_disconnect: float | None = None
    last_error: str | None = None
    attempts: int = 0
    alerts_received: int = 0
    last_alert_received: float | None = None


def _epoch(value: float | None) -> int | None:
    return int(value) if value is not None else None


class MonitoringHub:
    def __init__(
        self,
        *,
        max_logs: int = 500,
        inactivity_timeout: float = 30.0,
        max_queue_size: int = 256,
        clock: Callable[[], float] = time.time,
        loop: asyncio.AbstractEventLoop | None = None,
    ) -> None:
        if max_logs <= 0:
            raise ValueError("max_logs must be positive")
        if max_queue_size <= 0:
            raise ValueError("max_queue_size must be positive")
        self.max_logs = max_logs
        self._inactivity_timeout = float(inactivity_timeout)
        self._max_queue_size = max_queue_size
        self._clock = clock
        self._loop = loop
        self._logs: Deque[dict[str, Any]] = deque(maxlen=max_logs)
        self._streams: dict[str, _StreamTelemetry] = {}
        self._alerts: list[dict[str, Any]] = []
        self._subscribers: Set[asyncio.Queue] = set()
        self._next_log_id = 1
        self._lock = threading.Lock()

    def set_loop(self, loop: asyncio.AbstractEventLoop) -> None:
        with self._lock:
            self._loop = loop

    async def subscribe(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._max_queue_size)
        self.set_loop(asyncio.get_running_loop())
        with self._lock:
            snapshot = self._snapshot_locked(SNAPSHOT_LOG_COUNT)
            self._subscribers.add(queue)
            # Queued under the lock so no delta can slip in ahead of it.
            self._enqueue_nowait(queue, {"type": "Snapshot", "payload": snapshot})
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        with self._lock:
            self._subscribers.discard(queue)

    def record_log(
        self,
        level: str,
        target: str,
        message: str,
        fields: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        with self._lock:
            entry = {
                "id": self._next_log_id,
                "timestamp": int(self._clock() * 1000),
                "level": level,
                "target": target,
                "message": message,
                "fields": dict(fields or {}),
            }
            self._next_log_id += 1
            self._logs.append(entry)
        self._publish("Log", entry)
        return entry

    def broadcast_alerts(
        self, alerts: list[dict[str, Any]], source_stream: str | None = None
    ) -> None:
        if source_stream:
            def _count(state: _StreamTelemetry) -> None:
                state.alerts_received += 1
                state.last_alert_received = self._clock()

            self._update_stream(source_stream, _count)
        with self._lock:
            self._alerts = copy.deepcopy(list(alerts))
            payload = copy.deepcopy(self._alerts)
        self._publish("Alerts", payload)

    def note_connecting(self, stream_url: str) -> None:
        def _apply(state: _StreamTelemetry) -> None:
            state.attempts += 1
            state.is_connected = False
            state.connected_since = None
            state.last_activity = None
            state.last_error = None

        self._update_stream(stream_url, _apply)

    def note_connected(self, stream_url: str) -> None:
        now = self._clock()

        def _apply(state: _StreamTelemetry) -> None:
            state.is_connected = True
            state.connected_since = now
            state.last_activity = now
            state.last_disconnect = None
            state.last_error = None

        self._update_stream(stream_url, _apply)

    def note_activity(self, stream_url: str) -> None:
        now = self._clock()

        def _apply(state: _StreamTelemetry) -> None:
            state.last_activity = now

        self._update_stream(stream_url, _apply)

    def note_error(self, stream_url: str, error: str) -> None:
        now = self._clock()

        def _apply(state: _StreamTelemetry) -> None:
            state.is_connected = False
            state.connected_since = None
            state.last_disconnect = now
            state.last_error = error

        self._update_stream(stream_url, _apply)

    def note_disconnected(self, stream_url: str) -> None:
        now = self._clock()

        def _apply(state: _StreamTelemetry) -> None:
            state.is_connected = False
            state.connected_since = None
            state.last_disconnect = now

        self._update_stream(stream_url, _apply)

    def recent_logs(self, count: int) -> list[dict[str, Any]]:
        """Newest first."""
        with self._lock:
            return self._recent_logs_locked(count)

    def stream_snapshots(self) -> list[dict[str, Any]]:
        with self._lock:
            return self._stream_snapshots_locked()

    def active_alerts(self) -> list[dict[str, Any]]:
        with self._lock:
            return copy.deepcopy(self._alerts)

    def snapshot(self, log_count: int = SNAPSHOT_LOG_COUNT) -> dict[str, Any]:
        with self._lock:
            return self._snapshot_locked(log_count)

    def _snapshot_locked(self, log_count: int) -> dict[str, Any]:
        return {
            "streams": self._stream_snapshots_locked(),
            "active_alerts": copy.deepcopy(self._alerts),
            "logs": self._recent_logs_locked(log_count),
        }

    def _recent_logs_locked(self, count: int) -> list[dict[str, Any]]:
        if count <= 0:
            return []
        newest = list(self._logs)[-count:]
        newest.reverse()
        return [dict(entry) for entry in newest]

    def _stream_snapshots_locked(self) -> list[dict[str, Any]]:
        return [
            self._make_snapshot(self._streams[url]) for url in sorted(self._streams)
        ]

    def _update_stream(
        self, stream_url: str, update_fn: Callable[[_StreamTelemetry], None]
    ) -> None:
        with self._lock:
            state = self._streams.get(stream_url)
            if state is None:
                state = _StreamTelemetry(stream_url)
                self._streams[stream_url] = state
            update_fn(state)
            payload = self._make_snapshot(state)
        self._publish("Stream", payload)

    def _make_snapshot(self, state: _StreamTelemetry) -> dict[str, Any]:
        now = self._clock()
        is_receiving_audio = (
            state.last_activity is not None
            and 0 <= now - state.last_activity <= self._inactivity_timeout
        )
        uptime: int | None = None
        if state.is_connected and state.connected_since is not None:
            uptime = max(0, int(now - state.connected_since))
        return {
            "stream_url": state.stream_url,
            "is_connected": state.is_connected,
            "is_receiving_audio": is_receiving_audio,
            "connection_attempts": state.attempts,
            "alerts_received": state.alerts_received,
            "connected_since": _epoch(state.connected_since),
            "last_activity": _epoch(state.last_activity),
            "last_disconnect": _epoch(state.last_disconnect),
            "last_alert_received": _epoch(state.last_alert_received),
            "last_error": state.last_error,
            "uptime_seconds": uptime,
        }

    def _publish(self, event_type: str, payload: Any) -> None:
        envelope = {"type": event_type, "payload": payload}
        with self._lock:
            loop = self._loop
            subscribers = list(self._subscribers)

        if not subscribers:
            return

        if loop is None or loop.is_closed():
            for queue in subscribers:
                self._enqueue_nowait(queue, envelope)
            return

        def _deliver() -> None:
            for queue in subscribers:
                self._enqueue_nowait(queue, envelope)

        loop.call_soon_threadsafe(_deliver)

    def _enqueue_nowait(self, queue: asyncio.Queue, envelope: dict[str, Any]) -> None:
        try:
            queue.put_nowait(envelope)
        except asyncio.QueueFull:
            try:
                queue.get_nowait()
            except asyncio.QueueEmpty:
                pass
            try:
                queue.put_nowait(envelope)
            except asyncio.QueueFull:
                # Slow consumer; drop newest event for this subscriber.
                pass


class MonitoringLogHandler(logging.Handler):
    """Mirror Python log records into the hub so clients see them live."""

    def __init__(self, hub: MonitoringHub, level: int = logging.INFO) -> None:
        super().__init__(level=level)
        self._hub = hub

    def emit(self, record: logging.LogRecord) -> None:
        try:
            fields: dict[str, Any] = {}
            if record.exc_info:
                fields["exception"] = self.formatException(record.exc_info)
            self._hub.record_log(record.levelname, record.name, record.getMessage(), fields)
        except Exception:  # noqa: BLE001 - logging must never raise
            self.handleError(record)
