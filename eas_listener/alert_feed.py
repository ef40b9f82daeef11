"""Bridge the dedicated alert log into the monitoring hub's active alert list."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import time
from pathlib import Path
from typing import Any, Callable, Iterable

from .alert_log import (
    DEFAULT_MAX_ALERTS,
    AlertRecord,
    MandatoryFieldMissing,
    load_alert_window,
)
from .monitoring import MonitoringHub


class ActiveAlertBridge:
    """Publish unexpired alert-log records to the hub whenever they change.

    The log is re-parsed only when its size or modification time moves; the
    active subset is recomputed on every poll so that expiring alerts drop out
    without a new write. Alerts are ordered newest first.
    """

    def __init__(
        self,
        *,
        hub: MonitoringHub,
        log_path: os.PathLike[str] | str,
        poll_interval: float,
        max_alerts: int = DEFAULT_MAX_ALERTS,
        watched: str | Iterable[str] | None = None,
        tz: str | None = "UTC",
        clock: Callable[[], float] = time.time,
        logger: logging.Logger | None = None,
    ) -> None:
        if poll_interval <= 0:
            raise ValueError("poll_interval must be positive")
        self._hub = hub
        self._log_path = Path(log_path)
        self._poll_interval = float(poll_interval)
        self._max_alerts = max_alerts
        self._watched = watched
        self._tz = tz
        self._clock = clock
        self._logger = logger or logging.getLogger("eas_archive")
        self._task: asyncio.Task | None = None
        self._stamp: tuple[int, int] | None = None
        self._loaded = False
        self._records: list[AlertRecord] = []
        self._published: list[dict[str, Any]] | None = None

    async def start(self) -> None:
        await self.poll_once()
        if self._task is not None:
            return
        loop = asyncio.get_running_loop()
        self._task = loop.create_task(self._run())

    async def stop(self) -> None:
        task = self._task
        self._task = None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def poll_once(self) -> None:
        alerts = await asyncio.to_thread(self.refresh)
        if alerts is not None:
            self._hub.broadcast_alerts(alerts)

    def active_alerts(self) -> list[dict[str, Any]]:
        now = self._clock()
        return [
            record.to_dict()
            for record in reversed(self._records)
            if record.expires_at is not None and record.expires_at > now
        ]

    def refresh(self) -> list[dict[str, Any]] | None:
        """Alerts to publish, or None when nothing changed since the last call."""
        stamp = self._log_stamp()
        if not self._loaded or stamp != self._stamp:
            self._stamp = stamp
            self._loaded = True
            try:
                self._records = load_alert_window(
                    self._log_path,
                    max_alerts=self._max_alerts,
                    watched=self._watched,
                    tz=self._tz,
                )
            except MandatoryFieldMissing as exc:
                self._logger.error("alert log contains an invalid duration: %s", exc)
                return None
        alerts = self.active_alerts()
        if alerts == self._published:
            return None
        self._published = alerts
        return alerts

    def _log_stamp(self) -> tuple[int, int] | None:
        try:
            st = self._log_path.stat()
        except FileNotFoundError:
            return None
        return (st.st_mtime_ns, st.st_size)

    async def _run(self) -> None:
        try:
            while True:
                try:
                    await asyncio.sleep(self._poll_interval)
                    await self.poll_once()
                except asyncio.CancelledError:
                    raise
                except OSError as exc:
                    self._logger.warning("alert log poll failed: %s", exc)
        finally:
            self._task = None
