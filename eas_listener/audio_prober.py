"""Find the recording that belongs to each active alert.

Recordings and alerts are assumed to interleave one to one in creation order,
so the Nth newest active alert is matched against recording
``latest_id - N``. This is a positional guess rather than a key: if the
recorder skips or duplicates a file the association drifts.

Each candidate id carries its own exponential backoff, probes run under a
small concurrency cap, and every result is tagged with the attempt version it
started under. Any change to the active alert list bumps the version, so late
results from an older list are dropped instead of applied.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Iterable

import aiohttp

from .archive_client import ArchiveClient
from .realtime_client import alert_signature
from .wav_integrity import describe_wav_bytes

DEFAULT_HOLDOFF_SECONDS = 10.0
DEFAULT_POLL_SECONDS = 10.0
DEFAULT_PLAYABILITY_TIMEOUT_SECONDS = 5.0
DEFAULT_CONCURRENCY = 2
DEFAULT_STATE_CAPACITY = 256

_LOG = logging.getLogger("eas_monitor")

PlayabilityCheck = Callable[[int], Awaitable[bool]]
AudioCallback = Callable[[dict[int, str]], None]


def candidate_ids(latest_id: int | None, alert_count: int) -> list[int]:
    """Recording id to probe for each alert, newest alert first."""
    if latest_id is None or latest_id < 0 or alert_count <= 0:
        return []
    return [latest_id - index for index in range(alert_count) if latest_id - index >= 0]


@dataclass
class ProbeState:
    failures: int = 0
    next_eligible_at: float = 0.0


class ProbeBackoff:
    def __init__(
        self,
        base: float = 2.0,
        maximum: float = 60.0,
        *,
        capacity: int = DEFAULT_STATE_CAPACITY,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if base <= 0 or maximum <= 0:
            raise ValueError("probe backoff delays must be positive")
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self.base = float(base)
        self.maximum = float(maximum)
        self.capacity = capacity
        self._clock = clock
        self._states: OrderedDict[int, ProbeState] = OrderedDict()

    def __len__(self) -> int:
        return len(self._states)

    def __contains__(self, recording_id: object) -> bool:
        return recording_id in self._states

    def get(self, recording_id: int) -> ProbeState | None:
        return self._states.get(recording_id)

    def is_eligible(self, recording_id: int, now: float | None = None) -> bool:
        state = self._states.get(recording_id)
        if state is None:
            return True
        now = self._clock() if now is None else now
        return now >= state.next_eligible_at

    def record_failure(self, recording_id: int, now: float | None = None) -> float:
        now = self._clock() if now is None else now
        state = self._states.pop(recording_id, None) or ProbeState()
        state.failures += 1
        delay = min(self.base * (2 ** (state.failures - 1)), self.maximum)
        state.next_eligible_at = now + delay
        self._states[recording_id] = state
        while len(self._states) > self.capacity:
            self._states.popitem(last=False)
        return delay

    def record_success(self, recording_id: int) -> None:
        self._states.pop(recording_id, None)

    def prune(self, latest_id: int, window: int) -> None:
        """Forget ids that fell outside ``[latest_id - window, latest_id]``."""
        low = latest_id - max(window, 0)
        for recording_id in list(self._states):
            if recording_id < low or recording_id > latest_id:
                del self._states[recording_id]

    def reset(self) -> None:
        self._states.clear()


class AlertAudioProber:
    def __init__(
        self,
        client: ArchiveClient,
        *,
        holdoff: float = DEFAULT_HOLDOFF_SECONDS,
        poll_interval: float = DEFAULT_POLL_SECONDS,
        concurrency: int = DEFAULT_CONCURRENCY,
        playability_timeout: float = DEFAULT_PLAYABILITY_TIMEOUT_SECONDS,
        backoff: ProbeBackoff | None = None,
        playability_check: PlayabilityCheck | None = None,
        on_audio_changed: AudioCallback | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if concurrency <= 0:
            raise ValueError("concurrency must be positive")
        self.client = client
        self.holdoff = float(holdoff)
        self.poll_interval = float(poll_interval)
        self.playability_timeout = float(playability_timeout)
        self._clock = clock
        self.backoff = backoff or ProbeBackoff(clock=clock)
        self._playability_check = playability_check or self._header_is_playable
        self.on_audio_changed = on_audio_changed
        self._semaphore = asyncio.Semaphore(concurrency)
        self._alerts: list[dict[str, Any]] = []
        self._signature = ""
        self._changed_at = 0.0
        self._attempt = 0
        self._confirmed: dict[int, int] = {}
        self._wake = asyncio.Event()

    @property
    def attempt(self) -> int:
        return self._attempt

    @property
    def signature(self) -> str:
        return self._signature

    @property
    def audio_src(self) -> str | None:
        """Source for the single playback slot: the newest alert's recording."""
        recording_id = self._confirmed.get(0)
        if recording_id is None:
            return None
        return self.client.recording_src(recording_id)

    def confirmed_sources(self) -> dict[int, str]:
        """Confirmed recording URL per alert index (0 is the newest alert)."""
        return {
            index: self.client.recording_src(recording_id)
            for index, recording_id in sorted(self._confirmed.items())
        }

    def pending_indexes(self) -> list[int]:
        return [index for index in range(len(self._alerts)) if index not in self._confirmed]

    def set_active_alerts(self, alerts: Iterable[dict[str, Any]]) -> bool:
        """Adopt a new alert list; all probe state resets when its signature changes."""
        self._alerts = list(alerts)
        signature = alert_signature(self._alerts)
        if signature == self._signature:
            return False
        self._signature = signature
        self._attempt += 1
        self._changed_at = self._clock()
        had_audio = bool(self._confirmed)
        self._confirmed.clear()
        self.backoff.reset()
        self._wake.set()
        if had_audio:
            self._emit()
        return True

    def report_playback_failure(self, recording_id: int) -> bool:
        """Revoke a confirmed source that failed to play and re-arm polling."""
        revoked = [index for index, rid in self._confirmed.items() if rid == recording_id]
        if not revoked:
            return False
        for index in revoked:
            del self._confirmed[index]
        self.backoff.record_failure(recording_id)
        _LOG.info("recording %s failed to play; probing again", recording_id)
        self._wake.set()
        self._emit()
        return True

    async def poll_once(self) -> dict[int, int]:
        """Probe every eligible candidate once; returns newly confirmed ``{index: id}``."""
        pending = self.pending_indexes()
        if not pending:
            return {}
        now = self._clock()
        if now - self._changed_at < self.holdoff:
            return {}

        attempt = self._attempt
        signature = self._signature
        alert_count = len(self._alerts)

        latest_id = await self.client.fetch_latest_id()
        if attempt != self._attempt:
            return {}
        candidates = candidate_ids(latest_id, alert_count)
        if not candidates:
            return {}
        self.backoff.prune(candidates[0], window=alert_count * 2)

        now = self._clock()
        jobs = [
            (index, candidates[index])
            for index in pending
            if index < len(candidates) and self.backoff.is_eligible(candidates[index], now)
        ]
        if not jobs:
            return {}

        results = await asyncio.gather(*(self._probe(rid) for _, rid in jobs))
        if attempt != self._attempt or signature != self._signature:
            _LOG.debug("discarding probe results for a superseded alert list")
            return {}

        confirmed: dict[int, int] = {}
        for (index, recording_id), ok in zip(jobs, results):
            if ok:
                self.backoff.record_success(recording_id)
                self._confirmed[index] = recording_id
                confirmed[index] = recording_id
            else:
                delay = self.backoff.record_failure(recording_id)
                _LOG.debug(
                    "recording %s not available yet; retry in %.0fs", recording_id, delay
                )
        if confirmed:
            self._emit()
        return confirmed

    async def run(self) -> None:
        while True:
            try:
                await self.poll_once()
            except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as exc:
                _LOG.warning("audio availability poll failed: %s", exc)
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(self._wake.wait(), timeout=self._next_delay())
            self._wake.clear()

    def _next_delay(self) -> float:
        if not self.pending_indexes():
            return self.poll_interval
        remaining_holdoff = self.holdoff - (self._clock() - self._changed_at)
        if remaining_holdoff > 0:
            return remaining_holdoff
        return self.poll_interval

    async def _probe(self, recording_id: int) -> bool:
        async with self._semaphore:
            if not await self.client.is_audio_available(recording_id):
                return False
            try:
                return await asyncio.wait_for(
                    self._playability_check(recording_id), timeout=self.playability_timeout
                )
            except asyncio.TimeoutError:
                _LOG.debug("playability check for recording %s timed out", recording_id)
                return False

    async def _header_is_playable(self, recording_id: int) -> bool:
        header = await self.client.fetch_header_bytes(recording_id)
        if header is None:
            return False
        duration = describe_wav_bytes(header)
        return duration is not None and duration > 0

    def _emit(self) -> None:
        if self.on_audio_changed is None:
            return
        try:
            self.on_audio_changed(self.confirmed_sources())
        except Exception:
            _LOG.exception("audio change callback failed")
