"""HTTP client for the archive and monitoring endpoints.

Every call swallows network failures and reports them as "nothing available"
so that the monitor loops can retry on their own schedule.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any
from urllib.parse import quote, urlsplit, urlunsplit

import aiohttp

from .wav_integrity import WAV_HEADER_SIZE

DEFAULT_REQUEST_TIMEOUT_SECONDS = 10.0
# Two bytes just past the canonical header: enough to prove audio data exists.
AVAILABILITY_RANGE = f"bytes={WAV_HEADER_SIZE}-{WAV_HEADER_SIZE + 1}"
HEADER_RANGE = f"bytes=0-{WAV_HEADER_SIZE - 1}"

_REJECTED_CONTENT_MARKERS = ("html", "json")

_LOG = logging.getLogger("eas_monitor")


class ArchiveClient:
    def __init__(
        self,
        base_url: str,
        *,
        session: aiohttp.ClientSession,
        token: str | None = None,
        timeout: float = DEFAULT_REQUEST_TIMEOUT_SECONDS,
    ) -> None:
        base = base_url.strip().rstrip("/")
        if "://" not in base:
            base = f"http://{base}"
        self.base_url = base
        self.session = session
        self.token = token or None
        self._timeout = aiohttp.ClientTimeout(total=timeout)

    def _url(self, path: str) -> str:
        return f"{self.base_url}/{path.lstrip('/')}"

    def _headers(self, **extra: str) -> dict[str, str]:
        headers = dict(extra)
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def recording_src(self, recording_id: int) -> str:
        return self._url(f"archive?recording_id={recording_id}")

    def ws_url(self) -> str:
        parts = urlsplit(self._url("ws"))
        scheme = "wss" if parts.scheme == "https" else "ws"
        query = f"auth={quote(self.token)}" if self.token else ""
        return urlunsplit((scheme, parts.netloc, parts.path, query, ""))

    async def _get_json(self, path: str) -> Any | None:
        try:
            async with self.session.get(
                self._url(path),
                headers=self._headers(Accept="application/json"),
                timeout=self._timeout,
            ) as response:
                if response.status != 200:
                    _LOG.warning("GET %s returned HTTP %s", path, response.status)
                    return None
                return await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
            _LOG.warning("failed to fetch %s: %s", path, exc)
            return None

    async def fetch_status(self) -> dict[str, Any] | None:
        payload = await self._get_json("api/status")
        return payload if isinstance(payload, dict) else None

    async def fetch_logs(self, tail: int) -> list[dict[str, Any]] | None:
        payload = await self._get_json(f"api/logs?tail={int(tail)}")
        if isinstance(payload, dict) and isinstance(payload.get("logs"), list):
            return payload["logs"]
        return None

    async def fetch_alerts(self, watched_only: bool = False) -> list[dict[str, Any]] | None:
        path = "archive?fetch_alerts=true"
        if watched_only:
            path += "&filter_alerts=watched_fips"
        payload = await self._get_json(path)
        return payload if isinstance(payload, list) else None

    async def fetch_latest_id(self) -> int | None:
        """Newest recording id, or None when there is none or the call failed."""
        try:
            async with self.session.get(
                self._url("archive?latest_id=true"),
                headers=self._headers(**{"Cache-Control": "no-store"}),
                timeout=self._timeout,
            ) as response:
                if response.status != 200:
                    _LOG.warning("latest_id lookup returned HTTP %s", response.status)
                    return None
                text = await response.text()
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            _LOG.warning("failed to fetch latest recording id: %s", exc)
            return None
        try:
            value = int(text.strip())
        except ValueError:
            return None
        return value if value >= 0 else None

    async def is_audio_available(self, recording_id: int) -> bool:
        try:
            async with self.session.get(
                self.recording_src(recording_id),
                headers=self._headers(Range=AVAILABILITY_RANGE, **{"Cache-Control": "no-store"}),
                timeout=self._timeout,
            ) as response:
                if response.status not in (200, 206):
                    return False
                content_type = response.headers.get("Content-Type", "").lower()
                if content_type and (
                    content_type.startswith("text/")
                    or any(marker in content_type for marker in _REJECTED_CONTENT_MARKERS)
                ):
                    return False
                body = await response.read()
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            _LOG.debug("availability probe for recording %s failed: %s", recording_id, exc)
            return False
        return len(body) > 0

    async def fetch_header_bytes(self, recording_id: int) -> bytes | None:
        try:
            async with self.session.get(
                self.recording_src(recording_id),
                headers=self._headers(Range=HEADER_RANGE, **{"Cache-Control": "no-store"}),
                timeout=self._timeout,
            ) as response:
                if response.status not in (200, 206):
                    return None
                body = await response.read()
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            _LOG.debug("header fetch for recording %s failed: %s", recording_id, exc)
            return None
        return body[:WAV_HEADER_SIZE] if len(body) >= WAV_HEADER_SIZE else None
