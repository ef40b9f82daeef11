"""Resolve archived recordings by id and describe how to deliver them."""

from __future__ import annotations

import logging
import os
import re
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Iterator

from .manifest_cache import ManifestCache
from .wav_integrity import is_finalized

DEFAULT_CHUNK_SIZE = 8192
LATEST_ID_SENTINEL = -1
OLD_RECORDINGS_DIRNAME = "__old__"

_RANGE_RE = re.compile(r"bytes=(\d*)-(\d*)")
_ID_RE = re.compile(r"^\d+$")

_LOG = logging.getLogger("eas_archive")


class ArchiveError(Exception):
    """Base class for delivery failures; ``status`` is the HTTP status code."""

    status = 500


class RecordingNotFound(ArchiveError):
    status = 404


class RecordingNotReady(ArchiveError):
    """The recording exists but its writer has not finalized it yet."""

    status = 425


class RangeNotSatisfiable(ArchiveError):
    status = 416

    def __init__(self, size: int) -> None:
        super().__init__(f"requested range not satisfiable for {size} bytes")
        self.size = size


class RecordingUnavailable(ArchiveError):
    status = 500


@dataclass(frozen=True)
class ByteRange:
    start: int
    end: int
    size: int
    partial: bool

    @property
    def length(self) -> int:
        return max(0, self.end - self.start + 1)

    @property
    def content_range(self) -> str:
        return f"bytes {self.start}-{self.end}/{self.size}"


def parse_range(header: str | None, size: int) -> ByteRange:
    """Interpret a ``Range`` header against a resource of ``size`` bytes.

    Headers that do not look like ``bytes=<a>-<b>`` are ignored and the full
    resource is returned, matching how browsers expect media servers to act.
    """
    full = ByteRange(0, size - 1, size, False)
    if not header:
        return full
    match = _RANGE_RE.search(header)
    if match is None:
        return full

    start = int(match.group(1)) if match.group(1) else None
    end = int(match.group(2)) if match.group(2) else None

    if start is None and end is not None:
        # Suffix form: the last ``end`` bytes.
        start = size - end
        end = size - 1
    elif start is not None and end is None:
        end = size - 1

    if start is None or end is None or start < 0 or start > end or end >= size:
        raise RangeNotSatisfiable(size)
    return ByteRange(start, end, size, True)


@dataclass(frozen=True)
class Delivery:
    path: Path
    byte_range: ByteRange

    @property
    def filename(self) -> str:
        return self.path.name

    @property
    def status(self) -> int:
        return 206 if self.byte_range.partial else 200


class ArchiveService:
    def __init__(self, manifest_cache: ManifestCache) -> None:
        self.manifest_cache = manifest_cache

    def latest_id(self) -> int:
        count = self.manifest_cache.get_manifest().count
        return count - 1 if count > 0 else LATEST_ID_SENTINEL

    def resolve(self, raw_id: object) -> Path:
        if isinstance(raw_id, bool):
            raise RecordingNotFound("recording id must be a non-negative integer")
        if isinstance(raw_id, int):
            recording_id = raw_id
        else:
            text = str(raw_id).strip() if raw_id is not None else ""
            if not _ID_RE.match(text):
                raise RecordingNotFound("recording id must be a non-negative integer")
            recording_id = int(text)
        if recording_id < 0:
            raise RecordingNotFound("recording id must be a non-negative integer")
        path = self.manifest_cache.resolve(recording_id)
        if path is None:
            raise RecordingNotFound(f"no recording with id {recording_id}")
        return path

    def prepare(self, raw_id: object, range_header: str | None = None) -> Delivery:
        """Validate a delivery request; raises an ``ArchiveError`` subclass."""
        path = self.resolve(raw_id)
        try:
            size = path.stat().st_size
        except FileNotFoundError:
            raise RecordingNotFound(f"{path.name} is missing") from None
        except OSError as exc:
            raise RecordingUnavailable(str(exc)) from exc
        if not path.is_file():
            raise RecordingNotFound(f"{path.name} is not a file")
        try:
            finalized = is_finalized(path)
        except OSError as exc:
            raise RecordingUnavailable(f"failed to read {path.name}: {exc}") from exc
        if not finalized:
            raise RecordingNotReady(f"{path.name} is still being written")
        return Delivery(path, parse_range(range_header, size))

    def open(self, delivery: Delivery) -> BinaryIO:
        try:
            handle = delivery.path.open("rb")
        except OSError as exc:
            _LOG.error("failed to open recording %s: %s", delivery.path, exc)
            raise RecordingUnavailable("Failed to open recording.") from exc
        if delivery.byte_range.start > 0:
            handle.seek(delivery.byte_range.start)
        return handle


def iter_chunks(
    handle: BinaryIO, length: int, chunk_size: int = DEFAULT_CHUNK_SIZE
) -> Iterator[bytes]:
    """Yield up to ``length`` bytes from ``handle`` in bounded chunks."""
    remaining = length
    while remaining > 0:
        data = handle.read(min(chunk_size, remaining))
        if not data:
            return
        remaining -= len(data)
        yield data


@dataclass(frozen=True)
class VacuumResult:
    moved: list[Path]
    old_dir: Path
    alert_log_backup: Path | None


def vacuum(
    recording_dir: os.PathLike[str] | str,
    alert_log: os.PathLike[str] | str,
    *,
    pattern: str = "EAS_Recording_*.wav",
    old_dirname: str = OLD_RECORDINGS_DIRNAME,
) -> VacuumResult:
    """Retire every archived recording and start a fresh alert log.

    Recordings move into ``<recording_dir>/<old_dirname>``; the alert log is
    appended to ``<alert_log>.bak`` and truncated. Nothing is deleted.
    """
    root = Path(recording_dir)
    old_dir = root / old_dirname
    old_dir.mkdir(parents=True, exist_ok=True)

    moved: list[Path] = []
    for source in sorted(root.glob(pattern)):
        if not source.is_file():
            continue
        destination = old_dir / source.name
        shutil.move(str(source), str(destination))
        moved.append(destination)

    log_path = Path(alert_log)
    backup: Path | None = None
    if log_path.exists():
        backup = log_path.with_name(log_path.name + ".bak")
        if not backup.exists():
            shutil.copyfile(log_path, backup)
        else:
            with log_path.open("rb") as src, backup.open("ab") as dst:
                shutil.copyfileobj(src, dst)
        log_path.write_text("", encoding="utf-8")

    _LOG.info("vacuumed %d recording(s) into %s", len(moved), old_dir)
    return VacuumResult(moved=moved, old_dir=old_dir, alert_log_backup=backup)
