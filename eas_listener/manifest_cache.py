"""Persistent ordered index of archived alert recordings.

Recording ids are positions in the manifest: files sorted by creation time
(ties keep directory enumeration order) and numbered from zero. The manifest is
stored next to the recordings and trusted only while the recording directory's
modification time matches the snapshot taken when it was built.
"""

from __future__ import annotations

import contextlib
import fcntl
import fnmatch
import json
import logging
import os
import tempfile
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable

MANIFEST_VERSION = 1
MANIFEST_FILENAME = "manifest.json"
DEFAULT_RECORDING_GLOB = "EAS_Recording_*.wav"
DEFAULT_MANIFEST_DIRNAME = ".manifest"

_LOG = logging.getLogger("eas_archive")


@dataclass
class Manifest:
    version: int
    generated_at: float
    directory_mtime: int | None
    files: list[str] = field(default_factory=list)

    @property
    def count(self) -> int:
        return len(self.files)

    @classmethod
    def empty(cls, generated_at: float) -> "Manifest":
        return cls(MANIFEST_VERSION, generated_at, None, [])

    def path_for(self, recording_id: int) -> str | None:
        if recording_id < 0 or recording_id >= len(self.files):
            return None
        return self.files[recording_id]

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "generated_at": self.generated_at,
            "directory_mtime": self.directory_mtime,
            "count": self.count,
            "files": list(self.files),
        }

    @classmethod
    def from_dict(cls, payload: Any) -> "Manifest | None":
        """Validate a persisted manifest; anything unexpected is a cache miss."""
        if not isinstance(payload, dict):
            return None
        if payload.get("version") != MANIFEST_VERSION:
            return None
        files = payload.get("files")
        if not isinstance(files, list) or not all(isinstance(item, str) for item in files):
            return None
        if payload.get("count") != len(files):
            return None
        mtime = payload.get("directory_mtime")
        generated_at = payload.get("generated_at")
        if not isinstance(mtime, int) or isinstance(mtime, bool):
            return None
        if not isinstance(generated_at, (int, float)):
            return None
        return cls(MANIFEST_VERSION, float(generated_at), mtime, list(files))


class LocalRecordingFilesystem:
    """Filesystem operations the manifest cache depends on."""

    def list_names(self, directory: Path, pattern: str) -> list[str]:
        with os.scandir(directory) as entries:
            names = [
                entry.name
                for entry in entries
                if fnmatch.fnmatchcase(entry.name, pattern) and entry.is_file()
            ]
        names.sort()
        return names

    def creation_time(self, path: Path) -> float:
        st = path.stat()
        birth = getattr(st, "st_birthtime", None)
        if isinstance(birth, (int, float)) and birth > 0:
            return float(birth)
        return st.st_mtime

    def directory_mtime(self, directory: Path) -> int:
        return directory.stat().st_mtime_ns

    def ensure_directory(self, path: Path) -> None:
        if not path.is_dir():
            path.mkdir(exist_ok=True)

    def read_text(self, path: Path) -> str:
        return path.read_text(encoding="utf-8")

    def write_atomic(self, path: Path, text: str) -> None:
        fd, tmp_name = tempfile.mkstemp(
            prefix=f"{path.name}.", suffix=".tmp", dir=path.parent
        )
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
                try:
                    handle.write(text)
                    handle.flush()
                    os.fsync(handle.fileno())
                finally:
                    fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
            os.replace(tmp_path, path)
        except BaseException:
            with contextlib.suppress(OSError):
                tmp_path.unlink()
            raise


class ManifestCache:
    """Manifest of a recording directory, rebuilt when the directory changes.

    Concurrent rebuilds in several processes are allowed; each one replaces the
    persisted manifest atomically, so readers only ever see a complete file.
    """

    def __init__(
        self,
        recording_dir: os.PathLike[str] | str,
        *,
        pattern: str = DEFAULT_RECORDING_GLOB,
        manifest_dirname: str = DEFAULT_MANIFEST_DIRNAME,
        filesystem: LocalRecordingFilesystem | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.recording_dir = Path(recording_dir)
        self.pattern = pattern
        self.manifest_dir = self.recording_dir / manifest_dirname
        self.manifest_path = self.manifest_dir / MANIFEST_FILENAME
        self._fs = filesystem or LocalRecordingFilesystem()
        self._clock = clock
        self._current: Manifest | None = None

    def get_manifest(self, force_refresh: bool = False) -> Manifest:
        try:
            # Created before the mtime snapshot so persisting never changes it.
            self._fs.ensure_directory(self.manifest_dir)
        except OSError as exc:
            # Read-only archive: serve from memory, persisting is skipped.
            _LOG.debug("manifest directory %s unavailable: %s", self.manifest_dir, exc)
        try:
            directory_mtime = self._fs.directory_mtime(self.recording_dir)
        except OSError as exc:
            _LOG.debug("recording directory %s unreadable: %s", self.recording_dir, exc)
            self._current = None
            return Manifest.empty(self._clock())

        if not force_refresh:
            current = self._current
            if current is not None and current.directory_mtime == directory_mtime:
                return current
            persisted = self._load_persisted()
            if persisted is not None and persisted.directory_mtime == directory_mtime:
                self._current = persisted
                return persisted

        manifest = self._build(directory_mtime)
        self._persist(manifest)
        self._current = manifest
        return manifest

    def latest_id(self) -> int:
        return self.get_manifest().count - 1

    def resolve(self, recording_id: int) -> Path | None:
        name = self.get_manifest().path_for(recording_id)
        if name is None:
            return None
        return self.recording_dir / name

    def _build(self, directory_mtime: int) -> Manifest:
        try:
            names = self._fs.list_names(self.recording_dir, self.pattern)
        except OSError as exc:
            _LOG.warning("unable to list recordings in %s: %s", self.recording_dir, exc)
            names = []

        keyed: list[tuple[float, int, str]] = []
        for index, name in enumerate(names):
            try:
                created = self._fs.creation_time(self.recording_dir / name)
            except FileNotFoundError:
                continue
            keyed.append((created, index, name))
        keyed.sort(key=lambda item: (item[0], item[1]))

        manifest = Manifest(
            version=MANIFEST_VERSION,
            generated_at=self._clock(),
            directory_mtime=directory_mtime,
            files=[name for _, _, name in keyed],
        )
        _LOG.debug("built manifest with %d recording(s)", manifest.count)
        return manifest

    def _load_persisted(self) -> Manifest | None:
        try:
            text = self._fs.read_text(self.manifest_path)
        except FileNotFoundError:
            return None
        except OSError as exc:
            _LOG.debug("unable to read manifest %s: %s", self.manifest_path, exc)
            return None
        try:
            payload = json.loads(text)
        except ValueError:
            _LOG.info("discarding corrupt manifest %s", self.manifest_path)
            return None
        return Manifest.from_dict(payload)

    def _persist(self, manifest: Manifest) -> None:
        if not self.manifest_dir.is_dir():
            return
        text = json.dumps(manifest.to_dict(), separators=(",", ":"))
        try:
            self._fs.write_atomic(self.manifest_path, text)
        except OSError as exc:
            _LOG.warning("unable to persist manifest %s: %s", self.manifest_path, exc)
