from __future__ import annotations

import json
import os
from pathlib import Path

import pytest

from eas_listener.manifest_cache import (
    MANIFEST_VERSION,
    LocalRecordingFilesystem,
    Manifest,
    ManifestCache,
)


class _ScriptedFilesystem(LocalRecordingFilesystem):
    """Real persistence, scripted listing order and creation times."""

    def __init__(self, names: list[str], created: dict[str, float], mtime: int = 1):
        self.names = names
        self.created = created
        self.mtime = mtime
        self.list_calls = 0

    def list_names(self, directory: Path, pattern: str) -> list[str]:
        self.list_calls += 1
        return list(self.names)

    def creation_time(self, path: Path) -> float:
        return self.created[path.name]

    def directory_mtime(self, directory: Path) -> int:
        return self.mtime


def _touch(path: Path, when: float) -> None:
    path.write_bytes(b"RIFF")
    os.utime(path, (when, when))


def _pin_mtime(directory: Path, mtime_ns: int) -> None:
    st = directory.stat()
    os.utime(directory, ns=(st.st_atime_ns, mtime_ns))


def test_ids_follow_creation_time_not_listing_order(tmp_path):
    fs = _ScriptedFilesystem(
        ["EAS_Recording_c.wav", "EAS_Recording_a.wav", "EAS_Recording_b.wav"],
        {"EAS_Recording_a.wav": 100.0, "EAS_Recording_b.wav": 200.0, "EAS_Recording_c.wav": 300.0},
    )
    cache = ManifestCache(tmp_path, filesystem=fs, clock=lambda: 1234.0)

    manifest = cache.get_manifest()

    assert manifest.files == [
        "EAS_Recording_a.wav",
        "EAS_Recording_b.wav",
        "EAS_Recording_c.wav",
    ]
    assert manifest.count == 3
    assert manifest.generated_at == 1234.0
    assert cache.resolve(0) == tmp_path / "EAS_Recording_a.wav"
    assert cache.resolve(3) is None
    assert cache.resolve(-1) is None
    assert cache.latest_id() == 2


def test_creation_time_ties_keep_listing_order(tmp_path):
    fs = _ScriptedFilesystem(
        ["EAS_Recording_y.wav", "EAS_Recording_x.wav", "EAS_Recording_z.wav"],
        {"EAS_Recording_x.wav": 5.0, "EAS_Recording_y.wav": 5.0, "EAS_Recording_z.wav": 1.0},
    )
    cache = ManifestCache(tmp_path, filesystem=fs)

    assert cache.get_manifest().files == [
        "EAS_Recording_z.wav",
        "EAS_Recording_y.wav",
        "EAS_Recording_x.wav",
    ]


def test_manifest_reused_until_directory_mtime_changes(tmp_path):
    fs = _ScriptedFilesystem(["EAS_Recording_a.wav"], {"EAS_Recording_a.wav": 1.0}, mtime=10)
    cache = ManifestCache(tmp_path, filesystem=fs)

    first = cache.get_manifest()
    second = cache.get_manifest()
    assert second is first
    assert fs.list_calls == 1

    fs.names = ["EAS_Recording_a.wav", "EAS_Recording_b.wav"]
    fs.created["EAS_Recording_b.wav"] = 2.0
    fs.mtime = 11

    third = cache.get_manifest()
    assert third.count == 2
    assert fs.list_calls == 2


def test_force_refresh_rebuilds(tmp_path):
    fs = _ScriptedFilesystem(["EAS_Recording_a.wav"], {"EAS_Recording_a.wav": 1.0})
    cache = ManifestCache(tmp_path, filesystem=fs)
    cache.get_manifest()

    fs.names = []
    assert cache.get_manifest().count == 1
    assert cache.get_manifest(force_refresh=True).count == 0
    assert fs.list_calls == 2


def test_stale_when_directory_changes_without_mtime_change(tmp_path):
    recordings = tmp_path / "recordings"
    recordings.mkdir()
    _touch(recordings / "EAS_Recording_1.wav", 1_700_000_000)
    _touch(recordings / "EAS_Recording_2.wav", 1_700_000_100)

    cache = ManifestCache(recordings)
    assert cache.get_manifest().count == 2
    pinned = recordings.stat().st_mtime_ns

    _touch(recordings / "EAS_Recording_3.wav", 1_700_000_200)
    _pin_mtime(recordings, pinned)

    # Documented cache-validity behavior: same mtime, same manifest.
    assert cache.get_manifest().count == 2
    assert ManifestCache(recordings).get_manifest().count == 2

    _pin_mtime(recordings, pinned + 1_000_000_000)
    refreshed = cache.get_manifest()
    assert refreshed.count == 3
    assert refreshed.files[-1] == "EAS_Recording_3.wav"


def test_persisted_manifest_shared_between_instances(tmp_path):
    recordings = tmp_path / "recordings"
    recordings.mkdir()
    _touch(recordings / "EAS_Recording_1.wav", 1_700_000_000)
    _touch(recordings / "EAS_Recording_2.wav", 1_700_000_100)
    _touch(recordings / "notes.txt", 1_700_000_050)

    cache = ManifestCache(recordings)
    manifest = cache.get_manifest()

    payload = json.loads(cache.manifest_path.read_text(encoding="utf-8"))
    assert payload["version"] == MANIFEST_VERSION
    assert payload["count"] == 2
    assert payload["files"] == ["EAS_Recording_1.wav", "EAS_Recording_2.wav"]
    assert payload["directory_mtime"] == recordings.stat().st_mtime_ns
    assert cache.manifest_path.parent.parent == recordings

    # Persisting never perturbs the recording directory it is validated against.
    assert payload["directory_mtime"] == manifest.directory_mtime

    class _NoListing(LocalRecordingFilesystem):
        def list_names(self, directory, pattern):
            raise AssertionError("persisted manifest should have been reused")

    reader = ManifestCache(recordings, filesystem=_NoListing())
    assert reader.get_manifest().files == manifest.files


def test_corrupt_manifest_triggers_rebuild(tmp_path):
    recordings = tmp_path / "recordings"
    recordings.mkdir()
    _touch(recordings / "EAS_Recording_1.wav", 1_700_000_000)

    cache = ManifestCache(recordings)
    cache.get_manifest()
    cache.manifest_path.write_text("{not json", encoding="utf-8")

    fresh = ManifestCache(recordings)
    assert fresh.get_manifest().count == 1
    payload = json.loads(fresh.manifest_path.read_text(encoding="utf-8"))
    assert payload["count"] == 1


def test_manifest_with_wrong_shape_is_a_cache_miss():
    assert Manifest.from_dict({"version": MANIFEST_VERSION, "files": ["a"], "count": 2}) is None
    assert Manifest.from_dict({"version": 99, "files": [], "count": 0}) is None
    assert Manifest.from_dict([]) is None
    restored = Manifest.from_dict(
        {
            "version": MANIFEST_VERSION,
            "generated_at": 5,
            "directory_mtime": 7,
            "count": 1,
            "files": ["EAS_Recording_1.wav"],
        }
    )
    assert restored is not None
    assert restored.path_for(0) == "EAS_Recording_1.wav"


def test_unreadable_directory_yields_empty_manifest(tmp_path):
    cache = ManifestCache(tmp_path / "missing" / "recordings")

    manifest = cache.get_manifest()

    assert manifest.count == 0
    assert manifest.files == []
    assert cache.latest_id() == -1
    assert cache.resolve(0) is None


def test_persist_failure_is_not_fatal(tmp_path):
    recordings = tmp_path / "recordings"
    recordings.mkdir()
    _touch(recordings / "EAS_Recording_1.wav", 1_700_000_000)

    class _ReadOnlyManifest(LocalRecordingFilesystem):
        def write_atomic(self, path, text):
            raise OSError("read-only filesystem")

    cache = ManifestCache(recordings, filesystem=_ReadOnlyManifest())

    assert cache.get_manifest().count == 1
    assert not cache.manifest_path.exists()


def test_read_only_recording_directory_still_lists_recordings(tmp_path):
    recordings = tmp_path / "recordings"
    recordings.mkdir()
    _touch(recordings / "EAS_Recording_1.wav", 1_700_000_000)
    _touch(recordings / "EAS_Recording_2.wav", 1_700_000_100)

    class _ReadOnlyDirectory(LocalRecordingFilesystem):
        def __init__(self):
            self.writes = 0

        def ensure_directory(self, path):
            raise PermissionError(13, "Permission denied", str(path))

        def write_atomic(self, path, text):
            self.writes += 1
            raise PermissionError(13, "Permission denied", str(path))

    fs = _ReadOnlyDirectory()
    cache = ManifestCache(recordings, filesystem=fs)

    manifest = cache.get_manifest()

    assert manifest.files == ["EAS_Recording_1.wav", "EAS_Recording_2.wav"]
    assert manifest.directory_mtime == recordings.stat().st_mtime_ns
    assert cache.latest_id() == 1
    assert cache.resolve(1) == recordings / "EAS_Recording_2.wav"
    assert fs.writes == 0
    assert not cache.manifest_dir.exists()


def test_write_atomic_cleans_up_temp_file_on_error(tmp_path, monkeypatch):
    fs = LocalRecordingFilesystem()
    target = tmp_path / "manifest.json"
    target.write_text("previous", encoding="utf-8")

    def _boom(src, dst):
        raise OSError("rename failed")

    monkeypatch.setattr(os, "replace", _boom)
    with pytest.raises(OSError):
        fs.write_atomic(target, "next")

    assert target.read_text(encoding="utf-8") == "previous"
    assert [p.name for p in tmp_path.iterdir()] == ["manifest.json"]
