from __future__ import annotations

from eas_listener.archive import vacuum


def test_vacuum_moves_recordings_and_rotates_log(tmp_path):
    recordings = tmp_path / "recordings"
    recordings.mkdir()
    for name in ("EAS_Recording_1.wav", "EAS_Recording_2.wav"):
        (recordings / name).write_bytes(b"RIFF")
    (recordings / "keep.txt").write_text("not a recording")
    alert_log = tmp_path / "alerts.log"
    alert_log.write_text("first batch\n", encoding="utf-8")

    result = vacuum(recordings, alert_log)

    assert [p.name for p in result.moved] == ["EAS_Recording_1.wav", "EAS_Recording_2.wav"]
    assert result.old_dir == recordings / "__old__"
    assert sorted(p.name for p in result.old_dir.iterdir()) == [
        "EAS_Recording_1.wav",
        "EAS_Recording_2.wav",
    ]
    assert (recordings / "keep.txt").exists()
    assert not list(recordings.glob("EAS_Recording_*.wav"))
    assert alert_log.read_text(encoding="utf-8") == ""
    assert result.alert_log_backup == tmp_path / "alerts.log.bak"
    assert result.alert_log_backup.read_text(encoding="utf-8") == "first batch\n"


def test_second_vacuum_appends_to_backup(tmp_path):
    recordings = tmp_path / "recordings"
    recordings.mkdir()
    alert_log = tmp_path / "alerts.log"

    alert_log.write_text("first batch\n", encoding="utf-8")
    vacuum(recordings, alert_log)
    alert_log.write_text("second batch\n", encoding="utf-8")
    result = vacuum(recordings, alert_log)

    assert result.moved == []
    assert result.alert_log_backup.read_text(encoding="utf-8") == "first batch\nsecond batch\n"
    assert alert_log.read_text(encoding="utf-8") == ""


def test_vacuum_without_alert_log(tmp_path):
    recordings = tmp_path / "recordings"
    recordings.mkdir()
    (recordings / "EAS_Recording_1.wav").write_bytes(b"RIFF")

    result = vacuum(recordings, tmp_path / "missing.log", old_dirname="retired")

    assert result.alert_log_backup is None
    assert (recordings / "retired" / "EAS_Recording_1.wav").exists()
