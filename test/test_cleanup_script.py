import os
import time

import cleanup_temp_files


def _old_file(path, age_hours):
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "wb") as f:
        f.write(b"x" * 1024)
    old = time.time() - age_hours * 3600
    os.utime(path, (old, old))
    return path


def test_sweep_by_age(tmp_path, capsys):
    stale = _old_file(str(tmp_path / "job-a" / "source.mp4"), 30)
    recent = _old_file(str(tmp_path / "job-b" / "source.mp4"), 1)

    assert cleanup_temp_files.main(["--temp-dir", str(tmp_path), "--max-age-hours", "24"]) == 0

    assert not os.path.exists(stale)
    assert os.path.exists(recent)
    assert "Removed 1 files" in capsys.readouterr().out


def test_summary_does_not_delete(tmp_path, capsys):
    path = _old_file(str(tmp_path / "job-a" / "source.mp4"), 30)

    cleanup_temp_files.main(["--temp-dir", str(tmp_path), "--summary"])

    assert os.path.exists(path)
    assert "1 files in" in capsys.readouterr().out


def test_emergency_removes_everything(tmp_path):
    _old_file(str(tmp_path / "job-a" / "a.jpg"), 0)
    _old_file(str(tmp_path / "job-b" / "b.jpg"), 0)

    cleanup_temp_files.main(["--temp-dir", str(tmp_path), "--emergency"])

    assert os.listdir(tmp_path) == []
