from __future__ import annotations

import sys
from pathlib import Path

import pytest

from trackbatch.executors import NoopTracker, ProcessTracker
from trackbatch.executors.base import TrackerLaunch


def _launch(tmp_path: Path, *argv: str, env: dict[str, str] | None = None) -> TrackerLaunch:
    return TrackerLaunch(
        settings_file="settings/job00.toml",
        argv=tuple(argv),
        cwd=tmp_path,
        stdout_path=tmp_path / "logs" / "tracker" / "job00.stdout.log",
        stderr_path=tmp_path / "logs" / "tracker" / "job00.stderr.log",
        env=env or {},
    )


def test_process_tracker_captures_output_and_exit_code(tmp_path: Path) -> None:
    launch = _launch(
        tmp_path,
        sys.executable,
        "-c",
        "import os, sys; print(os.environ['TRACK_MARK']); "
        "print('oops', file=sys.stderr); sys.exit(3)",
        env={"TRACK_MARK": "hello"},
    )

    completed = ProcessTracker().run(launch)

    assert completed.exit_code == 3
    assert completed.status == "exited"
    assert completed.pid is not None
    assert launch.stdout_path.read_text(encoding="utf-8").strip() == "hello"
    assert launch.stderr_path.read_text(encoding="utf-8").strip() == "oops"


def test_process_tracker_kills_on_timeout(tmp_path: Path) -> None:
    launch = _launch(tmp_path, sys.executable, "-c", "import time; time.sleep(30)")

    completed = ProcessTracker(timeout_sec=1).run(launch)

    assert completed.status == "timeout"
    assert completed.status_reason == "timeout_kill"
    assert completed.exit_code is not None
    assert completed.duration_sec < 25


def test_process_tracker_spawn_failure_is_runtime_error(tmp_path: Path) -> None:
    launch = _launch(tmp_path, str(tmp_path / "no-such-tracker"))

    with pytest.raises(RuntimeError, match="Failed to spawn tracker"):
        ProcessTracker().run(launch)


def test_process_tracker_rejects_non_positive_timeout() -> None:
    with pytest.raises(ValueError):
        ProcessTracker(timeout_sec=0)


def test_noop_tracker_starts_nothing(tmp_path: Path) -> None:
    tracker = NoopTracker()
    launch = _launch(tmp_path, str(tmp_path / "no-such-tracker"))

    completed = tracker.run(launch)

    assert completed.status == "simulated"
    assert completed.exit_code is None
    assert tracker.launches == [launch]
    assert not launch.stdout_path.parent.exists()


def test_process_tracker_unwritable_capture_is_runtime_error(tmp_path: Path) -> None:
    blocker = tmp_path / "blocker"
    blocker.write_text("not a directory", encoding="utf-8")
    launch = TrackerLaunch(
        settings_file="settings/job00.toml",
        argv=(sys.executable, "-c", "pass"),
        cwd=tmp_path,
        stdout_path=blocker / "job00.stdout.log",
        stderr_path=blocker / "job00.stderr.log",
    )

    with pytest.raises(RuntimeError, match="Cannot open tracker output file"):
        ProcessTracker().run(launch)
