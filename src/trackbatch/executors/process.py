from __future__ import annotations

import logging
import os
import signal
import subprocess
import time
from pathlib import Path
from typing import TextIO

from trackbatch.executors.base import CompletedInvocation, TrackerLaunch
from trackbatch.utils import utc_now_iso

_log = logging.getLogger("trackbatch.executors.process")


class ProcessTracker:
    """Run the tracker as a child process and block until it exits.

    Only one tracker runs at a time; the tool is expected to saturate the GPU.
    """

    name = "process"
    _TERM_GRACE_SEC = 10.0

    def __init__(self, *, timeout_sec: int | None = None):
        if timeout_sec is not None and timeout_sec <= 0:
            raise ValueError("timeout_sec must be > 0 when provided")
        self.timeout_sec = timeout_sec

    def _signal_process_tree(self, process: subprocess.Popen[str], signum: int) -> None:
        if process.poll() is not None:
            return

        if os.name == "posix":
            try:
                pgid = os.getpgid(process.pid)
                os.killpg(pgid, signum)
                return
            except ProcessLookupError:
                return
            except OSError:
                pass

        try:
            process.send_signal(signum)
        except ProcessLookupError:
            return

    def _terminate(self, process: subprocess.Popen[str]) -> None:
        self._signal_process_tree(process, signal.SIGTERM)
        try:
            process.wait(timeout=self._TERM_GRACE_SEC)
            return
        except subprocess.TimeoutExpired:
            pass

        kill_signal = getattr(signal, "SIGKILL", signal.SIGTERM)
        self._signal_process_tree(process, kill_signal)
        try:
            process.wait(timeout=self._TERM_GRACE_SEC)
        except subprocess.TimeoutExpired:
            _log.error("Tracker pid=%s did not exit after SIGKILL", process.pid)

    def _open_capture(self, path: Path) -> TextIO:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            return path.open("w", encoding="utf-8")
        except OSError as exc:
            raise RuntimeError(f"Cannot open tracker output file {path}: {exc}") from exc

    def run(self, launch: TrackerLaunch) -> CompletedInvocation:
        child_env = os.environ.copy()
        child_env.update(launch.env)

        with self._open_capture(launch.stdout_path) as stdout_handle, \
                self._open_capture(launch.stderr_path) as stderr_handle:
            start_time = utc_now_iso()
            start_perf = time.perf_counter()
            try:
                process = subprocess.Popen(
                    list(launch.argv),
                    cwd=launch.cwd,
                    stdout=stdout_handle,
                    stderr=stderr_handle,
                    text=True,
                    env=child_env,
                    start_new_session=True,
                )
            except OSError as exc:
                raise RuntimeError(
                    f"Failed to spawn tracker for {launch.settings_file}: {exc}"
                ) from exc

            _log.info(
                "tracker_start settings=%s pid=%s argv=%s",
                launch.settings_file,
                process.pid,
                " ".join(launch.argv),
            )
            timed_out = False
            try:
                process.wait(timeout=self.timeout_sec)
            except subprocess.TimeoutExpired:
                timed_out = True
                _log.warning(
                    "tracker_timeout settings=%s pid=%s timeout_sec=%s",
                    launch.settings_file,
                    process.pid,
                    self.timeout_sec,
                )
                self._terminate(process)
            except KeyboardInterrupt:
                self._terminate(process)
                raise

        rc = process.returncode
        if timed_out:
            status = "timeout"
        elif rc is not None and rc < 0:
            status = "terminated"
        else:
            status = "exited"
        duration = time.perf_counter() - start_perf
        _log.info(
            "tracker_end settings=%s pid=%s exit_code=%s status=%s duration_sec=%.3f",
            launch.settings_file,
            process.pid,
            rc,
            status,
            duration,
        )
        return CompletedInvocation(
            launch=launch,
            pid=process.pid,
            start_time=start_time,
            end_time=utc_now_iso(),
            duration_sec=round(duration, 6),
            exit_code=rc,
            status=status,
            status_reason="timeout_kill" if timed_out else None,
        )
