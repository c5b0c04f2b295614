from __future__ import annotations

from trackbatch.executors.base import CompletedInvocation, TrackerLaunch
from trackbatch.utils import utc_now_iso


class NoopTracker:
    """Stand-in used by dry runs: records the launch, starts nothing."""

    name = "noop"

    def __init__(self) -> None:
        self.launches: list[TrackerLaunch] = []

    def run(self, launch: TrackerLaunch) -> CompletedInvocation:
        self.launches.append(launch)
        now = utc_now_iso()
        return CompletedInvocation(
            launch=launch,
            pid=None,
            start_time=now,
            end_time=now,
            duration_sec=0.0,
            exit_code=None,
            status="simulated",
        )
