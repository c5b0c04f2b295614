from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol


@dataclass(frozen=True)
class TrackerLaunch:
    settings_file: str
    argv: tuple[str, ...]
    cwd: Path
    stdout_path: Path
    stderr_path: Path
    env: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class CompletedInvocation:
    launch: TrackerLaunch
    pid: int | None
    start_time: str
    end_time: str
    duration_sec: float
    exit_code: int | None
    status: str  # exited | terminated | timeout | spawn_failed | simulated
    status_reason: str | None = None


class Tracker(Protocol):
    name: str

    def run(self, launch: TrackerLaunch) -> CompletedInvocation: ...
