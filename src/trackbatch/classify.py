"""Decide whether a tracking session succeeded from its log text.

The tracker's exit status is not a usable success signal (it has been seen to
exit abnormally after a complete run), so the verdict depends only on what the
session log says.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from trackbatch.models import STATUS_DONE, STATUS_FAILED

DEFAULT_CRITICAL_MARKER = "CRITICAL"
DEFAULT_SUCCESS_MARKER = "Success"


class LogOutcome(str, Enum):
    SUCCESS = "success"
    CRITICAL = "critical"
    INCOMPLETE = "incomplete"


@dataclass(frozen=True)
class LogMarkers:
    critical: str = DEFAULT_CRITICAL_MARKER
    success: str = DEFAULT_SUCCESS_MARKER


@dataclass(frozen=True)
class Classification:
    status: str
    reason: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.status == STATUS_DONE


def classify_log_text(text: str, markers: LogMarkers = LogMarkers()) -> LogOutcome:
    # A critical marker wins even when the success marker is also present.
    if markers.critical in text:
        return LogOutcome.CRITICAL
    if markers.success not in text:
        return LogOutcome.INCOMPLETE
    return LogOutcome.SUCCESS


def classify_session(
    session_dir: Path | str | None,
    *,
    log_file: str,
    markers: LogMarkers = LogMarkers(),
) -> Classification:
    if not session_dir:
        return Classification(STATUS_FAILED, "session_unresolved")
    log_path = Path(session_dir) / log_file
    if not log_path.is_file():
        return Classification(STATUS_FAILED, "log_missing")
    text = log_path.read_text(encoding="utf-8", errors="replace")
    outcome = classify_log_text(text, markers)
    if outcome is LogOutcome.CRITICAL:
        return Classification(STATUS_FAILED, "critical_marker")
    if outcome is LogOutcome.INCOMPLETE:
        return Classification(STATUS_FAILED, "success_marker_missing")
    return Classification(STATUS_DONE)
