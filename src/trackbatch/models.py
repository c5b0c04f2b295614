from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping


class TrackBatchError(RuntimeError):
    """Base error for batch tracking failures."""


class ConfigError(TrackBatchError):
    """Raised when project configuration or inputs are invalid."""


class RegistryMissing(ConfigError):
    """Raised when the job registry file does not exist."""


class KeyNotFound(TrackBatchError, LookupError):
    """Raised when a registry update targets an unknown settings file."""


class AmbiguousOrMissingSession(TrackBatchError):
    """Raised when a run cannot be matched to exactly one session folder."""


STATUS_PENDING = "pending"
STATUS_DONE = "done"
STATUS_FAILED = "failed"
STATUS_SKIP = "skip"

KNOWN_STATUSES = (STATUS_PENDING, STATUS_DONE, STATUS_FAILED, STATUS_SKIP)
ELIGIBLE_STATUSES = frozenset({STATUS_PENDING, STATUS_FAILED})
# Statuses the runner may persist; skip is reserved for humans.
AUTOMATED_STATUSES = frozenset({STATUS_DONE, STATUS_FAILED})

REGISTRY_COLUMNS = (
    "settings_file",
    "video",
    "datetime",
    "part",
    "status",
    "session_folder",
    "timestamp",
    "notes",
)
KNOWLEDGE_TRANSFER_COLUMN = "knowledge_transfer"


@dataclass(frozen=True)
class VideoInfo:
    video: str = ""
    datetime: str = ""
    part: str = ""


@dataclass(frozen=True)
class JobRecord:
    settings_file: str
    video: str = ""
    datetime: str = ""
    part: str = ""
    status: str = STATUS_PENDING
    session_folder: str = ""
    timestamp: str = ""
    notes: str = ""
    knowledge_transfer: str | None = None
    extra: dict[str, str] = field(default_factory=dict)

    @property
    def eligible(self) -> bool:
        return self.status in ELIGIBLE_STATUSES

    @property
    def transfer_folder(self) -> str | None:
        value = (self.knowledge_transfer or "").strip()
        return value or None

    def to_row(self) -> dict[str, str]:
        row = {
            "settings_file": self.settings_file,
            "video": self.video,
            "datetime": self.datetime,
            "part": self.part,
            "status": self.status,
            "session_folder": self.session_folder,
            "timestamp": self.timestamp,
            "notes": self.notes,
        }
        if self.knowledge_transfer is not None:
            row[KNOWLEDGE_TRANSFER_COLUMN] = self.knowledge_transfer
        row.update(self.extra)
        return row

    def to_json(self) -> dict[str, Any]:
        payload: dict[str, Any] = dict(self.to_row())
        payload[KNOWLEDGE_TRANSFER_COLUMN] = self.knowledge_transfer
        return payload

    @classmethod
    def from_row(
        cls, row: Mapping[str, str | None], *, has_knowledge_transfer: bool
    ) -> "JobRecord":
        def _text(key: str) -> str:
            value = row.get(key)
            return "" if value is None else str(value)

        known = {*REGISTRY_COLUMNS, KNOWLEDGE_TRANSFER_COLUMN}
        extra = {
            str(key): _text(key)
            for key in row.keys()
            if key is not None and key not in known
        }
        return cls(
            settings_file=_text("settings_file"),
            video=_text("video"),
            datetime=_text("datetime"),
            part=_text("part"),
            status=_text("status").strip(),
            session_folder=_text("session_folder"),
            timestamp=_text("timestamp"),
            notes=_text("notes"),
            knowledge_transfer=(
                _text(KNOWLEDGE_TRANSFER_COLUMN) if has_knowledge_transfer else None
            ),
            extra=extra,
        )


# settings_file -> (status, timestamp, session_folder)
RegistrySnapshot = dict[str, tuple[str, str, str]]


@dataclass(frozen=True)
class JobOutcome:
    settings_file: str
    video: str
    status: str
    session_folder: str
    timestamp: str
    reason: str | None = None
    exit_code: int | None = None
    persisted: bool = True
    archived_log: str | None = None

    def to_json(self) -> dict[str, Any]:
        return {
            "settings_file": self.settings_file,
            "video": self.video,
            "status": self.status,
            "session_folder": self.session_folder,
            "timestamp": self.timestamp,
            "reason": self.reason,
            "exit_code": self.exit_code,
            "persisted": self.persisted,
            "archived_log": self.archived_log,
        }
