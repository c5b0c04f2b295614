from __future__ import annotations

import csv
import io
from dataclasses import replace
from pathlib import Path
from typing import Iterable

from trackbatch._logging import get_logger
from trackbatch.models import (
    AUTOMATED_STATUSES,
    KNOWLEDGE_TRANSFER_COLUMN,
    REGISTRY_COLUMNS,
    STATUS_PENDING,
    ConfigError,
    JobRecord,
    KeyNotFound,
    RegistryMissing,
    RegistrySnapshot,
    VideoInfo,
)
from trackbatch.utils import atomic_write_text

_log = get_logger("registry")


class JobRegistry:
    """Ordered table of job records persisted as a single CSV file.

    Every mutation rewrites the whole file through a temp file and an atomic
    rename, so an interrupted write never leaves a half-updated table behind.
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self._records: list[JobRecord] = []
        self._has_knowledge_transfer = False
        self._extra_columns: list[str] = []
        self._loaded = False

    @property
    def exists(self) -> bool:
        return self.path.exists()

    @property
    def records(self) -> tuple[JobRecord, ...]:
        self._require_loaded()
        return tuple(self._records)

    @property
    def has_knowledge_transfer(self) -> bool:
        return self._has_knowledge_transfer

    @property
    def fieldnames(self) -> list[str]:
        names = list(REGISTRY_COLUMNS)
        if self._has_knowledge_transfer:
            names.append(KNOWLEDGE_TRANSFER_COLUMN)
        names.extend(self._extra_columns)
        return names

    def _require_loaded(self) -> None:
        if not self._loaded:
            self.load()

    def create(self) -> None:
        if self.path.exists():
            raise ConfigError(f"Registry already exists: {self.path}")
        self._records = []
        self._has_knowledge_transfer = False
        self._extra_columns = []
        self._loaded = True
        self._flush()
        _log.info("registry_created path=%s", self.path)

    def load(self) -> tuple[JobRecord, ...]:
        if not self.path.exists():
            raise RegistryMissing(
                f"Job registry not found: {self.path}. Has 'init' been run?"
            )
        with self.path.open("r", encoding="utf-8", newline="") as handle:
            reader = csv.DictReader(handle)
            header = [name for name in (reader.fieldnames or []) if name]
            missing = [name for name in ("settings_file", "status") if name not in header]
            if missing:
                raise ConfigError(
                    f"Registry {self.path} is missing required columns: {missing}"
                )
            has_kt = KNOWLEDGE_TRANSFER_COLUMN in header
            known = {*REGISTRY_COLUMNS, KNOWLEDGE_TRANSFER_COLUMN}
            records: list[JobRecord] = []
            seen: set[str] = set()
            for row in reader:
                record = JobRecord.from_row(row, has_knowledge_transfer=has_kt)
                if not record.settings_file:
                    _log.warning("Skipping registry row without settings_file")
                    continue
                if record.settings_file in seen:
                    raise ConfigError(
                        f"Duplicate settings_file '{record.settings_file}' "
                        f"in registry {self.path}"
                    )
                seen.add(record.settings_file)
                records.append(record)

        self._records = records
        self._has_knowledge_transfer = has_kt
        self._extra_columns = [name for name in header if name not in known]
        self._loaded = True
        return tuple(records)

    def get(self, key: str) -> JobRecord:
        self._require_loaded()
        for record in self._records:
            if record.settings_file == key:
                return record
        raise KeyNotFound(f"No registry record for settings file '{key}'")

    def keys(self) -> list[str]:
        self._require_loaded()
        return [record.settings_file for record in self._records]

    def eligible(self) -> list[JobRecord]:
        self._require_loaded()
        return [record for record in self._records if record.eligible]

    def register_new(self, candidates: Iterable[tuple[str, VideoInfo]]) -> int:
        self._require_loaded()
        known = set(self.keys())
        added: list[JobRecord] = []
        for key, info in candidates:
            if key in known:
                continue
            known.add(key)
            added.append(
                JobRecord(
                    settings_file=key,
                    video=info.video,
                    datetime=info.datetime,
                    part=info.part,
                    status=STATUS_PENDING,
                    knowledge_transfer="" if self._has_knowledge_transfer else None,
                    extra={name: "" for name in self._extra_columns},
                )
            )
        if not added:
            return 0
        self._records.extend(added)
        self._flush()
        _log.info("registry_registered added=%d total=%d", len(added), len(self._records))
        return len(added)

    def update(
        self, key: str, *, status: str, timestamp: str, session_folder: str
    ) -> JobRecord:
        """Replace the status triple of one record and rewrite the registry."""
        self._require_loaded()
        if status not in AUTOMATED_STATUSES:
            raise ValueError(
                f"Refusing to write status '{status}'; expected one of "
                f"{sorted(AUTOMATED_STATUSES)}"
            )
        for index, record in enumerate(self._records):
            if record.settings_file != key:
                continue
            updated = replace(
                record,
                status=status,
                timestamp=timestamp,
                session_folder=session_folder,
            )
            self._records[index] = updated
            self._flush()
            return updated
        raise KeyNotFound(f"No registry record for settings file '{key}'")

    def snapshot(self) -> RegistrySnapshot:
        self._require_loaded()
        return {
            record.settings_file: (
                record.status,
                record.timestamp,
                record.session_folder,
            )
            for record in self._records
        }

    def restore(self, snapshot: RegistrySnapshot) -> None:
        self._require_loaded()
        restored: list[JobRecord] = []
        for record in self._records:
            saved = snapshot.get(record.settings_file)
            if saved is None:
                restored.append(record)
                continue
            status, timestamp, session_folder = saved
            restored.append(
                replace(
                    record,
                    status=status,
                    timestamp=timestamp,
                    session_folder=session_folder,
                )
            )
        self._records = restored
        self._flush()

    def render(self) -> str:
        buffer = io.StringIO()
        writer = csv.DictWriter(buffer, fieldnames=self.fieldnames)
        writer.writeheader()
        for record in self._records:
            writer.writerow(record.to_row())
        return buffer.getvalue()

    def _flush(self) -> None:
        atomic_write_text(self.path, self.render())
