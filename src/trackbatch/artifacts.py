from __future__ import annotations

import shutil
from pathlib import Path
from typing import Any

from trackbatch._logging import get_logger
from trackbatch.config import ProjectConfig
from trackbatch.models import STATUS_DONE
from trackbatch.registry import JobRegistry
from trackbatch.utils import path_key, resolve_key, sanitize_for_path, utc_now_iso

_log = get_logger("artifacts")


def artifact_destination(config: ProjectConfig, session_folder: str) -> Path:
    session_name = Path(session_folder).name
    suffix = Path(config.session.trajectory).suffix
    return config.copy_dir / f"{sanitize_for_path(session_name)}{suffix}"


def copy_artifacts(
    config: ProjectConfig,
    *,
    registry: JobRegistry | None = None,
    overwrite: bool = False,
    dry_run: bool = False,
) -> dict[str, Any]:
    """Copy the trajectory file of every done job into a flat folder named by session.

    A job whose session lacks the trajectory is reported and skipped; it never
    stops the remaining copies.
    """
    registry = registry or JobRegistry(config.registry)
    records = registry.load()

    copied: list[dict[str, str]] = []
    warnings: list[dict[str, str]] = []
    skipped_existing: list[str] = []
    for record in records:
        if record.status != STATUS_DONE:
            continue
        if not record.session_folder:
            _log.warning("copy_no_session settings=%s", record.settings_file)
            warnings.append(
                {"settings_file": record.settings_file, "reason": "no_session_folder"}
            )
            continue
        session_dir = resolve_key(record.session_folder, config.root)
        source = session_dir / config.session.trajectory
        if not source.is_file():
            _log.warning(
                "copy_artifact_missing settings=%s path=%s",
                record.settings_file,
                source,
            )
            warnings.append(
                {
                    "settings_file": record.settings_file,
                    "reason": "artifact_missing",
                    "path": str(source),
                }
            )
            continue
        destination = artifact_destination(config, record.session_folder)
        if destination.exists() and not overwrite:
            skipped_existing.append(str(destination))
            continue
        if not dry_run:
            try:
                destination.parent.mkdir(parents=True, exist_ok=True)
                shutil.copy2(source, destination)
            except OSError as exc:
                _log.warning(
                    "copy_failed settings=%s source=%s error=%s",
                    record.settings_file,
                    source,
                    exc,
                )
                warnings.append(
                    {
                        "settings_file": record.settings_file,
                        "reason": "copy_failed",
                        "path": str(source),
                    }
                )
                continue
        copied.append(
            {
                "settings_file": record.settings_file,
                "source": path_key(source, config.root),
                "destination": path_key(destination, config.root),
            }
        )

    return {
        "generated_at": utc_now_iso(),
        "copy_dir": str(config.copy_dir),
        "dry_run": dry_run,
        "copied": copied,
        "skipped_existing": skipped_existing,
        "warnings": warnings,
    }
