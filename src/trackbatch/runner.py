from __future__ import annotations

import shutil
from collections import Counter
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Iterable

from trackbatch._logging import get_logger
from trackbatch.classify import Classification, classify_session
from trackbatch.config import SETTINGS_PLACEHOLDER, ProjectConfig
from trackbatch.executors import NoopTracker, ProcessTracker
from trackbatch.executors.base import Tracker, TrackerLaunch
from trackbatch.models import (
    STATUS_DONE,
    STATUS_FAILED,
    AmbiguousOrMissingSession,
    JobOutcome,
    JobRecord,
)
from trackbatch.registry import JobRegistry
from trackbatch.sessions import SessionResolver, build_resolver
from trackbatch.utils import (
    keyed_file_stem,
    path_key,
    resolve_key,
    sanitize_for_path,
    utc_now_iso,
)

_log = get_logger("runner")
ProgressEventCallback = Callable[[dict[str, Any]], None]


def _notify_progress_event(
    callback: ProgressEventCallback | None, event: dict[str, Any]
) -> None:
    if callback is None:
        return
    try:
        callback(event)
    except Exception as exc:  # pragma: no cover - progress display must not stop a batch
        _log.warning("Ignoring progress callback error: %s", exc)


@dataclass(frozen=True)
class TrackSummary:
    dry_run: bool
    strategy: str
    registry: str
    eligible: int
    selected: int
    started_at: str
    finished_at: str
    outcomes: tuple[JobOutcome, ...]

    @property
    def by_status(self) -> dict[str, int]:
        counter = Counter(outcome.status for outcome in self.outcomes)
        return {key: int(value) for key, value in sorted(counter.items())}

    def to_json(self) -> dict[str, Any]:
        return {
            "dry_run": self.dry_run,
            "strategy": self.strategy,
            "registry": self.registry,
            "eligible": self.eligible,
            "selected": self.selected,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "by_status": self.by_status,
            "outcomes": [outcome.to_json() for outcome in self.outcomes],
        }


def select_jobs(
    records: Iterable[JobRecord],
    *,
    only: Iterable[str] | None = None,
    max_jobs: int | None = None,
) -> list[JobRecord]:
    """Eligible records in registry order, optionally narrowed and capped."""
    wanted = set(only or ())
    selected = [
        record
        for record in records
        if record.eligible and (not wanted or record.settings_file in wanted)
    ]
    if max_jobs is not None:
        selected = selected[: max(0, max_jobs)]
    return selected


def build_tracker_argv(
    config: ProjectConfig, settings_path: Path, transfer_folder: Path | None
) -> tuple[str, ...]:
    tracker = config.tracker
    argv = [
        part.replace(SETTINGS_PLACEHOLDER, str(settings_path))
        for part in tracker.command
    ]
    if tracker.output_flag:
        argv.extend([tracker.output_flag, str(config.output_root)])
    if transfer_folder is not None and tracker.transfer_flag:
        argv.extend([tracker.transfer_flag, str(transfer_folder)])
    return tuple(argv)


class JobRunner:
    """Run every eligible job once, persisting each outcome as soon as it is known.

    With ``dry_run=True`` the same selection, resolution and persistence paths
    run against a no-op tracker and predicted session names, and the registry
    is restored to its pre-run state afterwards.
    """

    def __init__(
        self,
        config: ProjectConfig,
        registry: JobRegistry,
        *,
        tracker: Tracker | None = None,
        resolver: SessionResolver | None = None,
        dry_run: bool = False,
        progress_callback: ProgressEventCallback | None = None,
    ):
        self.config = config
        self.registry = registry
        self.dry_run = dry_run
        if tracker is None:
            tracker = (
                NoopTracker()
                if dry_run
                else ProcessTracker(timeout_sec=config.tracker.timeout_sec)
            )
        self.tracker = tracker
        self.resolver = resolver or build_resolver(
            config.session.strategy, prefix=config.session.prefix
        )
        self.progress_callback = progress_callback

    def _emit(self, event: dict[str, Any]) -> None:
        payload = {"time": utc_now_iso(), "dry_run": self.dry_run, **event}
        _notify_progress_event(self.progress_callback, payload)

    def build_launch(self, record: JobRecord) -> TrackerLaunch:
        settings_path = resolve_key(record.settings_file, self.config.root)
        transfer = record.transfer_folder
        transfer_path = None if transfer is None else resolve_key(transfer, self.config.root)
        stem = keyed_file_stem(record.settings_file)
        return TrackerLaunch(
            settings_file=record.settings_file,
            argv=build_tracker_argv(self.config, settings_path, transfer_path),
            cwd=self.config.root,
            stdout_path=self.config.tracker_logs_dir / f"{stem}.stdout.log",
            stderr_path=self.config.tracker_logs_dir / f"{stem}.stderr.log",
            env=dict(self.config.tracker.env),
        )

    def run(
        self,
        *,
        only: Iterable[str] | None = None,
        max_jobs: int | None = None,
    ) -> TrackSummary:
        records = self.registry.load()
        eligible = [record for record in records if record.eligible]
        selected = select_jobs(records, only=only, max_jobs=max_jobs)
        started_at = utc_now_iso()
        _log.info(
            "track_start dry_run=%s strategy=%s eligible=%d selected=%d",
            self.dry_run,
            self.resolver.name,
            len(eligible),
            len(selected),
        )
        self._emit({"event": "track_start", "eligible": len(eligible), "selected": len(selected)})

        snapshot = self.registry.snapshot() if self.dry_run else None
        outcomes: list[JobOutcome] = []
        try:
            for position, record in enumerate(selected, 1):
                outcomes.append(self._run_job(record, position=position, total=len(selected)))
        finally:
            if snapshot is not None:
                self.registry.restore(snapshot)
                _log.info("dry_run_restored records=%d", len(snapshot))

        summary = TrackSummary(
            dry_run=self.dry_run,
            strategy=self.resolver.name,
            registry=str(self.registry.path),
            eligible=len(eligible),
            selected=len(selected),
            started_at=started_at,
            finished_at=utc_now_iso(),
            outcomes=tuple(outcomes),
        )
        _log.info("track_end dry_run=%s by_status=%s", self.dry_run, summary.by_status)
        self._emit({"event": "track_end", "by_status": summary.by_status})
        return summary

    def _run_job(self, record: JobRecord, *, position: int, total: int) -> JobOutcome:
        key = record.settings_file
        output_root = self.config.output_root
        self._emit(
            {
                "event": "job_start",
                "settings_file": key,
                "video": record.video,
                "position": position,
                "total": total,
            }
        )
        _log.info("job_start settings=%s video=%s position=%d/%d", key, record.video, position, total)

        shared_log_before = self._shared_log_mtime()
        before: frozenset[str] = frozenset()
        if not self.dry_run:
            output_root.mkdir(parents=True, exist_ok=True)
            before = self.resolver.before(output_root)

        exit_code: int | None = None
        try:
            completed = self.tracker.run(self.build_launch(record))
            exit_code = completed.exit_code
            if completed.exit_code not in (None, 0):
                _log.info(
                    "tracker_nonzero_exit settings=%s exit_code=%s status=%s",
                    key,
                    completed.exit_code,
                    completed.status,
                )
        except (RuntimeError, OSError) as exc:
            _log.error("tracker_invocation_failed settings=%s error=%s", key, exc)

        session_path: Path | None = None
        unresolved_reason: str | None = None
        try:
            if self.dry_run:
                session_path = self.resolver.predict(output_root, record.video)
            else:
                session_path = self.resolver.resolve(output_root, before, record.video)
        except (AmbiguousOrMissingSession, OSError) as exc:
            unresolved_reason = str(exc)
            _log.warning("session_unresolved settings=%s error=%s", key, exc)

        archived: Path | None = None
        if self.dry_run:
            classification = (
                Classification(STATUS_DONE)
                if session_path is not None
                else Classification(STATUS_FAILED, "session_unresolved")
            )
        else:
            classification = self._classify(key, session_path)
            archived = self._archive_log(
                record, session_path, shared_log_before=shared_log_before
            )

        timestamp = utc_now_iso()
        session_folder = "" if session_path is None else path_key(session_path, self.config.root)
        persisted = self._persist(
            key,
            status=classification.status,
            timestamp=timestamp,
            session_folder=session_folder,
        )
        reason = classification.reason
        if unresolved_reason and reason == "session_unresolved":
            reason = f"session_unresolved: {unresolved_reason}"

        outcome = JobOutcome(
            settings_file=key,
            video=record.video,
            status=classification.status,
            session_folder=session_folder,
            timestamp=timestamp,
            reason=reason,
            exit_code=exit_code,
            persisted=persisted,
            archived_log=None if archived is None else str(archived),
        )
        _log.info(
            "job_end settings=%s status=%s session=%s reason=%s",
            key,
            outcome.status,
            session_folder or "-",
            reason or "-",
        )
        self._emit({"event": "job_end", **outcome.to_json(), "position": position, "total": total})
        return outcome

    def _classify(self, key: str, session_path: Path | None) -> Classification:
        try:
            return classify_session(
                session_path,
                log_file=self.config.session.log_file,
                markers=self.config.markers,
            )
        except OSError as exc:
            _log.warning("session_log_unreadable settings=%s error=%s", key, exc)
            return Classification(STATUS_FAILED, "log_unreadable")

    def _shared_log_mtime(self) -> float | None:
        try:
            return (self.config.root / self.config.session.log_file).stat().st_mtime
        except OSError:
            return None

    def _archive_log(
        self,
        record: JobRecord,
        session_path: Path | None,
        *,
        shared_log_before: float | None,
    ) -> Path | None:
        """Copy the run's log into the logs directory; failures are only warnings.

        The session's own log is preferred. Without one, the tracker's shared log
        in the working directory is archived if this run touched it, before the
        next job overwrites it.
        """
        log_name = self.config.session.log_file
        source: Path | None = None
        if session_path is not None and (session_path / log_name).is_file():
            source = session_path / log_name
        else:
            current = self._shared_log_mtime()
            if current is not None and current != shared_log_before:
                source = self.config.root / log_name
        if source is None:
            return None

        label = (
            sanitize_for_path(session_path.name)
            if session_path is not None
            else keyed_file_stem(record.settings_file)
        )
        stamp = utc_now_iso().replace(":", "").replace("-", "")
        destination = self.config.logs_dir / f"{label}_{stamp}.log"
        try:
            destination.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(source, destination)
        except OSError as exc:
            _log.warning(
                "log_archive_failed settings=%s source=%s error=%s",
                record.settings_file,
                source,
                exc,
            )
            return None
        return destination

    def _persist(
        self, key: str, *, status: str, timestamp: str, session_folder: str
    ) -> bool:
        try:
            self.registry.update(
                key, status=status, timestamp=timestamp, session_folder=session_folder
            )
        except OSError as exc:
            _log.warning("registry_write_failed settings=%s error=%s", key, exc)
            return False
        return True


def run_track(
    config: ProjectConfig,
    *,
    registry: JobRegistry | None = None,
    tracker: Tracker | None = None,
    resolver: SessionResolver | None = None,
    dry_run: bool = False,
    only: Iterable[str] | None = None,
    max_jobs: int | None = None,
    progress_callback: ProgressEventCallback | None = None,
) -> TrackSummary:
    runner = JobRunner(
        config,
        registry or JobRegistry(config.registry),
        tracker=tracker,
        resolver=resolver,
        dry_run=dry_run,
        progress_callback=progress_callback,
    )
    return runner.run(only=only, max_jobs=max_jobs)
