from __future__ import annotations

import datetime as dt
import re
import tomllib
from pathlib import Path, PureWindowsPath
from typing import Any, Iterable

import yaml

from trackbatch._logging import get_logger
from trackbatch.config import ProjectConfig
from trackbatch.models import ConfigError, VideoInfo
from trackbatch.registry import JobRegistry
from trackbatch.utils import path_key

_log = get_logger("settings")

_YAML_SUFFIXES = {".yaml", ".yml", ".json"}
_DATE_TIME_RE = re.compile(
    r"(?<!\d)(?P<year>\d{4})[-_.]?(?P<month>\d{2})[-_.]?(?P<day>\d{2})"
    r"(?:[-_T ]?(?P<hour>\d{2})[-_:.h]?(?P<minute>\d{2})(?:[-_:.m]?(?P<second>\d{2}))?)?"
    r"(?!\d)"
)
_PART_RE = re.compile(r"(?:^|[^A-Za-z0-9])(?:part|pt)[-_ ]?(?P<part>\d+)", re.IGNORECASE)


def discover_settings(
    settings_dir: Path, pattern: str, *, exclude: Iterable[Path] = ()
) -> list[Path]:
    root = Path(settings_dir)
    if not root.is_dir():
        raise ConfigError(f"Settings directory not found: {root}")
    excluded = [Path(path).resolve() for path in exclude]
    found: list[Path] = []
    for path in sorted(root.glob(pattern)):
        if not path.is_file():
            continue
        resolved = path.resolve()
        if any(resolved.is_relative_to(item) for item in excluded):
            continue
        found.append(resolved)
    return found


def fix_settings_text(text: str, *, find: str, replace: str) -> str:
    if not find:
        return text
    return text.replace(find, replace)


def fix_settings_file(
    path: Path, *, find: str, replace: str, dry_run: bool = False
) -> bool:
    """Apply the configured text substitution; return True when it changes the file."""
    original = path.read_text(encoding="utf-8")
    fixed = fix_settings_text(original, find=find, replace=replace)
    if fixed == original:
        return False
    if not dry_run:
        path.write_text(fixed, encoding="utf-8")
        _log.info("settings_fixed path=%s", path)
    return True


def _parse_document(path: Path, text: str) -> dict[str, Any]:
    try:
        if path.suffix.lower() in _YAML_SUFFIXES:
            data = yaml.safe_load(text)
        else:
            data = tomllib.loads(text)
    except (tomllib.TOMLDecodeError, yaml.YAMLError) as exc:
        raise ConfigError(f"Cannot parse settings document {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"Settings document {path} must be a key-value mapping")
    return data


def read_video_paths(
    path: Path, *, find: str = "", replace: str = ""
) -> list[str]:
    text = path.read_text(encoding="utf-8")
    try:
        data = _parse_document(path, text)
    except ConfigError:
        fixed = fix_settings_text(text, find=find, replace=replace)
        if fixed == text:
            raise
        data = _parse_document(path, fixed)
    raw = data.get("video_paths")
    if isinstance(raw, str):
        raw = [raw]
    if not isinstance(raw, list) or not raw:
        raise ConfigError(f"Settings document {path} has no video_paths entries")
    return [str(item) for item in raw]


def video_stem(video_path: str) -> str:
    # Settings written on Windows keep backslash separators.
    if "\\" in video_path:
        return PureWindowsPath(video_path).stem
    return Path(video_path).stem


def parse_datetime(stem: str) -> str:
    match = _DATE_TIME_RE.search(stem)
    if match is None:
        return ""
    parts = match.groupdict()
    try:
        date = dt.date(int(parts["year"]), int(parts["month"]), int(parts["day"]))
        if parts["hour"] is None:
            return date.isoformat()
        stamp = dt.datetime(
            date.year,
            date.month,
            date.day,
            int(parts["hour"]),
            int(parts["minute"]),
            int(parts["second"] or 0),
        )
    except ValueError:
        return ""
    return stamp.isoformat()


def parse_part(stem: str) -> str:
    match = _PART_RE.search(stem)
    if match is None:
        return ""
    return str(int(match.group("part")))


def parse_video_name(stem: str) -> VideoInfo:
    return VideoInfo(video=stem, datetime=parse_datetime(stem), part=parse_part(stem))


def video_info_for(path: Path, *, find: str = "", replace: str = "") -> VideoInfo:
    try:
        video_paths = read_video_paths(path, find=find, replace=replace)
    except (ConfigError, OSError, UnicodeDecodeError) as exc:
        _log.warning("Cannot derive video name for %s: %s", path, exc)
        return VideoInfo()
    return parse_video_name(video_stem(video_paths[0]))


def discover_project_settings(config: ProjectConfig) -> list[Path]:
    found = discover_settings(
        config.settings_dir,
        config.settings_glob,
        exclude=(config.output_root, config.logs_dir, config.copy_dir),
    )
    if not found:
        raise ConfigError(
            f"No settings documents matching '{config.settings_glob}' "
            f"under {config.settings_dir}"
        )
    return found


def fix_project_settings(config: ProjectConfig, *, dry_run: bool = False) -> list[Path]:
    """Fix every discovered document; unreadable ones are skipped with a warning."""
    changed: list[Path] = []
    for path in discover_project_settings(config):
        try:
            fixed = fix_settings_file(
                path, find=config.fix_find, replace=config.fix_replace, dry_run=dry_run
            )
        except (OSError, UnicodeDecodeError) as exc:
            _log.warning("fix_paths_failed path=%s error=%s", path, exc)
            continue
        if fixed:
            changed.append(path)
    return changed


def register_project_settings(
    config: ProjectConfig, registry: JobRegistry | None = None
) -> dict[str, Any]:
    """Add a pending job for every settings document not yet in the registry."""
    registry = registry or JobRegistry(config.registry)
    paths = discover_project_settings(config)
    created = False
    if not registry.exists:
        registry.create()
        created = True
    registry.load()
    known = set(registry.keys())
    candidates = [
        (
            key,
            video_info_for(path, find=config.fix_find, replace=config.fix_replace),
        )
        for path in paths
        if (key := path_key(path, config.root)) not in known
    ]
    added = registry.register_new(candidates)
    return {
        "registry": str(registry.path),
        "created": created,
        "discovered": len(paths),
        "added": added,
        "total": len(registry.records),
    }
