from __future__ import annotations

import re
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

import yaml

from trackbatch.classify import DEFAULT_CRITICAL_MARKER, DEFAULT_SUCCESS_MARKER, LogMarkers
from trackbatch.models import ConfigError
from trackbatch.sessions import DEFAULT_SESSION_PREFIX, RESOLVER_STRATEGIES

DEFAULT_CONFIG_FILE = "trackbatch.yaml"
_ENV_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
CONFIG_ALLOWED_KEYS = {
    "registry",
    "settings_dir",
    "settings_glob",
    "output_root",
    "logs_dir",
    "copy_dir",
    "tracker",
    "session",
    "markers",
    "fix_paths",
}
_TRACKER_ALLOWED_KEYS = {
    "command",
    "gui_command",
    "output_flag",
    "transfer_flag",
    "timeout_sec",
    "env",
}
_SESSION_ALLOWED_KEYS = {"prefix", "strategy", "log_file", "trajectory"}
_MARKERS_ALLOWED_KEYS = {"critical", "success"}
_FIX_PATHS_ALLOWED_KEYS = {"find", "replace"}
SETTINGS_PLACEHOLDER = "{settings}"


@dataclass(frozen=True)
class TrackerConfig:
    command: tuple[str, ...] = ("idtrackerai", "--load", SETTINGS_PLACEHOLDER, "--track")
    gui_command: tuple[str, ...] = ("idtrackerai",)
    output_flag: str | None = "--output_dir"
    transfer_flag: str | None = "--knowledge_transfer_folder"
    timeout_sec: int | None = None
    env: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class SessionConfig:
    prefix: str = DEFAULT_SESSION_PREFIX
    strategy: str = "diff"
    log_file: str = "idtrackerai.log"
    trajectory: str = "trajectories/without_gaps.npy"


@dataclass(frozen=True)
class ProjectConfig:
    """Resolved project layout; every path is absolute."""

    root: Path
    registry: Path
    settings_dir: Path
    settings_glob: str
    output_root: Path
    logs_dir: Path
    copy_dir: Path
    tracker: TrackerConfig = field(default_factory=TrackerConfig)
    session: SessionConfig = field(default_factory=SessionConfig)
    markers: LogMarkers = field(default_factory=LogMarkers)
    fix_find: str = "\\"
    fix_replace: str = "/"
    source: Path | None = None

    @property
    def tracker_logs_dir(self) -> Path:
        return self.logs_dir / "tracker"

    def to_json(self) -> dict[str, Any]:
        return {
            "root": str(self.root),
            "source": None if self.source is None else str(self.source),
            "registry": str(self.registry),
            "settings_dir": str(self.settings_dir),
            "settings_glob": self.settings_glob,
            "output_root": str(self.output_root),
            "logs_dir": str(self.logs_dir),
            "copy_dir": str(self.copy_dir),
            "tracker": {
                "command": list(self.tracker.command),
                "gui_command": list(self.tracker.gui_command),
                "output_flag": self.tracker.output_flag,
                "transfer_flag": self.tracker.transfer_flag,
                "timeout_sec": self.tracker.timeout_sec,
                "env": dict(self.tracker.env),
            },
            "session": {
                "prefix": self.session.prefix,
                "strategy": self.session.strategy,
                "log_file": self.session.log_file,
                "trajectory": self.session.trajectory,
            },
            "markers": {
                "critical": self.markers.critical,
                "success": self.markers.success,
            },
            "fix_paths": {"find": self.fix_find, "replace": self.fix_replace},
        }


def default_config_path() -> Path:
    return Path(DEFAULT_CONFIG_FILE).expanduser().resolve()


def _require_mapping(value: Any, *, label: str) -> dict[str, Any]:
    if not isinstance(value, dict):
        raise ConfigError(f"{label} must be a mapping")
    return {str(k): v for k, v in value.items()}


def _reject_unknown(raw: dict[str, Any], allowed: set[str], *, label: str) -> None:
    unknown = sorted(set(raw) - allowed)
    if unknown:
        raise ConfigError(f"{label} has unknown keys: {unknown}")


def _coerce_str(value: Any, *, label: str, default: str) -> str:
    if value is None:
        return default
    if not isinstance(value, str):
        raise ConfigError(f"{label} must be a string")
    trimmed = value.strip()
    if not trimmed:
        raise ConfigError(f"{label} must be a non-empty string")
    return trimmed


def _coerce_optional_flag(value: Any, *, label: str, default: str | None) -> str | None:
    if value is None:
        return default
    if value is False or value == "":
        return None
    if not isinstance(value, str):
        raise ConfigError(f"{label} must be a string, empty string or false")
    return value.strip() or None


def _coerce_optional_positive_int(value: Any, *, label: str) -> int | None:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"{label} must be an integer")
    if value <= 0:
        raise ConfigError(f"{label} must be > 0")
    return int(value)


def _coerce_command(
    value: Any, *, label: str, default: tuple[str, ...]
) -> tuple[str, ...]:
    if value is None:
        return default
    if isinstance(value, str):
        value = value.split()
    if not isinstance(value, list) or not value:
        raise ConfigError(f"{label} must be a non-empty list of strings")
    out: list[str] = []
    for item in value:
        if not isinstance(item, (str, int, float)) or isinstance(item, bool):
            raise ConfigError(f"{label} must contain only strings")
        out.append(str(item))
    return tuple(out)


def _coerce_env_map(value: Any, *, label: str) -> dict[str, str]:
    if value is None:
        return {}
    raw = _require_mapping(value, label=label)
    env: dict[str, str] = {}
    for key, val in raw.items():
        if not _ENV_NAME_RE.match(key):
            raise ConfigError(f"{label}.{key} is not a valid environment variable name")
        if not isinstance(val, (str, int, float, bool)):
            raise ConfigError(f"{label}.{key} must be a scalar value (str/int/float/bool)")
        env[key] = str(val)
    return env


def _resolve_path(value: Any, *, label: str, default: str, base: Path) -> Path:
    text = _coerce_str(value, label=label, default=default)
    path = Path(text).expanduser()
    if not path.is_absolute():
        path = base / path
    return path.resolve()


def _parse_tracker(value: Any) -> TrackerConfig:
    defaults = TrackerConfig()
    if value is None:
        return defaults
    raw = _require_mapping(value, label="tracker")
    _reject_unknown(raw, _TRACKER_ALLOWED_KEYS, label="tracker")
    command = _coerce_command(
        raw.get("command"), label="tracker.command", default=defaults.command
    )
    if SETTINGS_PLACEHOLDER not in command:
        raise ConfigError(
            f"tracker.command must contain the {SETTINGS_PLACEHOLDER} placeholder"
        )
    return TrackerConfig(
        command=command,
        gui_command=_coerce_command(
            raw.get("gui_command"),
            label="tracker.gui_command",
            default=defaults.gui_command,
        ),
        output_flag=_coerce_optional_flag(
            raw.get("output_flag"),
            label="tracker.output_flag",
            default=defaults.output_flag,
        ),
        transfer_flag=_coerce_optional_flag(
            raw.get("transfer_flag"),
            label="tracker.transfer_flag",
            default=defaults.transfer_flag,
        ),
        timeout_sec=_coerce_optional_positive_int(
            raw.get("timeout_sec"), label="tracker.timeout_sec"
        ),
        env=_coerce_env_map(raw.get("env"), label="tracker.env"),
    )


def _parse_session(value: Any) -> SessionConfig:
    defaults = SessionConfig()
    if value is None:
        return defaults
    raw = _require_mapping(value, label="session")
    _reject_unknown(raw, _SESSION_ALLOWED_KEYS, label="session")
    strategy = _coerce_str(
        raw.get("strategy"), label="session.strategy", default=defaults.strategy
    )
    if strategy not in RESOLVER_STRATEGIES:
        raise ConfigError(
            f"session.strategy must be one of {list(RESOLVER_STRATEGIES)}"
        )
    return SessionConfig(
        prefix=_coerce_str(raw.get("prefix"), label="session.prefix", default=defaults.prefix),
        strategy=strategy,
        log_file=_coerce_str(
            raw.get("log_file"), label="session.log_file", default=defaults.log_file
        ),
        trajectory=_coerce_str(
            raw.get("trajectory"),
            label="session.trajectory",
            default=defaults.trajectory,
        ),
    )


def _parse_markers(value: Any) -> LogMarkers:
    if value is None:
        return LogMarkers()
    raw = _require_mapping(value, label="markers")
    _reject_unknown(raw, _MARKERS_ALLOWED_KEYS, label="markers")
    return LogMarkers(
        critical=_coerce_str(
            raw.get("critical"), label="markers.critical", default=DEFAULT_CRITICAL_MARKER
        ),
        success=_coerce_str(
            raw.get("success"), label="markers.success", default=DEFAULT_SUCCESS_MARKER
        ),
    )


def _parse_fix_paths(value: Any) -> tuple[str, str]:
    if value is None:
        return "\\", "/"
    raw = _require_mapping(value, label="fix_paths")
    _reject_unknown(raw, _FIX_PATHS_ALLOWED_KEYS, label="fix_paths")
    find = raw.get("find", "\\")
    replace = raw.get("replace", "/")
    if not isinstance(find, str) or not isinstance(replace, str):
        raise ConfigError("fix_paths.find and fix_paths.replace must be strings")
    return find, replace


def parse_project_config(
    data: Any, *, base: Path, source: Path | None = None
) -> ProjectConfig:
    raw = {} if data is None else _require_mapping(data, label="config")
    _reject_unknown(raw, CONFIG_ALLOWED_KEYS, label="config")
    base = Path(base).resolve()
    fix_find, fix_replace = _parse_fix_paths(raw.get("fix_paths"))
    return ProjectConfig(
        root=base,
        registry=_resolve_path(raw.get("registry"), label="registry", default="jobs.csv", base=base),
        settings_dir=_resolve_path(
            raw.get("settings_dir"), label="settings_dir", default=".", base=base
        ),
        settings_glob=_coerce_str(
            raw.get("settings_glob"), label="settings_glob", default="**/*.toml"
        ),
        output_root=_resolve_path(
            raw.get("output_root"), label="output_root", default="sessions", base=base
        ),
        logs_dir=_resolve_path(raw.get("logs_dir"), label="logs_dir", default="logs", base=base),
        copy_dir=_resolve_path(
            raw.get("copy_dir"), label="copy_dir", default="trajectories", base=base
        ),
        tracker=_parse_tracker(raw.get("tracker")),
        session=_parse_session(raw.get("session")),
        markers=_parse_markers(raw.get("markers")),
        fix_find=fix_find,
        fix_replace=fix_replace,
        source=source,
    )


def load_project_config(
    path: str | Path | None = None, *, registry: str | Path | None = None
) -> ProjectConfig:
    """Load the project config file; a missing default file means built-in defaults.

    An explicitly requested *path* must exist. Relative paths inside the file
    resolve against the file's directory, otherwise against the working
    directory.
    """
    explicit = path is not None
    config_path = Path(path).expanduser().resolve() if explicit else default_config_path()
    if not config_path.exists():
        if explicit:
            raise ConfigError(f"Config file not found: {config_path}")
        config = parse_project_config(None, base=Path.cwd())
    else:
        try:
            data = yaml.safe_load(config_path.read_text(encoding="utf-8"))
        except yaml.YAMLError as exc:
            raise ConfigError(f"Invalid YAML in {config_path}: {exc}") from exc
        config = parse_project_config(data, base=config_path.parent, source=config_path)

    if registry is None:
        return config
    registry_path = Path(registry).expanduser()
    if not registry_path.is_absolute():
        registry_path = Path.cwd() / registry_path
    return replace(config, registry=registry_path.resolve())
