"""Match a finished tracker invocation to the session folder it created.

The tracker reports nothing machine-readable about where it wrote its output;
a run only leaves a new ``<prefix><video>`` directory (``_1``, ``_2``... on
repeats) under the output root. Two strategies are available:

``diff``
    List the output root before and after the call; the single new directory
    is the session. Immune to naming collisions, requires that nothing else
    writes to the output root while a job runs. This is the default.

``claim``
    Pick the most recently modified directory whose name matches the job's
    video and that no earlier job of the same batch has claimed.

Both keep a run-scoped claimed set, and both predict names for dry runs the
way the tracker would assign them.
"""

from __future__ import annotations

import re
from collections import Counter
from pathlib import Path
from typing import Protocol

from trackbatch._logging import get_logger
from trackbatch.models import AmbiguousOrMissingSession, ConfigError

_log = get_logger("sessions")

DEFAULT_SESSION_PREFIX = "session_"
RESOLVER_STRATEGIES = ("diff", "claim")


def list_session_dirs(output_root: Path) -> frozenset[str]:
    """Names of the immediate subdirectories of *output_root*."""
    root = Path(output_root)
    if not root.is_dir():
        return frozenset()
    return frozenset(entry.name for entry in root.iterdir() if entry.is_dir())


class SessionResolver(Protocol):
    name: str
    prefix: str
    claimed: set[str]

    def before(self, output_root: Path) -> frozenset[str]: ...

    def resolve(
        self, output_root: Path, before: frozenset[str], video: str
    ) -> Path: ...

    def predict(self, output_root: Path, video: str) -> Path: ...


class _RunScopedResolver:
    name = ""

    def __init__(self, *, prefix: str = DEFAULT_SESSION_PREFIX):
        self.prefix = prefix
        self.claimed: set[str] = set()
        self._predicted_per_video: Counter[str] = Counter()

    def session_name(self, video: str, repeat: int = 0) -> str:
        base = f"{self.prefix}{video}"
        return base if repeat == 0 else f"{base}_{repeat}"

    def before(self, output_root: Path) -> frozenset[str]:
        return list_session_dirs(output_root)

    def _claim(self, name: str) -> None:
        if name in self.claimed:
            raise AmbiguousOrMissingSession(
                f"Session folder '{name}' was already attributed in this batch"
            )
        self.claimed.add(name)

    def predict(self, output_root: Path, video: str) -> Path:
        """Name the tracker would give this job's session, without creating it."""
        if not video:
            raise AmbiguousOrMissingSession(
                "Cannot predict a session folder for a job without a video name"
            )
        repeat = self._predicted_per_video[video]
        name = self.session_name(video, repeat)
        self._claim(name)
        self._predicted_per_video[video] += 1
        _log.debug("session_predicted video=%s name=%s", video, name)
        return Path(output_root) / name


class DiffSessionResolver(_RunScopedResolver):
    name = "diff"

    def resolve(self, output_root: Path, before: frozenset[str], video: str) -> Path:
        after = list_session_dirs(output_root)
        created = sorted(after - before)
        if len(created) != 1:
            raise AmbiguousOrMissingSession(
                f"Expected exactly one new session folder under {output_root}, "
                f"found {len(created)}: {created}"
            )
        name = created[0]
        self._claim(name)
        _log.info("session_resolved strategy=diff video=%s name=%s", video, name)
        return Path(output_root) / name


class ClaimSessionResolver(_RunScopedResolver):
    name = "claim"

    def _pattern(self, video: str) -> re.Pattern[str]:
        return re.compile(rf"^{re.escape(self.prefix + video)}(?:_(\d+))?$")

    def resolve(self, output_root: Path, before: frozenset[str], video: str) -> Path:
        if not video:
            raise AmbiguousOrMissingSession(
                "Cannot claim a session folder for a job without a video name"
            )
        pattern = self._pattern(video)
        root = Path(output_root)
        candidates = [
            root / name
            for name in list_session_dirs(root)
            if pattern.match(name) and name not in self.claimed
        ]
        if not candidates:
            raise AmbiguousOrMissingSession(
                f"No unclaimed session folder for video '{video}' under {root}"
            )
        newest = max(candidates, key=lambda path: (path.stat().st_mtime, path.name))
        self._claim(newest.name)
        _log.info("session_resolved strategy=claim video=%s name=%s", video, newest.name)
        return newest


def build_resolver(
    strategy: str, *, prefix: str = DEFAULT_SESSION_PREFIX
) -> DiffSessionResolver | ClaimSessionResolver:
    if strategy == "diff":
        return DiffSessionResolver(prefix=prefix)
    if strategy == "claim":
        return ClaimSessionResolver(prefix=prefix)
    raise ConfigError(
        f"Unknown session strategy '{strategy}'. Expected one of "
        f"{list(RESOLVER_STRATEGIES)}."
    )
