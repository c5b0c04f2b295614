from __future__ import annotations

import os
from pathlib import Path

import pytest

from trackbatch.models import AmbiguousOrMissingSession, ConfigError
from trackbatch.sessions import (
    ClaimSessionResolver,
    DiffSessionResolver,
    build_resolver,
    list_session_dirs,
)


def _mkdir(root: Path, name: str, *, mtime: float | None = None) -> Path:
    path = root / name
    path.mkdir(parents=True)
    if mtime is not None:
        os.utime(path, (mtime, mtime))
    return path


def test_list_session_dirs_ignores_files_and_missing_root(tmp_path: Path) -> None:
    assert list_session_dirs(tmp_path / "missing") == frozenset()
    _mkdir(tmp_path, "session_a")
    (tmp_path / "idtrackerai.log").write_text("shared log", encoding="utf-8")
    assert list_session_dirs(tmp_path) == frozenset({"session_a"})


def test_diff_resolves_single_new_directory(tmp_path: Path) -> None:
    resolver = DiffSessionResolver()
    _mkdir(tmp_path, "session_clip-00")
    before = resolver.before(tmp_path)
    _mkdir(tmp_path, "session_clip-00_1")
    (tmp_path / "idtrackerai.log").write_text("new shared log", encoding="utf-8")

    resolved = resolver.resolve(tmp_path, before, "clip-00")

    assert resolved == tmp_path / "session_clip-00_1"
    assert resolver.claimed == {"session_clip-00_1"}


def test_diff_fails_without_new_directory(tmp_path: Path) -> None:
    resolver = DiffSessionResolver()
    _mkdir(tmp_path, "session_clip-00")
    before = resolver.before(tmp_path)
    with pytest.raises(AmbiguousOrMissingSession, match="found 0"):
        resolver.resolve(tmp_path, before, "clip-00")


def test_diff_fails_on_multiple_new_directories(tmp_path: Path) -> None:
    resolver = DiffSessionResolver()
    before = resolver.before(tmp_path)
    _mkdir(tmp_path, "session_clip-00")
    _mkdir(tmp_path, "session_other")
    with pytest.raises(AmbiguousOrMissingSession, match="found 2"):
        resolver.resolve(tmp_path, before, "clip-00")
    assert resolver.claimed == set()


def test_claim_picks_newest_unclaimed_match(tmp_path: Path) -> None:
    resolver = ClaimSessionResolver()
    _mkdir(tmp_path, "session_clip-00", mtime=1_000)
    _mkdir(tmp_path, "session_clip-00_1", mtime=2_000)
    _mkdir(tmp_path, "session_clip-000", mtime=9_000)
    _mkdir(tmp_path, "session_other", mtime=9_000)

    first = resolver.resolve(tmp_path, frozenset(), "clip-00")
    second = resolver.resolve(tmp_path, frozenset(), "clip-00")

    assert first.name == "session_clip-00_1"
    assert second.name == "session_clip-00"
    with pytest.raises(AmbiguousOrMissingSession, match="No unclaimed session"):
        resolver.resolve(tmp_path, frozenset(), "clip-00")


def test_claim_requires_video_name(tmp_path: Path) -> None:
    with pytest.raises(AmbiguousOrMissingSession):
        ClaimSessionResolver().resolve(tmp_path, frozenset(), "")


@pytest.mark.parametrize("strategy", ["diff", "claim"])
def test_predict_follows_tracker_suffix_convention(tmp_path: Path, strategy: str) -> None:
    resolver = build_resolver(strategy)
    names = [
        resolver.predict(tmp_path, "clip-00").name,
        resolver.predict(tmp_path, "clip-01").name,
        resolver.predict(tmp_path, "clip-00").name,
        resolver.predict(tmp_path, "clip-00").name,
    ]
    assert names == [
        "session_clip-00",
        "session_clip-01",
        "session_clip-00_1",
        "session_clip-00_2",
    ]
    assert not any(tmp_path.iterdir())


def test_predict_reports_name_collision(tmp_path: Path) -> None:
    resolver = DiffSessionResolver()
    resolver.predict(tmp_path, "clip")
    resolver.predict(tmp_path, "clip")  # -> session_clip_1
    with pytest.raises(AmbiguousOrMissingSession, match="already attributed"):
        resolver.predict(tmp_path, "clip_1")


def test_custom_prefix_and_unknown_strategy(tmp_path: Path) -> None:
    resolver = build_resolver("claim", prefix="run-")
    assert resolver.predict(tmp_path, "clip").name == "run-clip"
    with pytest.raises(ConfigError, match="Unknown session strategy"):
        build_resolver("newest")
