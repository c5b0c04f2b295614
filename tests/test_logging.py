from __future__ import annotations

import logging
from pathlib import Path

import pytest

from trackbatch._logging import get_logger, setup_logging


def _file_handlers() -> list[logging.FileHandler]:
    return [
        handler
        for handler in logging.getLogger("trackbatch").handlers
        if isinstance(handler, logging.FileHandler)
    ]


@pytest.fixture(autouse=True)
def _reset_handlers(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.delenv("TRACKBATCH_LOG_FILE", raising=False)
    monkeypatch.delenv("TRACKBATCH_LOG_LEVEL", raising=False)
    yield
    setup_logging()


def test_default_log_file_records_info_events(tmp_path: Path) -> None:
    target = tmp_path / "logs" / "trackbatch.log"

    assert setup_logging(default_log_file=target) == target.resolve()
    get_logger("runner").info("job_start settings=settings/a.toml")

    assert len(_file_handlers()) == 1
    assert "job_start settings=settings/a.toml" in target.read_text(encoding="utf-8")


def test_env_log_file_wins_over_default(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    chosen = tmp_path / "operator.log"
    monkeypatch.setenv("TRACKBATCH_LOG_FILE", str(chosen))

    assert setup_logging(default_log_file=tmp_path / "logs" / "trackbatch.log") == chosen.resolve()
    assert not (tmp_path / "logs").exists()


def test_repeat_setup_reuses_handlers_and_drops_file(tmp_path: Path) -> None:
    target = tmp_path / "trackbatch.log"
    setup_logging(default_log_file=target)
    setup_logging(default_log_file=target)
    root = logging.getLogger("trackbatch")

    assert len(_file_handlers()) == 1
    assert len(root.handlers) == 2

    assert setup_logging() is None
    assert _file_handlers() == []
    assert root.level == logging.WARNING


def test_log_level_from_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TRACKBATCH_LOG_LEVEL", "debug")
    setup_logging()
    assert logging.getLogger("trackbatch").level == logging.DEBUG

    monkeypatch.setenv("TRACKBATCH_LOG_LEVEL", "nonsense")
    setup_logging()
    assert logging.getLogger("trackbatch").level == logging.WARNING
