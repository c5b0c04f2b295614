"""Logging for trackbatch.

Modules log under ``trackbatch.<name>`` in ``key=value`` form. The CLI owns
the handlers on the ``trackbatch`` logger:

* a stderr stream whose level comes from ``TRACKBATCH_LOG_LEVEL``
  (default WARNING);
* a lifecycle file recording at least INFO. It goes to ``TRACKBATCH_LOG_FILE``
  when set. Otherwise a real ``track`` run writes ``<logs_dir>/trackbatch.log``,
  so an unattended overnight batch always leaves a record of which job ran,
  how it was resolved and how it was classified.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

LOGGER_NAME = "trackbatch"
LOG_FILE_NAME = "trackbatch.log"
LOG_LEVEL_ENV = "TRACKBATCH_LOG_LEVEL"
LOG_FILE_ENV = "TRACKBATCH_LOG_FILE"

_FORMAT = "ts=%(asctime)s level=%(levelname)s logger=%(name)s msg=%(message)s"
_ROLE_ATTR = "_trackbatch_role"


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(f"{LOGGER_NAME}.{name}")


def _stream_level(level: int | None) -> int:
    if level is not None:
        return level
    name = os.environ.get(LOG_LEVEL_ENV, "").strip().upper()
    resolved = logging.getLevelName(name) if name else None
    return resolved if isinstance(resolved, int) else logging.WARNING


def _handler(logger: logging.Logger, role: str) -> logging.Handler | None:
    return next(
        (h for h in logger.handlers if getattr(h, _ROLE_ATTR, None) == role), None
    )


def _drop(logger: logging.Logger, role: str) -> None:
    handler = _handler(logger, role)
    if handler is not None:
        logger.removeHandler(handler)
        handler.close()


def _file_target(default_log_file: Path | None) -> Path | None:
    raw = os.environ.get(LOG_FILE_ENV, "").strip()
    if raw:
        return Path(raw).expanduser().resolve()
    if default_log_file is not None:
        return Path(default_log_file).resolve()
    return None


def setup_logging(
    *, level: int | None = None, default_log_file: Path | None = None
) -> Path | None:
    """Configure the ``trackbatch`` handlers; return the lifecycle log path, if any.

    Safe to call repeatedly: the stream handler is reused and the file handler
    is swapped only when the target changes.
    """
    logger = logging.getLogger(LOGGER_NAME)
    stream_level = _stream_level(level)

    stream = _handler(logger, "stream")
    if stream is None:
        stream = logging.StreamHandler()
        setattr(stream, _ROLE_ATTR, "stream")
        stream.setFormatter(logging.Formatter(_FORMAT))
        logger.addHandler(stream)
    stream.setLevel(stream_level)

    target = _file_target(default_log_file)
    if target is None:
        _drop(logger, "file")
        logger.setLevel(stream_level)
        return None

    current = _handler(logger, "file")
    if not (
        isinstance(current, logging.FileHandler)
        and Path(current.baseFilename).resolve() == target
    ):
        _drop(logger, "file")
        target.parent.mkdir(parents=True, exist_ok=True)
        current = logging.FileHandler(target, encoding="utf-8")
        setattr(current, _ROLE_ATTR, "file")
        current.setFormatter(logging.Formatter(_FORMAT))
        logger.addHandler(current)
    file_level = min(stream_level, logging.INFO)
    current.setLevel(file_level)
    logger.setLevel(min(stream_level, file_level))
    return target
