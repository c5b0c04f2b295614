from __future__ import annotations

import datetime as dt
import hashlib
import os
from pathlib import Path


def utc_now_iso() -> str:
    return (
        dt.datetime.now(dt.timezone.utc)
        .replace(microsecond=0)
        .isoformat()
        .replace("+00:00", "Z")
    )


def atomic_write_text(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    try:
        # newline="" keeps csv's \r\n row terminators untouched on every platform.
        with tmp.open("w", encoding="utf-8", newline="") as handle:
            handle.write(content)
            handle.flush()
            os.fsync(handle.fileno())
        tmp.replace(path)
    except Exception:
        # Clean up the temp file so we don't leave partial writes on disk.
        try:
            tmp.unlink(missing_ok=True)
        except OSError:
            pass
        raise


def sanitize_for_path(value: str) -> str:
    safe = []
    for char in value:
        if char.isalnum() or char in ("-", "_", "."):
            safe.append(char)
        else:
            safe.append("-")
    out = "".join(safe).strip("-")
    return out or "x"


def keyed_file_stem(key: str, *, max_length: int = 80) -> str:
    """Filesystem-safe stem for *key*, bounded in length and unique per key."""
    digest = hashlib.sha1(key.encode("utf-8")).hexdigest()[:10]
    readable = sanitize_for_path(key)[:max_length].rstrip("-.")
    return f"{readable}-{digest}"


def path_key(path: Path, root: Path) -> str:
    """Render *path* relative to *root* when possible, with forward slashes."""
    resolved = Path(path).resolve()
    try:
        return resolved.relative_to(Path(root).resolve()).as_posix()
    except ValueError:
        return resolved.as_posix()


def resolve_key(value: str, root: Path) -> Path:
    candidate = Path(value).expanduser()
    if candidate.is_absolute():
        return candidate
    return (Path(root) / candidate).resolve()
