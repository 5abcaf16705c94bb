"""Wrappers for text file I/O with consistent encoding (UTF-8) and crash-safe writes."""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any

PathLike = Path | str

TEMP_SUFFIX = ".tmp"


def _as_path(path: PathLike) -> Path:
    return path if isinstance(path, Path) else Path(path)


def read_text(path: PathLike, errors: str = "strict", **kwargs: Any) -> str:
    """Read path as text with UTF-8 encoding. Forwards extra kwargs to Path.read_text."""
    return _as_path(path).read_text(encoding="utf-8", errors=errors, **kwargs)


def write_text(path: PathLike, text: str, **kwargs: Any) -> None:
    """Write text to path with UTF-8 encoding. Forwards extra kwargs to Path.write_text."""
    _as_path(path).write_text(text, encoding="utf-8", **kwargs)


def temp_path_for(path: PathLike) -> Path:
    """Sibling temp file used while *path* is being rewritten (``tasks.json.tmp``)."""
    p = _as_path(path)
    return p.with_name(p.name + TEMP_SUFFIX)


def dump_json(data: Any) -> str:
    """Pretty-print JSON the way task documents are stored on disk."""
    return json.dumps(data, indent=2, ensure_ascii=False) + "\n"


def write_text_atomic(path: PathLike, text: str) -> None:
    """Write *text* to a sibling temp file, fsync it, then rename it over *path*.

    A reader sees either the previous complete file or the new complete file.
    The temp file is removed when the write or the rename fails.
    """
    p = _as_path(path)
    tmp = temp_path_for(p)
    p.parent.mkdir(parents=True, exist_ok=True)
    try:
        with open(tmp, "w", encoding="utf-8", newline="\n") as fh:
            fh.write(text)
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp, p)
    except OSError:
        tmp.unlink(missing_ok=True)
        raise


def write_json_atomic(path: PathLike, data: Any) -> None:
    write_text_atomic(path, dump_json(data))


def write_text_exclusive(path: PathLike, text: str) -> None:
    """Create *path* with *text*; raises ``FileExistsError`` instead of overwriting."""
    p = _as_path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    try:
        with open(p, "x", encoding="utf-8", newline="\n") as fh:
            fh.write(text)
            fh.flush()
            os.fsync(fh.fileno())
    except FileExistsError:
        # Not ours to remove.
        raise
    except OSError:
        p.unlink(missing_ok=True)
        raise
