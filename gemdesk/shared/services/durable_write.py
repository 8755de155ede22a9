"""Crash-safe replacement and removal of small files."""
from __future__ import annotations

import contextlib
import os
import tempfile
from collections.abc import Iterator
from pathlib import Path
from typing import IO


def fsync_dir(dir_path: Path) -> None:
    """Flush directory metadata (renames, unlinks). No-op where unsupported."""
    flags = os.O_RDONLY | getattr(os, "O_DIRECTORY", 0)
    try:
        fd = os.open(str(dir_path), flags)
    except OSError:
        # Directories cannot be opened this way on Windows.
        return
    try:
        os.fsync(fd)
    except OSError:
        pass
    finally:
        os.close(fd)


@contextlib.contextmanager
def replacing(path: Path, *, encoding: str = "utf-8") -> Iterator[IO[str]]:
    """Yield a temp file beside *path* that replaces it on a clean exit.

    Readers see either the previous file or the complete new one. If the
    block raises, *path* is untouched and the temp file is removed.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = tempfile.NamedTemporaryFile(
        "w",
        encoding=encoding,
        dir=str(path.parent),
        prefix=f".{path.name}.",
        suffix=".tmp",
        delete=False,
    )
    tmp_path = Path(tmp.name)
    replaced = False
    try:
        with tmp:
            yield tmp
            tmp.flush()
            os.fsync(tmp.fileno())
        os.replace(tmp_path, path)
        replaced = True
    finally:
        if not replaced:
            tmp_path.unlink(missing_ok=True)
    fsync_dir(path.parent)


def unlink_durable(path: Path) -> bool:
    """Remove *path* and flush its directory. Returns False if it was absent."""
    try:
        path.unlink()
    except FileNotFoundError:
        return False
    fsync_dir(path.parent)
    return True
