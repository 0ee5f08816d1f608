"""Opening files and creating directories on demand."""

from __future__ import annotations

import os
from pathlib import Path
from typing import IO, Optional, Union

PathLike = Union[str, "os.PathLike[str]"]

_DIR_MODE = 0o700


def open_file(path: PathLike, mode: str) -> Optional[IO]:
    """Open a file, creating parent directories when writing.

    A mode starting with ``R`` behaves like ``r`` but returns None when the
    file does not exist.
    """
    missing_ok = mode.startswith("R")
    if missing_ok:
        mode = "r" + mode[1:]

    while True:
        try:
            return open(path, mode)
        except FileNotFoundError:
            if missing_ok:
                return None
            if mode[:1] not in ("w", "a"):
                raise
            parent = Path(path).parent
            if parent.is_dir():
                raise
            make_dirs(parent)


def make_dirs(path: PathLike) -> bool:
    """Create a directory and all its missing parents, like ``mkdir -p``.

    Raises FileExistsError when the path itself is a non-directory and
    NotADirectoryError when one of its parents is.
    """
    target = Path(path)
    steps = [*reversed(target.parents), target]
    last = len(steps) - 1

    for index, step in enumerate(steps):
        while True:
            if step.exists():
                if not step.is_dir():
                    if index == last:
                        raise FileExistsError(
                            f"could not create directory \"{target}\": "
                            f"\"{step}\" exists and is not a directory"
                        )
                    raise NotADirectoryError(
                        f"could not create directory \"{target}\": "
                        f"\"{step}\" is not a directory"
                    )
                break
            try:
                step.mkdir(mode=_DIR_MODE)
                break
            except FileExistsError:
                # another thread may have created it; check it again
                continue
    return True