"""Change-detection keys built from file paths and mtimes.

The fingerprint for a file list is "|path|mtime" for every file, sorted by
path, with mtimes truncated to whole seconds. Touching any file, or adding
or removing one from the list, yields a different string.

Files that cannot be stat'd raise. A missing input is an error for the
caller, not a file to leave out of the fingerprint.
"""

from __future__ import annotations

import os
from collections.abc import Iterable
from dataclasses import dataclass


@dataclass(frozen=True)
class FileStamp:
    path: str
    mtime: int

    def render(self) -> str:
        return f"|{self.path}|{self.mtime}"


def file_mtime_seconds(path: str | os.PathLike) -> int:
    """Modification time of path in whole seconds (raises OSError if missing)."""
    # st_mtime is a float and rounds up within ~100ns of the next second.
    return os.stat(path).st_mtime_ns // 1_000_000_000


def stamp_files(files: Iterable[str | os.PathLike]) -> list[FileStamp]:
    """Stat every file, sorted lexicographically by path."""
    paths = sorted(os.fspath(f) for f in files)
    return [FileStamp(path=p, mtime=file_mtime_seconds(p)) for p in paths]


def file_fingerprint(files: Iterable[str | os.PathLike]) -> str:
    return "".join(stamp.render() for stamp in stamp_files(files))
