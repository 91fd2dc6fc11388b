"""Executable lookup on PATH (and PATHEXT on Windows)."""

from __future__ import annotations

import os
import re
from typing import Iterator, Optional, Sequence

_WIN_SEPARATORS = re.compile(r"[:/\\]")
DEFAULT_PATHEXT = ".COM;.EXE;.BAT;.CMD"


def _split(value: Optional[str]) -> list[str]:
    return [part for part in (value or "").split(os.pathsep) if part]


def _path_dirs(path: Optional[Sequence[str]]) -> Iterator[str]:
    if path is None:
        path = _split(os.environ.get("PATH", os.defpath))
    for directory in path:
        yield os.path.expanduser(directory)


def _extensions(pathext: Optional[Sequence[str]]) -> list[str]:
    if pathext is None:
        value = os.environ.get("PATHEXT") or DEFAULT_PATHEXT
        pathext = [ext for ext in value.split(";") if ext]
    return list(pathext)


def find_executable(
    name: str,
    path: Optional[Sequence[str]] = None,
    pathext: Optional[Sequence[str]] = None,
    windows: Optional[bool] = None,
) -> Optional[str]:
    """Locate ``name`` the way the platform's process model expects.

    Args:
        name: Program name, or a relative/absolute path.
        path: Directories to search. Defaults to ``$PATH``.
        pathext: Extensions tried for bare names on Windows. Defaults to
            ``$PATHEXT``.
        windows: Force the Windows or POSIX rules. Defaults to the host's.

    Returns:
        The path to run, or None if nothing matched.
    """
    if windows is None:
        windows = os.name == "nt"
    if windows:
        return _find_windows(name, path, pathext)
    return _find_posix(name, path)


def _find_posix(name: str, path: Optional[Sequence[str]]) -> Optional[str]:
    # A name with a separator is used as is; exec reports a missing file.
    if os.sep in name or (os.altsep and os.altsep in name):
        return name
    for directory in _path_dirs(path):
        candidate = os.path.join(directory, name)
        if os.path.isfile(candidate):
            return candidate
    return None


def _find_windows(name: str, path: Optional[Sequence[str]], pathext: Optional[Sequence[str]]) -> Optional[str]:
    basename = re.split(r"[/\\]", name)[-1]
    has_extension = "." in basename

    if _WIN_SEPARATORS.search(name):
        if has_extension:
            return name
        for ext in _extensions(pathext):
            candidate = name + ext
            if os.path.isfile(candidate):
                return candidate
        return None

    for directory in _path_dirs(path):
        if has_extension:
            candidate = os.path.join(directory, name)
            if os.path.isfile(candidate):
                return candidate
            continue
        for ext in _extensions(pathext):
            candidate = os.path.join(directory, name + ext)
            if os.path.isfile(candidate):
                return candidate
    return None
