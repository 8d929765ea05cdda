"""Expansion of user-supplied local paths."""

from __future__ import annotations

import os
import sys


def _home_dir() -> str:
    env = "USERPROFILE" if sys.platform == "win32" else "HOME"
    home = os.environ.get(env, "")
    if not home:
        raise RuntimeError(f"${env} is not defined")
    return home


def expand(orig: str) -> str:
    """Expand ``~`` and ``~/...`` and return an absolute path.

    Paths such as ``~foo/bar`` are not supported and raise ``ValueError``.
    """
    if not orig:
        raise ValueError("empty path")
    home = _home_dir()
    s = orig
    if s.startswith("~"):
        if s == "~" or s.startswith("~/"):
            s = home + s[1:]
        else:
            raise ValueError(f"unexpandable path {orig!r}")
    return os.path.abspath(s)