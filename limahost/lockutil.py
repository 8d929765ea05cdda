"""Exclusive locks on directories."""

from __future__ import annotations

import contextlib
import logging
import os
import sys
from typing import Callable, Iterator, TypeVar

_log = logging.getLogger(__name__)

T = TypeVar("T")

if sys.platform == "win32":
    import msvcrt

    @contextlib.contextmanager
    def dir_lock(directory: "str | os.PathLike[str]") -> Iterator[None]:
        """Hold a lock on ``<directory>.lock`` for the duration of the block."""
        directory = os.fspath(directory)
        with open(directory + ".lock", "a+b") as fh:
            fd = fh.fileno()
            fh.seek(0)
            try:
                msvcrt.locking(fd, msvcrt.LK_NBLCK, 1)
            except OSError as e:
                raise OSError(f"failed to lock {directory!r}: {e}") from e
            try:
                yield
            finally:
                fh.seek(0)
                try:
                    msvcrt.locking(fd, msvcrt.LK_UNLCK, 1)
                except OSError:
                    _log.exception("failed to unlock %r", directory)

else:
    import fcntl

    @contextlib.contextmanager
    def dir_lock(directory: "str | os.PathLike[str]") -> Iterator[None]:
        """Hold an exclusive flock on the directory for the duration of the block."""
        directory = os.fspath(directory)
        fd = os.open(directory, os.O_RDONLY)
        try:
            try:
                fcntl.flock(fd, fcntl.LOCK_EX)
            except OSError as e:
                raise OSError(f"failed to lock {directory!r}: {e}") from e
            try:
                yield
            finally:
                try:
                    fcntl.flock(fd, fcntl.LOCK_UN)
                except OSError:
                    _log.exception("failed to unlock %r", directory)
        finally:
            os.close(fd)


def with_dir_lock(directory: "str | os.PathLike[str]", fn: Callable[[], T]) -> T:
    """Call ``fn`` while holding the directory lock and return its result."""
    with dir_lock(directory):
        return fn()