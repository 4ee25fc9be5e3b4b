"""Single-instance guard: an exclusive flock beside the working directory."""

from __future__ import annotations

import fcntl
import os
from contextlib import contextmanager
from typing import Generator

from logging_config import setup_logging

logger = setup_logging(__name__, level="INFO", log_name="converter")


class LockHeldError(RuntimeError):
    """Another process holds the lock."""


def lock_path(name: str, directory: str) -> str:
    """`<parent of directory>/<name>.lock`"""
    parent = os.path.dirname(os.path.abspath(directory))
    return os.path.join(parent, f"{name}.lock")


def _same_file(fd: int, path: str) -> bool:
    try:
        current = os.stat(path)
    except FileNotFoundError:
        return False
    opened = os.fstat(fd)
    return (current.st_dev, current.st_ino) == (opened.st_dev, opened.st_ino)


@contextmanager
def single_instance(name: str, directory: str) -> Generator[str, None, None]:
    """Hold `<name>.lock` for the duration of the block; raises LockHeldError if it is taken.

    A lock taken on a file the previous holder has already unlinked is dropped and retried.
    """
    path = lock_path(name, directory)
    os.makedirs(os.path.dirname(path), exist_ok=True)
    while True:
        fd = os.open(path, os.O_CREAT | os.O_RDWR, 0o644)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError as e:
            os.close(fd)
            raise LockHeldError(f"{path} is held by another process") from e
        if _same_file(fd, path):
            break
        logger.debug(f"Lock file {path} was replaced while locking, retrying")
        fcntl.flock(fd, fcntl.LOCK_UN)
        os.close(fd)

    logger.debug(f"Acquired lock {path}")
    try:
        yield path
    finally:
        # Unlink while still holding the lock; waiters re-check the path after locking
        try:
            os.unlink(path)
        except FileNotFoundError:
            pass
        fcntl.flock(fd, fcntl.LOCK_UN)
        os.close(fd)
        logger.debug(f"Released lock {path}")
