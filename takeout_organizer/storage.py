"""
Storage helpers shared by the metadata writer and the organizer.

Transient I/O errors are retried a bounded number of times; anything
left over surfaces as StorageError so it becomes an IOFailure outcome.
"""
import errno
import logging
import os
import shutil
import tempfile
import time
from pathlib import Path
from typing import Callable, TypeVar

from . import config
from .exceptions import StorageError

T = TypeVar('T')

TRANSIENT_ERRNOS = {errno.EAGAIN, errno.EBUSY, errno.EINTR, errno.ETIMEDOUT}


def retry_io(fn: Callable[[], T],
             what: str,
             attempts: int = config.IO_RETRY_ATTEMPTS,
             delay: float = config.IO_RETRY_DELAY_SEC) -> T:
    """
    Calls fn, retrying transient OSErrors up to `attempts` times.
    Non-transient errors fail immediately.
    """
    for attempt in range(1, attempts + 1):
        try:
            return fn()
        except OSError as e:
            if e.errno in TRANSIENT_ERRNOS and attempt < attempts:
                logging.debug(f"Transient error during {what} (attempt {attempt}/{attempts}): {e}")
                time.sleep(delay)
                continue
            raise StorageError(f"{what} failed: {e}") from e
    raise StorageError(f"{what} failed after {attempts} attempts")


def staging_path(near: Path) -> Path:
    """Reserves a hidden temp file beside `near` (same filesystem, so os.replace is atomic)."""
    fd, name = tempfile.mkstemp(prefix=f".{near.name}.", suffix=".tmp", dir=near.parent)
    os.close(fd)
    return Path(name)


def discard(path: Path):
    try:
        path.unlink()
    except FileNotFoundError:
        pass
    except OSError as e:
        logging.warning(f"Could not remove temp file {path}: {e}")


def move_file(src: Path, dest: Path):
    """
    Rename when possible. Across filesystems the bytes are copied to a temp
    file beside `dest` and renamed into place, so `dest` is either absent or
    complete; `src` is removed only after that.
    """
    try:
        os.rename(src, dest)
        return
    except OSError as e:
        if e.errno != errno.EXDEV:
            raise

    staged = staging_path(dest)
    try:
        shutil.copy2(src, staged)
        os.replace(staged, dest)
    except BaseException:
        discard(staged)
        raise

    try:
        os.unlink(src)
    except BaseException:
        # Keep a single copy: the source
        discard(dest)
        raise
