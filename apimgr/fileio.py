"""
File primitives shared by everything that persists state:
- Atomic writes (temp file in the same directory + fsync + rename)
- An exclusive advisory lock with a bounded wait
"""

import errno
import fcntl
import logging
import os
import tempfile
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

from apimgr.errors import LockTimeoutError

logger = logging.getLogger(__name__)

PRIVATE_FILE_MODE = 0o600


def ensure_parent_dir(path: Path) -> None:
    Path(path).parent.mkdir(parents=True, exist_ok=True)


def atomic_write_text(path: Path, text: str, mode: int = PRIVATE_FILE_MODE) -> None:
    """
    Replace ``path`` with ``text`` so readers see either the old or new file.

    The data is written to a temporary file in the destination directory,
    fsync'd, given ``mode``, then renamed over ``path``. A leftover temp file
    is removed if anything fails before the rename.
    """
    path = Path(path)
    ensure_parent_dir(path)
    tmp_path: Optional[Path] = None
    try:
        with tempfile.NamedTemporaryFile(
            "w",
            encoding="utf-8",
            dir=str(path.parent),
            prefix=f".{path.name}.",
            suffix=".tmp",
            delete=False,
        ) as f:
            tmp_path = Path(f.name)
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        os.chmod(tmp_path, mode)
        os.replace(tmp_path, path)
        tmp_path = None
    finally:
        if tmp_path is not None:
            try:
                tmp_path.unlink()
            except FileNotFoundError:
                pass


@contextmanager
def exclusive_lock(
    lock_path: Path,
    timeout: float = 5.0,
    retry_interval: float = 0.05,
) -> Iterator[None]:
    """
    Hold an exclusive flock on ``lock_path`` for the duration of the block.

    The lock is attempted non-blocking and retried every ``retry_interval``
    seconds until ``timeout`` elapses.

    Raises:
        LockTimeoutError: If another process keeps the lock past ``timeout``
        OSError: If the lock file cannot be opened or locked for another reason
    """
    lock_path = Path(lock_path)
    ensure_parent_dir(lock_path)
    fd = os.open(str(lock_path), os.O_RDWR | os.O_CREAT, PRIVATE_FILE_MODE)
    try:
        deadline = time.monotonic() + timeout
        while True:
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                break
            except OSError as e:
                if e.errno not in (errno.EWOULDBLOCK, errno.EAGAIN, errno.EACCES):
                    raise
                if time.monotonic() >= deadline:
                    raise LockTimeoutError(
                        f"lock timeout: {lock_path} is held by another process "
                        f"(waited {timeout:g}s)"
                    ) from None
                logger.debug("Waiting for lock %s", lock_path)
                time.sleep(retry_interval)
        try:
            yield
        finally:
            fcntl.flock(fd, fcntl.LOCK_UN)
    finally:
        os.close(fd)
