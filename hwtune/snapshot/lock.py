"""
Cross-invocation run lock.

Apply and cleanup of one tool never run concurrently: both take a
non-blocking advisory flock on <lock_dir>/<tool>-optimize.lock.
"""

import fcntl
import logging
import os
from typing import Optional

from ..discovery.host import HostFS
from ..protocol.errors import LockHeldError

logger = logging.getLogger(__name__)

DEFAULT_LOCK_DIR = "/run/lock"


class RunLock:
    """Context manager around fcntl.flock(LOCK_EX | LOCK_NB)."""

    def __init__(self, fs: HostFS, tool: str, lock_dir: str = DEFAULT_LOCK_DIR):
        self.path = fs.path(lock_dir) / f"{tool}-optimize.lock"
        self._fd: Optional[int] = None

    def acquire(self):
        """
        Raises:
            LockHeldError: another process holds the lock
        """
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(self.path, os.O_RDWR | os.O_CREAT, 0o644)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            os.close(fd)
            raise LockHeldError(f"Another run holds {self.path}")
        os.ftruncate(fd, 0)
        os.write(fd, f"{os.getpid()}\n".encode())
        self._fd = fd
        logger.debug("lock acquired: %s", self.path)

    def release(self):
        if self._fd is None:
            return
        fcntl.flock(self._fd, fcntl.LOCK_UN)
        os.close(self._fd)
        self._fd = None
        logger.debug("lock released: %s", self.path)

    @property
    def held(self) -> bool:
        return self._fd is not None

    def __enter__(self) -> "RunLock":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.release()
        return False
