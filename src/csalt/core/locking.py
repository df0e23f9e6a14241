"""Advisory file locks shared between csalt processes.

Each persisted record has a sibling ``<name>.lock`` file. Readers take a
shared ``flock`` on it and writers an exclusive one. Acquisition retries at a
fixed interval until a timeout expires, so a crashed or wedged holder cannot
block other invocations forever. Lock files are never removed.
"""

from __future__ import annotations

import fcntl
import logging
import os
import time
from contextlib import contextmanager
from pathlib import Path
from typing import IO, Iterator

logger = logging.getLogger(__name__)

LOCK_RETRY_DELAY = 0.678
LOCK_TIMEOUT = 5.0


class LockError(TimeoutError):
    """Raised when a lock cannot be acquired within the timeout."""


def lock_path_for(path: Path) -> Path:
    """Return the lock file guarding ``path``."""

    return path.with_name(f"{path.name}.lock")


class LockGuard:
    """Shared or exclusive lock on a single lock file."""

    def __init__(self, path: Path, retry_delay: float = LOCK_RETRY_DELAY) -> None:
        self.path = path
        self.retry_delay = retry_delay
        self.mode: int | None = None
        self._handle: IO[str] | None = None

    @property
    def locked(self) -> bool:
        return self.mode is not None

    def acquire_shared(self, timeout: float = LOCK_TIMEOUT) -> bool:
        return self._acquire(fcntl.LOCK_SH, timeout)

    def acquire_exclusive(self, timeout: float = LOCK_TIMEOUT) -> bool:
        return self._acquire(fcntl.LOCK_EX, timeout)

    def release(self) -> None:
        """Release the lock. Safe to call when nothing is held."""

        handle, self._handle = self._handle, None
        self.mode = None
        if handle is None:
            return
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
        finally:
            handle.close()
        logger.debug("released lock path=%s", self.path)

    @contextmanager
    def shared(self, timeout: float = LOCK_TIMEOUT) -> Iterator[LockGuard]:
        self.acquire_shared(timeout)
        try:
            yield self
        finally:
            self.release()

    @contextmanager
    def exclusive(self, timeout: float = LOCK_TIMEOUT) -> Iterator[LockGuard]:
        self.acquire_exclusive(timeout)
        try:
            yield self
        finally:
            self.release()

    def _acquire(self, mode: int, timeout: float) -> bool:
        if self.mode == mode:
            return True
        # Converting between shared and exclusive is not atomic with flock.
        self.release()

        self.path.parent.mkdir(parents=True, exist_ok=True)
        handle = open(self.path, "a", encoding="utf-8")
        deadline = time.monotonic() + timeout
        while True:
            try:
                fcntl.flock(handle.fileno(), mode | fcntl.LOCK_NB)
            except BlockingIOError:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    handle.close()
                    kind = "exclusive" if mode == fcntl.LOCK_EX else "shared"
                    logger.warning("%s lock timeout path=%s timeout=%s", kind, self.path, timeout)
                    raise LockError(f"Unable to acquire {kind} lock on {self.path} within {timeout}s")
                time.sleep(min(self.retry_delay, remaining))
                continue
            except OSError:
                handle.close()
                raise

            self._handle = handle
            self.mode = mode
            logger.debug("acquired lock path=%s pid=%d", self.path, os.getpid())
            return True
