"""
Host-local process lock.

A lock file holding the owner's PID keeps two consumer processes on one
machine from draining the queue at the same time. A lock left behind by a
crashed process is detected through its PID and replaced.

Not safe across machines or network filesystems.
"""

import atexit
import logging
import os
import time
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from types import TracebackType

from taskqueue.config import get_settings
from taskqueue.exceptions import LockHeldError

logger = logging.getLogger(__name__)


def pid_is_alive(pid: int) -> bool:
    """Check whether a process with this PID exists on this host."""
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists, owned by another user
        return True
    except OSError:
        return False
    return True


class ProcessLock:
    """
    File-based mutual exclusion between processes on one host.

    State machine:
    - unlocked -> held (acquire returns True)
    - held -> unlocked (release, leaving the context, or process exit)
    - acquire while a live process holds the file returns False and changes nothing

    Usage:
        lock = ProcessLock("worker.lock")
        if not lock.acquire():
            return  # another consumer is running
        try:
            ...
        finally:
            lock.release()
    """

    # How long an empty lock file is given to receive its PID
    EMPTY_LOCK_GRACE_SECONDS = 0.1

    def __init__(
        self,
        name: str | None = None,
        directory: str | os.PathLike | None = None,
        path: str | os.PathLike | None = None,
    ):
        """
        Initialize the lock.

        Args:
            name: Lock file name inside ``directory``.
            directory: Directory holding the lock file; defaults to settings.
            path: Full lock file path; overrides ``name`` and ``directory``.
        """
        if path is not None:
            self.path = Path(path)
        else:
            settings = get_settings()
            directory = Path(directory if directory is not None else settings.lock_dir)
            self.path = directory / (name or settings.lock_name).lstrip("/")
        self._active = False
        self._atexit_registered = False

    @property
    def held(self) -> bool:
        """Whether this instance currently owns the lock."""
        return self._active

    def read_owner(self) -> int | None:
        """PID stored in the lock file, or None if missing or unreadable."""
        try:
            content = self.path.read_text().strip()
        except FileNotFoundError:
            return None
        except OSError as e:
            logger.warning("Could not read lock file", extra={"path": str(self.path), "error": str(e)})
            return None
        try:
            return int(content)
        except ValueError:
            return None

    def _is_empty(self) -> bool:
        try:
            return self.path.stat().st_size == 0
        except FileNotFoundError:
            return False

    def acquire(self) -> bool:
        """
        Try to take the lock.

        Returns:
            True if the lock is now held by this process, False if another
            live process holds it.
        """
        self.path.parent.mkdir(parents=True, exist_ok=True)

        if self.path.exists():
            owner = self.read_owner()
            if owner is None and self._is_empty():
                # A competing acquire may not have written its PID yet
                time.sleep(self.EMPTY_LOCK_GRACE_SECONDS)
                owner = self.read_owner()
            if owner is not None and pid_is_alive(owner):
                logger.info(
                    "Process lock held by another process",
                    extra={"path": str(self.path), "owner_pid": owner},
                )
                return False
            logger.warning(
                "Removing stale process lock",
                extra={"path": str(self.path), "owner_pid": owner},
            )
            self.path.unlink(missing_ok=True)

        try:
            fd = os.open(self.path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o644)
        except FileExistsError:
            # Another process replaced the stale lock first
            return False
        with os.fdopen(fd, "w") as f:
            f.write(str(os.getpid()))

        self._active = True
        if not self._atexit_registered:
            atexit.register(self.release)
            self._atexit_registered = True

        logger.info("Process lock acquired", extra={"path": str(self.path), "pid": os.getpid()})
        return True

    def release(self) -> None:
        """
        Give up the lock. Safe to call repeatedly; never raises.
        """
        if self._active:
            try:
                self.path.unlink(missing_ok=True)
            except OSError as e:
                logger.warning(
                    "Could not remove lock file",
                    extra={"path": str(self.path), "error": str(e)},
                )
        self._active = False

    @contextmanager
    def guard(self) -> Iterator["ProcessLock"]:
        """
        Hold the lock for the duration of a block.

        Raises:
            LockHeldError: If another live process holds the lock.
        """
        if not self.acquire():
            raise LockHeldError(f"Process lock {self.path} is held by PID {self.read_owner()}")
        try:
            yield self
        finally:
            self.release()

    def __enter__(self) -> bool:
        return self.acquire()

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.release()

    def __repr__(self) -> str:
        return f"ProcessLock(path={str(self.path)!r}, held={self._active})"
