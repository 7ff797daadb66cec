"""Single-run-per-host guard."""

import fcntl
import os
from typing import Optional

from imagepatcher.constants import HOST_LOCK_FILE
from imagepatcher.errors import PreconditionError
from imagepatcher.errors_catalog import actionable_error


class HostLock:
    """Exclusive advisory lock held for the lifetime of one run.

    The staging registry port and the engine socket are not namespaced per
    run, so a second run on the same host must fail instead of sharing them.
    """

    def __init__(self, path: str = HOST_LOCK_FILE):
        self.path = path
        self._fd: Optional[int] = None

    def acquire(self):
        try:
            fd = os.open(self.path, os.O_CREAT | os.O_RDWR, 0o600)
        except OSError as exc:
            raise PreconditionError(
                actionable_error("host_lock_unavailable", path=self.path, reason=exc.strerror or str(exc))
            ) from exc
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError as exc:
            os.close(fd)
            raise PreconditionError(actionable_error("host_busy", path=self.path)) from exc
        self._fd = fd

    def release(self):
        if self._fd is None:
            return
        try:
            fcntl.flock(self._fd, fcntl.LOCK_UN)
        finally:
            os.close(self._fd)
            self._fd = None

    @property
    def held(self) -> bool:
        return self._fd is not None

    def __enter__(self):
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.release()
        return False
