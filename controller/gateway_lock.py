"""
Cross-process bootstrap lock.

Concurrent HTTP requests and timers may start several bootstrap processes at
once. Only one of them may restore, patch and launch the gateway. The lock
artifact is a file at LOCK_PATH holding an flock(2) lock:

- creation is atomic: a pre-locked temp file is hard-linked into place, and
  link() fails if the path already exists;
- a holder that dies (even by SIGKILL) loses its flock, so an artifact whose
  flock can be taken is stale and is removed before a single retry;
- the descriptor is close-on-exec, so neither the gateway nor anything it
  spawns can keep the lock alive after the bootstrap lets go of it.
"""

import fcntl
import os
import shutil
import tempfile
from pathlib import Path


class LockAcquisitionError(RuntimeError):
    """Raised when the bootstrap lock cannot be taken after stale-lock recovery."""


class GatewayLock:
    """Non-blocking file lock. Use as a context manager around one bootstrap attempt."""

    def __init__(self, path: Path):
        self.path = Path(path)
        self._fd: int | None = None

    @property
    def held(self) -> bool:
        return self._fd is not None

    def _try_create(self) -> int | None:
        """Atomically create the artifact already locked. Returns the fd or None if it exists."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=self.path.parent, prefix=f".{self.path.name}.")
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
            os.write(fd, f"{os.getpid()}\n".encode())
            try:
                os.link(tmp_path, self.path)
            except FileExistsError:
                os.close(fd)
                return None
        except BaseException:
            os.close(fd)
            raise
        finally:
            os.unlink(tmp_path)
        return fd

    def _remove_stale(self) -> bool:
        """Remove the artifact if no live process holds it. Returns False if it is held."""
        if self.path.is_dir() and not self.path.is_symlink():
            # Left behind by the old mkdir-based start script
            shutil.rmtree(self.path, ignore_errors=True)
            return True

        try:
            fd = os.open(self.path, os.O_RDWR)
        except FileNotFoundError:
            return True

        try:
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
            except BlockingIOError:
                return False
            try:
                current = os.stat(self.path)
            except FileNotFoundError:
                return True
            if current.st_ino != os.fstat(fd).st_ino:
                # Another recoverer already replaced it with a fresh lock
                return False
            os.unlink(self.path)
            return True
        finally:
            os.close(fd)

    def acquire(self) -> None:
        """Take the lock, recovering a stale artifact once. Never blocks."""
        fd = self._try_create()
        if fd is None:
            print(f"[lock] Stale lockfile detected at {self.path} (gateway not running), recovering...", flush=True)
            if not self._remove_stale():
                raise LockAcquisitionError(f"Lock {self.path} is held by a live bootstrap or gateway process")
            fd = self._try_create()
            if fd is None:
                raise LockAcquisitionError(f"Failed to acquire lock {self.path} after recovery")
        self._fd = fd

    def release(self) -> None:
        """Drop the lock and remove the artifact, if we still own it."""
        if self._fd is None:
            return
        fd, self._fd = self._fd, None
        try:
            if os.stat(self.path).st_ino == os.fstat(fd).st_ino:
                os.unlink(self.path)
        except FileNotFoundError:
            pass
        finally:
            fcntl.flock(fd, fcntl.LOCK_UN)
            os.close(fd)

    def __enter__(self) -> "GatewayLock":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()
