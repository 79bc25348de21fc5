"""
Process lock
Guarantees a single resticflow instance mutates the repository set at a time
"""
import os
import fcntl
import errno
import logging
from pathlib import Path
from typing import Optional

from models.errors import ProcessLockError
from services.paths import AppPaths

logger = logging.getLogger(__name__)


class ProcessLock:
    """Non-blocking exclusive flock on a PID file"""

    def __init__(self, path: Optional[Path] = None):
        self.path = Path(path) if path else AppPaths().lock_file
        self._handle = None

    def acquire(self) -> None:
        try:
            self.path.parent.mkdir(mode=0o755, parents=True, exist_ok=True)
            handle = open(self.path, 'a+')
        except OSError as e:
            raise ProcessLockError(f"failed to open lock file {self.path}: {e}") from e

        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError as e:
            handle.close()
            if e.errno in (errno.EWOULDBLOCK, errno.EAGAIN):
                raise ProcessLockError(f"another instance is already running (lock file: {self.path})") from e
            raise ProcessLockError(f"failed to acquire lock: {e}") from e

        handle.seek(0)
        handle.truncate()
        handle.write(f"{os.getpid()}\n")
        handle.flush()
        self._handle = handle
        logger.debug(f"Acquired process lock {self.path}")

    def release(self) -> None:
        if self._handle is None:
            return
        try:
            fcntl.flock(self._handle.fileno(), fcntl.LOCK_UN)
        finally:
            self._handle.close()
            self._handle = None
            try:
                self.path.unlink()
            except FileNotFoundError:
                pass
        logger.debug(f"Released process lock {self.path}")

    @property
    def held(self) -> bool:
        return self._handle is not None

    def is_locked(self) -> bool:
        """True when some process currently holds the lock"""
        if not self.path.exists():
            return False
        try:
            handle = open(self.path, 'r+')
        except PermissionError:
            return True
        except FileNotFoundError:
            return False
        with handle:
            try:
                fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
            except OSError:
                return True
            fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
        return False

    def get_pid(self) -> Optional[int]:
        try:
            return int(self.path.read_text().strip().split()[0])
        except (OSError, ValueError, IndexError):
            return None

    def process_status(self) -> str:
        pid = self.get_pid()
        if pid is None:
            return "unknown"
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            return "Process not found (stale lock)"
        except PermissionError:
            pass
        return "Process is running"

    def force_unlock(self) -> None:
        """Remove the lock file regardless of its holder"""
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass

    def __enter__(self) -> 'ProcessLock':
        self.acquire()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.release()
