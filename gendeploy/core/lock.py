"""Per-target deployment locking.

Prevents two deploy or rollback sessions from touching the same target at
once. Sessions against different targets use different lock files and run
independently.
"""
import fcntl
import os
import re
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Optional

from gendeploy.core.config import get_config
from gendeploy.core.logger import get_logger
from gendeploy.models.errors import LockError

logger = get_logger(__name__)


def lock_path_for(target: str, lock_dir: Optional[Path] = None) -> Path:
    """Return the lock file used for a target.

    Args:
        target: Target name or [user@]host string
        lock_dir: Directory for lock files (default: runtime config lock_dir)
    """
    directory = Path(lock_dir) if lock_dir is not None else Path(get_config().lock_dir)
    safe_name = re.sub(r"[^A-Za-z0-9._-]", "_", target) or "default"
    return directory / f"{safe_name}.lock"


class TargetLock:
    """File-based lock held for the whole of one session against a target."""

    def __init__(self, target: str, lock_dir: Optional[Path] = None, timeout: int = 0):
        """Initialize lock.

        Args:
            target: Target the lock protects
            lock_dir: Directory for lock files
            timeout: Seconds to wait for lock (0 = fail immediately)
        """
        self.target = target
        self.lock_file = lock_path_for(target, lock_dir)
        self.timeout = timeout
        self.lock_fd = None

    def acquire(self) -> bool:
        """Acquire the lock.

        Returns:
            True if lock acquired successfully

        Raises:
            LockError: If unable to acquire lock
        """
        self.lock_file.parent.mkdir(parents=True, exist_ok=True)

        # Append mode keeps the holder's PID readable until we own the lock
        self.lock_fd = open(self.lock_file, 'a+')

        start_time = time.time()
        while True:
            try:
                fcntl.flock(self.lock_fd.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)

                self.lock_fd.seek(0)
                self.lock_fd.truncate()
                self.lock_fd.write(f"{os.getpid()}\n")
                self.lock_fd.write(f"{time.strftime('%Y-%m-%d %H:%M:%S')}\n")
                self.lock_fd.flush()

                logger.debug(f"Acquired lock for {self.target}: {self.lock_file}")
                return True

            except OSError:
                if self.timeout == 0:
                    lock_info = self._read_lock_info()
                    self._close()
                    raise LockError(
                        f"Another deployment to {self.target} is in progress.\n"
                        f"Lock held by PID {lock_info['pid']} since {lock_info['time']}\n"
                        f"Wait for it to finish, or remove {self.lock_file} if stale."
                    )

                elapsed = time.time() - start_time
                if elapsed >= self.timeout:
                    lock_info = self._read_lock_info()
                    self._close()
                    raise LockError(
                        f"Timeout waiting for lock on {self.target} after {self.timeout}s.\n"
                        f"Lock held by PID {lock_info['pid']} since {lock_info['time']}"
                    )

                time.sleep(0.5)

    def release(self):
        """Release the lock and remove the lock file."""
        if self.lock_fd is None:
            return

        try:
            # Unlink while still holding the lock so a waiter never sees our stale PID
            if self.lock_file.exists():
                self.lock_file.unlink()
        except OSError as e:
            logger.warning(f"Error removing lock file: {e}")

        try:
            fcntl.flock(self.lock_fd.fileno(), fcntl.LOCK_UN)
            logger.debug(f"Released lock for {self.target}: {self.lock_file}")
        except OSError as e:
            logger.warning(f"Error releasing lock: {e}")
        finally:
            self._close()

    def _close(self):
        if self.lock_fd is not None:
            self.lock_fd.close()
            self.lock_fd = None

    def _read_lock_info(self) -> dict:
        """Read info from lock file about who holds it."""
        try:
            with open(self.lock_file) as f:
                lines = f.readlines()
                if len(lines) >= 2:
                    return {
                        'pid': lines[0].strip(),
                        'time': lines[1].strip()
                    }
        except OSError:
            pass

        return {'pid': 'unknown', 'time': 'unknown'}

    def __enter__(self):
        self.acquire()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.release()
        return False


@contextmanager
def target_lock(target: str, timeout: Optional[int] = None, lock_dir: Optional[Path] = None):
    """Hold the deployment lock for a target.

    Args:
        target: Target name
        timeout: Seconds to wait (default: runtime config lock_timeout)
        lock_dir: Optional custom lock directory

    Usage:
        with target_lock("nixos"):
            ...

    Raises:
        LockError: If unable to acquire lock
    """
    if timeout is None:
        timeout = get_config().lock_timeout
    lock = TargetLock(target, lock_dir=lock_dir, timeout=timeout)
    lock.acquire()
    try:
        yield lock
    finally:
        lock.release()


def check_lock_status(target: str, lock_dir: Optional[Path] = None) -> Optional[dict]:
    """Check if a target's lock is currently held.

    Returns:
        Dict with lock info if held, None if free
    """
    lock_file = lock_path_for(target, lock_dir)
    if not lock_file.exists():
        return None

    try:
        with open(lock_file) as f:
            try:
                fcntl.flock(f.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
                fcntl.flock(f.fileno(), fcntl.LOCK_UN)
                return None
            except OSError:
                f.seek(0)
                lines = f.readlines()
                if len(lines) >= 2:
                    return {
                        'pid': lines[0].strip(),
                        'time': lines[1].strip(),
                        'lock_file': str(lock_file)
                    }
                return {'pid': 'unknown', 'time': 'unknown', 'lock_file': str(lock_file)}
    except OSError as e:
        logger.warning(f"Error checking lock status: {e}")
        return None
