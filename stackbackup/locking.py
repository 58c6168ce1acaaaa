"""
Operation lock.

Every operation (backup, restore, migrate, rollback, prune) takes the same
PID lock file, so a cron-triggered backup can never run while a restore is
rewriting the data roots.
"""
import os
import time
from pathlib import Path

from stackbackup.errors import LockError
from stackbackup.utils import get_logger

logger = get_logger(__name__)

LOCK_FILE_NAME = 'backup_manager.lock'
FRESH_LOCK_SECONDS = 5


def _pid_alive(pid):
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # exists but owned by another user
        return True
    return True


class OperationLock:
    """Context manager holding the lock file for the duration of an operation."""

    def __init__(self, lock_dir, operation='operation'):
        self.path = Path(lock_dir) / LOCK_FILE_NAME
        self.operation = operation
        self.acquired = False

    def _read_owner(self, path=None):
        try:
            text = (path or self.path).read_text(encoding='utf-8').split()
        except OSError:
            return None, None
        pid = int(text[0]) if text and text[0].isdigit() else None
        op = text[1] if len(text) > 1 else None
        return pid, op

    def _is_fresh(self):
        try:
            return time.time() - self.path.stat().st_mtime < FRESH_LOCK_SECONDS
        except OSError:
            return False

    def _reclaim_stale(self, stale_pid):
        """Remove a lock left by a dead process without racing a concurrent reclaim.

        The file is first renamed to a name private to this process, so only
        one process can claim it. If what was claimed turns out to be a live
        lock taken in the meantime, it is linked back into place.
        """
        claimed = self.path.with_name(f"{self.path.name}.{os.getpid()}.stale")
        try:
            os.rename(self.path, claimed)
        except FileNotFoundError:
            return
        pid, _ = self._read_owner(claimed)
        if pid != stale_pid and pid is not None and _pid_alive(pid):
            try:
                os.link(claimed, self.path)
            except FileExistsError:
                pass
        else:
            logger.warning("Removing stale lock file %s (PID %s)", self.path, stale_pid)
        try:
            claimed.unlink()
        except FileNotFoundError:
            pass

    def acquire(self):
        self.path.parent.mkdir(parents=True, exist_ok=True)
        for _ in range(3):
            try:
                fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
            except FileExistsError:
                pid, op = self._read_owner()
                if pid is not None and _pid_alive(pid):
                    raise LockError(f"Another {op or 'operation'} is already running (PID: {pid})")
                if pid is None and self._is_fresh():
                    # created but not written yet
                    raise LockError(f"Another operation is acquiring the lock {self.path}")
                self._reclaim_stale(pid)
                continue
            with os.fdopen(fd, 'w') as fh:
                fh.write(f"{os.getpid()} {self.operation}\n")
            self.acquired = True
            logger.debug("Acquired lock %s for %s", self.path, self.operation)
            return self
        raise LockError(f"Could not acquire lock {self.path}")

    def release(self):
        if not self.acquired:
            return
        pid, _ = self._read_owner()
        if pid == os.getpid():
            try:
                self.path.unlink()
            except FileNotFoundError:
                pass
        self.acquired = False

    def __enter__(self):
        return self.acquire()

    def __exit__(self, exc_type, exc, tb):
        self.release()
        return False
