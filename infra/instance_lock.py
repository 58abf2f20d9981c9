"""
Single instance lock.

Two engine processes pointed at the same state file would each run a
scheduler and bill the same delegations. A PID file next to the state file
keeps that to one process. Stale PID files (owner no longer running) are
taken over.
"""

import atexit
import logging
import os
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)


class SingleInstanceLock:
    """
    PID-file lock.

    Usage:
        lock = SingleInstanceLock("execution-engine", lock_dir="data")
        if not lock.acquire():
            sys.exit(1)
    """

    def __init__(self, name: str, lock_dir: str = "data"):
        self.name = name
        self.lock_file = Path(lock_dir) / f"{name}.pid"
        self.lock_file.parent.mkdir(parents=True, exist_ok=True)
        self.acquired = False
        atexit.register(self.release)

    @staticmethod
    def _is_process_running(pid: int) -> bool:
        try:
            # Signal 0 only checks existence
            os.kill(pid, 0)
        except ProcessLookupError:
            return False
        except PermissionError:
            return True
        return True

    def _read_owner(self) -> Optional[int]:
        try:
            return int(self.lock_file.read_text().strip())
        except (OSError, ValueError):
            return None

    def acquire(self) -> bool:
        """
        Returns:
            True if this process now holds the lock, False if another live
            process does
        """
        if self.acquired:
            return True

        for _ in range(2):
            try:
                fd = os.open(str(self.lock_file), os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
            except FileExistsError:
                owner = self._read_owner()
                if owner is not None and owner != os.getpid() and self._is_process_running(owner):
                    logger.error(
                        f"Another engine instance is running (PID={owner}). Lock file: {self.lock_file}"
                    )
                    return False
                logger.warning(f"Removing stale lock file {self.lock_file} (PID={owner})")
                try:
                    self.lock_file.unlink()
                except FileNotFoundError:
                    pass
                continue

            with os.fdopen(fd, "w") as f:
                f.write(str(os.getpid()))
            self.acquired = True
            logger.info(f"Lock acquired (PID={os.getpid()}, file={self.lock_file})")
            return True

        logger.error(f"Could not acquire lock file {self.lock_file}")
        return False

    def release(self) -> None:
        if not self.acquired:
            return
        try:
            if self._read_owner() == os.getpid():
                self.lock_file.unlink()
            logger.info(f"Lock released (file={self.lock_file})")
        except OSError as e:
            logger.warning(f"Failed to release lock: {e}")
        self.acquired = False

    def __enter__(self):
        if not self.acquire():
            raise RuntimeError(f"Failed to acquire lock for {self.name}")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.release()
        return False


__all__ = ["SingleInstanceLock"]
