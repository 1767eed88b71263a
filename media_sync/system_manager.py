"""Manages process-level concerns for a sync run.

This module provides:
- `setup_logging`: file-based logging for every run; the console handler is
  attached separately by the entry point.
- `LockFile`: a file-based lock so that two syncs of the same library never
  run at the same time.
"""
import atexit
import errno
import fcntl
import logging
import os
import time
from pathlib import Path
from typing import IO, Optional


class LockFile:
    """Ensures that only one sync of a given library runs at a time.

    The lock is an advisory `fcntl` lock on a file that also records the
    owning PID. A lock file left behind by a crashed process is detected by
    checking whether that PID is still alive, and removed.

    Attributes:
        lock_path (Path): The path to the file used for locking.
    """

    def __init__(self, lock_path: Path):
        self.lock_path = lock_path
        self.lock_fd: Optional[IO[str]] = None
        self._acquired = False

    @property
    def acquired(self) -> bool:
        return self._acquired

    def acquire(self) -> None:
        """Acquires an exclusive, non-blocking lock on the lock file.

        Raises:
            RuntimeError: If the lock is already held by another running instance.
        """
        if self.lock_path.exists():
            pid_str = self.get_locking_pid()
            if pid_str and pid_str.isdigit():
                pid = int(pid_str)
                if pid != os.getpid() and pid_exists(pid):
                    raise RuntimeError(f"Another sync is already running with PID {pid} (lock file: {self.lock_path})")
                logging.warning(f"Removing stale lock file for non-existent PID {pid}.")
                self.lock_path.unlink(missing_ok=True)
            else:
                logging.warning(f"Removing corrupt lock file with invalid PID: '{pid_str}'.")
                self.lock_path.unlink(missing_ok=True)

        try:
            self.lock_path.parent.mkdir(parents=True, exist_ok=True)
            self.lock_fd = open(self.lock_path, 'w')
            fcntl.flock(self.lock_fd.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
            self.lock_fd.write(str(os.getpid()))
            self.lock_fd.flush()
            atexit.register(self.release)
            self._acquired = True
        except (IOError, BlockingIOError):
            if self.lock_fd:
                self.lock_fd.close()
                self.lock_fd = None
            pid = self.get_locking_pid()
            raise RuntimeError(f"Another sync is already running with PID {pid} (lock file: {self.lock_path})")

    def release(self) -> None:
        """Releases the file lock and deletes the lock file."""
        if self.lock_fd and self._acquired:
            try:
                fcntl.flock(self.lock_fd.fileno(), fcntl.LOCK_UN)
                self.lock_fd.close()
                self.lock_path.unlink(missing_ok=True)
                self._acquired = False
            except OSError as e:
                logging.error(f"Failed to release lock file '{self.lock_path}': {e}")
            finally:
                self.lock_fd = None

    def get_locking_pid(self) -> Optional[str]:
        """Reads the PID of the process that currently holds the lock."""
        if self.lock_path.exists():
            try:
                return self.lock_path.read_text().strip()
            except IOError:
                return None
        return None


def pid_exists(pid: int) -> bool:
    """Checks if a process with the given PID is currently running on a Unix-like system."""
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except OSError as err:
        return err.errno == errno.EPERM
    return True


def setup_logging(log_dir: Path, dry_run: bool, debug: bool, name: str = "media_sync") -> Path:
    """Configures the root logger for file-based logging.

    A timestamped log file is created in `log_dir` for every run. Console
    output (RichHandler or a plain StreamHandler) is attached by `main` before
    this runs and is left in place.

    Args:
        log_dir: Directory that receives the log files; created if missing.
        dry_run: If `True`, a prominent warning is added to the log.
        debug: If `True`, sets the logging level to `DEBUG`, otherwise `INFO`.
        name: Prefix of the log file name.

    Returns:
        The path of the log file.
    """
    log_dir.mkdir(parents=True, exist_ok=True)
    timestamp = time.strftime("%Y-%m-%d_%H-%M-%S")
    log_file_path = log_dir / f"{name}_{timestamp}.log"

    logger = logging.getLogger()
    logger.setLevel(logging.DEBUG if debug else logging.INFO)

    # Console handlers attached by the entry point stay; earlier log files are closed
    for handler in [h for h in logger.handlers if isinstance(h, logging.FileHandler)]:
        logger.removeHandler(handler)
        handler.close()

    file_handler = logging.FileHandler(log_file_path, mode='w', encoding='utf-8')
    file_handler.setFormatter(logging.Formatter('%(asctime)s - %(levelname)s - %(message)s'))
    logger.addHandler(file_handler)

    logging.getLogger("paramiko").setLevel(logging.WARNING)
    logging.info("--- media-sync file logging started ---")

    if dry_run:
        logging.warning("!!! DRY RUN MODE ENABLED. NOTHING WILL BE CREATED OR COPIED. !!!")
    return log_file_path
