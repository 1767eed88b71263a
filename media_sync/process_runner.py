import shlex
import subprocess
import logging
import threading
from typing import List, Optional, Set

from .utils import RemoteTransferError

logger = logging.getLogger(__name__)

# Global state to track active processes for graceful shutdown
_active_processes: Set[subprocess.Popen] = set()
_process_lock = threading.Lock()
_shutting_down = False


def _register_process(process: subprocess.Popen) -> None:
    """Registers a process as active."""
    with _process_lock:
        _active_processes.add(process)


def _unregister_process(process: subprocess.Popen) -> None:
    """Unregisters a process."""
    with _process_lock:
        _active_processes.discard(process)


def stop_all_processes() -> None:
    """Signals that the application is shutting down and terminates all tracked processes.

    Commands started after this call are refused with `RemoteTransferError`, so
    queued transfers drain quickly as failures instead of starting new copies.
    """
    global _shutting_down
    _shutting_down = True
    logging.info("Stopping all active processes...")
    with _process_lock:
        for p in list(_active_processes):
            try:
                if p.poll() is None:
                    p.terminate()
            except OSError as e:
                logging.warning(f"Failed to terminate process: {e}")


def is_shutting_down() -> bool:
    return _shutting_down


def reset_shutdown_state() -> None:
    global _shutting_down
    _shutting_down = False


def run_command(
    command: List[str],
    input_data: Optional[bytes] = None,
    timeout: Optional[float] = None,
    during_shutdown: bool = False,
) -> subprocess.CompletedProcess:
    """Runs a command to completion and captures its output.

    Args:
        command: The argument vector, e.g. ``['ssh', ..., 'true']``.
        input_data: Bytes written to the process's stdin, if any.
        timeout: Seconds before the process is killed.
        during_shutdown: Run even after `stop_all_processes`; used for cleanup
            commands such as closing the SSH master.

    Returns:
        A `CompletedProcess` with bytes `stdout`/`stderr`. A non-zero exit
        status is returned, not raised; callers decide what it means.

    Raises:
        RemoteTransferError: If shutdown was requested, the executable is
            missing, or the timeout expired.
    """
    if _shutting_down and not during_shutdown:
        raise RemoteTransferError("Shutdown requested; not starting new commands.")

    logger.debug(f"Executing: {shlex.join(command)}")
    try:
        process = subprocess.Popen(
            command,
            stdin=subprocess.PIPE if input_data is not None else subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
        )
    except FileNotFoundError as e:
        raise RemoteTransferError(f"Command not found: {command[0]}") from e

    _register_process(process)
    try:
        stdout, stderr = process.communicate(input=input_data, timeout=timeout)
    except subprocess.TimeoutExpired as e:
        process.kill()
        process.communicate()
        raise RemoteTransferError(f"'{command[0]}' timed out after {timeout} seconds") from e
    finally:
        _unregister_process(process)

    return subprocess.CompletedProcess(command, process.returncode, stdout, stderr)
