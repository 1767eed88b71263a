from __future__ import annotations
import abc
import logging
import posixpath
import shlex
from enum import Enum
from typing import TYPE_CHECKING, Iterable, List, Optional

import paramiko

from . import process_runner
from .rsync_manager import TransportConfig, build_rsync_options, parse_itemized_output
from .ssh_manager import (
    SSH_CONNECTION_ERROR, RemoteSession, SSHConnectionPool, setup_ssh_control_path, sftp_mkdir_p,
)
from .models import TransferItem
from .utils import RemoteTransferError, Timeouts

if TYPE_CHECKING:
    from .config_manager import SyncSettings

logger = logging.getLogger(__name__)


class TransferOutcome(Enum):
    TRANSFERRED = "transferred"
    SKIPPED_EXISTING = "skipped_existing"
    FAILED = "failed"


class TransferStrategy(abc.ABC):
    """Abstract base class for the ways a file can be pushed to the server.

    Every strategy has "copy if not already present" semantics: an existing
    remote file with the same name is left untouched and reported as
    `SKIPPED_EXISTING`, without any size or checksum comparison.
    """

    name = "base"

    @abc.abstractmethod
    def open(self) -> None:
        """Prepares the connection. Must not raise for an unreachable host."""
        pass

    @abc.abstractmethod
    def close(self) -> None:
        """Releases the connection. Must be idempotent."""
        pass

    @abc.abstractmethod
    def ensure_directories(self, directories: Iterable[str]) -> int:
        """Creates all directories in one remote round-trip."""
        pass

    @abc.abstractmethod
    def copy_file(self, item: TransferItem) -> TransferOutcome:
        """Copies one file. Raises on failure."""
        pass


class RsyncStrategy(TransferStrategy):
    """Pushes files with rsync over the shared multiplexed `RemoteSession`."""

    name = "rsync"

    def __init__(self, session: RemoteSession, transport: TransportConfig):
        self.session = session
        self.transport = transport
        self._options: Optional[List[str]] = None

    def open(self) -> None:
        self.session.open()
        self._options = build_rsync_options(self.transport, self.session.capabilities, self.session.remote_shell())
        logger.debug(f"rsync options for profile '{self.transport.profile}': {self._options}")

    def close(self) -> None:
        self.session.close()

    def ensure_directories(self, directories: Iterable[str]) -> int:
        return self.session.ensure_directories(directories)

    def build_command(self, item: TransferItem) -> List[str]:
        if self._options is None:
            raise RemoteTransferError("rsync strategy used before open().")
        dest_dir = item.dest_dir.rstrip('/') + '/'
        capabilities = self.session.capabilities
        if not (capabilities.protect_args or capabilities.escapes_args):
            # Old rsync hands the path to the remote shell, which splits it on spaces
            dest_dir = shlex.quote(dest_dir)
        return ['rsync', *self._options, '--', item.source_path, f"{self.session.target}:{dest_dir}"]

    def copy_file(self, item: TransferItem) -> TransferOutcome:
        self.session.ensure_connected()
        command = self.build_command(item)
        result = process_runner.run_command(command, timeout=Timeouts.TRANSFER)
        if result.returncode == SSH_CONNECTION_ERROR and self.session.reconnect_once():
            result = process_runner.run_command(command, timeout=Timeouts.TRANSFER)
        if result.returncode != 0:
            stderr = result.stderr.decode('utf-8', errors='replace').strip()
            last_line = stderr.splitlines()[-1] if stderr else "no error output"
            raise RemoteTransferError(f"rsync exited with code {result.returncode}: {last_line}")
        if parse_itemized_output(result.stdout.decode('utf-8', errors='replace')):
            return TransferOutcome.TRANSFERRED
        return TransferOutcome.SKIPPED_EXISTING


class SFTPStrategy(TransferStrategy):
    """Uploads files over pooled Paramiko SFTP connections.

    Used when the server has no rsync. Uploads go to a ``.part`` file first
    and are renamed into place, so an interrupted upload never looks like an
    existing file on the next run.
    """

    name = "sftp"

    def __init__(self, pool: SSHConnectionPool):
        self.pool = pool

    def open(self) -> None:
        try:
            with self.pool.get_connection():
                logger.info(f"SFTP: connected to {self.pool.username}@{self.pool.host}:{self.pool.port}")
        except Exception as e:
            logger.warning(f"SFTP: initial connection to {self.pool.host}:{self.pool.port} failed: {e}")

    def close(self) -> None:
        self.pool.close_all()

    def ensure_directories(self, directories: Iterable[str]) -> int:
        unique = sorted(set(directories))
        if not unique:
            return 0
        payload = b''.join(d.encode('utf-8') + b'\0' for d in unique)
        try:
            with self.pool.get_connection() as (sftp, ssh):
                try:
                    stdin, stdout, stderr = ssh.exec_command("xargs -0 mkdir -p --", timeout=Timeouts.SSH_EXEC)
                    stdin.write(payload)
                    stdin.channel.shutdown_write()
                    exit_status = stdout.channel.recv_exit_status()
                    error_output = stderr.read().decode('utf-8', errors='replace').strip()
                except paramiko.SSHException as e:
                    # SFTP-only accounts refuse exec channels
                    exit_status, error_output = None, str(e)
                if exit_status != 0:
                    # ForceCommand internal-sftp accepts the channel but cannot run the command
                    logger.warning(f"SFTP: remote mkdir unavailable (exit {exit_status}: {error_output}); "
                                   f"creating directories over SFTP.")
                    for directory in unique:
                        sftp_mkdir_p(sftp, directory)
        except RemoteTransferError:
            raise
        except Exception as e:
            raise RemoteTransferError(f"Failed to create remote directories: {e}") from e
        logger.info(f"Ensured {len(unique)} remote director(ies) exist.")
        return len(unique)

    def copy_file(self, item: TransferItem) -> TransferOutcome:
        dest_path = item.dest_path
        temp_path = posixpath.join(item.dest_dir, f".{item.file_name}.part")
        with self.pool.get_connection() as (sftp, _ssh):
            try:
                sftp.stat(dest_path)
                return TransferOutcome.SKIPPED_EXISTING
            except FileNotFoundError:
                pass
            try:
                sftp.put(item.source_path, temp_path)
                sftp.posix_rename(temp_path, dest_path)
            except Exception as e:
                try:
                    sftp.remove(temp_path)
                except IOError:
                    pass
                raise RemoteTransferError(f"SFTP upload failed: {e}") from e
        return TransferOutcome.TRANSFERRED


def get_transfer_strategy(settings: "SyncSettings") -> TransferStrategy:
    """Factory function to get the appropriate transfer strategy."""
    mode = settings.transfer_mode
    if mode == 'rsync':
        session = RemoteSession(
            host=settings.host,
            user=settings.user,
            port=settings.port,
            cipher=settings.cipher,
            control_path=setup_ssh_control_path(),
        )
        transport = TransportConfig.for_profile(
            settings.profile,
            compress_level=settings.compress_level,
            preallocate=settings.preallocate,
        )
        return RsyncStrategy(session, transport)
    if mode == 'sftp':
        pool = SSHConnectionPool(
            host=settings.host,
            port=settings.port,
            username=settings.user,
            password=settings.password,
            max_size=settings.workers,
        )
        return SFTPStrategy(pool)
    raise ValueError(f"Unknown transfer mode: {mode}")
