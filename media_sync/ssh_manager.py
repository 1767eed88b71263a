"""Manages SSH connections to the media server.

This module provides the two ways media_sync talks to the remote host:
- `RemoteSession`: a single multiplexed OpenSSH connection (ControlMaster)
  shared by every `ssh` and `rsync` invocation of a run. It owns the
  connection lifecycle, the one-time rsync capability probe, and batch
  directory creation in a single round-trip.
- `SSHConnectionPool`: a thread-safe pool of Paramiko SSH/SFTP connections,
  used by the SFTP transfer strategy when rsync is not available.
"""
import paramiko
import logging
import threading
from queue import Queue, Empty
from contextlib import contextmanager
import typing
import shlex
import os
import stat
import tempfile
import getpass
import time

from . import process_runner
from .rsync_manager import TransportCapabilities, probe_capabilities
from .utils import RemoteTransferError, Timeouts, retry

# --- Constants ---
DEFAULT_CIPHER = "aes128-gcm@openssh.com"
DEFAULT_KEEPALIVE_INTERVAL = 30
DEFAULT_SSH_POOL_SIZE = 4
CONTROL_PERSIST_SECONDS = 300
STALE_SOCKET_AGE_SECONDS = 2 * 60 * 60
SSH_CONNECTION_ERROR = 255  # ssh's own exit status for connection failures


def setup_ssh_control_path() -> typing.Optional[str]:
    """Creates a user-specific directory for SSH control sockets to enable multiplexing.

    Returns:
        The control socket template (``<dir>/%C``), or `None` if the
        directory could not be created, in which case multiplexing is disabled.
    """
    try:
        user = getpass.getuser()
        control_dir = os.path.join(tempfile.gettempdir(), f"media_sync_ssh_{user}")
        os.makedirs(control_dir, mode=0o700, exist_ok=True)
        control_path = os.path.join(control_dir, "%C")
        logging.debug(f"Using SSH control path for multiplexing: {control_path}")
        return control_path
    except OSError as e:
        logging.warning(f"Could not create SSH control path directory. Multiplexing will be disabled. Error: {e}")
        return None


def build_ssh_options(port: int, cipher: str, control_path: typing.Optional[str]) -> typing.List[str]:
    """Builds the ssh option list shared by direct commands and rsync's `-e`."""
    options = ['-p', str(port)]
    if control_path:
        options += [
            '-o', 'ControlMaster=auto',
            '-o', f'ControlPersist={CONTROL_PERSIST_SECONDS}',
            '-o', f'ControlPath={control_path}',
        ]
    options += [
        '-o', f'ConnectTimeout={Timeouts.SSH_CONNECT}',
        '-o', 'ServerAliveInterval=30',
        '-o', 'ServerAliveCountMax=3',
        '-o', f'Ciphers={cipher}',
    ]
    return options


class RemoteSession:
    """One multiplexed OpenSSH connection to the media server.

    The session is opened once per run and shared, read-only, by every
    concurrent transfer. All remote commands go through `run`, which retries
    once over a freshly established master if ssh reports a connection error.

    Attributes:
        host (str): The hostname or IP address of the SSH server.
        user (str): The remote login.
        port (int): The SSH port.
        cipher (str): The cipher passed to ssh via ``-o Ciphers=``.
        control_path (Optional[str]): The ControlPath socket template.
        capabilities (TransportCapabilities): Filled in by `open`.
    """

    def __init__(self, host: str, user: str, port: int = 22, cipher: str = DEFAULT_CIPHER,
                 control_path: typing.Optional[str] = None):
        self.host = host
        self.user = user
        self.port = port
        self.cipher = cipher
        self.control_path = control_path
        self.capabilities = TransportCapabilities()
        self._lock = threading.Lock()
        self._opened = False
        self._connected = False
        self._retry_used = False
        self._closed = False

    @property
    def target(self) -> str:
        return f"{self.user}@{self.host}"

    @property
    def is_connected(self) -> bool:
        return self._connected

    def ssh_command(self) -> typing.List[str]:
        return ['ssh', *build_ssh_options(self.port, self.cipher, self.control_path)]

    def remote_shell(self) -> str:
        """Returns the ssh invocation in the form rsync expects for ``-e``."""
        return shlex.join(self.ssh_command())

    def _control_command(self, operation: str) -> typing.List[str]:
        return ['ssh', '-O', operation, '-o', f'ControlPath={self.control_path}', '-p', str(self.port), self.target]

    def is_alive(self) -> bool:
        """Checks whether a multiplexed master is already serving this endpoint."""
        if not self.control_path:
            return False
        try:
            result = process_runner.run_command(self._control_command('check'), timeout=Timeouts.SSH_CONNECT)
        except RemoteTransferError:
            return False
        return result.returncode == 0

    def _discard_stale(self) -> None:
        if not self.control_path:
            return
        try:
            process_runner.run_command(self._control_command('exit'), timeout=Timeouts.SSH_CONNECT)
        except RemoteTransferError as e:
            logging.debug(f"Could not ask stale SSH master to exit: {e}")
        self._prune_stale_sockets()

    def _prune_stale_sockets(self) -> None:
        control_dir = os.path.dirname(self.control_path or '')
        if not control_dir or not os.path.isdir(control_dir):
            return
        cutoff = time.time() - STALE_SOCKET_AGE_SECONDS
        for entry in os.scandir(control_dir):
            try:
                info = entry.stat(follow_symlinks=False)
                if stat.S_ISSOCK(info.st_mode) and info.st_mtime < cutoff:
                    os.unlink(entry.path)
                    logging.debug(f"Removed stale SSH control socket: {entry.path}")
            except OSError as e:
                logging.debug(f"Could not inspect control socket '{entry.path}': {e}")

    def _establish(self) -> bool:
        command = [*self.ssh_command(), '-o', 'BatchMode=yes', self.target, 'true']
        try:
            result = process_runner.run_command(command, timeout=Timeouts.SSH_CONNECT + 5)
        except RemoteTransferError as e:
            logging.warning(f"SSH mux: could not connect to {self.target}:{self.port}: {e}")
            return False
        if result.returncode != 0:
            stderr = result.stderr.decode('utf-8', errors='replace').strip()
            logging.warning(f"SSH mux: connection to {self.target}:{self.port} failed (exit {result.returncode}): {stderr}")
            return False
        return True

    def open(self) -> "RemoteSession":
        """Probes transport capabilities and reuses or establishes the master connection.

        A failed connection is logged as a warning and left for a single lazy
        retry on first use; it is not raised here.
        """
        self._opened = True
        self._closed = False
        self.capabilities = probe_capabilities()
        if self.is_alive():
            logging.info("SSH mux: reusing existing master connection")
            self._connected = True
            return self

        self._discard_stale()
        logging.warning("SSH mux: starting a fresh master connection")
        self._connected = self._establish()
        if self._connected:
            logging.info(f"SSH mux: connected to {self.target}:{self.port}")
        return self

    def ensure_connected(self) -> None:
        """Makes sure the session is usable, spending the one reconnect attempt if needed.

        Raises:
            RemoteTransferError: If the session is still unreachable.
        """
        with self._lock:
            if self._connected:
                return
            if not self._opened:
                raise RemoteTransferError("Remote session has not been opened.")
            if not self._retry_used:
                self._retry_used = True
                logging.warning(f"SSH mux: retrying connection to {self.target}:{self.port}")
                self._discard_stale()
                self._connected = self._establish()
            if not self._connected:
                raise RemoteTransferError(f"Remote session to {self.target}:{self.port} is unavailable.")

    def reconnect_once(self) -> bool:
        """Re-establishes the master after a connection error, at most once per session."""
        with self._lock:
            if self._retry_used:
                return False
            self._retry_used = True
            logging.warning(f"SSH mux: connection lost, re-establishing to {self.target}:{self.port}")
            self._discard_stale()
            self._connected = self._establish()
            return self._connected

    def run(self, remote_command: str, input_data: typing.Optional[bytes] = None,
            timeout: typing.Optional[float] = None):
        """Runs a shell command on the remote host over the shared connection.

        Returns:
            The `CompletedProcess`; its `returncode` is the remote exit status.
        """
        self.ensure_connected()
        command = [*self.ssh_command(), self.target, remote_command]
        timeout = timeout or Timeouts.SSH_EXEC
        result = process_runner.run_command(command, input_data=input_data, timeout=timeout)
        if result.returncode == SSH_CONNECTION_ERROR and self.reconnect_once():
            result = process_runner.run_command(command, input_data=input_data, timeout=timeout)
        return result

    def ensure_directories(self, directories: typing.Iterable[str]) -> int:
        """Creates every directory with `mkdir -p` in a single remote round-trip.

        The paths are sent NUL-separated on stdin, so neither spaces nor shell
        metacharacters in show names need quoting.

        Returns:
            The number of directories requested.

        Raises:
            RemoteTransferError: If the remote command fails.
        """
        unique = sorted(set(directories))
        if not unique:
            return 0
        payload = b''.join(d.encode('utf-8') + b'\0' for d in unique)
        result = self.run("xargs -0 mkdir -p --", input_data=payload)
        if result.returncode != 0:
            stderr = result.stderr.decode('utf-8', errors='replace').strip()
            raise RemoteTransferError(f"Failed to create {len(unique)} remote director(ies) (exit {result.returncode}): {stderr}")
        logging.info(f"Ensured {len(unique)} remote director(ies) exist.")
        return len(unique)

    def close(self) -> None:
        """Closes the multiplexed master. Safe to call repeatedly or before `open`."""
        if self._closed or not self._opened:
            return
        self._closed = True
        if self.control_path:
            try:
                process_runner.run_command(self._control_command('exit'), timeout=Timeouts.SSH_CONNECT,
                                           during_shutdown=True)
            except RemoteTransferError as e:
                logging.debug(f"SSH mux: close failed: {e}")
        self._connected = False
        logging.debug(f"SSH mux: session to {self.target} closed.")

    def __enter__(self) -> "RemoteSession":
        return self.open()

    def __exit__(self, *exc_info) -> None:
        self.close()


def sftp_mkdir_p(sftp: paramiko.SFTPClient, remote_path: str) -> None:
    """Recursively creates a directory path on an SFTP server, similar to `mkdir -p`.

    Raises:
        IOError: If a directory could not be created and was confirmed to not exist.
    """
    if not remote_path:
        return
    remote_path = remote_path.replace('\\', '/').rstrip('/')
    if not remote_path:
        return
    try:
        sftp.stat(remote_path)
    except FileNotFoundError:
        parent_dir = os.path.dirname(remote_path)
        sftp_mkdir_p(sftp, parent_dir)
        try:
            sftp.mkdir(remote_path)
        except IOError as e:
            # Another worker may have created it first
            try:
                sftp.stat(remote_path)
            except FileNotFoundError:
                logging.error(f"Failed to create remote directory '{remote_path}': {e}")
                raise e


class SSHConnectionPool:
    """A thread-safe pool for managing and reusing Paramiko SSH/SFTP connections.

    Connections authenticate with the SSH agent or default keys, falling back
    to a password when one is configured.

    Attributes:
        host (str): The hostname or IP address of the SSH server.
        port (int): The port number of the SSH server.
        username (str): The username for authentication.
        password (Optional[str]): An optional password.
        max_size (int): The maximum number of concurrent connections allowed in the pool.
        connect_timeout (int): Timeout in seconds for establishing a new connection.
        pool_wait_timeout (int): Timeout in seconds for waiting to get a connection
            from the pool when it is full.
    """
    def __init__(self, host: str, port: int, username: str, password: typing.Optional[str] = None,
                 max_size: int = DEFAULT_SSH_POOL_SIZE, connect_timeout: int = Timeouts.SSH_CONNECT,
                 pool_wait_timeout: float = 120):
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.max_size = max_size
        self.connect_timeout = connect_timeout
        self.pool_wait_timeout = pool_wait_timeout
        self._pool: "Queue[typing.Tuple[paramiko.SFTPClient, paramiko.SSHClient]]" = Queue(maxsize=max_size)
        self._lock = threading.Lock()
        self._active_connections = 0
        self._condition = threading.Condition(self._lock)
        self._closed = False
        logging.debug(f"Initialized SSHConnectionPool for {host} with max_size={max_size}")

    @retry(tries=2, delay=2)
    def _create_connection(self) -> typing.Tuple[paramiko.SFTPClient, paramiko.SSHClient]:
        """Creates a new SSH client, establishes a connection, and opens an SFTP session."""
        ssh_client = paramiko.SSHClient()
        ssh_client.load_system_host_keys()
        ssh_client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        try:
            ssh_client.connect(
                hostname=self.host,
                port=self.port,
                username=self.username,
                password=self.password,
                timeout=self.connect_timeout,
                allow_agent=True,
                look_for_keys=True,
            )
            transport = ssh_client.get_transport()
            if transport:
                transport.set_keepalive(DEFAULT_KEEPALIVE_INTERVAL)
            sftp = ssh_client.open_sftp()
        except Exception:
            ssh_client.close()
            raise
        logging.debug(f"Successfully created new SSH connection to {self.host}")
        return sftp, ssh_client

    def _is_connection_alive(self, ssh: paramiko.SSHClient) -> bool:
        """Checks if an SSH connection is still active."""
        try:
            transport = ssh.get_transport()
            return transport is not None and transport.is_active()
        except Exception:
            return False

    def _release_slot(self) -> None:
        with self._lock:
            self._active_connections -= 1
            self._condition.notify()

    @contextmanager
    def get_connection(self) -> typing.Generator[typing.Tuple[paramiko.SFTPClient, paramiko.SSHClient], None, None]:
        """Provides a connection from the pool within a context manager.

        Dead connections are discarded and replaced transparently.

        Yields:
            A tuple containing an active `(SFTPClient, SSHClient)`.

        Raises:
            RuntimeError: If the pool has already been closed.
            TimeoutError: If waiting for a connection exceeds `pool_wait_timeout`.
        """
        if self._closed:
            raise RuntimeError("Connection pool is closed.")

        sftp, ssh = None, None
        created_new = False

        try:
            while True:
                if self._closed:
                    raise RuntimeError("Connection pool was closed while waiting for a connection.")
                try:
                    sftp, ssh = self._pool.get_nowait()
                    if self._is_connection_alive(ssh):
                        logging.debug(f"Reusing existing SSH connection to {self.host}")
                        break
                    logging.debug(f"Discarding dead SSH connection to {self.host}")
                    ssh.close()
                    self._release_slot()
                    sftp, ssh = None, None
                    continue
                except Empty:
                    with self._condition:
                        if self._active_connections < self.max_size:
                            self._active_connections += 1
                            created_new = True
                            logging.debug(f"Creating new connection to {self.host} ({self._active_connections}/{self.max_size})")
                            break
                        logging.debug(f"Pool full ({self.max_size}/{self.max_size}), waiting for connection to {self.host}")
                        if not self._condition.wait(timeout=self.pool_wait_timeout):
                            raise TimeoutError(f"Timeout waiting for an available SSH connection to {self.host}")

            if created_new:
                try:
                    sftp, ssh = self._create_connection()
                except Exception:
                    self._release_slot()
                    raise

            yield sftp, ssh
        finally:
            if sftp and ssh:
                try:
                    self._pool.put_nowait((sftp, ssh))
                    logging.debug(f"Returned connection to pool for {self.host}. (Pool size: {self._pool.qsize()})")
                except Exception:
                    logging.warning(f"Could not return connection to full pool for {self.host}. Closing it.")
                    self._release_slot()
                    ssh.close()

    def close_all(self) -> None:
        """Closes all pooled connections. Safe to call more than once."""
        logging.debug(f"Closing all SSH connections for {self.host}...")
        self._closed = True
        with self._condition:
            self._condition.notify_all()
        while not self._pool.empty():
            try:
                _sftp, ssh = self._pool.get_nowait()
                ssh.close()
            except Empty:
                break
        logging.debug(f"Connection pool for {self.host} closed.")

    def get_stats(self) -> typing.Dict[str, int]:
        """Returns a dictionary with current statistics about the connection pool."""
        with self._lock:
            in_pool = self._pool.qsize()
            return {
                "active_connections": self._active_connections,
                "max_size": self.max_size,
                "in_pool": in_pool,
                "in_use": self._active_connections - in_pool,
            }
