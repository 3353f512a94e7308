"""
SFTP Transport Module
Lists and downloads dropped campaign files from the voicemail provider's SFTP server.

A new SSH client is created for every run and closed when the run ends;
connections are never pooled or reused across runs.
"""

import posixpath
import stat
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List

import paramiko

from dashboard_sync.utils.logger import get_logger

logger = get_logger(__name__)


class TransportError(Exception):
    """Raised when the SFTP endpoint cannot be reached or listed."""

    def __init__(self, message: str, cause: Exception = None):
        self.message = message
        self.cause = cause
        super().__init__(self.message)


@dataclass
class RemoteFile:
    name: str
    size: int


class SftpTransport:
    """
    Single-run SFTP session with connect retries.

    Usage:
        with SftpTransport(credentials) as transport:
            for remote in transport.list_files('.json'):
                transport.download(remote.name, local_path)
    """

    def __init__(
        self,
        credentials: Dict,
        ready_timeout: float = 30,
        retries: int = 3,
        retry_factor: float = 2,
        retry_min_timeout: float = 2,
        sleep: Callable[[float], None] = time.sleep
    ):
        """
        Args:
            credentials: host, port, username, password, remote_path
            ready_timeout: Seconds to wait for the SSH handshake
            retries: Connection attempts before giving up
            retry_factor: Backoff multiplier between attempts
            retry_min_timeout: Delay in seconds before the second attempt
            sleep: Sleep function (replaced in tests)
        """
        self.host = credentials.get('host')
        self.port = int(credentials.get('port') or 22)
        self.username = credentials.get('username')
        self.password = credentials.get('password')
        self.remote_path = credentials.get('remote_path') or '/'

        self.ready_timeout = ready_timeout
        self.retries = max(int(retries), 1)
        self.retry_factor = retry_factor
        self.retry_min_timeout = retry_min_timeout
        self._sleep = sleep

        self._ssh = None
        self._sftp = None

    @classmethod
    def from_settings(cls, credentials: Dict, settings: Dict) -> 'SftpTransport':
        """Build a transport from the 'sftp' config section."""
        return cls(
            credentials,
            ready_timeout=settings.get('ready_timeout', 30),
            retries=settings.get('retries', 3),
            retry_factor=settings.get('retry_factor', 2),
            retry_min_timeout=settings.get('retry_min_timeout', 2),
        )

    def __enter__(self) -> 'SftpTransport':
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def connect(self) -> None:
        """
        Open the SSH and SFTP channels.

        Raises:
            TransportError: If credentials are incomplete or every attempt fails
        """
        if not self.host or not self.username or not self.password:
            raise TransportError("Missing required SFTP credentials")

        last_error = None
        for attempt in range(1, self.retries + 1):
            ssh = paramiko.SSHClient()
            ssh.set_missing_host_key_policy(paramiko.AutoAddPolicy())
            try:
                logger.debug(f"Connecting to SFTP {self.host}:{self.port} (attempt {attempt}/{self.retries})")
                ssh.connect(
                    hostname=self.host,
                    port=self.port,
                    username=self.username,
                    password=self.password,
                    timeout=self.ready_timeout,
                    banner_timeout=self.ready_timeout,
                    auth_timeout=self.ready_timeout,
                    look_for_keys=False,
                    allow_agent=False
                )
                self._ssh = ssh
                self._sftp = ssh.open_sftp()
                logger.debug("Connected to SFTP server")
                return
            except (paramiko.SSHException, OSError) as e:
                ssh.close()
                last_error = e
                logger.warning(f"SFTP connection attempt {attempt} failed: {e}")
                if attempt < self.retries:
                    self._sleep(self.retry_min_timeout * self.retry_factor ** (attempt - 1))

        raise TransportError(f"SFTP connection failed: {last_error}", last_error)

    def close(self) -> None:
        """Close the SFTP and SSH channels."""
        if self._sftp is not None:
            self._sftp.close()
            self._sftp = None
        if self._ssh is not None:
            self._ssh.close()
            self._ssh = None
            logger.debug("Disconnected from SFTP server")

    def list_files(self, extension: str = '.json') -> List[RemoteFile]:
        """
        List regular files in the remote directory with the given extension.

        Raises:
            TransportError: If the directory cannot be listed
        """
        if self._sftp is None:
            raise TransportError("SFTP session is not connected")

        try:
            entries = self._sftp.listdir_attr(self.remote_path)
        except (IOError, paramiko.SSHException) as e:
            raise TransportError(f"Cannot list {self.remote_path}: {e}", e) from e

        files = []
        for entry in entries:
            if entry.st_mode is not None and stat.S_ISDIR(entry.st_mode):
                continue
            if entry.filename.endswith(extension):
                files.append(RemoteFile(entry.filename, entry.st_size or 0))

        return sorted(files, key=lambda f: f.name)

    def download(self, filename: str, local_path: Path) -> int:
        """
        Download one file into the staging directory.

        Returns:
            Size in bytes of the local copy

        Raises:
            IOError: If the transfer fails
        """
        remote = posixpath.join(self.remote_path, filename)
        self._sftp.get(remote, str(local_path))
        return Path(local_path).stat().st_size
