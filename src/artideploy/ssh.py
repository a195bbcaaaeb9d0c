"""SSH client for executing commands and copying files on deployment targets."""
import logging
import socket
import time
from pathlib import Path
from typing import List, Optional, Tuple

import paramiko

from artideploy.errors import RemoteConnectionError

logger = logging.getLogger(__name__)

READ_SIZE = 32768


class SSHClient:
    """One authenticated SSH session to a target host."""

    def __init__(
        self,
        host: str,
        port: int = 22,
        username: str = "root",
        private_key_path: Optional[str] = None,
        password: Optional[str] = None,
        connect_timeout: float = 10.0,
        poll_interval: float = 0.1,
    ):
        """
        Initialize SSH client connection parameters.

        Args:
            host: SSH host/IP address. Required.
            port: SSH port number. Default: 22.
            username: SSH username. Default: root.
            private_key_path: Path to private SSH key file. Optional.
            password: SSH password. Optional.
            connect_timeout: TCP/handshake timeout in seconds. Default: 10.
            poll_interval: Seconds between exit-status checks while a command runs.

        Without a key or password, the SSH agent and default key files are tried.

        Raises:
            ValueError: If host is empty, port is invalid, or username is empty.
        """
        if not host or not isinstance(host, str):
            raise ValueError("host must be a non-empty string")
        if not isinstance(port, int) or port <= 0 or port > 65535:
            raise ValueError("port must be an integer between 1 and 65535")
        if not username or not isinstance(username, str):
            raise ValueError("username must be a non-empty string")

        self.host = host
        self.port = port
        self.username = username
        self.private_key_path = private_key_path
        self.password = password
        self.connect_timeout = connect_timeout
        self.poll_interval = poll_interval
        self.client: Optional[paramiko.SSHClient] = None

    def is_connected(self) -> bool:
        return self.client is not None and self.client.get_transport() is not None and self.client.get_transport().is_active()

    def connect(self) -> None:
        """
        Establish SSH connection to remote host.

        Raises:
            FileNotFoundError: If private key file does not exist.
            RemoteConnectionError: If the host is unreachable or authentication fails.
        """
        if self.is_connected():
            logger.debug(f"Already connected to {self.host}")
            return

        key_filename = None
        if self.private_key_path:
            key_path = Path(self.private_key_path).expanduser()
            if not key_path.exists():
                raise FileNotFoundError(f"Private key file not found: {self.private_key_path}")
            key_filename = str(key_path)

        self.client = paramiko.SSHClient()
        self.client.load_system_host_keys()
        self.client.set_missing_host_key_policy(paramiko.AutoAddPolicy())

        try:
            self.client.connect(
                hostname=self.host,
                port=self.port,
                username=self.username,
                key_filename=key_filename,
                password=self.password,
                timeout=self.connect_timeout,
                allow_agent=True,
                look_for_keys=key_filename is None,
            )
            logger.info(f"SSH connection established to {self.username}@{self.host}:{self.port}")
        except (paramiko.SSHException, socket.error) as e:
            self.client.close()
            self.client = None
            raise RemoteConnectionError(f"SSH connection to {self.username}@{self.host}:{self.port} failed: {e}") from e

    def disconnect(self) -> None:
        """Close SSH connection."""
        if self.client:
            self.client.close()
            self.client = None
            logger.info(f"SSH connection closed to {self.host}")

    def _require_connection(self) -> paramiko.SSHClient:
        if not self.is_connected():
            raise RemoteConnectionError(f"Not connected to {self.host}")
        return self.client

    def execute(self, command: str, timeout: float = 300.0) -> Tuple[int, str, str]:
        """
        Execute a command on the remote host.

        Args:
            command: Shell command to execute. Required.
            timeout: Seconds the command may run before it is abandoned. Default: 300.

        Returns:
            Tuple of (exit_code, stdout, stderr).

        Raises:
            ValueError: If command is empty.
            TimeoutError: If the command does not finish within timeout.
            RemoteConnectionError: If not connected or the session breaks.
        """
        if not command or not isinstance(command, str):
            raise ValueError("command must be a non-empty string")

        client = self._require_connection()

        try:
            _, stdout, _ = client.exec_command(command, timeout=timeout)
            channel = stdout.channel
            deadline = time.monotonic() + timeout
            out_chunks: List[bytes] = []
            err_chunks: List[bytes] = []
            # keep both pipes drained so a chatty command cannot stall on a full window
            while True:
                received = False
                if channel.recv_ready():
                    out_chunks.append(channel.recv(READ_SIZE))
                    received = True
                if channel.recv_stderr_ready():
                    err_chunks.append(channel.recv_stderr(READ_SIZE))
                    received = True
                if not received and channel.exit_status_ready():
                    break
                if time.monotonic() >= deadline:
                    channel.close()
                    raise TimeoutError(f"Command timed out after {timeout}s: {command}")
                if not received:
                    time.sleep(self.poll_interval)

            exit_code = channel.recv_exit_status()
            stdout_text = b"".join(out_chunks).decode("utf-8", errors="replace")
            stderr_text = b"".join(err_chunks).decode("utf-8", errors="replace")
        except socket.timeout as e:
            raise TimeoutError(f"Command timed out after {timeout}s: {command}") from e
        except (paramiko.SSHException, EOFError) as e:
            raise RemoteConnectionError(f"SSH session to {self.host} failed: {e}") from e

        logger.debug(f"Command executed: {command} (exit code: {exit_code})")
        return exit_code, stdout_text, stderr_text

    def upload_file(self, local_path: str, remote_path: str, timeout: float = 300.0) -> None:
        """
        Upload a local file to the remote host over SFTP.

        Args:
            local_path: Path to local file. Required.
            remote_path: Destination path on remote host. Required.
            timeout: Socket timeout for the transfer in seconds. Default: 300.

        Raises:
            FileNotFoundError: If local file does not exist.
            TimeoutError: If the transfer stalls past timeout.
            OSError: If the remote side rejects the write.
            RemoteConnectionError: If not connected or the session breaks.
        """
        if not local_path or not isinstance(local_path, str):
            raise ValueError("local_path must be a non-empty string")
        if not remote_path or not isinstance(remote_path, str):
            raise ValueError("remote_path must be a non-empty string")

        local_file = Path(local_path)
        if not local_file.exists():
            raise FileNotFoundError(f"Local file not found: {local_path}")

        client = self._require_connection()

        try:
            sftp = client.open_sftp()
            try:
                sftp.get_channel().settimeout(timeout)
                sftp.put(str(local_file), remote_path)
            finally:
                sftp.close()
        except socket.timeout as e:
            raise TimeoutError(f"Upload to {self.host}:{remote_path} timed out after {timeout}s") from e
        except (paramiko.SSHException, EOFError) as e:
            raise RemoteConnectionError(f"SFTP session to {self.host} failed: {e}") from e

        logger.info(f"File uploaded: {local_path} -> {self.host}:{remote_path}")
