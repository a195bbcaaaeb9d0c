"""Fail-fast execution of ordered command sequences on a deployment target."""
import logging
from typing import Callable, List, Optional, Sequence

from artideploy.commands import render
from artideploy.errors import CommandTimeout, RemoteCommandFailed, RemoteConnectionError
from artideploy.ssh import SSHClient
from artideploy.types import CommandKind, CommandSpec, RemoteCommandResult

logger = logging.getLogger(__name__)


class RemoteExecutor:
    """Runs command sequences on a host over a single SSH session per sequence."""

    def __init__(
        self,
        username: str = "root",
        port: int = 22,
        private_key_path: Optional[str] = None,
        password: Optional[str] = None,
        client_factory: Callable[..., SSHClient] = SSHClient,
    ):
        """
        Initialize remote executor.

        Args:
            username: SSH username. Default: root.
            port: SSH port. Default: 22.
            private_key_path: Path to SSH private key. Optional.
            password: SSH password. Optional.
            client_factory: Callable building an SSHClient; replaceable in tests.
        """
        self.username = username
        self.port = port
        self.private_key_path = private_key_path
        self.password = password
        self.client_factory = client_factory

    @classmethod
    def from_config(cls, config) -> "RemoteExecutor":
        return cls(
            username=config.ssh_user,
            port=config.ssh_port,
            private_key_path=config.ssh_key_path,
            password=config.ssh_password,
        )

    def execute(self, host: str, commands: Sequence[CommandSpec]) -> List[RemoteCommandResult]:
        """
        Run commands strictly in order, stopping at the first failure.

        Args:
            host: Target host. Required.
            commands: Ordered command specs. Required.

        Returns:
            One result per command, all with exit code 0.

        Raises:
            RemoteConnectionError: If the session cannot be opened or drops.
            CommandTimeout: If a command exceeds its timeout.
            RemoteCommandFailed: If a command exits non-zero. Carries the results collected before it.
        """
        if not host or not isinstance(host, str):
            raise ValueError("host must be a non-empty string")

        results: List[RemoteCommandResult] = []
        if not commands:
            return results

        ssh_client = self.client_factory(
            host=host,
            port=self.port,
            username=self.username,
            private_key_path=self.private_key_path,
            password=self.password,
        )

        try:
            try:
                ssh_client.connect()
            except FileNotFoundError as e:
                raise RemoteConnectionError(str(e)) from e

            for index, spec in enumerate(commands):
                logger.debug(f"[{host}] #{index} {spec.describe()}")
                result = self._run_one(ssh_client, host, index, spec, results)
                if not result.ok:
                    logger.error(f"[{host}] #{index} {spec.describe()} exited with {result.exit_code}")
                    raise RemoteCommandFailed(index, result, results)
                results.append(result)
        finally:
            ssh_client.disconnect()

        return results

    @staticmethod
    def _run_one(
        ssh_client: SSHClient,
        host: str,
        index: int,
        spec: CommandSpec,
        results: List[RemoteCommandResult],
    ) -> RemoteCommandResult:
        try:
            if spec.kind is CommandKind.UPLOAD:
                local_path, remote_path = spec.args
                try:
                    ssh_client.upload_file(local_path, remote_path, timeout=spec.timeout)
                except TimeoutError:
                    raise
                except OSError as e:
                    return RemoteCommandResult(spec, exit_code=1, stderr=str(e))
                return RemoteCommandResult(spec, exit_code=0)

            exit_code, stdout, stderr = ssh_client.execute(render(spec), timeout=spec.timeout)
            return RemoteCommandResult(spec, exit_code=exit_code, stdout=stdout, stderr=stderr)
        except TimeoutError as e:
            logger.error(f"[{host}] #{index} {spec.describe()} timed out")
            raise CommandTimeout(index, spec, results) from e
        except RemoteConnectionError as e:
            e.results = list(results)
            raise
