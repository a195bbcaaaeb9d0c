from pathlib import Path
from typing import Callable, Dict, List, Optional

import pytest

from artideploy.config import DeployerConfig
from artideploy.errors import RemoteCommandFailed, RemoteConnectionError
from artideploy.types import ArtifactReference, CommandKind, CommandSpec, DeploymentRequest, RemoteCommandResult


class FakeHost:
    """In-memory target host that applies command specs to a file dict."""

    def __init__(self, files: Optional[Dict[str, bytes]] = None):
        self.files: Dict[str, bytes] = dict(files or {})
        self.restart_exit_codes: List[int] = []
        self.status_exit_codes: List[int] = []
        self.http_exit_codes: List[int] = []
        self.fail_kinds: Dict[CommandKind, int] = {}
        self.down = False
        self.restarts = 0
        self.executed: List[CommandSpec] = []
        self.on_command: Optional[Callable[[CommandSpec], None]] = None

    def apply(self, spec: CommandSpec) -> int:
        self.executed.append(spec)
        if self.on_command:
            self.on_command(spec)
        if spec.kind in self.fail_kinds:
            return self.fail_kinds[spec.kind]

        if spec.kind is CommandKind.UPLOAD:
            local, remote = spec.args
            self.files[remote] = Path(local).read_bytes()
            return 0
        if spec.kind is CommandKind.RENAME:
            src, dst = spec.args
            if src not in self.files:
                return 1
            self.files[dst] = self.files.pop(src)
            return 0
        if spec.kind is CommandKind.COPY:
            src, dst = spec.args
            if src not in self.files:
                return 1
            self.files[dst] = self.files[src]
            return 0
        if spec.kind is CommandKind.REMOVE:
            self.files.pop(spec.args[0], None)
            return 0
        if spec.kind is CommandKind.EXISTS:
            return 0 if spec.args[0] in self.files else 1
        if spec.kind is CommandKind.RESTART_SERVICE:
            self.restarts += 1
            return self.restart_exit_codes.pop(0) if self.restart_exit_codes else 0
        if spec.kind is CommandKind.SERVICE_STATUS:
            return self.status_exit_codes.pop(0) if self.status_exit_codes else 0
        if spec.kind is CommandKind.HTTP_CHECK:
            return self.http_exit_codes.pop(0) if self.http_exit_codes else 0
        raise AssertionError(f"unexpected command {spec}")

    def kinds(self) -> List[CommandKind]:
        return [spec.kind for spec in self.executed]


class FakeExecutor:
    """RemoteExecutor stand-in with the same fail-fast contract."""

    def __init__(self, hosts: Dict[str, FakeHost]):
        self.hosts = hosts
        self.calls: List[List[CommandSpec]] = []

    def execute(self, host, commands):
        self.calls.append(list(commands))
        target = self.hosts[host]
        if target.down:
            raise RemoteConnectionError(f"cannot reach {host}")
        results = []
        for index, spec in enumerate(commands):
            exit_code = target.apply(spec)
            result = RemoteCommandResult(spec, exit_code=exit_code, stderr="boom" if exit_code else "")
            if exit_code != 0:
                raise RemoteCommandFailed(index, result, results)
            results.append(result)
        return results


class StubFetcher:
    """Stages fixed bytes in a real directory so cleanup can be asserted."""

    def __init__(self, staging_dir: Path, payload: bytes = b"new-build", error: Optional[Exception] = None):
        self.staging_dir = staging_dir
        self.payload = payload
        self.error = error
        self.calls = 0

    def fetch(self, ref, prefix=""):
        self.calls += 1
        if self.error is not None:
            raise self.error
        self.staging_dir.mkdir(parents=True, exist_ok=True)
        path = self.staging_dir / f"{prefix}-{ref.name}"
        path.write_bytes(self.payload)
        return path


LIVE_PATH = "/opt/tomcat/webapps/app.war"
BACKUP_PATH = "/opt/tomcat/webapps/app.war.bak"


@pytest.fixture
def config() -> DeployerConfig:
    return DeployerConfig(verify_attempts=5, verify_interval=2.0, command_timeout=30.0)


@pytest.fixture
def artifact() -> ArtifactReference:
    return ArtifactReference(source_url="https://bucket.s3.amazonaws.com/app.war?sig=abc", name="app.war")


@pytest.fixture
def make_request(artifact):
    def factory(host: str = "tomcat-1", service: str = "tomcat", health_url: Optional[str] = None) -> DeploymentRequest:
        return DeploymentRequest(
            artifact=artifact,
            target_host=host,
            target_path=LIVE_PATH,
            service_name=service,
            health_url=health_url,
        )

    return factory
