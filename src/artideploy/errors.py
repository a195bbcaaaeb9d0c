"""Exception taxonomy for artifact fetching, remote execution and deployment."""
from __future__ import annotations

from typing import TYPE_CHECKING, List, Optional

if TYPE_CHECKING:
    from artideploy.types import CommandSpec, RemoteCommandResult


class DeploymentError(RuntimeError):
    """Base class for every error surfaced by a deployment run."""


class FetchError(DeploymentError):
    """Raised when an artifact cannot be staged locally."""


class ExpiredReference(FetchError):
    """Raised when the presigned URL is past its validity window or was refused."""


class IntegrityError(FetchError):
    """Raised when the downloaded bytes do not match the expected checksum."""


class NetworkError(FetchError):
    """Transient transport failure. Retried by the fetcher."""


class RemoteError(DeploymentError):
    """Base class for failures on the remote command channel."""

    def __init__(self, message: str, results: Optional[List["RemoteCommandResult"]] = None):
        super().__init__(message)
        self.results = list(results or [])


class RemoteConnectionError(RemoteError):
    """Raised when the SSH session cannot be established or drops."""


class CommandTimeout(RemoteError):
    """Raised when a remote command exceeds its timeout."""

    def __init__(self, index: int, spec: "CommandSpec", results: Optional[List["RemoteCommandResult"]] = None):
        super().__init__(f"command #{index} ({spec.describe()}) timed out after {spec.timeout}s", results)
        self.index = index
        self.spec = spec


class RemoteCommandFailed(RemoteError):
    """Raised when a remote command exits non-zero."""

    def __init__(self, index: int, result: "RemoteCommandResult", results: Optional[List["RemoteCommandResult"]] = None):
        detail = result.stderr.strip() or result.stdout.strip()
        message = f"command #{index} ({result.spec.describe()}) exited with {result.exit_code}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message, results)
        self.index = index
        self.result = result


class TransferError(DeploymentError):
    """Raised when the staged artifact cannot be copied to the target host."""


class ActivationError(DeploymentError):
    """Raised when swapping the artifact in or restarting the service fails."""


class VerificationError(DeploymentError):
    """Raised when the service never reports healthy after activation."""


class DeploymentInProgress(DeploymentError):
    """Raised when another deployment already holds the (host, service) lock."""

    def __init__(self, host: str, service: str):
        super().__init__(f"a deployment of {service} on {host} is already in progress")
        self.host = host
        self.service = service


class DeploymentCancelled(DeploymentError):
    """Raised when the caller cancels a deployment between steps."""
