"""Artifact deployment orchestration: presigned-URL fetch, SSH transfer, activation and rollback."""

from artideploy.config import DeployerConfig, load_config
from artideploy.errors import (
    ActivationError,
    CommandTimeout,
    DeploymentCancelled,
    DeploymentError,
    DeploymentInProgress,
    ExpiredReference,
    FetchError,
    IntegrityError,
    NetworkError,
    RemoteCommandFailed,
    RemoteConnectionError,
    RemoteError,
    TransferError,
    VerificationError,
)
from artideploy.fetch import Fetcher
from artideploy.orchestrator import DeploymentLocks, DeploymentOrchestrator
from artideploy.remote import RemoteExecutor
from artideploy.ssh import SSHClient
from artideploy.types import (
    ArtifactReference,
    CommandKind,
    CommandSpec,
    DeploymentRequest,
    DeploymentResult,
    DeploymentState,
    DeploymentStatus,
    RemoteCommandResult,
)

__all__ = [
    "ArtifactReference",
    "DeploymentRequest",
    "DeploymentResult",
    "DeploymentState",
    "DeploymentStatus",
    "CommandKind",
    "CommandSpec",
    "RemoteCommandResult",
    "Fetcher",
    "SSHClient",
    "RemoteExecutor",
    "DeploymentOrchestrator",
    "DeploymentLocks",
    "DeployerConfig",
    "load_config",
    "DeploymentError",
    "FetchError",
    "ExpiredReference",
    "IntegrityError",
    "NetworkError",
    "RemoteError",
    "RemoteConnectionError",
    "CommandTimeout",
    "RemoteCommandFailed",
    "TransferError",
    "ActivationError",
    "VerificationError",
    "DeploymentInProgress",
    "DeploymentCancelled",
]
