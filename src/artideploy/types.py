"""Type definitions shared by the fetcher, remote executor and orchestrator."""
from __future__ import annotations

import hashlib
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Optional, Tuple
from urllib.parse import parse_qs, urlsplit

from artideploy.errors import DeploymentError

AMZ_DATE_FORMAT = "%Y%m%dT%H%M%SZ"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_presigned_expiry(url: str) -> Optional[datetime]:
    """
    Derive the expiry instant embedded in a presigned object-storage URL.

    Understands SigV4 (``X-Amz-Date`` + ``X-Amz-Expires``) and the legacy SigV2
    ``Expires`` epoch parameter.

    Args:
        url: Presigned download URL.

    Returns:
        Timezone-aware expiry, or None if the URL carries no expiry parameters.
    """
    query = {key.lower(): values[0] for key, values in parse_qs(urlsplit(url).query).items() if values}

    signed_at = query.get("x-amz-date")
    lifetime = query.get("x-amz-expires")
    if signed_at and lifetime:
        try:
            start = datetime.strptime(signed_at, AMZ_DATE_FORMAT).replace(tzinfo=timezone.utc)
            return start + timedelta(seconds=int(lifetime))
        except ValueError:
            return None

    legacy = query.get("expires")
    if legacy and legacy.isdigit():
        return datetime.fromtimestamp(int(legacy), tz=timezone.utc)

    return None


def redact_url(url: str) -> str:
    """Strip the query string (signature, credentials) from a URL for logging."""
    parts = urlsplit(url)
    return f"{parts.scheme}://{parts.netloc}{parts.path}"


def parse_checksum(checksum: str) -> Tuple[str, str]:
    """
    Split a checksum into (algorithm, hexdigest).

    Accepts ``"<algorithm>:<hexdigest>"`` or a bare hex digest, which is read as sha256.

    Raises:
        ValueError: If hashlib has no fixed-length digest for the algorithm.
    """
    text = checksum.strip()
    if ":" in text:
        algorithm, digest = text.split(":", 1)
        algorithm = algorithm.strip().lower().replace("-", "")
    else:
        algorithm, digest = "sha256", text
    # shake_* digests need an explicit length, so they cannot be compared against a stored hex value
    if algorithm not in hashlib.algorithms_available or algorithm.startswith("shake_"):
        raise ValueError(f"Unsupported checksum algorithm: {algorithm}")
    digest = digest.strip().lower()
    if not digest:
        raise ValueError("Checksum digest must not be empty")
    return algorithm, digest


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return _as_utc(value)
    return _as_utc(datetime.fromisoformat(str(value)))


@dataclass(frozen=True, slots=True)
class ArtifactReference:
    """Immutable descriptor of one build output available behind a presigned URL."""

    source_url: str
    name: str
    expected_checksum: Optional[str] = None
    created_at: datetime = field(default_factory=_utcnow)
    expires_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        if not self.source_url or not isinstance(self.source_url, str):
            raise ValueError("source_url must be a non-empty string")
        if urlsplit(self.source_url).scheme not in ("http", "https"):
            raise ValueError("source_url must be an http(s) URL")
        if not self.name or not isinstance(self.name, str):
            raise ValueError("name must be a non-empty string")
        if "/" in self.name or "\\" in self.name or self.name in (".", ".."):
            raise ValueError(f"name must be a plain file name, got: {self.name}")
        if self.expected_checksum is not None and not self.expected_checksum.strip():
            raise ValueError("expected_checksum must not be blank")
        if self.expected_checksum is not None:
            parse_checksum(self.expected_checksum)

        object.__setattr__(self, "created_at", _as_utc(self.created_at))
        expires_at = self.expires_at if self.expires_at is not None else parse_presigned_expiry(self.source_url)
        if expires_at is not None:
            object.__setattr__(self, "expires_at", _as_utc(expires_at))

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        return _as_utc(now or _utcnow()) >= self.expires_at

    @property
    def redacted_url(self) -> str:
        return redact_url(self.source_url)

    def __repr__(self) -> str:
        return f"ArtifactReference(name={self.name!r}, url={self.redacted_url!r}, expires_at={self.expires_at})"


def _new_request_id() -> str:
    return uuid.uuid4().hex[:12]


@dataclass(frozen=True, slots=True)
class DeploymentRequest:
    """One deployment invocation: which artifact goes where."""

    artifact: ArtifactReference
    target_host: str
    target_path: str
    service_name: str
    health_url: Optional[str] = None
    request_id: str = field(default_factory=_new_request_id)

    def __post_init__(self) -> None:
        if not self.target_host or not isinstance(self.target_host, str):
            raise ValueError("target_host must be a non-empty string")
        if not self.target_path or not self.target_path.startswith("/"):
            raise ValueError("target_path must be an absolute path on the target host")
        if self.target_path.endswith("/"):
            raise ValueError("target_path must name a file, not a directory")
        if not self.service_name or not isinstance(self.service_name, str):
            raise ValueError("service_name must be a non-empty string")

    @property
    def lock_key(self) -> Tuple[str, str]:
        return self.target_host, self.service_name

    @classmethod
    def from_dict(cls, data: Dict[str, Any], host: Optional[str] = None) -> "DeploymentRequest":
        """
        Build a request from a mapping such as a parsed YAML document.

        Expected shape::

            artifact: {url, name, checksum?, expires_at?}
            target: {host, path, service, health_url?}

        Args:
            data: Request mapping.
            host: Override for ``target.host``. Optional.

        Raises:
            ValueError: If required keys are missing.
        """
        if not isinstance(data, dict):
            raise ValueError("deployment request must be a mapping")
        artifact_data = data.get("artifact") or {}
        target_data = data.get("target") or {}

        missing = [f"artifact.{key}" for key in ("url", "name") if not artifact_data.get(key)]
        missing += [f"target.{key}" for key in ("path", "service") if not target_data.get(key)]
        if not (host or target_data.get("host")):
            missing.append("target.host")
        if missing:
            raise ValueError(f"deployment request is missing: {', '.join(missing)}")

        artifact = ArtifactReference(
            source_url=artifact_data["url"],
            name=artifact_data["name"],
            expected_checksum=artifact_data.get("checksum"),
            expires_at=_parse_timestamp(artifact_data.get("expires_at")),
        )
        return cls(
            artifact=artifact,
            target_host=host or target_data["host"],
            target_path=target_data["path"],
            service_name=target_data["service"],
            health_url=target_data.get("health_url"),
        )


class DeploymentState(str, Enum):
    PENDING = "pending"
    FETCHING = "fetching"
    TRANSFERRING = "transferring"
    ACTIVATING = "activating"
    VERIFYING = "verifying"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"


class DeploymentStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"


@dataclass(frozen=True, slots=True)
class DeploymentResult:
    """Terminal record of one orchestrator run."""

    status: DeploymentStatus
    duration_ms: int
    logs: Tuple[str, ...] = ()
    error: Optional[DeploymentError] = None
    rollback_error: Optional[DeploymentError] = None

    @property
    def succeeded(self) -> bool:
        return self.status is DeploymentStatus.SUCCEEDED

    @property
    def reason(self) -> Optional[str]:
        if self.error is None:
            return None
        reason = f"{type(self.error).__name__}: {self.error}"
        if self.rollback_error is not None:
            reason += f"; rollback failed with {type(self.rollback_error).__name__}: {self.rollback_error}"
        return reason


class CommandKind(str, Enum):
    UPLOAD = "upload"
    RENAME = "rename"
    COPY = "copy"
    REMOVE = "remove"
    EXISTS = "exists"
    RESTART_SERVICE = "restart_service"
    SERVICE_STATUS = "service_status"
    HTTP_CHECK = "http_check"


@dataclass(frozen=True, slots=True)
class CommandSpec:
    """A primitive remote operation with its own timeout in seconds."""

    kind: CommandKind
    args: Tuple[str, ...]
    timeout: float = 60.0
    sudo: bool = False

    def describe(self) -> str:
        return f"{self.kind.value} {' '.join(self.args)}"


@dataclass(slots=True)
class RemoteCommandResult:
    """Exit status and output of one remote command."""

    spec: CommandSpec
    exit_code: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0
