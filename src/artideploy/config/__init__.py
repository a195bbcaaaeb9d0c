"""
Configuration module for the deployment orchestrator.
Loads defaults, an optional YAML settings file, and ARTIDEPLOY_* environment overrides.
"""
import os
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

ENV_PREFIX = "ARTIDEPLOY_"
CONFIG_ENV_VAR = "ARTIDEPLOY_CONFIG"

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


@dataclass(frozen=True)
class DeployerConfig:
    """
    Recognized options for fetching, remote execution and verification.

    ``use_sudo`` prefixes the systemctl commands with ``sudo -n``. File operations
    (SFTP upload, rename, copy, remove) always run as ``ssh_user``, which needs
    write access to the live artifact's directory.
    """

    fetch_retries: int = 3
    fetch_backoff_base: float = 1.0
    fetch_timeout: float = 60.0
    command_timeout: float = 120.0
    verify_attempts: int = 5
    verify_interval: float = 2.0
    backup_name_template: str = "{name}.bak"
    staging_dir: str = ".artideploy/staging"
    ssh_user: str = "root"
    ssh_port: int = 22
    ssh_key_path: Optional[str] = None
    ssh_password: Optional[str] = None
    use_sudo: bool = False

    def __post_init__(self) -> None:
        if self.fetch_retries < 0:
            raise ValueError("fetch_retries must be >= 0")
        if self.fetch_backoff_base < 0:
            raise ValueError("fetch_backoff_base must be >= 0")
        for key in ("fetch_timeout", "command_timeout"):
            if getattr(self, key) <= 0:
                raise ValueError(f"{key} must be positive")
        if self.verify_attempts <= 0:
            raise ValueError("verify_attempts must be a positive integer")
        if self.verify_interval < 0:
            raise ValueError("verify_interval must be >= 0")
        if "{name}" not in self.backup_name_template or self.backup_name_template == "{name}":
            raise ValueError("backup_name_template must contain {name} and differ from it")
        if "/" in self.backup_name_template:
            raise ValueError("backup_name_template must not contain '/'")
        try:
            self.backup_name_template.format(name="app.war", timestamp="20260101T000000Z")
        except (KeyError, IndexError, ValueError) as e:
            raise ValueError(
                f"backup_name_template may only use {{name}} and {{timestamp}}: {self.backup_name_template!r}"
            ) from e
        if not isinstance(self.ssh_port, int) or self.ssh_port <= 0 or self.ssh_port > 65535:
            raise ValueError("ssh_port must be an integer between 1 and 65535")
        if not self.ssh_user:
            raise ValueError("ssh_user must be a non-empty string")

    def with_overrides(self, **overrides: Any) -> "DeployerConfig":
        """Return a copy with every non-None override applied."""
        return replace(self, **{key: value for key, value in overrides.items() if value is not None})


def _coerce(key: str, raw: Any, target_type: Any) -> Any:
    if raw is None:
        return None
    try:
        if target_type is bool:
            if isinstance(raw, bool):
                return raw
            text = str(raw).strip().lower()
            if text in _TRUE_VALUES:
                return True
            if text in _FALSE_VALUES:
                return False
            raise ValueError(raw)
        if target_type is int:
            return int(raw)
        if target_type is float:
            return float(raw)
    except (TypeError, ValueError) as e:
        raise ValueError(f"Invalid value for '{key}': {raw!r}") from e
    return str(raw)


def _field_types() -> Dict[str, Any]:
    return {f.name: f.type if f.type in (bool, int, float) else str for f in fields(DeployerConfig)}


def _parse_env_file(env_file: Path) -> None:
    """Parse and load .env file into os.environ without overriding existing values."""
    with open(env_file) as f:
        for line in f:
            line = line.strip()
            if line and not line.startswith("#") and "=" in line:
                key, value = line.split("=", 1)
                value = value.strip()
                # Remove surrounding quotes if present
                if (value.startswith('"') and value.endswith('"')) or (value.startswith("'") and value.endswith("'")):
                    value = value[1:-1]
                os.environ.setdefault(key.strip(), value)


def _load_yaml(config_file: Path) -> Dict[str, Any]:
    if not config_file.exists():
        raise FileNotFoundError(f"Config file not found: {config_file}")
    with open(config_file, "r") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Config file must contain a mapping: {config_file}")
    # allow the settings to live under a top-level "artideploy:" key
    return data.get("artideploy", data)


def load_config(config_file: Optional[Path] = None, env_file: Optional[Path] = None) -> DeployerConfig:
    """
    Build the effective configuration.

    Precedence, lowest first: defaults, YAML file, environment (including values
    loaded from the .env file).

    Args:
        config_file: YAML settings file. If None, uses $ARTIDEPLOY_CONFIG when set.
        env_file: Path to .env file. If None, looks for .env in the working directory.

    Returns:
        DeployerConfig instance.

    Raises:
        FileNotFoundError: If an explicitly named config file does not exist.
        ValueError: If a setting is unknown or has an invalid value.
    """
    env_path = env_file if env_file is not None else Path.cwd() / ".env"
    if env_path.exists():
        _parse_env_file(env_path)

    if config_file is None and os.getenv(CONFIG_ENV_VAR):
        config_file = Path(os.environ[CONFIG_ENV_VAR])

    types = _field_types()
    values: Dict[str, Any] = {}

    if config_file is not None:
        for key, raw in _load_yaml(Path(config_file)).items():
            if key not in types:
                raise ValueError(f"Unknown setting '{key}' in {config_file}")
            values[key] = _coerce(key, raw, types[key])

    for key, target_type in types.items():
        raw = os.getenv(f"{ENV_PREFIX}{key.upper()}")
        if raw is not None and raw.strip() != "":
            values[key] = _coerce(key, raw.strip(), target_type)

    return DeployerConfig(**values)
