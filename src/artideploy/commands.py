"""Builders for the primitive remote operations and their shell rendering."""
import shlex
from datetime import datetime, timezone
from pathlib import PurePosixPath
from typing import Optional

from artideploy.types import CommandKind, CommandSpec


def upload_file(local_path: str, remote_path: str, timeout: float) -> CommandSpec:
    return CommandSpec(CommandKind.UPLOAD, (local_path, remote_path), timeout)


def rename_file(src: str, dst: str, timeout: float) -> CommandSpec:
    return CommandSpec(CommandKind.RENAME, (src, dst), timeout)


def copy_file(src: str, dst: str, timeout: float) -> CommandSpec:
    return CommandSpec(CommandKind.COPY, (src, dst), timeout)


def remove_file(path: str, timeout: float) -> CommandSpec:
    return CommandSpec(CommandKind.REMOVE, (path,), timeout)


def file_exists(path: str, timeout: float) -> CommandSpec:
    return CommandSpec(CommandKind.EXISTS, (path,), timeout)


def restart_service(service: str, timeout: float, sudo: bool = False) -> CommandSpec:
    return CommandSpec(CommandKind.RESTART_SERVICE, (service,), timeout, sudo)


def service_status(service: str, timeout: float, sudo: bool = False) -> CommandSpec:
    return CommandSpec(CommandKind.SERVICE_STATUS, (service,), timeout, sudo)


def http_check(url: str, timeout: float) -> CommandSpec:
    return CommandSpec(CommandKind.HTTP_CHECK, (url,), timeout)


def render(spec: CommandSpec) -> str:
    """
    Render a command spec into the shell command run on the target host.

    Args:
        spec: Command to render. Must not be an upload (uploads go over SFTP).

    Returns:
        Shell command string with every argument quoted.

    Raises:
        ValueError: If the command kind has no shell form.
    """
    args = [shlex.quote(arg) for arg in spec.args]
    prefix = "sudo -n " if spec.sudo else ""

    if spec.kind is CommandKind.RENAME:
        return f"mv -f {args[0]} {args[1]}"
    if spec.kind is CommandKind.COPY:
        return f"cp -p {args[0]} {args[1]}"
    if spec.kind is CommandKind.REMOVE:
        return f"rm -f {args[0]}"
    if spec.kind is CommandKind.EXISTS:
        return f"test -e {args[0]}"
    if spec.kind is CommandKind.RESTART_SERVICE:
        return f"{prefix}systemctl restart {args[0]}"
    if spec.kind is CommandKind.SERVICE_STATUS:
        return f"{prefix}systemctl is-active --quiet {args[0]}"
    if spec.kind is CommandKind.HTTP_CHECK:
        # curl's own limit stays under the channel timeout so a hung server reports as unhealthy
        max_time = max(1, int(spec.timeout) - 1)
        return f"curl -fsS -o /dev/null --max-time {max_time} {args[0]}"
    raise ValueError(f"{spec.kind.value} has no shell rendering")


def temp_path_for(target_path: str, request_id: str) -> str:
    """Remote staging path next to the live file, so the final rename stays on one filesystem."""
    return f"{target_path}.{request_id}.part"


def backup_path_for(target_path: str, template: str, now: Optional[datetime] = None) -> str:
    """
    Compute the backup location for the live artifact.

    Args:
        target_path: Live deployment path on the target host.
        template: Naming template; ``{name}`` is the live file name and
            ``{timestamp}`` a UTC ``YYYYmmddTHHMMSSZ`` stamp.
        now: Clock override. Optional.

    Raises:
        ValueError: If the template escapes the live file's directory.
    """
    live = PurePosixPath(target_path)
    stamp = (now or datetime.now(timezone.utc)).strftime("%Y%m%dT%H%M%SZ")
    backup_name = template.format(name=live.name, timestamp=stamp)
    if not backup_name or "/" in backup_name or backup_name == live.name:
        raise ValueError(f"backup_name_template produced an invalid name: {backup_name!r}")
    return str(live.parent / backup_name)
