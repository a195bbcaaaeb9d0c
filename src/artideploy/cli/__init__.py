"""CLI interface for fetching artifacts and deploying them to target hosts."""
from __future__ import annotations

import argparse
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import yaml

from artideploy.config import DeployerConfig, load_config
from artideploy.errors import DeploymentError, DeploymentInProgress
from artideploy.fetch import Fetcher
from artideploy.orchestrator import DeploymentOrchestrator
from artideploy.types import ArtifactReference, DeploymentRequest, DeploymentResult

logger = logging.getLogger(__name__)

EXIT_IN_PROGRESS = 2


def _configure_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(level=level, format="%(asctime)s [%(levelname)s] %(message)s")
    else:
        root.setLevel(level)
    # paramiko is chatty at INFO
    logging.getLogger("paramiko").setLevel(logging.DEBUG if verbose else logging.WARNING)


def _load_effective_config(args: argparse.Namespace) -> DeployerConfig:
    config = load_config(Path(args.config) if args.config else None)
    return config.with_overrides(
        ssh_user=getattr(args, "ssh_user", None),
        ssh_port=getattr(args, "ssh_port", None),
        ssh_key_path=getattr(args, "ssh_key", None),
        staging_dir=getattr(args, "staging_dir", None),
    )


def _add_artifact_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--url", type=str, required=True, help="Presigned download URL of the artifact")
    parser.add_argument("--name", type=str, required=True, help="Artifact file name (e.g. app.war)")
    parser.add_argument("--checksum", type=str, default=None, help="Expected checksum, '<algo>:<hex>' or bare sha256 hex")
    parser.add_argument("--expires-at", type=datetime.fromisoformat, default=None, help="URL expiry (ISO 8601); derived from the URL when omitted")


def _add_ssh_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--ssh-user", type=str, default=None, help="SSH username (default from config: root)")
    parser.add_argument("--ssh-port", type=int, default=None, help="SSH port (default from config: 22)")
    parser.add_argument("--ssh-key", type=str, default=None, help="Path to SSH private key")


def _build_artifact(args: argparse.Namespace) -> ArtifactReference:
    return ArtifactReference(
        source_url=args.url,
        name=args.name,
        expected_checksum=args.checksum,
        expires_at=args.expires_at,
    )


def _print_results(requests: List[DeploymentRequest], results: List[DeploymentResult]) -> int:
    exit_code = 0
    for request, result in zip(requests, results):
        line = f"{request.target_host}: {result.status.value} in {result.duration_ms}ms"
        if result.reason:
            line += f" ({result.reason})"
        print(line)
        if not result.succeeded:
            exit_code = 1
    return exit_code


def _run_requests(config: DeployerConfig, requests: List[DeploymentRequest]) -> int:
    orchestrator = DeploymentOrchestrator.from_config(config)
    if len(requests) == 1:
        try:
            results = [orchestrator.deploy(requests[0])]
        except DeploymentInProgress as exc:
            logger.error("%s", exc)
            return EXIT_IN_PROGRESS
    else:
        results = orchestrator.deploy_many(requests)
    return _print_results(requests, results)


def handle_deploy(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    artifact = _build_artifact(args)
    requests = [
        DeploymentRequest(
            artifact=artifact,
            target_host=host,
            target_path=args.target_path,
            service_name=args.service,
            health_url=args.health_url,
        )
        for host in args.host
    ]
    return _run_requests(config, requests)


def load_requests(path: Path) -> List[DeploymentRequest]:
    """
    Load deployment requests from a YAML file.

    The file is either a single request mapping or ``{deployments: [...]}``.
    A request may list ``target.hosts`` to fan out to several hosts.
    """
    with open(path, "r") as f:
        data = yaml.safe_load(f)

    entries: List[Dict[str, Any]]
    if isinstance(data, dict) and "deployments" in data:
        entries = data["deployments"] or []
    else:
        entries = [data]
    if not entries:
        raise ValueError(f"No deployments defined in {path}")

    requests: List[DeploymentRequest] = []
    for entry in entries:
        hosts = (entry.get("target") or {}).get("hosts") if isinstance(entry, dict) else None
        if hosts:
            requests.extend(DeploymentRequest.from_dict(entry, host=host) for host in hosts)
        else:
            requests.append(DeploymentRequest.from_dict(entry))
    return requests


def handle_deploy_file(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    requests = load_requests(Path(args.request_file))
    logger.info("Loaded %d deployment request(s) from %s", len(requests), args.request_file)
    return _run_requests(config, requests)


def handle_fetch(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    fetcher = Fetcher.from_config(config)
    try:
        path = fetcher.fetch(_build_artifact(args))
    except DeploymentError as exc:
        logger.error("Fetch failed: %s", exc)
        return 1
    print(path)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Fetch build artifacts and deploy them to service hosts")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    parser.add_argument("--config", type=str, default=None, help="YAML settings file (default: $ARTIDEPLOY_CONFIG)")
    subparsers = parser.add_subparsers(dest="command", required=True)

    # deploy
    deploy_parser = subparsers.add_parser("deploy", help="Deploy one artifact to one or more hosts")
    _add_artifact_arguments(deploy_parser)
    _add_ssh_arguments(deploy_parser)
    deploy_parser.add_argument("--host", type=str, action="append", required=True, help="Target host (repeat for several)")
    deploy_parser.add_argument("--target-path", type=str, required=True, help="Live artifact path on the host")
    deploy_parser.add_argument("--service", type=str, required=True, help="systemd unit to restart (e.g. tomcat)")
    deploy_parser.add_argument("--health-url", type=str, default=None, help="URL probed from the host after restart")
    deploy_parser.add_argument("--staging-dir", type=str, default=None, help="Local staging directory")
    deploy_parser.set_defaults(handler=handle_deploy)

    # deploy-file
    file_parser = subparsers.add_parser("deploy-file", help="Deploy requests described in a YAML file")
    file_parser.add_argument("request_file", type=str, help="Path to the request YAML")
    _add_ssh_arguments(file_parser)
    file_parser.add_argument("--staging-dir", type=str, default=None, help="Local staging directory")
    file_parser.set_defaults(handler=handle_deploy_file)

    # fetch
    fetch_parser = subparsers.add_parser("fetch", help="Download and verify an artifact into the staging directory")
    _add_artifact_arguments(fetch_parser)
    fetch_parser.add_argument("--staging-dir", type=str, default=None, help="Local staging directory")
    fetch_parser.set_defaults(handler=handle_fetch)

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    _configure_logging(args.verbose)

    handler: Callable[[argparse.Namespace], int] = args.handler
    try:
        return handler(args)
    except Exception as exc:  # pragma: no cover - CLI safety net
        logger.error("Command failed: %s", exc)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
