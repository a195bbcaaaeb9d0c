"""Deployment orchestrator: Fetch → Transfer → Activate → Verify, with rollback."""
from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterator, List, Optional, Sequence, Set, Tuple

from artideploy import commands
from artideploy.config import DeployerConfig
from artideploy.errors import (
    ActivationError,
    DeploymentCancelled,
    DeploymentError,
    DeploymentInProgress,
    FetchError,
    RemoteCommandFailed,
    RemoteError,
    TransferError,
    VerificationError,
)
from artideploy.fetch import Fetcher
from artideploy.remote import RemoteExecutor
from artideploy.types import DeploymentRequest, DeploymentResult, DeploymentState, DeploymentStatus

logger = logging.getLogger(__name__)


class DeploymentLocks:
    """Per-(host, service) try-locks. Contention is reported, never waited on."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._held: Set[Tuple[str, str]] = set()

    def is_held(self, host: str, service: str) -> bool:
        with self._guard:
            return (host, service) in self._held

    def __len__(self) -> int:
        with self._guard:
            return len(self._held)

    @contextmanager
    def hold(self, host: str, service: str) -> Iterator[None]:
        key = (host, service)
        with self._guard:
            if key in self._held:
                raise DeploymentInProgress(host, service)
            self._held.add(key)
        try:
            yield
        finally:
            # released pairs leave no entry behind
            with self._guard:
                self._held.discard(key)


class _RunLog:
    """Collects progress lines for the result while mirroring them to the module logger."""

    def __init__(self, request: DeploymentRequest) -> None:
        self.prefix = f"[{request.request_id} {request.service_name}@{request.target_host}]"
        self.lines: List[str] = []
        self.state = DeploymentState.PENDING

    def transition(self, state: DeploymentState) -> None:
        self.info(f"{self.state.value} -> {state.value}")
        self.state = state

    def info(self, message: str) -> None:
        self._emit(logging.INFO, message)

    def warning(self, message: str) -> None:
        self._emit(logging.WARNING, message)

    def error(self, message: str) -> None:
        self._emit(logging.ERROR, message)

    def _emit(self, level: int, message: str) -> None:
        logger.log(level, f"{self.prefix} {message}")
        self.lines.append(f"{logging.getLevelName(level)} {message}")


@dataclass
class _Plan:
    """Remote paths for one run and how far activation got, so rollback undoes only what changed."""

    live_path: str
    temp_path: str
    backup_path: str
    had_previous: bool = False
    backup_done: bool = False
    live_replaced: bool = False

    @property
    def host_changed(self) -> bool:
        return self.backup_done or self.live_replaced


class DeploymentOrchestrator:
    """Drives one deployment per call and returns exactly one terminal result."""

    def __init__(
        self,
        fetcher: Fetcher,
        executor: RemoteExecutor,
        config: Optional[DeployerConfig] = None,
        locks: Optional[DeploymentLocks] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.fetcher = fetcher
        self.executor = executor
        self.config = config or DeployerConfig()
        self.locks = locks or DeploymentLocks()
        self._sleep = sleep

    @classmethod
    def from_config(cls, config: DeployerConfig) -> "DeploymentOrchestrator":
        return cls(Fetcher.from_config(config), RemoteExecutor.from_config(config), config)

    def deploy(self, request: DeploymentRequest, cancel_event: Optional[threading.Event] = None) -> DeploymentResult:
        """
        Deploy one artifact to one target.

        Args:
            request: What to deploy and where. Required.
            cancel_event: Set it to cancel; checked between steps only. Optional.

        Returns:
            Terminal DeploymentResult.

        Raises:
            DeploymentInProgress: If a deployment for the same (host, service) is running.
        """
        with self.locks.hold(*request.lock_key):
            return self._run(request, cancel_event)

    def deploy_many(self, requests: Sequence[DeploymentRequest], max_workers: Optional[int] = None) -> List[DeploymentResult]:
        """Run independent requests in parallel; results keep the order of requests."""
        if not requests:
            return []

        def run(request: DeploymentRequest) -> DeploymentResult:
            try:
                return self.deploy(request)
            except DeploymentError as e:
                logger.warning(f"Deployment {request.request_id} to {request.target_host} did not run: {e}")
                return DeploymentResult(DeploymentStatus.FAILED, 0, (f"ERROR {e}",), error=e)

        with ThreadPoolExecutor(max_workers=max_workers or len(requests)) as pool:
            return list(pool.map(run, requests))

    def _run(self, request: DeploymentRequest, cancel_event: Optional[threading.Event]) -> DeploymentResult:
        started = time.monotonic()
        log = _RunLog(request)
        host = request.target_host
        timeout = self.config.command_timeout
        plan = _Plan(
            live_path=request.target_path,
            temp_path=commands.temp_path_for(request.target_path, request.request_id),
            backup_path=commands.backup_path_for(request.target_path, self.config.backup_name_template),
        )
        staged: Optional[Path] = None

        def finish(status: DeploymentStatus, error: Optional[DeploymentError] = None, rollback_error: Optional[DeploymentError] = None) -> DeploymentResult:
            terminal = {
                DeploymentStatus.SUCCEEDED: DeploymentState.SUCCEEDED,
                DeploymentStatus.FAILED: DeploymentState.FAILED,
                DeploymentStatus.ROLLED_BACK: DeploymentState.ROLLED_BACK,
            }[status]
            log.transition(terminal)
            duration_ms = int((time.monotonic() - started) * 1000)
            return DeploymentResult(status, duration_ms, tuple(log.lines), error, rollback_error)

        log.info(f"Deploying {request.artifact.name} to {host}:{request.target_path}")
        try:
            log.transition(DeploymentState.FETCHING)
            try:
                staged = self.fetcher.fetch(request.artifact, prefix=request.request_id)
            except FetchError as e:
                log.error(f"Fetch failed: {e}")
                return finish(DeploymentStatus.FAILED, e)
            except OSError as e:
                log.error(f"Staging failed: {e}")
                return finish(DeploymentStatus.FAILED, FetchError(f"staging {request.artifact.name} failed: {e}"))
            log.info(f"Staged artifact at {staged}")

            if self._cancelled(cancel_event):
                log.warning("Cancelled before transfer")
                return finish(DeploymentStatus.FAILED, DeploymentCancelled("cancelled before transfer"))

            log.transition(DeploymentState.TRANSFERRING)
            try:
                self.executor.execute(host, [commands.upload_file(str(staged), plan.temp_path, timeout)])
            except RemoteError as e:
                log.error(f"Transfer failed: {e}")
                self._discard_temp(host, plan, log)
                return finish(DeploymentStatus.FAILED, TransferError(f"copy to {host}:{plan.temp_path} failed: {e}"))
            log.info(f"Uploaded to {plan.temp_path}")

            if self._cancelled(cancel_event):
                log.warning("Cancelled before activation")
                self._discard_temp(host, plan, log)
                return finish(DeploymentStatus.FAILED, DeploymentCancelled("cancelled before activation"))

            log.transition(DeploymentState.ACTIVATING)
            try:
                self._activate(request, plan, log)
            except ActivationError as e:
                log.error(f"Activation failed: {e}")
                return self._roll_back(request, plan, e, log, finish)

            if self._cancelled(cancel_event):
                log.warning("Cancelled after activation, restoring previous version")
                return self._roll_back(request, plan, DeploymentCancelled("cancelled after activation"), log, finish)

            log.transition(DeploymentState.VERIFYING)
            try:
                self._verify(request, log)
            except VerificationError as e:
                log.error(f"Verification failed: {e}")
                return self._roll_back(request, plan, e, log, finish)

            if plan.had_previous:
                try:
                    self.executor.execute(host, [commands.remove_file(plan.backup_path, timeout)])
                    log.info(f"Removed backup {plan.backup_path}")
                except RemoteError as e:
                    log.warning(f"Could not remove backup {plan.backup_path}: {e}")
            return finish(DeploymentStatus.SUCCEEDED)
        finally:
            if staged is not None:
                staged.unlink(missing_ok=True)

    def _activate(self, request: DeploymentRequest, plan: _Plan, log: _RunLog) -> None:
        host = request.target_host
        timeout = self.config.command_timeout

        try:
            plan.had_previous = self._remote_exists(host, plan.live_path)
        except RemoteError as e:
            raise ActivationError(f"could not inspect {plan.live_path}: {e}") from e

        steps = []
        if plan.had_previous:
            log.info(f"Backing up current artifact to {plan.backup_path}")
            steps.append(commands.rename_file(plan.live_path, plan.backup_path, timeout))
        else:
            log.info(f"No previous artifact at {plan.live_path}")
        steps.append(commands.rename_file(plan.temp_path, plan.live_path, timeout))
        steps.append(commands.restart_service(request.service_name, timeout, sudo=self.config.use_sudo))

        try:
            self.executor.execute(host, steps)
        except RemoteError as e:
            completed = len(e.results)
            swap_index = 1 if plan.had_previous else 0
            plan.backup_done = plan.had_previous and completed >= 1
            plan.live_replaced = completed > swap_index
            raise ActivationError(f"activation of {request.service_name} failed: {e}") from e

        plan.backup_done = plan.had_previous
        plan.live_replaced = True
        log.info(f"Activated {plan.live_path} and restarted {request.service_name}")

    def _verify(self, request: DeploymentRequest, log: _RunLog) -> None:
        timeout = self.config.command_timeout
        checks = [commands.service_status(request.service_name, timeout, sudo=self.config.use_sudo)]
        if request.health_url:
            checks.append(commands.http_check(request.health_url, timeout))

        attempts = self.config.verify_attempts
        last_error: Optional[RemoteError] = None
        for attempt in range(1, attempts + 1):
            try:
                self.executor.execute(request.target_host, checks)
                log.info(f"Health check passed on attempt {attempt}/{attempts}")
                return
            except RemoteError as e:
                last_error = e
                log.warning(f"Health check {attempt}/{attempts} failed: {e}")
            if attempt < attempts:
                self._sleep(self.config.verify_interval)

        raise VerificationError(f"{request.service_name} not healthy after {attempts} attempts: {last_error}")

    def _roll_back(
        self,
        request: DeploymentRequest,
        plan: _Plan,
        error: DeploymentError,
        log: _RunLog,
        finish: Callable[..., DeploymentResult],
    ) -> DeploymentResult:
        host = request.target_host
        timeout = self.config.command_timeout

        steps = []
        if plan.backup_done:
            # copy through the temp path so the live file is swapped in one rename
            steps.append(commands.copy_file(plan.backup_path, plan.temp_path, timeout))
            steps.append(commands.rename_file(plan.temp_path, plan.live_path, timeout))
        else:
            if plan.live_replaced:
                steps.append(commands.remove_file(plan.live_path, timeout))
            steps.append(commands.remove_file(plan.temp_path, timeout))
        if plan.host_changed:
            steps.append(commands.restart_service(request.service_name, timeout, sudo=self.config.use_sudo))

        log.info(f"Rolling back ({len(steps)} step(s))")
        try:
            self.executor.execute(host, steps)
        except RemoteError as e:
            rollback_error = ActivationError(f"rollback on {host} failed: {e}")
            log.error(f"Rollback failed, manual intervention required: {e}")
            return finish(DeploymentStatus.FAILED, error, rollback_error)

        if plan.backup_done:
            log.info(f"Restored {plan.live_path} from {plan.backup_path} (backup kept)")
        return finish(DeploymentStatus.ROLLED_BACK, error)

    def _remote_exists(self, host: str, path: str) -> bool:
        try:
            self.executor.execute(host, [commands.file_exists(path, self.config.command_timeout)])
        except RemoteCommandFailed as e:
            if e.result.exit_code == 1:
                return False
            raise
        return True

    def _discard_temp(self, host: str, plan: _Plan, log: _RunLog) -> None:
        try:
            self.executor.execute(host, [commands.remove_file(plan.temp_path, self.config.command_timeout)])
        except RemoteError as e:
            log.warning(f"Could not remove {plan.temp_path}: {e}")

    @staticmethod
    def _cancelled(cancel_event: Optional[threading.Event]) -> bool:
        return cancel_event is not None and cancel_event.is_set()
