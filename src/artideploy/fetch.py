"""Artifact fetcher: presigned-URL download into local staging with integrity checks."""
from __future__ import annotations

import hashlib
import logging
import os
import tempfile
import time
from pathlib import Path
from typing import Callable, Optional, Tuple

import requests

from artideploy.errors import ExpiredReference, FetchError, IntegrityError, NetworkError
from artideploy.types import ArtifactReference, parse_checksum

logger = logging.getLogger(__name__)

CHUNK_SIZE = 1024 * 1024
RETRYABLE_STATUS = {408, 429, 500, 502, 503, 504}
EXPIRED_STATUS = {401, 403}


class Fetcher:
    """Downloads artifacts behind presigned URLs, retrying only transient failures."""

    def __init__(
        self,
        staging_dir: str | Path,
        retries: int = 3,
        backoff_base: float = 1.0,
        timeout: float = 60.0,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """
        Initialize fetcher.

        Args:
            staging_dir: Local directory receiving staged artifacts. Created if missing.
            retries: Retries after the first attempt for transient failures. Default: 3.
            backoff_base: First backoff delay in seconds; doubles per retry. Default: 1.0.
            timeout: Connect/read timeout per HTTP request in seconds. Default: 60.
            session: requests session to reuse. Optional.
            sleep: Sleep function, replaceable in tests.

        Raises:
            ValueError: If retries, backoff_base or timeout are invalid.
        """
        if not isinstance(retries, int) or retries < 0:
            raise ValueError("retries must be a non-negative integer")
        if backoff_base < 0:
            raise ValueError("backoff_base must be >= 0")
        if timeout <= 0:
            raise ValueError("timeout must be positive")

        self.staging_dir = Path(staging_dir)
        self.retries = retries
        self.backoff_base = backoff_base
        self.timeout = timeout
        self.session = session or requests.Session()
        self._sleep = sleep

    @classmethod
    def from_config(cls, config, session: Optional[requests.Session] = None) -> "Fetcher":
        return cls(
            staging_dir=config.staging_dir,
            retries=config.fetch_retries,
            backoff_base=config.fetch_backoff_base,
            timeout=config.fetch_timeout,
            session=session,
        )

    def fetch(self, ref: ArtifactReference, prefix: str = "") -> Path:
        """
        Download the artifact into a uniquely named file under the staging directory.

        Args:
            ref: Artifact to fetch. Required.
            prefix: Namespace prepended to the staged file name (e.g. a request id). Optional.

        Returns:
            Path to the staged file.

        Raises:
            ExpiredReference: If the reference expired or the URL was refused (401/403).
            IntegrityError: If the checksum does not match.
            NetworkError: If transient failures exhausted every retry.
            FetchError: For any other non-retryable failure.
        """
        if ref.is_expired():
            raise ExpiredReference(
                f"Reference for {ref.name} expired at {ref.expires_at.isoformat()}; request a fresh one"
            )

        checksum = parse_checksum(ref.expected_checksum) if ref.expected_checksum else None

        try:
            self.staging_dir.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=self.staging_dir, prefix=f"{prefix}-" if prefix else "", suffix=f"-{ref.name}")
            os.close(fd)
        except OSError as e:
            raise FetchError(f"Cannot create staging file for {ref.name} in {self.staging_dir}: {e}") from e
        local_path = Path(tmp_name)

        try:
            self._download_with_retries(ref, local_path, checksum)
        except BaseException:
            local_path.unlink(missing_ok=True)
            raise

        logger.info(f"Artifact staged: {ref.name} -> {local_path} ({local_path.stat().st_size} bytes)")
        return local_path

    def _download_with_retries(self, ref: ArtifactReference, local_path: Path, checksum: Optional[Tuple[str, str]]) -> None:
        attempts = self.retries + 1
        for attempt in range(1, attempts + 1):
            try:
                self._download_once(ref, local_path, checksum)
                return
            except NetworkError as e:
                if attempt >= attempts:
                    logger.error(f"Fetch of {ref.name} failed after {attempts} attempts: {e}")
                    raise
                delay = self.backoff_base * (2 ** (attempt - 1))
                logger.warning(f"Fetch attempt {attempt}/{attempts} for {ref.name} failed ({e}), retrying in {delay:.1f}s")
                self._sleep(delay)
                # a reference can lapse while we back off
                if ref.is_expired():
                    raise ExpiredReference(f"Reference for {ref.name} expired during retries; request a fresh one") from e

    def _download_once(self, ref: ArtifactReference, local_path: Path, checksum: Optional[Tuple[str, str]]) -> None:
        digest = hashlib.new(checksum[0]) if checksum else None

        try:
            with self.session.get(ref.source_url, stream=True, timeout=self.timeout) as response:
                self._check_status(ref, response)
                with open(local_path, "wb") as f:
                    for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                        if not chunk:
                            continue
                        f.write(chunk)
                        if digest is not None:
                            digest.update(chunk)
        except (requests.ConnectionError, requests.Timeout, requests.exceptions.ChunkedEncodingError) as e:
            raise NetworkError(f"Download of {ref.redacted_url} failed: {e}") from e
        except requests.RequestException as e:
            raise FetchError(f"Download of {ref.redacted_url} failed: {e}") from e
        except OSError as e:
            raise FetchError(f"Writing {ref.name} to {local_path} failed: {e}") from e

        if digest is not None and digest.hexdigest() != checksum[1]:
            raise IntegrityError(
                f"Checksum mismatch for {ref.name}: expected {checksum[0]}:{checksum[1]}, got {digest.hexdigest()}"
            )

    @staticmethod
    def _check_status(ref: ArtifactReference, response: requests.Response) -> None:
        status = response.status_code
        if status < 400:
            return
        if status in EXPIRED_STATUS:
            raise ExpiredReference(f"Object storage refused {ref.redacted_url} (HTTP {status}); request a fresh reference")
        if status in RETRYABLE_STATUS:
            raise NetworkError(f"Object storage returned HTTP {status} for {ref.redacted_url}")
        raise FetchError(f"Object storage returned HTTP {status} for {ref.redacted_url}")
