import errno
import hashlib
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch

import pytest
import requests

from artideploy.errors import ExpiredReference, FetchError, IntegrityError, NetworkError
from artideploy.fetch import Fetcher
from artideploy.types import ArtifactReference, parse_checksum

PAYLOAD = b"PK\x03\x04 fake war contents" * 100
URL = "https://bucket.s3.amazonaws.com/builds/app.war?X-Amz-Signature=abc"


class FakeResponse:
    def __init__(self, status_code=200, body=PAYLOAD, chunk=256):
        self.status_code = status_code
        self.body = body
        self.chunk = chunk

    def iter_content(self, chunk_size=1):
        for i in range(0, len(self.body), self.chunk):
            yield self.body[i:i + self.chunk]

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


def _session(*responses):
    session = MagicMock()
    session.get.side_effect = list(responses)
    return session


def _fetcher(tmp_path, session, retries=3):
    sleep = MagicMock()
    fetcher = Fetcher(tmp_path / "staging", retries=retries, backoff_base=1.0, session=session, sleep=sleep)
    return fetcher, sleep


def _ref(checksum=None, expires_at=None):
    return ArtifactReference(source_url=URL, name="app.war", expected_checksum=checksum, expires_at=expires_at)


def _staged(tmp_path):
    staging = tmp_path / "staging"
    return list(staging.iterdir()) if staging.exists() else []


class TestFetchSuccess:
    """Valid references produce exactly one matching local file."""

    def test_fetch_with_matching_checksum(self, tmp_path):
        digest = hashlib.sha256(PAYLOAD).hexdigest()
        fetcher, sleep = _fetcher(tmp_path, _session(FakeResponse()))

        path = fetcher.fetch(_ref(checksum=f"sha256:{digest}"), prefix="req1")

        assert path.read_bytes() == PAYLOAD
        assert path.name.startswith("req1-")
        assert path.name.endswith("-app.war")
        assert _staged(tmp_path) == [path]
        sleep.assert_not_called()

    def test_fetch_accepts_bare_hex_checksum(self, tmp_path):
        fetcher, _ = _fetcher(tmp_path, _session(FakeResponse()))

        path = fetcher.fetch(_ref(checksum=hashlib.sha256(PAYLOAD).hexdigest().upper()))

        assert path.read_bytes() == PAYLOAD

    def test_fetch_never_overwrites_same_name(self, tmp_path):
        fetcher, _ = _fetcher(tmp_path, _session(FakeResponse(body=b"one"), FakeResponse(body=b"two")))

        first = fetcher.fetch(_ref())
        second = fetcher.fetch(_ref())

        assert first != second
        assert first.read_bytes() == b"one"
        assert second.read_bytes() == b"two"

    def test_fetch_streams_with_timeout(self, tmp_path):
        session = _session(FakeResponse())
        fetcher, _ = _fetcher(tmp_path, session)

        fetcher.fetch(_ref())

        session.get.assert_called_once_with(URL, stream=True, timeout=60.0)


class TestFetchFailures:
    """Failures leave nothing behind in the staging directory."""

    def test_expired_reference_is_rejected_without_network(self, tmp_path):
        session = _session()
        fetcher, _ = _fetcher(tmp_path, session)
        expired = datetime.now(timezone.utc) - timedelta(minutes=1)

        with pytest.raises(ExpiredReference):
            fetcher.fetch(_ref(expires_at=expired))

        session.get.assert_not_called()
        assert _staged(tmp_path) == []

    @pytest.mark.parametrize("status", [401, 403])
    def test_refused_url_is_expired_and_not_retried(self, tmp_path, status):
        session = _session(FakeResponse(status_code=status))
        fetcher, sleep = _fetcher(tmp_path, session)

        with pytest.raises(ExpiredReference):
            fetcher.fetch(_ref())

        assert session.get.call_count == 1
        sleep.assert_not_called()
        assert _staged(tmp_path) == []

    def test_checksum_mismatch_deletes_partial_file(self, tmp_path):
        session = _session(FakeResponse())
        fetcher, sleep = _fetcher(tmp_path, session)

        with pytest.raises(IntegrityError, match="Checksum mismatch"):
            fetcher.fetch(_ref(checksum="sha256:" + "0" * 64))

        assert session.get.call_count == 1
        sleep.assert_not_called()
        assert _staged(tmp_path) == []

    def test_not_found_is_not_retried(self, tmp_path):
        session = _session(FakeResponse(status_code=404))
        fetcher, _ = _fetcher(tmp_path, session)

        with pytest.raises(FetchError) as exc_info:
            fetcher.fetch(_ref())

        assert not isinstance(exc_info.value, NetworkError)
        assert session.get.call_count == 1
        assert _staged(tmp_path) == []

    def test_error_messages_do_not_leak_signature(self, tmp_path):
        fetcher, _ = _fetcher(tmp_path, _session(FakeResponse(status_code=404)))

        with pytest.raises(FetchError) as exc_info:
            fetcher.fetch(_ref())

        assert "X-Amz-Signature" not in str(exc_info.value)

    def test_staging_directory_error_is_fetch_error(self, tmp_path):
        session = _session(FakeResponse())
        fetcher, _ = _fetcher(tmp_path, session)

        with patch("artideploy.fetch.tempfile.mkstemp", side_effect=OSError(errno.ENOSPC, "No space left on device")):
            with pytest.raises(FetchError, match="No space left on device"):
                fetcher.fetch(_ref())

        session.get.assert_not_called()

    def test_local_write_error_is_not_retried_and_cleans_up(self, tmp_path):
        session = _session(FakeResponse(), FakeResponse())
        fetcher, sleep = _fetcher(tmp_path, session)

        with patch("artideploy.fetch.open", create=True, side_effect=OSError(errno.ENOSPC, "No space left on device")):
            with pytest.raises(FetchError) as exc_info:
                fetcher.fetch(_ref())

        assert not isinstance(exc_info.value, NetworkError)
        assert session.get.call_count == 1
        sleep.assert_not_called()
        assert _staged(tmp_path) == []


class TestFetchRetries:
    """Transient failures are retried with exponential backoff."""

    def test_transient_error_then_success(self, tmp_path):
        session = _session(FakeResponse(status_code=503), requests.ConnectionError("reset"), FakeResponse())
        fetcher, sleep = _fetcher(tmp_path, session)

        path = fetcher.fetch(_ref())

        assert path.read_bytes() == PAYLOAD
        assert [c.args[0] for c in sleep.call_args_list] == [1.0, 2.0]
        assert _staged(tmp_path) == [path]

    def test_retries_exhausted_raises_network_error(self, tmp_path):
        session = _session(*[requests.Timeout("slow")] * 4)
        fetcher, sleep = _fetcher(tmp_path, session, retries=3)

        with pytest.raises(NetworkError):
            fetcher.fetch(_ref())

        assert session.get.call_count == 4
        assert [c.args[0] for c in sleep.call_args_list] == [1.0, 2.0, 4.0]
        assert _staged(tmp_path) == []

    def test_zero_retries(self, tmp_path):
        session = _session(requests.ConnectionError("down"))
        fetcher, sleep = _fetcher(tmp_path, session, retries=0)

        with pytest.raises(NetworkError):
            fetcher.fetch(_ref())

        sleep.assert_not_called()

    def test_reference_expiring_during_backoff_stops_retries(self, tmp_path):
        expires_at = datetime(2026, 10, 17, 12, 0, tzinfo=timezone.utc)
        ref = _ref(expires_at=expires_at)
        session = _session(requests.ConnectionError("reset"), FakeResponse())
        fetcher, sleep = _fetcher(tmp_path, session)
        clock = [expires_at - timedelta(seconds=5), expires_at + timedelta(seconds=1)]

        with patch("artideploy.types._utcnow", side_effect=clock):
            with pytest.raises(ExpiredReference, match="during retries"):
                fetcher.fetch(ref)

        assert session.get.call_count == 1
        sleep.assert_called_once_with(1.0)
        assert _staged(tmp_path) == []

    def test_invalid_retry_settings(self, tmp_path):
        with pytest.raises(ValueError):
            Fetcher(tmp_path, retries=-1)
        with pytest.raises(ValueError):
            Fetcher(tmp_path, timeout=0)


class TestParseChecksum:
    @pytest.mark.parametrize(
        "checksum,expected",
        [
            ("abc123", ("sha256", "abc123")),
            ("sha256:ABC123", ("sha256", "abc123")),
            ("SHA-256:abc", ("sha256", "abc")),
            ("md5:d41d8cd98f00b204e9800998ecf8427e", ("md5", "d41d8cd98f00b204e9800998ecf8427e")),
        ],
    )
    def test_parse(self, checksum, expected):
        assert parse_checksum(checksum) == expected

    @pytest.mark.parametrize("checksum", ["crc99:abc", "crc32:deadbeef", "shake_128:abc", "shake_256:abc"])
    def test_unsupported_algorithm(self, checksum):
        with pytest.raises(ValueError, match="Unsupported"):
            parse_checksum(checksum)

    def test_empty_digest(self):
        with pytest.raises(ValueError):
            parse_checksum("sha256:")
