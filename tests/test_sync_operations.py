"""Tests for SyncOperations retry behaviour."""

import hashlib
import threading
from unittest.mock import Mock, patch

import pytest

from pyb2backup.exceptions import (
    B2AuthenticationError,
    B2NetworkError,
    B2QuotaError,
    B2RateLimitError,
    B2ServerError,
    HideError,
    UploadError,
)
from pyb2backup.models import B2FileVersion
from pyb2backup.sync import LocalFile, OperationCancelled, SyncOperations


@pytest.fixture
def local_file(tmp_path):
    path = tmp_path / "report.pdf"
    path.write_bytes(b"pdf-content")
    return LocalFile(path=path, relative_path="docs/report.pdf", size=11, mtime=1.5)


@pytest.fixture
def client():
    client = Mock()
    client.upload_file.return_value = B2FileVersion(file_name="x", file_id="id1")
    client.hide_file.return_value = B2FileVersion(
        file_name="x", file_id="id2", action="hide"
    )
    return client


def make_operations(client, **kwargs):
    kwargs.setdefault("retry_delay", 0)
    return SyncOperations(client, "bucket1", **kwargs)


class TestUpload:
    """Tests for SyncOperations.upload."""

    def test_upload_arguments(self, client, local_file):
        """Test the call made to the storage client."""
        ops = make_operations(client, prefix="laptop/")
        callback = Mock()

        version, attempts = ops.upload(local_file, progress_callback=callback)

        assert version.file_id == "id1"
        assert attempts == 1
        args, kwargs = client.upload_file.call_args
        assert args[0] == "bucket1"
        assert args[1] == "laptop/docs/report.pdf"
        assert args[3] == 11
        assert args[4] == hashlib.sha1(b"pdf-content").hexdigest()
        assert kwargs["last_modified_millis"] == 1500
        assert kwargs["progress_callback"] is callback

    def test_stream_reopened_per_attempt(self, client, local_file):
        """Test that every attempt reads the file from the start."""
        reads = []

        def upload(bucket_id, name, stream, size, sha1, **kwargs):
            reads.append(stream.read())
            if len(reads) == 1:
                raise B2NetworkError("reset")
            return B2FileVersion(file_name=name, file_id="id1")

        client.upload_file.side_effect = upload
        ops = make_operations(client)

        _, attempts = ops.upload(local_file)

        assert attempts == 2
        assert reads == [b"pdf-content", b"pdf-content"]

    def test_retries_exhausted(self, client, local_file):
        """Test that max_retries caps the total number of attempts."""
        client.upload_file.side_effect = B2ServerError("boom", status_code=500)
        ops = make_operations(client, max_retries=3)

        with pytest.raises(UploadError) as exc_info:
            ops.upload(local_file)

        assert client.upload_file.call_count == 3
        assert exc_info.value.attempts == 3
        assert isinstance(exc_info.value.cause, B2ServerError)
        assert exc_info.value.key == "docs/report.pdf"

    def test_success_on_last_attempt(self, client, local_file):
        """Test that the final allowed attempt may still succeed."""
        client.upload_file.side_effect = [
            B2NetworkError("reset"),
            B2NetworkError("reset"),
            B2FileVersion(file_name="x", file_id="id1"),
        ]
        ops = make_operations(client, max_retries=3)

        _, attempts = ops.upload(local_file)

        assert attempts == 3

    @pytest.mark.parametrize("max_retries", [0, -1])
    def test_attempt_ceiling_below_one(self, client, max_retries):
        """Test that a ceiling allowing no attempts is rejected."""
        with pytest.raises(ValueError):
            make_operations(client, max_retries=max_retries)

    def test_size_changed_since_scan(self, client, local_file):
        """Test that a file that grew after scanning fails without retries."""
        local_file.path.write_bytes(b"pdf-content-grown")
        ops = make_operations(client, max_retries=5)

        with pytest.raises(UploadError) as exc_info:
            ops.upload(local_file)

        assert exc_info.value.attempts == 0
        assert "size changed" in str(exc_info.value.cause)
        client.upload_file.assert_not_called()

    @pytest.mark.parametrize(
        "error",
        [
            B2AuthenticationError("bad key", status_code=401),
            B2QuotaError("cap", status_code=403, code="storage_cap_exceeded"),
        ],
    )
    def test_fatal_errors_not_retried(self, client, local_file, error):
        """Test that auth and quota errors fail immediately."""
        client.upload_file.side_effect = error
        ops = make_operations(client, max_retries=5)

        with pytest.raises(UploadError) as exc_info:
            ops.upload(local_file)

        assert client.upload_file.call_count == 1
        assert exc_info.value.cause is error

    def test_missing_local_file(self, client, tmp_path):
        """Test that a vanished local file is a fatal upload error."""
        gone = LocalFile(
            path=tmp_path / "gone", relative_path="gone", size=1, mtime=0
        )
        ops = make_operations(client)

        with pytest.raises(UploadError) as exc_info:
            ops.upload(gone)

        assert isinstance(exc_info.value.cause, OSError)
        client.upload_file.assert_not_called()

    def test_rate_limit_uses_retry_after(self, client, local_file):
        """Test that Retry-After overrides the backoff delay."""
        client.upload_file.side_effect = [
            B2RateLimitError("slow down", status_code=429, retry_after=0.01),
            B2FileVersion(file_name="x", file_id="id1"),
        ]
        ops = make_operations(client)

        with patch.object(ops.cancel_event, "wait", return_value=False) as mock_wait:
            ops.upload(local_file)

        mock_wait.assert_called_once_with(0.01)

    def test_cancel_between_retries(self, client, local_file):
        """Test that a set cancel event stops further attempts."""
        cancel_event = threading.Event()
        cancel_event.set()
        client.upload_file.side_effect = B2NetworkError("reset")
        ops = make_operations(client, max_retries=5, cancel_event=cancel_event)

        with pytest.raises(OperationCancelled) as exc_info:
            ops.upload(local_file)

        assert client.upload_file.call_count == 1
        assert exc_info.value.attempts == 1


class TestHide:
    """Tests for SyncOperations.hide."""

    def test_hide_uses_prefix(self, client):
        """Test that hides target the prefixed name."""
        ops = make_operations(client, prefix="laptop/")

        version, attempts = ops.hide("old.txt")

        client.hide_file.assert_called_once_with("bucket1", "laptop/old.txt")
        assert version.action == "hide"
        assert attempts == 1

    def test_hide_retries_then_fails(self, client):
        """Test HideError after exhausting retries."""
        client.hide_file.side_effect = B2NetworkError("timeout")
        ops = make_operations(client, max_retries=2)

        with pytest.raises(HideError) as exc_info:
            ops.hide("old.txt")

        assert client.hide_file.call_count == 2
        assert exc_info.value.attempts == 2

    def test_remote_name_without_prefix(self, client):
        """Test names when no prefix is configured."""
        assert make_operations(client).remote_name("a/b") == "a/b"
