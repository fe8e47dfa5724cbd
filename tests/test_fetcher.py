"""
Test suite for fetcher.py
Covers checksum helpers and artifact retrieval from local paths and HTTP
"""

import hashlib
from unittest.mock import MagicMock, patch

import pytest
import requests

from upm.errors import FetchError
from upm.fetcher import HttpFetcher, calculate_checksum, verify_checksum


@pytest.fixture
def artifact(tmp_path):
    path = tmp_path / "hello-1.0.tar.gz"
    path.write_bytes(b"artifact payload")
    return path


@pytest.fixture
def fetcher(tmp_path):
    return HttpFetcher(tmp_path / "cache", timeout=5)


class TestChecksums:

    @pytest.mark.unit
    def test_calculate(self, artifact):
        assert calculate_checksum(artifact) == hashlib.sha256(b"artifact payload").hexdigest()
        assert calculate_checksum(artifact, 'md5') == hashlib.md5(b"artifact payload").hexdigest()

    @pytest.mark.unit
    def test_unsupported_algorithm(self, artifact):
        with pytest.raises(ValueError, match="Unsupported algorithm"):
            calculate_checksum(artifact, 'crc32')

    @pytest.mark.unit
    def test_verify_is_case_insensitive(self, artifact):
        verify_checksum(artifact, hashlib.sha256(b"artifact payload").hexdigest().upper())

    @pytest.mark.security
    def test_verify_mismatch(self, artifact):
        with pytest.raises(FetchError, match="Checksum mismatch"):
            verify_checksum(artifact, "0" * 64)

    @pytest.mark.unit
    def test_verify_missing_file(self, tmp_path):
        with pytest.raises(FetchError, match="not found"):
            verify_checksum(tmp_path / "missing", "0" * 64)


class TestLocalFetch:

    @pytest.mark.unit
    def test_plain_path(self, fetcher, artifact, tmp_path):
        target = fetcher.download(str(artifact))

        assert target.parent == tmp_path / "cache"
        assert target.name.endswith("hello-1.0.tar.gz")
        assert target.read_bytes() == b"artifact payload"

    @pytest.mark.unit
    def test_file_url_with_checksum(self, fetcher, artifact):
        checksum = hashlib.sha256(b"artifact payload").hexdigest()
        target = fetcher.download(artifact.as_uri(), checksum)
        assert target.read_bytes() == b"artifact payload"

    @pytest.mark.unit
    def test_missing_source(self, fetcher, tmp_path):
        with pytest.raises(FetchError, match="Artifact not found"):
            fetcher.download(str(tmp_path / "nope.tar.gz"))

    @pytest.mark.security
    def test_checksum_mismatch_leaves_no_copy(self, fetcher, artifact, tmp_path):
        with pytest.raises(FetchError):
            fetcher.download(str(artifact), "0" * 64)
        assert list((tmp_path / "cache").iterdir()) == []

    @pytest.mark.security
    def test_unsupported_scheme(self, fetcher):
        with pytest.raises(FetchError, match="Unsupported URL scheme"):
            fetcher.download("ftp://example.com/hello.tar.gz")

    @pytest.mark.unit
    def test_distinct_urls_do_not_collide(self, fetcher, tmp_path):
        first = tmp_path / "a" / "pkg.tar.gz"
        second = tmp_path / "b" / "pkg.tar.gz"
        for path, content in ((first, b"one"), (second, b"two")):
            path.parent.mkdir()
            path.write_bytes(content)

        assert fetcher.download(str(first)) != fetcher.download(str(second))


class TestHttpFetch:

    @pytest.mark.unit
    @patch('upm.fetcher.requests.get')
    def test_download(self, mock_get, fetcher):
        response = MagicMock()
        response.iter_content.return_value = [b"abc", b"", b"def"]
        mock_get.return_value = response

        target = fetcher.download("https://example.com/files/hello-2.0.tar.gz")

        assert target.read_bytes() == b"abcdef"
        mock_get.assert_called_once_with("https://example.com/files/hello-2.0.tar.gz", stream=True, timeout=5)
        response.raise_for_status.assert_called_once()

    @pytest.mark.unit
    @patch('upm.fetcher.requests.get')
    def test_http_error(self, mock_get, fetcher, tmp_path):
        response = MagicMock()
        response.raise_for_status.side_effect = requests.HTTPError("404 Not Found")
        mock_get.return_value = response

        with pytest.raises(FetchError, match="Download failed"):
            fetcher.download("https://example.com/missing.tar.gz")
        assert list((tmp_path / "cache").iterdir()) == []

    @pytest.mark.unit
    @patch('upm.fetcher.requests.get')
    def test_connection_error(self, mock_get, fetcher):
        mock_get.side_effect = requests.ConnectionError("unreachable")

        with pytest.raises(FetchError, match="unreachable"):
            fetcher.download("http://example.com/hello.tar.gz")


class TestRelease:

    @pytest.mark.unit
    def test_release_deletes_cached_copy(self, fetcher, artifact):
        target = fetcher.download(str(artifact))
        fetcher.release(target)
        assert not target.exists()
        assert artifact.exists()

    @pytest.mark.unit
    def test_release_ignores_paths_outside_cache(self, fetcher, artifact):
        fetcher.release(artifact)
        assert artifact.read_bytes() == b"artifact payload"

    @pytest.mark.unit
    def test_release_of_missing_file(self, fetcher, tmp_path):
        (tmp_path / "cache").mkdir(exist_ok=True)
        fetcher.release(tmp_path / "cache" / "gone.tar.gz")
