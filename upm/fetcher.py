"""
Artifact retrieval for Unified Package Manager
Downloads package artifacts into the cache directory and verifies checksums
"""

import hashlib
import os
import shutil
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional
from urllib.parse import unquote, urlparse

import requests

from upm.errors import FetchError
from upm.logger import get_logger

SUPPORTED_HASH_ALGORITHMS = ('sha256', 'sha512', 'md5')


def calculate_checksum(file_path, algorithm: str = 'sha256') -> str:
    """
    Calculate file checksum

    Args:
        file_path: Path to the file
        algorithm: Hash algorithm (sha256, sha512, md5)

    Returns:
        Hexadecimal checksum string
    """
    if algorithm not in SUPPORTED_HASH_ALGORITHMS:
        raise ValueError(f"Unsupported algorithm: {algorithm}")
    hash_func = hashlib.new(algorithm)

    # Read file in chunks for memory efficiency
    with open(file_path, 'rb') as f:
        while chunk := f.read(8192):
            hash_func.update(chunk)

    return hash_func.hexdigest()


def verify_checksum(file_path, expected_checksum: str, algorithm: str = 'sha256'):
    """
    Verify file checksum

    Raises:
        FetchError: If the file is missing or the checksum does not match
    """
    if not os.path.exists(file_path):
        raise FetchError(f"File not found: {file_path}")
    actual = calculate_checksum(file_path, algorithm)
    if actual.lower() != expected_checksum.lower():
        raise FetchError(
            f"Checksum mismatch for {os.path.basename(str(file_path))} ({algorithm}): "
            f"expected {expected_checksum}, got {actual}"
        )


class Fetcher(ABC):
    """Retrieves artifacts by URL"""

    @abstractmethod
    def download(self, url: str, expected_checksum: Optional[str] = None) -> Path:
        """
        Download an artifact

        Args:
            url: Artifact location
            expected_checksum: sha256 to verify, if known

        Returns:
            Path of the local copy

        Raises:
            FetchError: If retrieval or verification failed
        """
        pass

    def release(self, artifact: Path):
        """Forget an artifact once the operation that fetched it has finished"""
        pass


class HttpFetcher(Fetcher):
    """Fetcher for http(s) URLs, file:// URLs and local paths"""

    def __init__(self, cache_dir, timeout: float = 60.0):
        self.cache_dir = Path(cache_dir)
        self.timeout = timeout
        self.logger = get_logger()

    def _target(self, url: str) -> Path:
        name = os.path.basename(unquote(urlparse(url).path)) or "artifact"
        digest = hashlib.sha256(url.encode()).hexdigest()[:16]
        return self.cache_dir / f"{digest}-{name}"

    def download(self, url: str, expected_checksum: Optional[str] = None) -> Path:
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        target = self._target(url)
        parsed = urlparse(url)

        try:
            if parsed.scheme in ('http', 'https'):
                self._download_http(url, target)
            elif parsed.scheme in ('file', ''):
                source = Path(unquote(parsed.path) if parsed.scheme == 'file' else url)
                if not source.is_file():
                    raise FetchError(f"Artifact not found: {source}")
                shutil.copy2(source, target)
            else:
                raise FetchError(f"Unsupported URL scheme '{parsed.scheme}': {url}")

            if expected_checksum:
                verify_checksum(target, expected_checksum)
        except FetchError:
            target.unlink(missing_ok=True)
            raise
        except OSError as e:
            target.unlink(missing_ok=True)
            raise FetchError(f"Failed to store {url}: {e}") from e

        self.logger.log_debug(f"Fetched {url} -> {target}")
        return target

    def _download_http(self, url: str, target: Path):
        self.logger.log_info(f"Downloading {url}")
        try:
            response = requests.get(url, stream=True, timeout=self.timeout)
            response.raise_for_status()
            with open(target, 'wb') as f:
                for chunk in response.iter_content(chunk_size=8192):
                    if chunk:
                        f.write(chunk)
        except requests.RequestException as e:
            raise FetchError(f"Download failed for {url}: {e}") from e

    def release(self, artifact: Path):
        """Delete a downloaded copy from the cache; paths outside the cache are left alone"""
        artifact = Path(artifact)
        if artifact.parent != self.cache_dir:
            return
        try:
            artifact.unlink(missing_ok=True)
        except OSError as e:
            self.logger.log_warning(f"Could not delete cached artifact {artifact}: {e}")
