"""Artifact fetch module.

This module handles:
- Streaming downloads of kernel and rootfs artifacts
- Piping compressed downloads through zstd without an intermediate file
"""

from __future__ import annotations

import hashlib
import logging
import shutil
import subprocess
from collections.abc import Iterable, Iterator
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, cast

import httpx

from vmtest_imagegen.errors import DecompressError, DownloadError
from vmtest_imagegen.pipes import BackgroundTask

logger = logging.getLogger(__name__)

# Timeout for downloads (seconds)
DOWNLOAD_TIMEOUT = 3600

# Chunk size for downloads and pipe copies (bytes)
DOWNLOAD_CHUNK_SIZE = 64 * 1024  # 64 KB

ZSTD_COMMAND = ["zstd", "-d", "-c", "-q"]


@dataclass
class DownloadResult:
    """Result of an artifact download."""

    path: Path
    size_bytes: int
    sha256: str


def _wrap_http_error(url: str, e: httpx.HTTPError) -> DownloadError:
    if isinstance(e, httpx.HTTPStatusError):
        return DownloadError(
            f"HTTP error downloading {url}: "
            f"{e.response.status_code} {e.response.reason_phrase}",
            code="http_error",
        )
    if isinstance(e, httpx.TimeoutException):
        return DownloadError(f"Timeout downloading {url}", code="timeout")
    return DownloadError(f"Network error downloading {url}: {e}", code="network_error")


def stream_url(
    client: httpx.Client,
    url: str,
    timeout: float = DOWNLOAD_TIMEOUT,
    chunk_size: int = DOWNLOAD_CHUNK_SIZE,
) -> Iterator[bytes]:
    """Yield the body of a URL in chunks.

    Args:
        client: HTTPX client instance.
        url: URL to download from.
        timeout: Download timeout in seconds.
        chunk_size: Size of chunks to yield.

    Yields:
        Chunks of the response body.

    Raises:
        DownloadError: If the request fails.
    """
    logger.debug("Streaming %s", url)
    try:
        with client.stream("GET", url, timeout=timeout) as response:
            response.raise_for_status()
            yield from response.iter_bytes(chunk_size)
    except httpx.HTTPError as e:
        raise _wrap_http_error(url, e) from e


def write_chunks(chunks: Iterable[bytes], sink: BinaryIO) -> tuple[int, str]:
    """Copy chunks into a binary sink.

    Returns:
        Tuple of (bytes written, SHA256 hex digest).
    """
    total_bytes = 0
    sha256 = hashlib.sha256()
    for chunk in chunks:
        sink.write(chunk)
        sha256.update(chunk)
        total_bytes += len(chunk)
    return total_bytes, sha256.hexdigest()


def download_file(
    client: httpx.Client,
    url: str,
    dest_path: Path,
    timeout: float = DOWNLOAD_TIMEOUT,
) -> DownloadResult:
    """Download a URL to a file.

    The caller owns dest_path; a failed download may leave it partially
    written.

    Args:
        client: HTTPX client instance.
        url: URL to download from.
        dest_path: Destination path for the downloaded file.
        timeout: Download timeout in seconds.

    Returns:
        DownloadResult with path, size and checksum.

    Raises:
        DownloadError: If download fails.
    """
    logger.info("Downloading %s to %s", url, dest_path)

    with dest_path.open("wb") as f:
        total_bytes, checksum = write_chunks(stream_url(client, url, timeout), f)

    logger.info(
        "Downloaded %s (%d bytes, checksum: %s)",
        dest_path.name,
        total_bytes,
        checksum[:16] + "...",
    )
    return DownloadResult(path=dest_path, size_bytes=total_bytes, sha256=checksum)


def decompress_zstd(
    chunks: Iterable[bytes],
    sink: BinaryIO,
    chunk_size: int = DOWNLOAD_CHUNK_SIZE,
) -> int:
    """Decompress a zstd stream into a binary sink.

    Compressed chunks are fed to ``zstd -d`` from a background task while
    the caller copies the decompressed output into sink.

    Args:
        chunks: Compressed input chunks (e.g. from stream_url).
        sink: Destination for decompressed bytes.
        chunk_size: Size of output reads.

    Returns:
        Number of decompressed bytes written.

    Raises:
        DownloadError: If the input stream fails.
        DecompressError: If zstd fails.
    """
    try:
        proc = subprocess.Popen(
            ZSTD_COMMAND,
            stdin=subprocess.PIPE,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
        )
    except OSError as e:
        raise DecompressError(f"Failed to run zstd: {e}") from e

    stdin = cast(BinaryIO, proc.stdin)
    stdout = cast(BinaryIO, proc.stdout)

    def feed() -> None:
        try:
            for chunk in chunks:
                stdin.write(chunk)
        finally:
            stdin.close()

    feeder = BackgroundTask(feed, name="zstd-feeder").start()
    total_bytes = 0
    try:
        while block := stdout.read(chunk_size):
            sink.write(block)
            total_bytes += len(block)
    finally:
        stdout.close()
        returncode = proc.wait()
        feeder.join(reraise=False)
        stderr = proc.stderr.read().decode(errors="replace") if proc.stderr else ""
        if proc.stderr:
            proc.stderr.close()

    # An input failure explains a zstd failure, so report it first
    if feeder.error is not None and not isinstance(feeder.error, BrokenPipeError):
        raise feeder.error
    if returncode != 0:
        raise DecompressError(f"zstd exited with {returncode}: {stderr.strip()}")
    if feeder.error is not None:
        raise DecompressError("zstd closed its input early")

    return total_bytes


def decompress_zstd_to_file(chunks: Iterable[bytes], dest_path: Path) -> int:
    """Decompress a zstd stream into a file."""
    with dest_path.open("wb") as f:
        return decompress_zstd(chunks, f)


def copy_file(source: Path, dest: Path) -> None:
    """Copy a file's contents, as the kernel hand-off to the boot stage."""
    dest.parent.mkdir(parents=True, exist_ok=True)
    shutil.copyfile(source, dest)


__all__ = [
    "DOWNLOAD_CHUNK_SIZE",
    "DownloadResult",
    "copy_file",
    "decompress_zstd",
    "decompress_zstd_to_file",
    "download_file",
    "stream_url",
    "write_chunks",
]
