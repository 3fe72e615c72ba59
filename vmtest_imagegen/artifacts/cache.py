"""On-disk artifact cache.

This module handles:
- Canonical cache paths per (architecture, kind, version)
- Fetch-or-reuse for kernel images, with temp-then-rename writes
- Building the cached rootfs master image from the downloaded tarball
- One-shot mode, which never reuses and never persists artifacts

The cache directory may be shared by concurrent runs. Nothing is locked:
every artifact is written to a uniquely named temporary file in the same
directory and renamed into place, so a reader either sees a complete file
or none. Two runs may download the same artifact twice.
"""

from __future__ import annotations

import logging
import os
import tempfile
from collections.abc import Callable
from pathlib import Path
from typing import BinaryIO

import httpx

from vmtest_imagegen.artifacts.fetch import (
    DOWNLOAD_TIMEOUT,
    decompress_zstd,
    decompress_zstd_to_file,
    download_file,
    stream_url,
)
from vmtest_imagegen.artifacts.index import (
    LazyIndex,
    rootfs_name,
    vmlinux_name,
    vmlinuz_name,
)
from vmtest_imagegen.errors import UsageError
from vmtest_imagegen.image.builder import create_empty
from vmtest_imagegen.image.guest import Producer, SessionFactory
from vmtest_imagegen.types import ArtifactKind, ImageProfile

logger = logging.getLogger(__name__)

TEMP_SUFFIX = ".part"


class ArtifactCache:
    """Cache of kernel images and rootfs master images for one architecture."""

    def __init__(
        self,
        cache_dir: Path,
        arch: str,
        project: str,
        index: LazyIndex,
        client: httpx.Client,
        session_factory: SessionFactory,
        profile: ImageProfile = ImageProfile.DEFAULT,
        one_shot: bool = False,
        timeout: float = DOWNLOAD_TIMEOUT,
    ) -> None:
        """Initialize the cache.

        Args:
            cache_dir: Root cache directory; artifacts live under <arch>/.
            arch: Target architecture.
            project: Project name used in rootfs artifact names.
            index: Artifact index holder.
            client: HTTPX client for downloads.
            session_factory: Opens guest sessions for building master images.
            profile: Size profile for master images.
            one_shot: Always download and never keep anything.
            timeout: Download timeout in seconds.
        """
        self.cache_dir = cache_dir
        self.arch = arch
        self.project = project
        self.index = index
        self.client = client
        self.session_factory = session_factory
        self.profile = profile
        self.one_shot = one_shot
        self.timeout = timeout
        self._scratch: list[Path] = []

    @property
    def arch_dir(self) -> Path:
        """Per-architecture cache directory, created on demand."""
        path = self.cache_dir / self.arch
        path.mkdir(parents=True, exist_ok=True)
        return path

    def path_for(self, kind: ArtifactKind, version: str) -> Path:
        """Canonical cache path of an artifact."""
        if kind is ArtifactKind.ROOTFS:
            name = f"{self.project}-vmtest-rootfs-{version}.img"
        else:
            name = f"{kind.value}-{version}"
        return self.cache_dir / self.arch / name

    def index_name(self, kind: ArtifactKind, version: str) -> str:
        """Artifact index name holding the download for an artifact."""
        if kind is ArtifactKind.VMLINUZ:
            return vmlinuz_name(self.arch, version)
        if kind is ArtifactKind.VMLINUX:
            return vmlinux_name(self.arch, version)
        return rootfs_name(self.arch, self.project, version)

    def _url(self, kind: ArtifactKind, version: str) -> str:
        return self.index.get().resolve(self.index_name(kind, version))

    def _new_temp(self, final: Path) -> Path:
        fd, name = tempfile.mkstemp(
            prefix=f"{final.name}.", suffix=TEMP_SUFFIX, dir=self.arch_dir
        )
        os.close(fd)
        return Path(name)

    def _write_atomically(self, final: Path, fill: Callable[[Path], None]) -> Path:
        tmp_path = self._new_temp(final)
        try:
            fill(tmp_path)
            os.replace(tmp_path, final)
        except BaseException:
            tmp_path.unlink(missing_ok=True)
            raise
        return final

    def _download_to(self, kind: ArtifactKind, version: str, dest: Path) -> None:
        url = self._url(kind, version)
        logger.info("Downloading %s...", self.index_name(kind, version))
        if kind is ArtifactKind.VMLINUX:
            decompress_zstd_to_file(stream_url(self.client, url, self.timeout), dest)
        else:
            download_file(self.client, url, dest, timeout=self.timeout)

    def fetch_or_reuse(self, kind: ArtifactKind, version: str) -> Path:
        """Return a local copy of a kernel artifact.

        In cached mode an existing canonical file is reused without touching
        the network; otherwise the artifact is downloaded to a temporary file
        and renamed into place. In one-shot mode the artifact is always
        downloaded to a scratch file that discard_scratch() removes.

        Args:
            kind: VMLINUZ or VMLINUX (vmlinux is decompressed).
            version: Kernel release.

        Returns:
            Path to the local file.

        Raises:
            ArtifactNotFoundError: If the index has no such artifact.
            DownloadError: If the download or decompression fails.
        """
        if kind is ArtifactKind.ROOTFS:
            return self.ensure_master_image(version)

        final = self.path_for(kind, version)
        if self.one_shot:
            scratch = self._new_temp(final)
            self._scratch.append(scratch)
            self._download_to(kind, version, scratch)
            return scratch

        if final.exists():
            logger.info("Using cached %s", final)
            return final
        return self._write_atomically(
            final, lambda tmp: self._download_to(kind, version, tmp)
        )

    def rootfs_producer(self, version: str) -> Producer:
        """Producer streaming the decompressed rootfs tarball."""
        url = self._url(ArtifactKind.ROOTFS, version)

        def produce(sink: BinaryIO) -> None:
            logger.info(
                "Downloading %s...", self.index_name(ArtifactKind.ROOTFS, version)
            )
            decompress_zstd(stream_url(self.client, url, self.timeout), sink)

        return produce

    def ensure_master_image(self, version: str) -> Path:
        """Return the cached master image for a rootfs version, building it once.

        Raises:
            UsageError: In one-shot mode, which keeps no master images.
            DownloadError: If the rootfs download fails.
            ImageBuildError: If the image cannot be created.
            MountBackendError: If extraction into the image fails.
        """
        if self.one_shot:
            raise UsageError("one-shot mode does not keep master images")

        final = self.path_for(ArtifactKind.ROOTFS, version)
        if final.exists():
            logger.info("Using cached root filesystem image %s", final)
            return final

        def build(tmp_path: Path) -> None:
            create_empty(tmp_path, self.profile)
            # Hotplugging needs the libvirt backend, so the master image gets
            # its own session rather than the run's session.
            with self.session_factory() as session:
                session.attach_and_mount(tmp_path)
                session.inject_tree(self.rootfs_producer(version), "/")

        return self._write_atomically(final, build)

    def discard_scratch(self) -> None:
        """Remove one-shot scratch downloads."""
        while self._scratch:
            self._scratch.pop().unlink(missing_ok=True)

    def cached_artifacts(self) -> list[Path]:
        """List complete artifacts present in the cache."""
        arch_dir = self.cache_dir / self.arch
        if not arch_dir.is_dir():
            return []
        return sorted(
            p for p in arch_dir.iterdir() if p.is_file() and p.suffix != TEMP_SUFFIX
        )


__all__ = ["TEMP_SUFFIX", "ArtifactCache"]
