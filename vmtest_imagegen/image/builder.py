"""Disk image creation.

This module handles:
- Creating empty ext4 images of a given size profile
- Cloning a cached master image (reflink when supported)
- Marking image files no-copy-on-write on filesystems that support it
"""

from __future__ import annotations

import logging
import os
import shlex
import subprocess
from dataclasses import dataclass
from pathlib import Path

from vmtest_imagegen.errors import ImageBuildError
from vmtest_imagegen.types import ImageProfile

logger = logging.getLogger(__name__)


@dataclass
class DiskImage:
    """A filesystem image file owned by the current run.

    Attributes:
        path: Image file path.
        provenance: 'created' for a fresh image, 'cloned' for a copy of a
            master image, 'existing' for a reused image.
    """

    path: Path
    provenance: str


def _run(cmd: list[str], code: str) -> None:
    logger.debug("Running %s", shlex.join(cmd))
    try:
        subprocess.run(cmd, capture_output=True, text=True, check=True)
    except subprocess.CalledProcessError as e:
        raise ImageBuildError(
            f"{shlex.join(cmd)} failed with exit code {e.returncode}: "
            f"{(e.stderr or '').strip()}",
            code=code,
        ) from e
    except OSError as e:
        raise ImageBuildError(f"Failed to run {cmd[0]}: {e}", code=code) from e


def set_nocow(path: Path) -> None:
    """Create path if needed and mark it no-copy-on-write.

    The attribute only exists on some filesystems (e.g. btrfs) and only
    takes effect on empty files; failures are ignored.
    """
    path.touch()
    try:
        subprocess.run(
            ["chattr", "+C", str(path)],
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            check=False,
        )
    except OSError as e:
        logger.debug("chattr unavailable for %s: %s", path, e)


def create_empty(path: Path, profile: ImageProfile = ImageProfile.DEFAULT) -> DiskImage:
    """Create a sparse, empty ext4 image.

    Args:
        path: Image file to create (truncated if it exists).
        profile: Size profile for the image.

    Returns:
        DiskImage for the new file.

    Raises:
        ImageBuildError: If the image cannot be sized or formatted.
    """
    logger.info("Creating %s ext4 image %s", profile.value, path)
    set_nocow(path)
    try:
        os.truncate(path, profile.size_bytes)
    except OSError as e:
        raise ImageBuildError(
            f"Failed to size {path}: {e}", code="truncate_error"
        ) from e
    _run(["mkfs.ext4", "-q", "-F", str(path)], code="mkfs_error")
    return DiskImage(path=path, provenance="created")


def clone_from(master: Path, dest: Path) -> DiskImage:
    """Copy a master image, sharing blocks via reflink when possible.

    Args:
        master: Cached master image.
        dest: Working copy for this run.

    Returns:
        DiskImage for the copy.

    Raises:
        ImageBuildError: If the copy fails.
    """
    logger.info("Copying %s to %s", master, dest)
    set_nocow(dest)
    _run(["cp", "--reflink=auto", str(master), str(dest)], code="copy_error")
    return DiskImage(path=dest, provenance="cloned")


def remove_image(path: Path) -> None:
    """Remove an image file if present."""
    path.unlink(missing_ok=True)


__all__ = [
    "DiskImage",
    "clone_from",
    "create_empty",
    "remove_image",
    "set_nocow",
]
