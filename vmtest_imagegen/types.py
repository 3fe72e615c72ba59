"""Shared type definitions for vmtest_imagegen.

This module contains enums and dataclasses shared across subpackages
to avoid circular imports.
"""

from dataclasses import dataclass
from enum import Enum


class ArtifactKind(str, Enum):
    """Kind of artifact kept in the cache."""

    VMLINUZ = "vmlinuz"
    VMLINUX = "vmlinux"
    ROOTFS = "rootfs"


class ImageMode(str, Enum):
    """How the run's disk image is obtained."""

    CACHED = "cached"
    ONE_SHOT = "one_shot"
    SKIP = "skip"


class ImageProfile(str, Enum):
    """Size profile for freshly created filesystem images.

    The reduced profile is used when the whole git tree is copied in,
    so that the cached master and its per-run copy stay small.
    """

    DEFAULT = "8G"
    REDUCED = "2G"

    @property
    def size_bytes(self) -> int:
        """Image size in bytes."""
        return int(self.value[:-1]) * 1024**3


class PrepareState(str, Enum):
    """States of the image preparation pipeline."""

    RESOLVE_VERSIONS = "resolve_versions"
    ACQUIRE_KERNEL = "acquire_kernel"
    ACQUIRE_IMAGE = "acquire_image"
    MOUNT_IMAGE = "mount_image"
    INJECT_PAYLOAD = "inject_payload"
    INSTALL_BOOT_SCRIPTS = "install_boot_scripts"
    RELEASE_SESSION = "release_session"
    DONE = "done"
    FAILED = "failed"


@dataclass(frozen=True)
class ExitStatus:
    """Exit-status record written by the guest boot scripts.

    Attributes:
        phase: Stage that produced the code (e.g. 'vm_start', 'setup_cmd').
        code: Numeric exit code of that stage.
    """

    phase: str
    code: int

    @property
    def ok(self) -> bool:
        """Whether the phase succeeded."""
        return self.code == 0

    def __str__(self) -> str:
        return f"{self.phase}:{self.code}"


__all__ = [
    "ArtifactKind",
    "ExitStatus",
    "ImageMode",
    "ImageProfile",
    "PrepareState",
]
