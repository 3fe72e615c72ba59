"""Error definitions for vmtest_imagegen.

Every error carries a stable string code for structured handling and the
process exit status the CLI reports for it. Host-side fatal errors exit
with 2; a guest that reported a failing phase exits with 1.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from vmtest_imagegen.types import ExitStatus

EXIT_SUCCESS = 0
EXIT_TEST_FAILURE = 1
EXIT_FATAL = 2


class VmtestError(Exception):
    """Base exception for image preparation errors."""

    exit_code = EXIT_FATAL

    def __init__(self, message: str, code: str = "vmtest_error") -> None:
        super().__init__(message)
        self.message = message
        self.code = code


class UsageError(VmtestError):
    """Conflicting or missing options."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="usage_error")


class HostError(VmtestError):
    """A host-side file or process operation failed."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="host_error")


class IndexLoadError(VmtestError):
    """The artifact index could not be read."""

    def __init__(self, location: str, reason: str) -> None:
        super().__init__(
            f"Failed to load artifact index from {location}: {reason}",
            code="index_load_error",
        )
        self.location = location


class ResolutionError(VmtestError):
    """A version or artifact name could not be resolved."""


class ArtifactNotFoundError(ResolutionError):
    """The artifact index has no entry for a name."""

    def __init__(self, name: str) -> None:
        super().__init__(f"{name} not found", code="artifact_not_found")
        self.name = name


class NoMatchingReleaseError(ResolutionError):
    """No release in the index matches the requested pattern."""

    def __init__(self, what: str, pattern: str) -> None:
        super().__init__(
            f"No matching {what} found for {pattern!r}", code="no_matching_release"
        )
        self.pattern = pattern


class DownloadError(VmtestError):
    """Raised when an artifact download fails."""

    def __init__(self, message: str, code: str = "download_error") -> None:
        super().__init__(message, code=code)


class DecompressError(DownloadError):
    """Raised when a downloaded artifact fails to decompress."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="zstd_error")


class ImageExistsError(VmtestError):
    """Target image already exists and may not be overwritten."""

    def __init__(self, image_path: str) -> None:
        super().__init__(
            f"{image_path} already exists; use -f to overwrite it or -I to reuse it",
            code="image_exists",
        )
        self.image_path = image_path


class ImageBuildError(VmtestError):
    """Creating or copying a disk image failed."""

    def __init__(self, message: str, code: str = "image_build_error") -> None:
        super().__init__(message, code=code)


class MountBackendError(VmtestError):
    """A guestfish session command failed."""

    def __init__(self, message: str, code: str = "mount_backend_error") -> None:
        super().__init__(message, code=code)


class KernelBuildError(VmtestError):
    """Querying a local kernel build directory failed."""

    def __init__(self, build_dir: str, reason: str) -> None:
        super().__init__(
            f"Failed to query kernel build in {build_dir}: {reason}",
            code="kernel_build_error",
        )
        self.build_dir = build_dir


class StatusError(VmtestError):
    """The guest exit-status record is missing or malformed."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="status_error")


class GuestTestFailure(VmtestError):
    """The guest ran, but a boot phase reported a non-zero exit code."""

    exit_code = EXIT_TEST_FAILURE

    def __init__(self, status: ExitStatus) -> None:
        super().__init__(
            f"Guest phase {status.phase} failed with exit code {status.code}",
            code="guest_test_failure",
        )
        self.status = status


__all__ = [
    "EXIT_FATAL",
    "EXIT_SUCCESS",
    "EXIT_TEST_FAILURE",
    "ArtifactNotFoundError",
    "DecompressError",
    "DownloadError",
    "GuestTestFailure",
    "HostError",
    "ImageBuildError",
    "ImageExistsError",
    "IndexLoadError",
    "KernelBuildError",
    "MountBackendError",
    "NoMatchingReleaseError",
    "ResolutionError",
    "StatusError",
    "UsageError",
    "VmtestError",
]
