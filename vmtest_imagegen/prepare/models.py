"""Models for image preparation runs.

PrepareOptions captures what the caller asked for (the CLI surface);
PrepareResult is what the boot stage receives.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, field_validator

from vmtest_imagegen.errors import UsageError
from vmtest_imagegen.types import ImageMode, PrepareState

# Kernel command line addition that boots into a shell instead of the tests
INTERACTIVE_APPEND = " single"


class PrepareOptions(BaseModel):
    """Options for one image preparation run.

    Attributes:
        image: Disk image to create (or reuse with skip_image).
        kernel_release: Glob pattern or exact release; newest match wins.
        build_dir: Local kernel build directory; excludes kernel_release.
        rootfs_version: Root filesystem version (default: newest).
        force: Overwrite an existing image.
        one_shot: Never reuse or keep downloads; implies force.
        setup_cmd: Commands run on boot, whitespace backslash-escaped.
        skip_image: Reuse the existing image as is.
        skip_source: Do not copy the source tree.
        interactive: Boot into a shell instead of running tests.
        cache_dir: Directory for cached downloads (default from settings).
    """

    model_config = ConfigDict(extra="forbid")

    image: Path = Field(description="Path of the disk image")
    kernel_release: str | None = Field(default=None)
    build_dir: Path | None = Field(default=None)
    rootfs_version: str | None = Field(default=None)
    force: bool = False
    one_shot: bool = False
    setup_cmd: str | None = Field(default=None)
    skip_image: bool = False
    skip_source: bool = False
    interactive: bool = False
    cache_dir: Path | None = Field(default=None)

    @field_validator("kernel_release", "rootfs_version")
    @classmethod
    def validate_not_empty(cls, v: str | None) -> str | None:
        """Reject empty version strings."""
        if v is not None and not v.strip():
            raise ValueError("version must not be empty")
        return v

    def check_combination(self) -> None:
        """Reject option combinations that make no sense together.

        Raises:
            UsageError: If options conflict.
        """
        if self.build_dir is not None and self.kernel_release is not None:
            raise UsageError("--build cannot be combined with --kernel")
        if self.skip_image and (
            self.rootfs_version is not None or self.force or self.one_shot
        ):
            raise UsageError(
                "--skip-image cannot be combined with --rootfs, --force or --one-shot"
            )

    @property
    def kernel_pattern(self) -> str:
        """Requested kernel release pattern."""
        return self.kernel_release if self.kernel_release is not None else "*"

    @property
    def overwrite(self) -> bool:
        """Whether an existing image may be replaced."""
        return self.force or self.one_shot

    @property
    def image_mode(self) -> ImageMode:
        """How the run's image is obtained."""
        if self.skip_image:
            return ImageMode.SKIP
        if self.one_shot:
            return ImageMode.ONE_SHOT
        return ImageMode.CACHED

    @property
    def kernel_append(self) -> str:
        """Extra kernel command line for the boot stage."""
        return INTERACTIVE_APPEND if self.interactive else ""


@dataclass
class PrepareResult:
    """A provisioned image, ready for the boot stage.

    Attributes:
        image: Provisioned disk image.
        vmlinuz: Bootable kernel copied into the workspace.
        kernel_release: Kernel release installed in the image.
        rootfs_version: Root filesystem version (None when reused).
        kernel_append: Extra kernel command line for the boot stage.
        state: Final pipeline state.
    """

    image: Path
    vmlinuz: Path
    kernel_release: str
    rootfs_version: str | None
    kernel_append: str = ""
    state: PrepareState = PrepareState.DONE

    def to_dict(self) -> dict[str, str | None]:
        """Convert to dictionary for JSON serialization."""
        return {
            "image": str(self.image),
            "vmlinuz": str(self.vmlinuz),
            "kernel_release": self.kernel_release,
            "rootfs_version": self.rootfs_version,
            "kernel_append": self.kernel_append,
            "state": self.state.value,
        }


__all__ = ["INTERACTIVE_APPEND", "PrepareOptions", "PrepareResult"]
