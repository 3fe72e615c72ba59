"""Image preparation service.

This module sequences a run:
- Resolve the kernel release and rootfs version
- Fetch (or reuse) the kernel images
- Build, clone or reuse the disk image and mount it
- Inject the kernel, the source tree and the boot scripts
- Release the guest session and hand the image to the boot stage

Any failure moves the run to the FAILED state, closes the guest session,
removes temporary files and re-raises. Nothing is retried.
"""

from __future__ import annotations

import logging
import os
import shlex
import subprocess
from pathlib import Path
from typing import TypeVar

import httpx

from vmtest_imagegen.artifacts.cache import ArtifactCache
from vmtest_imagegen.artifacts.fetch import copy_file
from vmtest_imagegen.artifacts.index import LazyIndex, is_glob_pattern, unescape_glob
from vmtest_imagegen.config import Settings, get_settings
from vmtest_imagegen.errors import (
    HostError,
    ImageExistsError,
    KernelBuildError,
    UsageError,
    VmtestError,
)
from vmtest_imagegen.image.builder import clone_from, create_empty, remove_image
from vmtest_imagegen.image.guest import (
    GuestSession,
    SessionFactory,
    tar_directory,
    tar_file_list,
)
from vmtest_imagegen.image.scripts import boot_scripts, kernel_label
from vmtest_imagegen.prepare.models import PrepareOptions, PrepareResult
from vmtest_imagegen.types import ArtifactKind, ImageMode, ImageProfile, PrepareState

logger = logging.getLogger(__name__)

# Source directories copied when the full tree is not:
# (host parent, name, guest directory under the project)
CURATED_SOURCES = (("selftests", "bpf", "selftests"), ("ci", "vmtest", ""))

VMLINUZ_HANDOFF_NAME = "vmlinuz"

T = TypeVar("T")


def query_kernel_build(build_dir: Path, target: str, timeout: int = 120) -> str:
    """Ask a kernel build tree for a make variable (kernelrelease, image_name).

    Raises:
        KernelBuildError: If make fails or prints nothing.
    """
    cmd = ["make", "-C", str(build_dir), "-s", target]
    logger.debug("Running %s", shlex.join(cmd))
    try:
        result = subprocess.run(
            cmd, capture_output=True, text=True, timeout=timeout, check=True
        )
    except subprocess.CalledProcessError as e:
        raise KernelBuildError(
            str(build_dir), f"make {target} failed: {(e.stderr or '').strip()}"
        ) from e
    except subprocess.TimeoutExpired as e:
        raise KernelBuildError(
            str(build_dir), f"make {target} timed out after {timeout}s"
        ) from e
    except OSError as e:
        raise KernelBuildError(str(build_dir), str(e)) from e

    value = result.stdout.strip()
    if not value:
        raise KernelBuildError(str(build_dir), f"make {target} printed nothing")
    return value


def git_tracked_files(root: Path) -> list[str]:
    """List the files git tracks under root.

    Raises:
        UsageError: If root is not a git work tree.
    """
    try:
        result = subprocess.run(
            ["git", "ls-files", "-z"], cwd=root, capture_output=True, check=True
        )
    except (subprocess.CalledProcessError, OSError) as e:
        raise UsageError(f"Cannot list git files in {root}: {e}") from e
    return [os.fsdecode(name) for name in result.stdout.split(b"\0") if name]


def _resolved(value: T | None, what: str) -> T:
    if value is None:
        raise VmtestError(f"{what} has not been resolved", code="not_resolved")
    return value


def list_releases(
    pattern: str = "*",
    settings: Settings | None = None,
    index: LazyIndex | None = None,
) -> list[str]:
    """List kernel releases matching a pattern, newest first."""
    if settings is None:
        settings = get_settings()
    if index is None:
        index = LazyIndex(settings.index_location)
    return index.get().matching_kernel_releases(settings.target_arch, pattern)


class Preparer:
    """Provisions one disk image for one boot."""

    def __init__(
        self,
        options: PrepareOptions,
        settings: Settings | None = None,
        index: LazyIndex | None = None,
        client: httpx.Client | None = None,
        session_factory: SessionFactory | None = None,
    ) -> None:
        """Initialize the preparer.

        Args:
            options: What to prepare.
            settings: Application settings (uses defaults if not provided).
            index: Artifact index holder (created lazily if not provided).
            client: HTTPX client (created and owned if not provided).
            session_factory: Opens guest sessions (guestfish by default).

        Raises:
            UsageError: If the options conflict.
        """
        options.check_combination()
        self.options = options
        self.settings = settings if settings is not None else get_settings()

        self._owns_client = client is None
        self.client = (
            client if client is not None else httpx.Client(follow_redirects=True)
        )
        self.index = (
            index
            if index is not None
            else LazyIndex(self.settings.index_location, self.client)
        )
        self.session_factory = session_factory or self._open_session

        self.profile = ImageProfile.DEFAULT
        if self.settings.source_fullcopy:
            self.profile = ImageProfile.REDUCED
        self.cache = ArtifactCache(
            cache_dir=options.cache_dir or self.settings.cache_dir,
            arch=self.settings.target_arch,
            project=self.settings.project_name,
            index=self.index,
            client=self.client,
            session_factory=self.session_factory,
            profile=self.profile,
            one_shot=options.one_shot,
            timeout=self.settings.download_timeout,
        )

        self.state = PrepareState.RESOLVE_VERSIONS
        self.kernel_release: str | None = None
        self.rootfs_version: str | None = None
        self.vmlinuz: Path | None = None
        self.vmlinux: Path | None = None
        self._session: GuestSession | None = None

    @property
    def session(self) -> GuestSession:
        """The mounted guest session."""
        if self._session is None:
            raise VmtestError("No image is mounted", code="no_session")
        return self._session

    def _open_session(self) -> GuestSession:
        return GuestSession.open(self.settings.guestfish)

    def _enter(self, state: PrepareState) -> None:
        logger.debug("State %s -> %s", self.state.value, state.value)
        self.state = state

    def _fail(self) -> None:
        logger.error("Image preparation failed during %s", self.state.value)
        self.state = PrepareState.FAILED

    def check_target(self) -> None:
        """Refuse to clobber an existing image, or to reuse a missing one.

        Raises:
            ImageExistsError: If the image exists and may not be replaced.
            UsageError: If skip_image is set but the image is missing.
        """
        image = self.options.image
        if self.options.skip_image:
            if not image.exists():
                raise UsageError(f"{image} does not exist; cannot reuse it")
        elif image.exists() and not self.options.overwrite:
            raise ImageExistsError(str(image))

    def resolve_versions(self) -> None:
        """Pick the kernel release and rootfs version for this run.

        A literal release never loads the index.
        """
        options = self.options
        arch = self.settings.target_arch
        if options.build_dir is not None:
            self.kernel_release = query_kernel_build(options.build_dir, "kernelrelease")
        elif is_glob_pattern(options.kernel_pattern):
            self.kernel_release = self.index.get().newest_kernel_release(
                arch, options.kernel_pattern
            )
        else:
            self.kernel_release = unescape_glob(options.kernel_pattern)

        if not options.skip_image:
            self.rootfs_version = (
                options.rootfs_version
                or self.index.get().newest_rootfs_version(
                    arch, self.settings.project_name
                )
            )

        logger.info("Kernel release: %s", self.kernel_release)
        if options.skip_image:
            logger.info("Not extracting root filesystem")
        else:
            logger.info("Root filesystem version: %s", self.rootfs_version)
        logger.info("Disk image: %s", options.image)

    def acquire_kernel(self) -> None:
        """Get vmlinuz and vmlinux from the build tree or the cache."""
        release = _resolved(self.kernel_release, "Kernel release")
        build_dir = self.options.build_dir
        if build_dir is not None:
            self.vmlinuz = build_dir / query_kernel_build(build_dir, "image_name")
            self.vmlinux = build_dir / "vmlinux"
        else:
            self.vmlinuz = self.cache.fetch_or_reuse(ArtifactKind.VMLINUZ, release)
            self.vmlinux = self.cache.fetch_or_reuse(ArtifactKind.VMLINUX, release)

        handoff = self.settings.workspace / VMLINUZ_HANDOFF_NAME
        copy_file(self.vmlinuz, handoff)
        self.vmlinuz = handoff

    def acquire_image(self) -> None:
        """Create, clone or keep the run's disk image."""
        image = self.options.image
        mode = self.options.image_mode
        if mode is ImageMode.ONE_SHOT:
            remove_image(image)
            create_empty(image, self.profile)
        elif mode is ImageMode.CACHED:
            master = self.cache.ensure_master_image(
                _resolved(self.rootfs_version, "Root filesystem version")
            )
            remove_image(image)
            clone_from(master, image)
        else:
            logger.info("Reusing existing image %s", image)

    def mount_image(self) -> None:
        """Open the run's guest session and mount the image.

        One-shot images are empty until the rootfs is streamed in here.
        """
        self._session = self.session_factory()
        self.session.attach_and_mount(self.options.image)
        if self.options.image_mode is ImageMode.ONE_SHOT:
            version = _resolved(self.rootfs_version, "Root filesystem version")
            self.session.inject_tree(self.cache.rootfs_producer(version), "/")

    def inject_payload(self) -> None:
        """Install vmlinux and copy the source tree into the guest."""
        vmlinux = _resolved(self.vmlinux, "vmlinux")
        logger.info("Copying vmlinux...")
        self.session.upload_file(
            vmlinux, f"/boot/vmlinux-{self.kernel_release}", 0o644
        )

        if self.options.skip_source:
            logger.info("Not copying source files...")
            return

        logger.info("Copying source files...")
        repo_root = self.settings.repo_root
        project_dir = f"/{self.settings.project_name}"
        self.session.mkdir(project_dir)
        if self.settings.source_fullcopy:
            files = git_tracked_files(repo_root)
            self.session.inject_tree(tar_file_list(repo_root, files), project_dir)
            return

        for parent, name, subdir in CURATED_SOURCES:
            source = repo_root / parent / name
            if not source.is_dir():
                raise UsageError(
                    f"Source directory {source} not found; use --skip-source"
                )
            # /<project>/ci is created even though vmtest lands one level up
            self.session.mkdir(f"{project_dir}/{parent}")
            guest_dir = f"{project_dir}/{subdir}" if subdir else project_dir
            self.session.inject_tree(tar_directory(source, name), guest_dir)

    def install_boot_scripts(self) -> None:
        """Install the run script and the shutdown script."""
        release = _resolved(self.kernel_release, "Kernel release")
        label = kernel_label(release, self.options.build_dir is not None)
        for script in boot_scripts(self.options.setup_cmd, label):
            logger.debug("Installing %s", script.guest_path)
            self.session.upload_text(script.content, script.guest_path, script.mode)

    def release_session(self) -> None:
        """Close the guest session."""
        if self._session is not None:
            self._session.close()
            self._session = None

    def cleanup(self) -> None:
        """Best-effort release of everything the run holds."""
        try:
            self.release_session()
        except Exception as e:
            logger.debug("Ignoring error closing session: %s", e)
        self.cache.discard_scratch()
        if self._owns_client:
            self.client.close()

    def run(self) -> PrepareResult:
        """Provision the image.

        Returns:
            PrepareResult for the boot stage.

        Raises:
            VmtestError: On any fatal error; the session is closed first.
            HostError: If a host file or process operation fails.
        """
        steps = (
            (PrepareState.RESOLVE_VERSIONS, self.resolve_versions),
            (PrepareState.ACQUIRE_KERNEL, self.acquire_kernel),
            (PrepareState.ACQUIRE_IMAGE, self.acquire_image),
            (PrepareState.MOUNT_IMAGE, self.mount_image),
            (PrepareState.INJECT_PAYLOAD, self.inject_payload),
            (PrepareState.INSTALL_BOOT_SCRIPTS, self.install_boot_scripts),
            (PrepareState.RELEASE_SESSION, self.release_session),
        )
        try:
            self.check_target()
            for state, step in steps:
                self._enter(state)
                step()
        except OSError as e:
            self._fail()
            raise HostError(f"Host error: {e}") from e
        except BaseException:
            self._fail()
            raise
        finally:
            self.cleanup()

        self._enter(PrepareState.DONE)
        return PrepareResult(
            image=self.options.image,
            vmlinuz=_resolved(self.vmlinuz, "vmlinuz"),
            kernel_release=_resolved(self.kernel_release, "Kernel release"),
            rootfs_version=self.rootfs_version,
            kernel_append=self.options.kernel_append,
            state=self.state,
        )


def prepare_image(
    options: PrepareOptions,
    settings: Settings | None = None,
    index: LazyIndex | None = None,
    client: httpx.Client | None = None,
    session_factory: SessionFactory | None = None,
) -> PrepareResult:
    """Provision a disk image; see Preparer."""
    preparer = Preparer(
        options,
        settings=settings,
        index=index,
        client=client,
        session_factory=session_factory,
    )
    return preparer.run()


__all__ = [
    "CURATED_SOURCES",
    "Preparer",
    "git_tracked_files",
    "list_releases",
    "prepare_image",
    "query_kernel_build",
]
