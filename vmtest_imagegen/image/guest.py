"""Persistent guestfish session for populating disk images.

This module handles:
- Starting a `guestfish --listen` session and sending it remote commands
- Attaching and mounting an image
- Streaming tar content into the mounted filesystem through a named pipe
- Uploading files, creating directories and reading files back

guestfish --remote does not forward file descriptors, so `tar-in -` and
process substitution are unavailable. Tar streams are therefore written into
a FIFO by a background task while the session reads from it; the FIFO's
directory is removed only after both sides have finished.
"""

from __future__ import annotations

import atexit
import logging
import os
import re
import shlex
import shutil
import subprocess
import tarfile
import tempfile
from collections.abc import Callable, Iterable
from pathlib import Path
from typing import BinaryIO

from vmtest_imagegen.errors import MountBackendError
from vmtest_imagegen.pipes import BackgroundTask

logger = logging.getLogger(__name__)

# Writes a byte stream (usually a tar archive) into a binary sink
Producer = Callable[[BinaryIO], None]

_PID_RE = re.compile(r"GUESTFISH_PID=(\d+)")

DEFAULT_DIR_MODE = 0o755
DEFAULT_FILE_MODE = 0o644


class GuestSession:
    """Handle to a live guestfish listener owning one mounted image.

    Use as a context manager, or call close() explicitly. A session that is
    never closed is closed best-effort at interpreter exit.
    """

    def __init__(self, pid: int, guestfish: str = "guestfish") -> None:
        self.pid = pid
        self.guestfish = guestfish
        self.image: Path | None = None
        self._closed = False
        atexit.register(self.close)

    @classmethod
    def open(cls, guestfish: str = "guestfish") -> GuestSession:
        """Start a guestfish listener.

        Args:
            guestfish: guestfish executable.

        Returns:
            A new GuestSession.

        Raises:
            MountBackendError: If the listener cannot be started.
        """
        try:
            result = subprocess.run(
                [guestfish, "--listen"],
                capture_output=True,
                text=True,
                check=True,
            )
        except subprocess.CalledProcessError as e:
            raise MountBackendError(
                f"guestfish --listen failed: {(e.stderr or '').strip()}",
                code="listen_error",
            ) from e
        except OSError as e:
            raise MountBackendError(
                f"Failed to run {guestfish}: {e}", code="listen_error"
            ) from e

        match = _PID_RE.search(result.stdout)
        if match is None:
            raise MountBackendError(
                f"Unexpected guestfish --listen output: {result.stdout!r}",
                code="listen_error",
            )
        pid = int(match[1])
        logger.debug("Started guestfish session %d", pid)
        return cls(pid, guestfish=guestfish)

    @property
    def closed(self) -> bool:
        """Whether the session has been closed."""
        return self._closed

    def __enter__(self) -> GuestSession:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def remote(self, *args: str) -> str:
        """Run guestfish commands in this session.

        Several commands can be chained with ':' arguments.

        Returns:
            The command output.

        Raises:
            MountBackendError: If the session is closed or a command fails.
        """
        if self._closed:
            raise MountBackendError(
                f"guestfish session {self.pid} is closed", code="session_closed"
            )
        cmd = [self.guestfish, f"--remote={self.pid}", "--", *args]
        logger.debug("guestfish: %s", shlex.join(args))
        try:
            result = subprocess.run(cmd, capture_output=True, text=True, check=True)
        except subprocess.CalledProcessError as e:
            raise MountBackendError(
                f"guestfish {shlex.join(args)} failed: {(e.stderr or '').strip()}"
            ) from e
        except OSError as e:
            raise MountBackendError(f"Failed to run {self.guestfish}: {e}") from e
        return result.stdout

    def attach_and_mount(self, image: Path, label: str = "img") -> None:
        """Attach an image, launch the appliance and mount it at /."""
        logger.info("Mounting %s", image)
        device = f"/dev/disk/guestfs/{label}"
        self.remote(
            *("add", str(image), f"label:{label}"),
            *(":", "launch"),
            *(":", "mount", device, "/"),
        )
        self.image = image

    def mkdir(self, path: str, mode: int = DEFAULT_DIR_MODE) -> None:
        """Create a directory (and parents) with the given mode."""
        self.remote("mkdir-p", path, ":", "chmod", _octal(mode), path)

    def upload_file(
        self, host_path: Path, guest_path: str, mode: int = DEFAULT_FILE_MODE
    ) -> None:
        """Upload a host file and set its mode."""
        logger.debug("Uploading %s to %s", host_path, guest_path)
        self.remote(
            *("upload", str(host_path), guest_path),
            *(":", "chmod", _octal(mode), guest_path),
        )

    def upload_text(self, text: str, guest_path: str, mode: int) -> None:
        """Upload text content as a file."""
        fd, tmp_name = tempfile.mkstemp(prefix="vmtest-upload-")
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(fd, "w") as f:
                f.write(text)
            self.upload_file(tmp_path, guest_path, mode)
        finally:
            tmp_path.unlink(missing_ok=True)

    def download_file(self, guest_path: str, host_path: Path) -> None:
        """Copy a guest file to the host."""
        self.remote("download", guest_path, str(host_path))

    def is_file(self, guest_path: str) -> bool:
        """Return whether guest_path is a regular file."""
        return self.remote("is-file", guest_path).strip() == "true"

    def inject_tree(self, producer: Producer, guest_dest: str) -> None:
        """Extract a tar stream into the guest without staging it on disk.

        The producer writes a tar archive into a named pipe on a background
        task while `tar-in` reads it. Both sides are joined before the
        pipe's directory is removed.

        Args:
            producer: Writes the tar stream into the sink it is given.
            guest_dest: Guest directory to extract into.

        Raises:
            MountBackendError: If tar-in fails.
            Exception: Whatever the producer raised.
        """
        tmp_dir = Path(tempfile.mkdtemp(prefix="vmtest-tar-in-"))
        fifo = tmp_dir / "fifo"
        try:
            os.mkfifo(fifo)

            def write() -> None:
                with fifo.open("wb") as sink:
                    producer(sink)

            writer = BackgroundTask(write, name="tar-in-writer").start()
            try:
                self.remote("tar-in", str(fifo), guest_dest)
            except BaseException as e:
                # The writer may not have reached open() yet
                while writer.running:
                    _release_writer(fifo)
                    writer.join(reraise=False, timeout=0.1)
                # A producer failure (e.g. a download error) is the root cause
                if writer.error is not None and not isinstance(
                    writer.error, BrokenPipeError
                ):
                    raise writer.error from e
                raise
            # tar-in may stop reading once it has seen the end-of-archive
            # blocks, leaving the writer with EPIPE on the trailing padding
            writer.join(reraise=False)
            if writer.error is not None and not isinstance(
                writer.error, BrokenPipeError
            ):
                raise writer.error
        finally:
            shutil.rmtree(tmp_dir, ignore_errors=True)

    def close(self) -> None:
        """Shut the session down. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        atexit.unregister(self.close)
        try:
            subprocess.run(
                [self.guestfish, f"--remote={self.pid}", "--", "exit"],
                capture_output=True,
                check=False,
            )
        except OSError as e:
            logger.debug("Ignoring error closing guestfish session %d: %s", self.pid, e)
        logger.debug("Closed guestfish session %d", self.pid)


def _octal(mode: int) -> str:
    # guestfish parses a leading 0 as octal
    return f"0{mode:o}"


def _release_writer(fifo: Path) -> None:
    # Open the read end so a writer blocked in open() proceeds and then
    # fails with EPIPE instead of hanging.
    try:
        fd = os.open(fifo, os.O_RDONLY | os.O_NONBLOCK)
    except OSError:
        return
    os.close(fd)


def tar_directory(source: Path, arcname: str) -> Producer:
    """Producer archiving a directory under a given top-level name."""

    def produce(sink: BinaryIO) -> None:
        with tarfile.open(fileobj=sink, mode="w|") as tar:
            tar.add(source, arcname=arcname)

    return produce


def tar_file_list(root: Path, names: Iterable[str]) -> Producer:
    """Producer archiving the listed paths, relative to root."""

    def produce(sink: BinaryIO) -> None:
        with tarfile.open(fileobj=sink, mode="w|") as tar:
            for name in names:
                tar.add(root / name, arcname=name, recursive=False)

    return produce


def copy_chunks(chunks: Iterable[bytes]) -> Producer:
    """Producer copying an already-formed byte stream."""

    def produce(sink: BinaryIO) -> None:
        for chunk in chunks:
            sink.write(chunk)

    return produce


SessionFactory = Callable[[], GuestSession]


__all__ = [
    "DEFAULT_DIR_MODE",
    "DEFAULT_FILE_MODE",
    "GuestSession",
    "Producer",
    "SessionFactory",
    "copy_chunks",
    "tar_directory",
    "tar_file_list",
]
