"""Reading the guest's exit-status record after boot.

The boot scripts leave a single ``phase:code`` line in /exitstatus and a
clean-shutdown marker in /shutdown-status. This module reads both back out
of the image and turns them into a pass/fail result.
"""

from __future__ import annotations

import logging
import re
import tempfile
from dataclasses import dataclass
from pathlib import Path

from vmtest_imagegen.errors import GuestTestFailure, StatusError
from vmtest_imagegen.image.guest import SessionFactory
from vmtest_imagegen.image.scripts import EXIT_STATUS_PATH, SHUTDOWN_STATUS_PATH
from vmtest_imagegen.types import ExitStatus

logger = logging.getLogger(__name__)

_STATUS_RE = re.compile(r"([A-Za-z0-9_.-]+):(-?\d+)")

CLEAN_SHUTDOWN_MARKER = "clean"


@dataclass
class GuestReport:
    """What the guest recorded before powering off.

    Attributes:
        status: Parsed exit-status record.
        clean_shutdown: Whether the shutdown script ran.
    """

    status: ExitStatus
    clean_shutdown: bool


def parse_exit_status(text: str) -> ExitStatus:
    """Parse the contents of the exit-status file.

    Args:
        text: File contents; exactly one ``phase:code`` line is expected.

    Returns:
        Parsed ExitStatus.

    Raises:
        StatusError: If the content is empty or not a single record.
    """
    lines = [line.strip() for line in text.splitlines() if line.strip()]
    if len(lines) != 1:
        raise StatusError(
            f"Expected one exit-status record, found {len(lines)}: {text!r}"
        )
    match = _STATUS_RE.fullmatch(lines[0])
    if match is None:
        raise StatusError(f"Malformed exit-status record: {lines[0]!r}")
    return ExitStatus(phase=match[1], code=int(match[2]))


def check_status(status: ExitStatus) -> None:
    """Raise GuestTestFailure if the recorded phase failed."""
    if not status.ok:
        raise GuestTestFailure(status)


def read_guest_report(image: Path, session_factory: SessionFactory) -> GuestReport:
    """Mount an image after boot and read its status files.

    Args:
        image: Disk image the VM ran from.
        session_factory: Opens a guest session.

    Returns:
        GuestReport with the parsed record and shutdown marker.

    Raises:
        StatusError: If the record is missing or malformed.
        MountBackendError: If the image cannot be read.
    """
    with tempfile.TemporaryDirectory(prefix="vmtest-status-") as tmp:
        tmp_dir = Path(tmp)
        with session_factory() as session:
            session.attach_and_mount(image)
            if not session.is_file(EXIT_STATUS_PATH):
                raise StatusError(f"{EXIT_STATUS_PATH} not found in {image}")
            session.download_file(EXIT_STATUS_PATH, tmp_dir / "exitstatus")
            clean = session.is_file(SHUTDOWN_STATUS_PATH)
            if clean:
                session.download_file(SHUTDOWN_STATUS_PATH, tmp_dir / "shutdown")

        status = parse_exit_status((tmp_dir / "exitstatus").read_text())
        if clean:
            marker = (tmp_dir / "shutdown").read_text().strip()
            clean = marker == CLEAN_SHUTDOWN_MARKER

    logger.info("Guest status %s (clean shutdown: %s)", status, clean)
    return GuestReport(status=status, clean_shutdown=clean)


__all__ = [
    "CLEAN_SHUTDOWN_MARKER",
    "GuestReport",
    "check_status",
    "parse_exit_status",
    "read_guest_report",
]
