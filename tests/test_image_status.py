"""Tests for reading the guest exit status."""

from pathlib import Path

import pytest

from vmtest_imagegen.errors import GuestTestFailure, StatusError
from vmtest_imagegen.image.status import (
    check_status,
    parse_exit_status,
    read_guest_report,
)
from vmtest_imagegen.types import ExitStatus


class TestParseExitStatus:
    """Tests for parse_exit_status."""

    def test_single_record(self):
        """Should parse one phase:code line."""
        assert parse_exit_status("setup_cmd:7\n") == ExitStatus("setup_cmd", 7)

    def test_surrounding_blank_lines(self):
        """Blank lines should be ignored."""
        assert parse_exit_status("\nvm_start:0\n\n") == ExitStatus("vm_start", 0)

    @pytest.mark.parametrize(
        "text",
        ["", "setup_cmd:1\nsetup_cmd:2\n", "no colon", "phase:abc"],
    )
    def test_invalid(self, text):
        """Empty, duplicate and malformed records should be rejected."""
        with pytest.raises(StatusError):
            parse_exit_status(text)


class TestCheckStatus:
    """Tests for check_status."""

    def test_success(self):
        """A zero code should pass."""
        check_status(ExitStatus("vm_start", 0))

    def test_failure(self):
        """A non-zero code should raise GuestTestFailure."""
        with pytest.raises(GuestTestFailure) as exc_info:
            check_status(ExitStatus("setup_cmd", 7))

        assert exc_info.value.exit_code == 1


class TestReadGuestReport:
    """Tests for read_guest_report."""

    def test_reads_status_and_shutdown_marker(self, sessions):
        """Should read both status files from the image."""
        sessions.files = {
            "/exitstatus": b"setup_cmd:0\n",
            "/shutdown-status": b"clean\n",
        }

        report = read_guest_report(Path("root.img"), sessions)

        assert report.status == ExitStatus("setup_cmd", 0)
        assert report.clean_shutdown
        session = sessions.sessions[0]
        assert ("attach_and_mount", Path("root.img")) in session.calls
        assert session.closed

    def test_unclean_shutdown(self, sessions):
        """A missing shutdown marker should be reported."""
        sessions.files = {"/exitstatus": b"vm_start:0\n"}

        report = read_guest_report(Path("root.img"), sessions)

        assert not report.clean_shutdown

    def test_missing_status(self, sessions):
        """A missing status file should raise StatusError."""
        sessions.files = {}

        with pytest.raises(StatusError):
            read_guest_report(Path("root.img"), sessions)

        assert sessions.sessions[0].closed
