"""Disk image module.

This module handles:
- Creating and cloning filesystem images
- guestfish sessions for populating images
- Boot scripts and the guest exit-status protocol
"""

from vmtest_imagegen.image.builder import DiskImage, clone_from, create_empty
from vmtest_imagegen.image.guest import GuestSession
from vmtest_imagegen.image.scripts import BootScript, boot_scripts
from vmtest_imagegen.image.status import GuestReport, read_guest_report

__all__ = [
    "BootScript",
    "DiskImage",
    "GuestReport",
    "GuestSession",
    "boot_scripts",
    "clone_from",
    "create_empty",
    "read_guest_report",
]
