"""Boot scripts installed into the guest.

This module renders the init scripts that run inside the VM:
- The idle script, which only records that the VM started
- The setup script, which runs user commands and records their status
- The shutdown script, which records a clean shutdown and powers off

The run script occupies an early rcS slot and the shutdown script the last
one. Whatever the user commands do, exactly one ``phase:code`` line ends up
in /exitstatus.
"""

from __future__ import annotations

import re
import shlex
from dataclasses import dataclass

from jinja2 import Environment, StrictUndefined

EXIT_STATUS_PATH = "/exitstatus"
SHUTDOWN_STATUS_PATH = "/shutdown-status"
RUN_SCRIPT_PATH = "/etc/rcS.d/S50-run-tests"
SHUTDOWN_SCRIPT_PATH = "/etc/rcS.d/S99-poweroff"
SCRIPT_MODE = 0o755

# Kernel label used for a kernel built locally rather than a release
LOCAL_BUILD_LABEL = "latest"

_env = Environment(
    undefined=StrictUndefined,
    keep_trailing_newline=True,
    autoescape=False,
)
_env.filters["shquote"] = shlex.quote
_env.globals.update(
    exit_status_path=EXIT_STATUS_PATH,
    shutdown_status_path=SHUTDOWN_STATUS_PATH,
    fold_start=lambda title: f"::group::{title}",
    fold_end=lambda: "::endgroup::",
)

IDLE_TEMPLATE = _env.from_string(
    """\
#!/bin/sh

echo 'Skipping setup commands'
echo vm_start:0 > {{ exit_status_path }}
chmod 644 {{ exit_status_path }}
"""
)

# The commands run in a subshell so that an explicit `exit` still reaches
# the status collection below.
SETUP_TEMPLATE = _env.from_string(
    """\
#!/bin/bash
set -eu
echo 'Running setup commands'
export KERNEL={{ kernel_label | shquote }}
rm -f {{ exit_status_path }}
set +e
(
{{ commands }}
); exitstatus=$?
echo '{{ fold_start("Collect status") }}'
set -e
# If setup command did not write its exit status to {{ exit_status_path }}, do it now
if [[ ! -s {{ exit_status_path }} ]]; then
	echo setup_cmd:$exitstatus > {{ exit_status_path }}
fi
chmod 644 {{ exit_status_path }}
echo '{{ fold_end() }}'
echo '{{ fold_start("Shutdown") }}'
"""
)

SHUTDOWN_TEMPLATE = _env.from_string(
    """\
#!/bin/sh

rm -f {{ shutdown_status_path }}
echo "clean" > {{ shutdown_status_path }}
chmod 644 {{ shutdown_status_path }}

poweroff
"""
)


@dataclass(frozen=True)
class BootScript:
    """An executable script and where it goes in the guest."""

    content: str
    guest_path: str
    mode: int = SCRIPT_MODE


def unescape_whitespace(raw: str) -> str:
    """Turn backslash-escaped whitespace back into plain whitespace.

    Setup commands arrive with whitespace escaped as ``\\<space>`` so they
    survive being passed through argument lists. A backslash before a
    newline is kept, so multi-line commands can still use bash line
    continuations.
    """
    return re.sub(r"\\([ \t\r\f\v])", r"\1", raw)


def kernel_label(release: str, local_build: bool = False) -> str:
    """Value exported as KERNEL to the setup commands."""
    return LOCAL_BUILD_LABEL if local_build else release


def idle_script() -> BootScript:
    """Script recording ``vm_start:0`` when there is nothing to set up."""
    return BootScript(IDLE_TEMPLATE.render(), RUN_SCRIPT_PATH)


def setup_script(commands: str, label: str) -> BootScript:
    """Script running escaped user commands and recording their status.

    Args:
        commands: Raw setup commands, whitespace possibly backslash-escaped.
        label: Kernel label exported as KERNEL.
    """
    content = SETUP_TEMPLATE.render(
        commands=unescape_whitespace(commands),
        kernel_label=label,
    )
    return BootScript(content, RUN_SCRIPT_PATH)


def shutdown_script() -> BootScript:
    """Script recording a clean shutdown and powering the guest off."""
    return BootScript(SHUTDOWN_TEMPLATE.render(), SHUTDOWN_SCRIPT_PATH)


def boot_scripts(setup_commands: str | None, label: str) -> list[BootScript]:
    """All scripts to install, in boot order."""
    if setup_commands and setup_commands.strip():
        run_script = setup_script(setup_commands, label)
    else:
        run_script = idle_script()
    return [run_script, shutdown_script()]


__all__ = [
    "EXIT_STATUS_PATH",
    "LOCAL_BUILD_LABEL",
    "RUN_SCRIPT_PATH",
    "SHUTDOWN_SCRIPT_PATH",
    "SHUTDOWN_STATUS_PATH",
    "BootScript",
    "boot_scripts",
    "idle_script",
    "kernel_label",
    "setup_script",
    "shutdown_script",
    "unescape_whitespace",
]
