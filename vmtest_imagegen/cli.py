"""Thin CLI wrapper for vmtest_imagegen.

This module provides the command-line interface using Typer.
All business logic is delegated to core modules.

Exit codes: 0 on success, 1 if the VM ran but its tests failed, and 2 on
any fatal error (including usage errors).
"""

import json
import logging
from pathlib import Path
from typing import Annotated

import typer
from pydantic import ValidationError
from rich.console import Console
from rich.logging import RichHandler

from vmtest_imagegen import __version__
from vmtest_imagegen.config import Settings, get_settings, print_settings_json
from vmtest_imagegen.errors import HostError, UsageError, VmtestError

app = typer.Typer(
    name="vmtest-imagegen",
    help="vmtest image generator - prepare VM disk images for kernel tests",
    no_args_is_help=True,
)
console = Console()
err_console = Console(stderr=True)


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"vmtest-imagegen version {__version__}")
        raise typer.Exit()


def setup_logging(level: str) -> None:
    """Send log records to stderr through rich."""
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, show_path=False)],
        force=True,
    )


def fail(error: VmtestError) -> typer.Exit:
    """Report an error and build the matching exit."""
    err_console.print(f"[red]{error.message}[/red]")
    return typer.Exit(code=error.exit_code)


def load_settings() -> Settings:
    """Load settings, reporting bad environment values as usage errors."""
    try:
        return get_settings()
    except ValidationError as e:
        raise fail(UsageError(f"Invalid settings: {e}")) from None


@app.callback()
def main(
    version: Annotated[
        bool | None,
        typer.Option(
            "--version",
            "-V",
            help="Show version and exit",
            callback=version_callback,
            is_eager=True,
        ),
    ] = None,
    log_level: Annotated[
        str | None,
        typer.Option("--log-level", help="Logging level (default from settings)"),
    ] = None,
) -> None:
    """vmtest image generator - prepare VM disk images for kernel tests."""
    setup_logging((log_level or load_settings().log_level).upper())


@app.command()
def config(
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show effective configuration."""
    settings = load_settings()
    if json_output:
        console.print(print_settings_json(settings))
        return

    console.print("[bold]Effective Configuration:[/bold]")
    console.print()
    console.print("[bold]Paths:[/bold]")
    console.print(f"  Artifact index:      {settings.index_location}")
    console.print(f"  Cache directory:     {settings.cache_dir}")
    console.print(f"  Workspace:           {settings.workspace}")
    console.print(f"  Repository root:     {settings.repo_root}")
    console.print()
    console.print("[bold]Target:[/bold]")
    console.print(f"  Architecture:        {settings.target_arch}")
    console.print(f"  Project name:        {settings.project_name}")
    console.print()
    console.print("[bold]Operational:[/bold]")
    console.print(f"  Full source copy:    {settings.source_fullcopy}")
    console.print(f"  Log level:           {settings.log_level}")
    console.print(f"  guestfish:           {settings.guestfish}")
    console.print(f"  Download timeout:    {settings.download_timeout}")


@app.command("list")
def list_command(
    kernel: Annotated[
        str,
        typer.Option("--kernel", "-k", help="Glob pattern filtering kernel releases"),
    ] = "*",
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """List available kernel releases, newest first."""
    from vmtest_imagegen.prepare.service import list_releases

    settings = load_settings()
    try:
        releases = list_releases(kernel, settings=settings)
    except VmtestError as e:
        raise fail(e) from None

    if json_output:
        console.print(json.dumps(releases, indent=2))
        return
    for release in releases:
        console.print(release, highlight=False)


@app.command()
def prepare(
    image: Annotated[Path, typer.Argument(help="Path of the disk image to create")],
    kernel: Annotated[
        str | None,
        typer.Option(
            "--kernel",
            "-k",
            help="Kernel release glob; the newest matching release is used",
        ),
    ] = None,
    build: Annotated[
        Path | None,
        typer.Option("--build", "-b", help="Use the kernel built in this directory"),
    ] = None,
    rootfs: Annotated[
        str | None,
        typer.Option(
            "--rootfs", "-r", help="Root filesystem version (default: newest)"
        ),
    ] = None,
    force: Annotated[
        bool,
        typer.Option("--force", "-f", help="Overwrite IMG if it already exists"),
    ] = False,
    one_shot: Annotated[
        bool,
        typer.Option(
            "--one-shot",
            "-o",
            help="Always re-download and keep nothing cached; implies --force",
        ),
    ] = False,
    setup_cmd: Annotated[
        str | None,
        typer.Option(
            "--setup-cmd",
            "-s",
            help="Commands run on VM boot; escape whitespace with '\\'",
        ),
    ] = None,
    skip_image: Annotated[
        bool,
        typer.Option("--skip-image", "-I", help="Reuse the existing image at IMG"),
    ] = False,
    skip_source: Annotated[
        bool,
        typer.Option("--skip-source", "-S", help="Skip copying the source files"),
    ] = False,
    interactive: Annotated[
        bool,
        typer.Option(
            "--interactive", "-i", help="Boot into a shell instead of running tests"
        ),
    ] = False,
    directory: Annotated[
        Path | None,
        typer.Option("--dir", "-d", help="Directory for downloaded and cached files"),
    ] = None,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output the result as JSON"),
    ] = False,
) -> None:
    """Prepare a VM disk image for running the tests."""
    from vmtest_imagegen.prepare.models import PrepareOptions
    from vmtest_imagegen.prepare.service import prepare_image

    try:
        options = PrepareOptions(
            image=image,
            kernel_release=kernel,
            build_dir=build,
            rootfs_version=rootfs,
            force=force,
            one_shot=one_shot,
            setup_cmd=setup_cmd,
            skip_image=skip_image,
            skip_source=skip_source,
            interactive=interactive,
            cache_dir=directory,
        )
    except ValidationError as e:
        raise fail(UsageError(str(e))) from None

    settings = load_settings()
    try:
        result = prepare_image(options, settings=settings)
    except VmtestError as e:
        raise fail(e) from None

    if json_output:
        console.print(json.dumps(result.to_dict(), indent=2))
    else:
        console.print(f"[green]Prepared {result.image}[/green]")
        console.print(f"  Kernel release: {result.kernel_release}")
        console.print(f"  vmlinuz:        {result.vmlinuz}")


@app.command()
def status(
    image: Annotated[Path, typer.Argument(help="Disk image the VM booted from")],
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Read the exit status the guest recorded; exit 1 if its tests failed."""
    from vmtest_imagegen.image.guest import GuestSession
    from vmtest_imagegen.image.status import check_status, read_guest_report

    settings = load_settings()
    try:
        report = read_guest_report(image, lambda: GuestSession.open(settings.guestfish))
    except OSError as e:
        raise fail(HostError(f"Host error: {e}")) from None
    except VmtestError as e:
        raise fail(e) from None

    if json_output:
        console.print(
            json.dumps(
                {
                    "phase": report.status.phase,
                    "code": report.status.code,
                    "clean_shutdown": report.clean_shutdown,
                },
                indent=2,
            )
        )
    else:
        console.print(f"Exit status: {report.status}", highlight=False)
        if not report.clean_shutdown:
            console.print("[yellow]Guest did not shut down cleanly[/yellow]")

    try:
        check_status(report.status)
    except VmtestError as e:
        raise fail(e) from None


if __name__ == "__main__":
    app()
