"""streamarchive CLI entrypoint.

This module provides the `streamarchive` click group with two commands:
`extract`, which streams an archive from a URL or local path onto disk while
displaying progress, and `build`, which produces gz, tar.gz or zip archives
from local files.

Usage example (from shell):
    streamarchive extract https://example.com/tool.tar.gz -o tools/
    streamarchive build zip src/ dist/src.zip

The implementation delegates all archive handling to
`streamarchive.ArchiveEngine`, so this module focuses on user interaction,
progress reporting and error display.
"""

from pathlib import Path

import click
from rich.console import Console
from rich.progress import Progress, SpinnerColumn, TextColumn, DownloadColumn, TransferSpeedColumn

from . import ArchiveEngine
from .ArchiveEngine import ArchiveFormat
from .Errors import ArchiveError
from .LogConfig import configure_logging

# Create a single console instance for the CLI UI (rich console handles colors/formatting)
console = Console()

FORMAT_CHOICES = {archive_format.value: archive_format for archive_format in ArchiveFormat}


@click.group(context_settings=dict(help_option_names=["-h", "--help"]))
@click.option("--log-level",
              type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"], case_sensitive=False),
              default=None,
              help="Logging level (defaults to STREAMARCHIVE_LOG_LEVEL or INFO)")
def cli(log_level: str | None):
    """Extract and build gz, tar.gz and zip archives from forward-only streams."""
    configure_logging(log_level, console=console)


@cli.command(context_settings=dict(help_option_names=["-h", "--help"]))
@click.argument("location", type=str)
@click.option("--output", "-o",
              type=click.Path(path_type=Path),
              default=Path("extracted"),
              help="Output directory (or output file for a single .gz)")
@click.option("--format", "-f", "archive_format",
              type=click.Choice(list(FORMAT_CHOICES)),
              default=None,
              help="Skip format detection and use this format")
@click.option("--atomic", is_flag=True, help="Stage the output and move it into place only on success")
def extract(location: str, output: Path, archive_format: str | None, atomic: bool):
    """Extract an archive from a URL or local path.

    The command will:

    - Open LOCATION as a forward-only stream (an HTTP download or a local file).

    - Detect the container from its first bytes unless --format is given.

    - Write every entry below the output directory while displaying progress.

    Args:

        location: A URL or path pointing to a gz, tar.gz or zip archive.

        output: Destination directory, created if it doesn't exist.

        archive_format: Optional format override ("gz", "tar.gz" or "zip").

        atomic: When set, nothing is left behind if extraction fails.
    """
    try:
        # Bytes written are known as they happen; the total is not, so the bar is indeterminate
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            DownloadColumn(),
            TransferSpeedColumn(),
            console=console
        ) as progress:
            task = progress.add_task(f"Extracting {location}...", total=None)

            def progress_callback(bytes_written):
                progress.update(task, advance=bytes_written)

            target = ArchiveEngine.extract(
                location,
                output,
                archive_format=FORMAT_CHOICES[archive_format] if archive_format else None,
                atomic=atomic,
                progress_callback=progress_callback,
            )
        console.print(f"Extraction complete: {target}")
    except ArchiveError as e:
        # Surface the error to the user and exit non-zero
        console.print(f"[red]Error:[/red] {e}")
        raise SystemExit(1) from e


@cli.command(context_settings=dict(help_option_names=["-h", "--help"]))
@click.argument("archive_format", type=click.Choice(list(FORMAT_CHOICES)))
@click.argument("src", type=click.Path(exists=True, path_type=Path))
@click.argument("dst", type=click.Path(path_type=Path))
def build(archive_format: str, src: Path, dst: Path):
    """Build an ARCHIVE_FORMAT archive of SRC (a file for gz, a directory otherwise) at DST."""
    try:
        with console.status(f"Building {dst}..."):
            target = ArchiveEngine.build(FORMAT_CHOICES[archive_format], src, dst)
        console.print(f"Wrote {target}")
    except ArchiveError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise SystemExit(1) from e


def main():
    cli()
