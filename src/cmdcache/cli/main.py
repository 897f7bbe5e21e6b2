"""cmdcache CLI entry point.

Usage: cmdcache [OPTIONS] COMMAND [ARGS]...

Option parsing stops at COMMAND, so the command's own flags are passed
through untouched. The process exits with the live or replayed exit
code once every file and pipe has been closed.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Optional

import typer
import yaml
from pydantic import ValidationError
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape

from cmdcache import __version__
from cmdcache.execution.capture import CommandStartError
from cmdcache.execution.runner import CachedCommandRunner
from cmdcache.models.config import CacheConfig, default_cache_dir, load_config
from cmdcache.recording.codec import RecordDecodeError
from cmdcache.storage.cache_store import CacheStore

app = typer.Typer(
    name="cmdcache",
    help="Execute a command and cache its output for replay.",
    add_completion=False,
)

# Shell conventions for commands that could not be run
EXIT_NOT_FOUND = 127
EXIT_NOT_EXECUTABLE = 126
EXIT_USAGE = 1

USAGE = """\
Usage: cmdcache [options] command [arguments]
Execute command with arguments and cache the output.
Output is stored with timestamps and interleaved so that you can
replay it again later.  Stdout and Stderr are preserved.
Run 'cmdcache --help' for options."""


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        typer.echo(f"cmdcache {__version__}")
        raise typer.Exit()


def configure_logging(level: str) -> None:
    """Route cmdcache log records to a rich handler on stderr."""
    handler = RichHandler(
        console=Console(stderr=True),
        show_time=False,
        show_path=False,
    )
    pkg_logger = logging.getLogger("cmdcache")
    for existing in list(pkg_logger.handlers):
        if isinstance(existing, RichHandler):
            pkg_logger.removeHandler(existing)
    pkg_logger.addHandler(handler)
    pkg_logger.setLevel(level)


def _effective_config(
    base: CacheConfig,
    ttl: int | None,
    delay: bool,
    keep_failures: bool,
    strict: bool,
    verbose: bool,
) -> CacheConfig:
    """Overlay command-line flags on the file configuration."""
    update: dict[str, object] = {}
    if ttl is not None:
        update["ttl"] = ttl
    if delay:
        update["delay"] = True
    if keep_failures:
        update["keep_failures"] = True
    if strict:
        update["strict_decode"] = True
    if verbose:
        update["log_level"] = "DEBUG"
    return base.model_validate({**base.model_dump(), **update})


@app.command(context_settings={"allow_interspersed_args": False})
def main(
    command: Optional[List[str]] = typer.Argument(
        None, help="Command to run, followed by its arguments", show_default=False
    ),
    ttl: Optional[int] = typer.Option(
        None, "--ttl", help="Time to live in seconds (-1 = never expire)"
    ),
    delay: bool = typer.Option(
        False, "--delay", help="Replay with the recorded timing ('real time' display)"
    ),
    keep_failures: bool = typer.Option(
        False, "--ve", "--keep-failures", help="Cache non-zero exit codes"
    ),
    strict: bool = typer.Option(
        False, "--strict", help="Fail on corrupt cache entries instead of stopping early"
    ),
    cache_dir: Optional[Path] = typer.Option(
        None, "--cache-dir", help="Cache directory (default: $CMDCACHE_DIR or ~/.cmdcache)"
    ),
    verbose: bool = typer.Option(False, "-V", "--verbose", help="Log cache decisions"),
    version: bool = typer.Option(
        False,
        "--version",
        help="Show version and exit.",
        callback=version_callback,
        is_eager=True,
    ),
) -> None:
    """Execute COMMAND with arguments and cache the output."""
    console = Console(stderr=True)

    if not command:
        typer.echo(USAGE, err=True)
        raise typer.Exit(code=EXIT_USAGE)

    root = cache_dir if cache_dir is not None else default_cache_dir()

    try:
        file_config = load_config(root)
    except (ValidationError, yaml.YAMLError) as exc:
        console.print(f"[bold red]Config error:[/bold red] {escape(str(exc))}")
        raise typer.Exit(code=EXIT_USAGE)

    try:
        config = _effective_config(file_config, ttl, delay, keep_failures, strict, verbose)
    except ValidationError as exc:
        console.print(f"[bold red]Invalid option:[/bold red] {escape(str(exc))}")
        raise typer.Exit(code=EXIT_USAGE)

    configure_logging(config.log_level)

    runner = CachedCommandRunner(CacheStore(root), config)
    try:
        exit_code = runner.run(command)
    except CommandStartError as exc:
        console.print(f"[bold red]Error:[/bold red] {escape(str(exc))}")
        if isinstance(exc.cause, FileNotFoundError):
            raise typer.Exit(code=EXIT_NOT_FOUND)
        raise typer.Exit(code=EXIT_NOT_EXECUTABLE)
    except RecordDecodeError as exc:
        console.print(
            f"[bold red]Corrupt cache entry:[/bold red] {escape(str(exc))} "
            "(entry removed; run again to recapture)"
        )
        raise typer.Exit(code=EXIT_USAGE)

    raise typer.Exit(code=exit_code)
