"""Command line interface for chunkdl.

Provides the ``download``, ``merge`` and ``version`` commands with rich
progress output and graceful interruption.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
from typing import Any

import click
from rich.console import Console
from rich.table import Table

from chunkdl import __version__
from chunkdl.cli.progress import ProgressManager, TransferProgress
from chunkdl.cli.verbosity import VerbosityManager
from chunkdl.config.config import ConfigManager, init_config
from chunkdl.downloader import DownloadResult, Downloader
from chunkdl.merger import GroupResult, Merger
from chunkdl.utils.exceptions import (
    ChunkDLError,
    ConfigurationError,
    TransferCancelledError,
)
from chunkdl.utils.formatting import format_bytes, format_duration, parse_size
from chunkdl.utils.logging_config import log_exception, setup_logging
from chunkdl.utils.tasks import CancelToken

logger = logging.getLogger(__name__)


class SizeParamType(click.ParamType):
    """Byte count with an optional K/M/G suffix."""

    name = "size"

    def convert(self, value: Any, param: click.Parameter | None, ctx: click.Context | None) -> int:
        if isinstance(value, int):
            return value
        try:
            size = parse_size(str(value))
        except ValueError as e:
            self.fail(str(e), param, ctx)
        if size <= 0:
            self.fail(f"size must be positive, got {value!r}", param, ctx)
        return size


SIZE = SizeParamType()


def _get_config_from_context(ctx: click.Context) -> ConfigManager:
    """Get the ConfigManager created by the command group."""
    if ctx.obj and ctx.obj.get("config_manager") is not None:
        return ctx.obj["config_manager"]
    return init_config()


def _print_download_summary(console: Console, result: DownloadResult) -> None:
    table = Table(show_header=False, box=None)
    table.add_row("File", result.prefix)
    table.add_row("Size", format_bytes(result.total_size))
    table.add_row("Chunks", str(result.num_chunks))
    table.add_row(
        "Transferred",
        f"{format_bytes(result.report.bytes_transferred)} in {format_duration(result.elapsed)}",
    )
    if result.report.skipped:
        table.add_row("Skipped", f"{len(result.report.skipped)} chunks already on disk")
    if result.hook_results:
        failed = result.failed_hooks
        table.add_row(
            "Hooks",
            f"{len(result.hook_results) - len(failed)} ok, {len(failed)} failed",
        )
    console.print(table)


def _print_merge_results(console: Console, results: list[GroupResult]) -> None:
    table = Table(title="Merge results")
    table.add_column("Group")
    table.add_column("Output")
    table.add_column("Files", justify="right")
    table.add_column("Size", justify="right")
    table.add_column("Status")
    for r in results:
        table.add_row(
            r.basename,
            str(r.output),
            str(len(r.files)),
            format_bytes(r.bytes_written),
            "[green]ok[/green]" if r.success else f"[red]{r.error}[/red]",
        )
    console.print(table)


async def _run_download(downloader: Downloader, timeout: float | None) -> DownloadResult:
    token = CancelToken()
    loop = asyncio.get_running_loop()
    installed = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        # Not available on every platform (e.g. Windows event loops).
        with contextlib.suppress(NotImplementedError, RuntimeError):
            loop.add_signal_handler(sig, token.cancel, f"received {sig.name}")
            installed.append(sig)
    try:
        return await downloader.download(token=token, timeout=timeout)
    finally:
        for sig in installed:
            loop.remove_signal_handler(sig)


@click.group()
@click.option(
    "--config",
    "-c",
    "config_file",
    type=click.Path(exists=True, dir_okay=False),
    help="Configuration file path",
)
@click.option(
    "--verbose",
    "-v",
    count=True,
    help="Increase verbosity (-v: verbose, -vv: debug)",
)
@click.option("--quiet", "-q", is_flag=True, help="Only report errors")
@click.pass_context
def cli(ctx: click.Context, config_file: str | None, verbose: int, quiet: bool) -> None:
    """chunkdl - resumable, chunked HTTP downloader."""
    ctx.ensure_object(dict)
    verbosity_manager = VerbosityManager.from_count(verbose, quiet)
    ctx.obj["verbosity_manager"] = verbosity_manager
    ctx.obj["console"] = Console()

    try:
        config_manager = ConfigManager(config_file, setup_log=False)
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from e
    ctx.obj["config_manager"] = config_manager

    observability = config_manager.config.observability.model_copy()
    observability.log_level = verbosity_manager.log_level(observability.log_level)
    setup_logging(observability, console=Console(stderr=True))


@cli.command()
@click.argument("url")
@click.option("--chunk-size", "-c", type=SIZE, help="Chunk size (K, M, G suffix). Default: 100M")
@click.option("--proxy", "-x", help="Proxy URL (e.g. socks5h://127.0.0.1:9050)")
@click.option("--retries", "-r", type=click.IntRange(min=0), help="Retries per chunk. Default: 10")
@click.option("--no-head", is_flag=True, help="Skip HEAD request (requires --size)")
@click.option("--size", "total_size", type=SIZE, help="Total size in bytes")
@click.option("--jobs", "-j", type=click.IntRange(min=1), help="Concurrent chunks. Default: 1")
@click.option("--force", is_flag=True, help="Discard existing state and start over")
@click.option("--merge", "merge_after", is_flag=True, help="Merge chunks after download")
@click.option(
    "--post-part",
    help=(
        "Command to run after each part completes (placeholders: {part} {idx} {base}; "
        "{part} and {base} are inserted shell-quoted, so do not embed them in longer quoted strings)"
    ),
)
@click.option(
    "--post-part-jobs",
    type=click.IntRange(min=0),
    help="Max concurrent post-part commands (0 = default of 10)",
)
@click.option("--output-dir", "-o", type=click.Path(file_okay=False), help="Directory for chunk files")
@click.option("--timeout", type=click.FloatRange(min=0, min_open=True), help="Stop after SECONDS (resumable)")
@click.pass_context
def download(
    ctx: click.Context,
    url: str,
    chunk_size: int | None,
    proxy: str | None,
    retries: int | None,
    no_head: bool,
    total_size: int | None,
    jobs: int | None,
    force: bool,
    merge_after: bool,
    post_part: str | None,
    post_part_jobs: int | None,
    output_dir: str | None,
    timeout: float | None,
) -> None:
    """Download URL using chunked HTTP Range requests with resume support."""
    if no_head and total_size is None:
        msg = "--no-head requires --size"
        raise click.UsageError(msg)

    config_manager = _get_config_from_context(ctx)
    console: Console = ctx.obj["console"]
    config = config_manager.config.model_copy(deep=True)
    if proxy is not None:
        try:
            config.network = config.network.model_validate(
                {**config.network.model_dump(), "proxy_url": proxy}
            )
        except ValueError as e:
            raise click.BadParameter(str(e), param_hint="--proxy") from e

    progress = ProgressManager(console).create_download_progress()
    listener = TransferProgress(progress)
    downloader = Downloader(
        url,
        chunk_size=chunk_size,
        concurrency=jobs,
        max_retries=retries,
        force_restart=force,
        total_size=total_size,
        hook_command=post_part,
        hook_concurrency=post_part_jobs,
        output_dir=output_dir,
        merge_after=merge_after,
        config=config,
        listener=listener,
    )

    try:
        with progress:
            result = asyncio.run(_run_download(downloader, timeout))
    except TransferCancelledError as e:
        console.print(f"[yellow]Download stopped ({e.message}); progress saved, run again to resume[/yellow]")
        return
    except ChunkDLError as e:
        log_exception(logger, e, "Download failed")
        raise click.ClickException(str(e)) from e

    _print_download_summary(console, result)
    if result.failed_hooks:
        console.print(
            f"[yellow]Hooks failed for chunks {result.failed_hooks}; "
            "they will be retried on the next run[/yellow]"
        )

    if result.merged:
        _print_merge_results(console, result.merged)


@cli.command()
@click.option("--output", "-o", type=click.Path(dir_okay=False), help="Output file (auto-detected if omitted)")
@click.option("--pattern", help="Glob selecting chunk files. Default: *.part")
@click.option("--delete", "delete_after", is_flag=True, default=None, help="Delete chunk files and state after merging")
@click.option(
    "--strict",
    is_flag=True,
    help="Fail instead of merging every matched file when OUTPUT matches no group",
)
@click.pass_context
def merge(
    ctx: click.Context,
    output: str | None,
    pattern: str | None,
    delete_after: bool | None,
    strict: bool,
) -> None:
    """Merge chunk files into their original files."""
    config_manager = _get_config_from_context(ctx)
    console: Console = ctx.obj["console"]
    merge_config = config_manager.config.merge

    merger = Merger(
        output=output,
        pattern=pattern or merge_config.pattern,
        delete_after=merge_config.delete_after if delete_after is None else delete_after,
        allow_fallback=merge_config.allow_fallback and not strict,
    )
    try:
        results = merger.merge_groups()
    except ChunkDLError as e:
        raise click.ClickException(str(e)) from e

    _print_merge_results(console, results)
    failed = [r.basename for r in results if not r.success]
    if failed:
        msg = f"failed to merge: {', '.join(failed)}"
        raise click.ClickException(msg)


@cli.command()
def version() -> None:
    """Show version."""
    click.echo(f"chunkdl {__version__}")


def main() -> None:
    """Main CLI entry point."""
    cli()


if __name__ == "__main__":
    main()
