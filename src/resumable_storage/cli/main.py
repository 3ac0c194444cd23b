"""CLI interface for resumable uploads."""

import logging
import os
import sys
from datetime import datetime
from pathlib import Path

import click
from rich.console import Console
from rich.progress import BarColumn, Progress, TaskProgressColumn, TextColumn, TimeRemainingColumn
from rich.prompt import Prompt
from rich.table import Table

from ..core.api import DEFAULT_RECORD_DIR, ResumableStorageAPI
from ..core.exceptions import ResumableStorageError, ValidationError
from ..core.checkpoint import decode
from ..core.models import UploadConfig
from ..core.recorder import FileRecorder, default_recorder_key
from ..core.uploader import block_count

# Set up logging
logging.basicConfig(
    level=logging.INFO,
    format="[%(asctime)s] %(levelname)s: %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger(__name__)

# Rich console for pretty output
console = Console()


def get_token_interactively():
    """Prompt user for an upload token if not provided."""
    token = os.getenv("RESUMABLE_STORAGE_UPTOKEN")

    if not token:
        console.print("\n[yellow]An upload token is required.[/yellow]")
        console.print("Generate one with your storage account's access and secret keys.\n")
        token = Prompt.ask("Please enter your upload token", password=True)

    return token


def parse_params(values):
    """Turn ``x:name=value`` options into a dict."""
    params = {}
    for item in values:
        name, sep, value = item.partition("=")
        if not sep or not name:
            raise ValidationError("param", item, "expected NAME=VALUE")
        if not name.startswith("x:"):
            raise ValidationError("param", item, "custom variables must start with 'x:'")
        params[name] = value
    return params


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose logging")
@click.option(
    "--record-dir",
    type=click.Path(file_okay=False),
    default=str(DEFAULT_RECORD_DIR),
    show_default=True,
    help="Directory for resume checkpoints",
)
@click.pass_context
def cli(ctx, verbose, record_dir):
    """Resumable Storage CLI - chunked uploads that survive interruptions."""
    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    ctx.ensure_object(dict)
    ctx.obj["record_dir"] = record_dir


@cli.command()
@click.argument("local_path", type=click.Path(exists=True, dir_okay=False))
@click.option("--key", help="Destination key (default: same as local filename)")
@click.option(
    "--token",
    envvar="RESUMABLE_STORAGE_UPTOKEN",
    help="Upload token (or set RESUMABLE_STORAGE_UPTOKEN env var)",
)
@click.option("--mime-type", help="MIME type of the stored object")
@click.option("--param", "params", multiple=True, help="Custom variable, x:name=value")
@click.option("--host", help="Upload host (default: from config)")
@click.option("--chunk-size", type=int, default=None, help="Chunk size in bytes")
@click.option(
    "--no-resume",
    is_flag=True,
    help="Disable resume capability for interrupted uploads",
)
@click.pass_context
def upload(ctx, local_path, key, token, mime_type, params, host, chunk_size, no_resume):
    """Upload a file with resumable chunked upload."""
    try:
        token = token or get_token_interactively()
        if not key:
            key = Path(local_path).name

        config = UploadConfig.from_env(up_host=host, chunk_size=chunk_size)
        api = ResumableStorageAPI(
            token,
            config=config,
            record_dir=ctx.obj["record_dir"],
            enable_resume=not no_resume,
        )

        console.print(f"Uploading [cyan]{local_path}[/cyan] as [green]{key}[/green]")
        with api, Progress(
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            TaskProgressColumn(),
            TimeRemainingColumn(),
            console=console,
        ) as progress:
            task = progress.add_task(key, total=1.0)
            result = api.upload_file(
                local_path,
                key,
                mime_type=mime_type,
                params=parse_params(params),
                progress_callback=lambda _key, percent: progress.update(
                    task, completed=percent
                ),
            )

        table = Table(title="Upload Result")
        table.add_column("Field", style="cyan")
        table.add_column("Value", style="green")
        table.add_row("Key", str(result.key))
        table.add_row("Hash", str(result.hash))
        table.add_row("Size", f"{result.size / (1024 * 1024):.2f} MB")
        table.add_row("Speed", f"{result.speed_mbps:.2f} MB/s")
        console.print(table)
        console.print("[green]✓[/green] Upload completed successfully!")

    except ResumableStorageError as e:
        console.print(f"[red]Error: {e}[/red]")
        sys.exit(1)


@cli.command("show-record")
@click.argument("local_path", type=click.Path(exists=True, dir_okay=False))
@click.option("--key", help="Destination key used for the upload")
@click.pass_context
def show_record(ctx, local_path, key):
    """Show the resume checkpoint of an interrupted upload."""
    try:
        key = key or Path(local_path).name
        recorder = FileRecorder(ctx.obj["record_dir"])
        checkpoint = decode(recorder.get(default_recorder_key(key, local_path)))
        if checkpoint is None:
            console.print(f"[yellow]No checkpoint for {local_path}[/yellow]")
            return

        stat = Path(local_path).stat()
        stale = not checkpoint.matches(stat.st_size, int(stat.st_mtime * 1000))
        started = sum(1 for context in checkpoint.contexts if context)
        total_blocks = block_count(checkpoint.size, UploadConfig.from_env().block_size)
        percent = 100.0 * checkpoint.offset / checkpoint.size if checkpoint.size else 0.0

        table = Table(title=f"Checkpoint for {key}")
        table.add_column("Field", style="cyan")
        table.add_column("Value", style="green")
        table.add_row("Size", f"{checkpoint.size} bytes")
        table.add_row("Offset", f"{checkpoint.offset} bytes ({percent:.1f}%)")
        table.add_row(
            "Modified",
            datetime.fromtimestamp(checkpoint.modify_time / 1000).strftime("%Y-%m-%d %H:%M:%S"),
        )
        table.add_row("Blocks", f"{started}/{total_blocks} started")
        table.add_row("Status", "[red]stale[/red]" if stale else "resumable")
        console.print(table)

    except (ResumableStorageError, OSError) as e:
        console.print(f"[red]Error: {e}[/red]")
        sys.exit(1)


@cli.command("clear-record")
@click.argument("local_path", type=click.Path(exists=True, dir_okay=False))
@click.option("--key", help="Destination key used for the upload")
@click.pass_context
def clear_record(ctx, local_path, key):
    """Delete the resume checkpoint so the next upload starts from scratch."""
    key = key or Path(local_path).name
    recorder = FileRecorder(ctx.obj["record_dir"])
    recorder_key = default_recorder_key(key, local_path)
    if recorder.get(recorder_key) is None:
        console.print(f"[yellow]No checkpoint for {local_path}[/yellow]")
        return
    recorder.delete(recorder_key)
    console.print(f"[green]✓[/green] Cleared checkpoint for {local_path}")


def main():
    """Main entry point."""
    cli()
