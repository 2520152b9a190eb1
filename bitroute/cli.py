#!/usr/bin/env python3
"""
BitRoute CLI

Command-line interface for encrypted peer-to-peer file transfer.

Usage:
    bitroute send FILE [FILE ...]     # Create a room and send files
    bitroute receive LINK             # Join a room and save incoming files
    bitroute config                   # Print an example config file
"""

import asyncio
import logging
import sys
from pathlib import Path
from typing import Dict

import click
from rich.console import Console
from rich.panel import Panel
from rich.progress import (
    Progress, SpinnerColumn, TextColumn, BarColumn, TaskID,
)
from rich.logging import RichHandler
from rich.markup import escape

from .config import load_config, EXAMPLE_CONFIG
from .errors import BitRouteError
from .node import BitRouteNode
from .transfer import TransferProgress, TransferStatus, ReceivedFile, format_size

console = Console()


def setup_logging(verbose: bool = False, level_name: str = 'INFO'):
    """Configure logging with rich output."""
    level = logging.DEBUG if verbose else getattr(logging, level_name.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[RichHandler(console=console, show_time=False, show_path=False)]
    )


def _progress_bar() -> Progress:
    return Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        TextColumn("[progress.percentage]{task.percentage:>3.0f}%"),
        TextColumn("{task.fields[detail]}"),
        console=console,
    )


def _describe(event: TransferProgress) -> str:
    if event.status == TransferStatus.ERROR:
        return f"[red]{event.error or 'failed'}[/red]"
    if event.status == TransferStatus.COMPLETED:
        return f"[green]{format_size(event.size)}[/green]"
    if event.speed > 0:
        eta = f", {event.eta:.0f}s left" if event.eta is not None else ""
        return f"{format_size(event.speed)}/s{eta}"
    return event.status.value


class ProgressView:
    """Maps transfer progress events onto rich progress bars."""

    def __init__(self, progress: Progress):
        self.progress = progress
        self.tasks: Dict[str, TaskID] = {}
        self.finished: Dict[str, TransferStatus] = {}

    def __call__(self, event: TransferProgress):
        task = self.tasks.get(event.id)
        if task is None:
            task = self.progress.add_task(event.filename, total=100, detail="")
            self.tasks[event.id] = task

        self.progress.update(task, completed=event.progress, detail=_describe(event))
        if event.is_terminal:
            self.finished[event.id] = event.status


def _run(coro):
    try:
        return asyncio.run(coro)
    except (BitRouteError, ValueError, asyncio.TimeoutError) as e:
        console.print(f"[red]✗ {escape(str(e) or type(e).__name__)}[/red]")
        sys.exit(1)
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted[/yellow]")
        sys.exit(130)


@click.group()
@click.option('-v', '--verbose', is_flag=True, help='Enable verbose output')
@click.option('--config', 'config_path', type=click.Path(path_type=Path),
              default=None, help='JSON config file')
@click.option('--signaling', multiple=True, help='Signaling server URL (repeatable)')
@click.pass_context
def cli(ctx, verbose, config_path, signaling):
    """BitRoute - encrypted peer-to-peer file transfer."""
    config = load_config(config_path)
    if signaling:
        config.signaling_urls = list(signaling)
    setup_logging(verbose, config.log_level)
    ctx.ensure_object(dict)
    ctx.obj['config'] = config


@cli.command()
@click.argument('files', nargs=-1, required=True, type=click.Path(exists=True, dir_okay=False))
@click.option('--timeout', default=None, type=float, help='Seconds to wait for the receiver')
@click.pass_context
def send(ctx, files, timeout):
    """Create a room and send FILES to whoever joins it."""
    config = ctx.obj['config']

    async def run():
        node = BitRouteNode(config)
        try:
            with console.status("Creating room..."):
                link = await node.create_room()

            console.print(Panel.fit(
                f"[bold green]Room Ready[/bold green]\n\n"
                f"Share this link with the receiver:\n"
                f"[cyan]{link}[/cyan]",
                title="BitRoute"
            ))

            with console.status("Waiting for receiver..."):
                await node.wait_for_peer(timeout)
            console.print("[green]✓ Receiver connected[/green]")

            with _progress_bar() as progress:
                view = ProgressView(progress)
                ids = node.add_files([Path(f) for f in files], view)
                await node.engine.join()

            failed = [i for i in ids if view.finished.get(i) != TransferStatus.COMPLETED]
            if failed:
                console.print(f"[red]✗ {len(failed)} of {len(ids)} files failed[/red]")
            else:
                console.print(f"[green]✓ Sent {len(ids)} file(s)[/green]")
        finally:
            await node.disconnect()

    _run(run())


@cli.command()
@click.argument('room')
@click.option('--output', '-o', type=click.Path(file_okay=False, path_type=Path),
              default=None, help='Directory for received files')
@click.option('--count', '-n', type=int, default=None,
              help='Exit after receiving this many files')
@click.pass_context
def receive(ctx, room, output, count):
    """Join ROOM (id or link) and save incoming files."""
    config = ctx.obj['config']
    output_dir = output or config.download_dir

    async def run():
        node = BitRouteNode(config)
        done = asyncio.Event()
        saved = []

        async def on_file(received: ReceivedFile):
            path = await received.save(output_dir)
            saved.append(path)
            console.print(f"[green]✓ {received.name}[/green] → {path}")
            if count is not None and len(saved) >= count:
                done.set()

        progress = _progress_bar()
        view = ProgressView(progress)
        try:
            with console.status("Joining room..."):
                await node.join_room(room, on_file, view)
                await node.wait_for_peer(config.room_timeout)
            console.print("[green]✓ Connected to sender[/green]")

            with progress:
                closed = asyncio.ensure_future(node.wait_closed())
                finished = asyncio.ensure_future(done.wait())
                await asyncio.wait({closed, finished}, return_when=asyncio.FIRST_COMPLETED)
                for task in (closed, finished):
                    task.cancel()
        finally:
            await node.disconnect()

        console.print(f"[bold]{len(saved)} file(s) saved to {output_dir}[/bold]")

    _run(run())


@cli.command('config')
def show_config():
    """Print an example configuration file."""
    console.print("Example configuration file (config.json):")
    console.print(EXAMPLE_CONFIG, markup=False, highlight=False)


if __name__ == '__main__':
    cli()
