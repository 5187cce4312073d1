#!/usr/bin/env python3
"""
Dropzone CLI

Command-line interface for the signaling server and the client node.

Usage:
    dropzone serve                   # Run the signaling server
    dropzone peers                   # List peers in our room
    dropzone send PEER FILE...       # Send files to a peer
    dropzone text PEER TEXT          # Send a text message to a peer
    dropzone receive                 # Wait for files and text
    dropzone config                  # Show the effective configuration
"""

import asyncio
import logging
from pathlib import Path
from typing import Any, Dict

import click
from rich.console import Console
from rich.table import Table
from rich.progress import Progress, SpinnerColumn, TextColumn, BarColumn
from rich.panel import Panel
from rich.logging import RichHandler

from .config import Config, EXAMPLE_CONFIG, load_config
from .exceptions import ConfigError
from .node import DropzoneNode
from .storage import save_received

console = Console()


def setup_logging(verbose: bool = False, level: str = 'INFO'):
    """Configure logging with rich output."""
    level = logging.DEBUG if verbose else getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[RichHandler(console=console, show_time=False, show_path=False)]
    )


def format_size(bytes_count: int) -> str:
    """Format bytes as human-readable size."""
    for unit in ['B', 'KB', 'MB', 'GB', 'TB']:
        if bytes_count < 1024:
            return f"{bytes_count:.1f} {unit}"
        bytes_count /= 1024
    return f"{bytes_count:.1f} PB"


def peer_label(peer: Dict[str, Any]) -> str:
    name = peer.get('name') or {}
    return f"{name.get('displayName', '?')} ({name.get('deviceName', '?')})"


@click.group()
@click.option('-v', '--verbose', is_flag=True, help='Enable verbose output')
@click.option('--config', 'config_path', type=click.Path(dir_okay=False), help='JSON config file')
@click.option('--server', 'server_url', help='Signaling server URL (ws://host:port)')
@click.option('--fallback', is_flag=True, help='Disable direct channels, relay everything')
@click.pass_context
def cli(ctx, verbose, config_path, server_url, fallback):
    """Dropzone - drop files and text to devices on your network."""
    try:
        config = load_config(Path(config_path) if config_path else None)
    except ConfigError as e:
        raise click.ClickException(str(e))

    if server_url:
        config.server_url = server_url
    if fallback:
        config.direct_channel = False

    setup_logging(verbose, config.log_level)
    ctx.ensure_object(dict)
    ctx.obj['config'] = config


@cli.command()
@click.option('--host', help='Bind address')
@click.option('--port', type=int, help='Listen port')
@click.pass_context
def serve(ctx, host, port):
    """Run the signaling server."""
    config = ctx.obj['config']
    if host:
        config.host = host
    if port:
        config.port = port

    from .api import run_server

    console.print(Panel.fit(
        f"[bold green]Signaling Server[/bold green]\n\n"
        f"Listening: [cyan]{config.host}:{config.port}[/cyan]\n"
        f"Endpoints: [yellow]/server/webrtc[/yellow], [yellow]/server/fallback[/yellow]\n"
        f"Keepalive: [yellow]{config.keepalive_interval:.0f}s[/yellow]\n"
        f"Trust proxy: [blue]{'Yes' if config.trust_proxy else 'No'}[/blue]",
        title="Dropzone"
    ))
    console.print("\n[dim]Press Ctrl+C to stop[/dim]\n")

    try:
        asyncio.run(run_server(config))
    except KeyboardInterrupt:
        console.print("\n[yellow]Shutting down...[/yellow]")


@cli.command()
@click.option('--room', help='Join a named room instead of the network room')
@click.option('--wait', default=2.0, help='Seconds to wait for the roster')
@click.pass_context
def peers(ctx, room, wait):
    """List peers in the room."""
    config = ctx.obj['config']

    async def run():
        node = DropzoneNode(config)
        try:
            await node.start(timeout=10)
            if room:
                await node.change_room(room)
            await asyncio.sleep(wait)

            roster = node.get_peers()
            if not roster:
                console.print(f"[yellow]No peers in room {node.room_id}[/yellow]")
                return

            table = Table(title=f"Peers in {node.room_id}")
            table.add_column("Name", style="cyan")
            table.add_column("Device", style="yellow")
            table.add_column("Peer ID", style="green")
            table.add_column("Direct")

            for p in roster:
                name = p.get('name') or {}
                table.add_row(
                    name.get('displayName', '?'),
                    name.get('deviceName', '?'),
                    p['id'][:8] + "...",
                    'Yes' if p.get('directChannelCapable') else 'No',
                )

            console.print(table)
        finally:
            await node.stop()

    _run(run())


@cli.command()
@click.argument('peer')
@click.argument('files', nargs=-1, required=True, type=click.Path(exists=True, dir_okay=False))
@click.option('--room', help='Join a named room instead of the network room')
@click.option('--timeout', default=30.0, help='Seconds to wait for the peer')
@click.pass_context
def send(ctx, peer, files, room, timeout):
    """Send files to PEER (id, id prefix or display name)."""
    config = ctx.obj['config']
    paths = [Path(f) for f in files]
    total = sum(p.stat().st_size for p in paths)

    async def run():
        node = DropzoneNode(config)
        try:
            await node.start(timeout=10)
            if room:
                await node.change_room(room)

            target = await node.wait_for_peer(peer, timeout=timeout)
            console.print(f"Sending {len(paths)} file(s), {format_size(total)} to "
                          f"[cyan]{peer_label(target)}[/cyan]")

            done = asyncio.Event()
            completed = 0

            with Progress(
                SpinnerColumn(),
                TextColumn("[progress.description]{task.description}"),
                BarColumn(),
                TextColumn("[progress.percentage]{task.percentage:>3.0f}%"),
                console=console,
            ) as progress:
                task = progress.add_task(paths[0].name, total=100)

                def on_progress(detail):
                    nonlocal completed
                    if detail.get('recipient') != target['id']:
                        return
                    if detail['progress'] >= 1.0:
                        completed += 1
                        if completed == len(paths):
                            progress.update(task, completed=100, description="Done!")
                            done.set()
                            return
                        progress.update(task, completed=0, description=paths[completed].name)
                        return
                    progress.update(task, completed=detail['progress'] * 100)

                node.events.on('file-progress', on_progress)
                node.send_files(target['id'], paths)
                await done.wait()

            console.print(f"\n[green]✓ Sent {len(paths)} file(s)[/green]")
        finally:
            await node.stop()

    _run(run())


@cli.command()
@click.argument('peer')
@click.argument('message')
@click.option('--room', help='Join a named room instead of the network room')
@click.option('--timeout', default=30.0, help='Seconds to wait for the peer')
@click.pass_context
def text(ctx, peer, message, room, timeout):
    """Send a text MESSAGE to PEER."""
    config = ctx.obj['config']

    async def run():
        node = DropzoneNode(config)
        try:
            await node.start(timeout=10)
            if room:
                await node.change_room(room)

            target = await node.wait_for_peer(peer, timeout=timeout)
            node.send_text(target['id'], message)

            entry = node.peers.get(target['id'])
            while entry.session.pending_text or not entry.transport.is_open:
                await asyncio.sleep(0.1)
            await asyncio.sleep(0.5)

            console.print(f"[green]✓ Text sent to {peer_label(target)}[/green]")
        finally:
            await node.stop()

    _run(run())


@cli.command()
@click.option('--room', help='Join a named room instead of the network room')
@click.option('--output', '-o', type=click.Path(file_okay=False), help='Output directory')
@click.pass_context
def receive(ctx, room, output):
    """Wait for files and text from peers."""
    config = ctx.obj['config']
    output_dir = Path(output) if output else config.output_dir

    async def run():
        node = DropzoneNode(config)

        async def on_file(detail):
            path = await save_received(output_dir, detail)
            sender = node.roster.get(detail.get('sender')) or {'id': detail.get('sender')}
            console.print(f"[green]✓ {detail['name']}[/green] "
                          f"({format_size(detail['size'])}) from {peer_label(sender)} -> {path}")

        def on_text(detail):
            sender = node.roster.get(detail.get('sender')) or {'id': detail.get('sender')}
            console.print(Panel(detail['text'], title=f"Message from {peer_label(sender)}"))

        def on_notify(detail):
            console.print(f"[dim]{detail.get('message')}[/dim]")

        def on_joined(peer):
            console.print(f"[cyan]+ {peer_label(peer)}[/cyan]")

        node.events.on('file-received', on_file)
        node.events.on('text-received', on_text)
        node.events.on('notify-user', on_notify)
        node.events.on('peer-joined', on_joined)

        try:
            await node.start(timeout=10)
            if room:
                await node.change_room(room)

            console.print(Panel.fit(
                f"[bold green]Ready to receive[/bold green]\n\n"
                f"Name: [cyan]{node.display_name}[/cyan]\n"
                f"Room: [yellow]{node.room_id}[/yellow]\n"
                f"Saving to: [blue]{output_dir}[/blue]",
                title="Dropzone"
            ))
            console.print("\n[dim]Press Ctrl+C to stop[/dim]\n")

            while True:
                await asyncio.sleep(1)
        finally:
            await node.stop()

    _run(run())


@cli.command('config')
@click.option('--init', 'init_path', type=click.Path(dir_okay=False), help='Write an example config file')
@click.pass_context
def show_config(ctx, init_path):
    """Show the effective configuration."""
    if init_path:
        path = Path(init_path)
        if path.exists():
            raise click.ClickException(f"{path} already exists")
        path.write_text(EXAMPLE_CONFIG.lstrip())
        console.print(f"[green]✓ Wrote {path}[/green]")
        return

    config: Config = ctx.obj['config']
    table = Table(title="Configuration")
    table.add_column("Key", style="cyan")
    table.add_column("Value", style="yellow")
    for key, value in config.to_dict().items():
        table.add_row(key, str(value))
    console.print(table)


def _run(coro):
    try:
        asyncio.run(coro)
    except KeyboardInterrupt:
        console.print("\n[yellow]Stopped[/yellow]")
    except asyncio.TimeoutError:
        raise click.ClickException("Timed out")


if __name__ == '__main__':
    cli()
