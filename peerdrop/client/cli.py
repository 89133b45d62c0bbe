"""
Command-line interface for PeerDrop.

Usage:
    peerdrop listen --port 9000
    peerdrop send 127.0.0.1:9000 ./photo.jpg
    peerdrop info
"""

import asyncio
import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional

import click

from .. import __version__
from ..config import PeerDropConfig
from ..engine.engine import ReceivedFile
from ..engine.media import format_file_size
from ..exceptions import ConfigError, PeerDropError, SessionStartError
from .client import Client

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"

logger = logging.getLogger(__name__)


def print_banner():
    """Print the PeerDrop banner."""
    click.echo(click.style(f"""
╔═══════════════════════════════════════════════╗
║   PeerDrop (v{__version__})                           ║
║   Encrypted Peer-to-Peer File Transfer        ║
╚═══════════════════════════════════════════════╝
    """, fg="cyan", bold=True))


def configure_logging(config: PeerDropConfig, debug: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if debug else config.log_level_value,
        format=LOG_FORMAT,
        datefmt="%H:%M:%S",
        filename=config.log_file,
    )
    if debug:
        logging.getLogger().setLevel(logging.DEBUG)


@click.group()
@click.option("--config", "config_path", type=click.Path(dir_okay=False), help="JSON config file")
@click.option("--debug", is_flag=True, help="Enable debug logging")
@click.version_option(__version__, prog_name="peerdrop")
@click.pass_context
def cli(ctx, config_path: Optional[str], debug: bool):
    """PeerDrop - Encrypted peer-to-peer file transfer"""
    ctx.ensure_object(dict)

    try:
        config = PeerDropConfig.load(Path(config_path)) if config_path else PeerDropConfig()
    except ConfigError as e:
        click.echo(click.style(f"✗ Config error: {e.message}", fg="red"))
        sys.exit(1)

    configure_logging(config, debug)
    ctx.obj["config"] = config


@cli.command()
@click.option("--port", "-p", type=int, default=None, help="Port to listen on")
@click.option("--downloads", "-d", type=click.Path(file_okay=False), help="Where received files are saved")
@click.pass_context
def listen(ctx, port: Optional[int], downloads: Optional[str]):
    """Accept connections and save received files."""
    print_banner()

    config = ctx.obj["config"]
    if port is not None:
        config.port = port
    if downloads:
        config.downloads_dir = Path(downloads)

    client = Client(config)

    async def handle_file(received: ReceivedFile):
        """Display received file."""
        timestamp = datetime.fromtimestamp(received.timestamp).strftime("%H:%M:%S")

        click.echo()
        click.echo(click.style(f"[{timestamp}] ", fg="blue") +
                   click.style(received.peer_id, fg="yellow", bold=True) +
                   f" {received.file_name} ({format_file_size(received.size)})")
        if received.saved_path:
            click.echo(f"  Saved to {received.saved_path}")

    async def handle_error(peer_id: str, error: PeerDropError):
        click.echo(click.style(f"✗ [{peer_id}] {error.message}", fg="red"))

    async def run_listener():
        try:
            peer_id = await client.start()
        except SessionStartError as e:
            click.echo(click.style(f"✗ {e.message}", fg="red"))
            return False

        client.on_file(handle_file)
        client.on_error(handle_error)

        click.echo(click.style(f"✓ Listening as {peer_id}", fg="green"))
        click.echo(f"  Saving files to {config.downloads_dir}")
        click.echo(click.style("Press Ctrl+C to stop", fg="bright_black"))
        click.echo()

        try:
            while True:
                await asyncio.sleep(1)
        finally:
            await client.stop()

    try:
        if asyncio.run(run_listener()) is False:
            sys.exit(1)
    except KeyboardInterrupt:
        click.echo()
        click.echo("Stopped.")


@cli.command()
@click.argument("peer")
@click.argument("file", type=click.Path(exists=True, dir_okay=False))
@click.option("--port", "-p", type=int, default=0, help="Local port (0 = auto)")
@click.pass_context
def send(ctx, peer: str, file: str, port: int):
    """Send FILE to PEER (host:port)."""
    config = ctx.obj["config"]
    config.port = port

    client = Client(config, auto_save=False)

    async def do_send():
        await client.start()
        try:
            with click.progressbar(length=100, label=f"Sending {Path(file).name}") as bar:
                shown = 0

                def on_progress(percent: float):
                    nonlocal shown
                    step = int(percent) - shown
                    if step > 0:
                        bar.update(step)
                        shown += step

                return await client.send_file(peer, file, on_progress)
        finally:
            await client.stop()

    try:
        result = asyncio.run(do_send())
    except PeerDropError as e:
        click.echo(click.style(f"✗ Error: {e.message}", fg="red"))
        sys.exit(1)

    detail = f"{result.total_chunks} chunks" if result.chunked else "single message"
    click.echo(click.style(f"✓ Sent {result.file_name} ({format_file_size(result.size)}, {detail})", fg="green"))


@cli.command()
@click.pass_context
def info(ctx):
    """Show the effective configuration."""
    config = ctx.obj["config"]

    click.echo(click.style("Configuration", fg="cyan", bold=True))
    click.echo()
    for key, value in config.to_dict().items():
        click.echo(f"  {key + ':':<16}{value}")
    click.echo()


def main():
    cli(obj={})


if __name__ == "__main__":
    main()
