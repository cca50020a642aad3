"""Command-line interface for media-courier."""

import asyncio
import logging
import signal
import sys
from pathlib import Path
from typing import Optional

try:
    import click
except ImportError:
    print("Error: click not installed", file=sys.stderr)
    print("Install with: pip install click", file=sys.stderr)
    sys.exit(1)

from . import __version__
from .config import Config
from .errors import ConfigError, CourierError

logger = logging.getLogger("media_courier")

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

# Seconds in-flight requests get to finish after a stop signal
SHUTDOWN_GRACE = 30.0


def setup_logging(level: str):
    logging.basicConfig(level=getattr(logging, level, logging.INFO), format=LOG_FORMAT)
    # Keep HTTP client chatter out of INFO logs
    logging.getLogger("httpx").setLevel(logging.WARNING)


def load_config(config_path: Optional[str]) -> Config:
    try:
        return Config(Path(config_path) if config_path else None)
    except ConfigError as e:
        click.echo(f"❌ Configuration error: {e}", err=True)
        sys.exit(1)


@click.group()
@click.version_option(__version__)
def cli():
    """Media Courier - fetch YouTube video or audio on request and deliver it to a chat."""


@cli.command()
@click.option("--config", "config_path", type=click.Path(dir_okay=False), help="Path to config.yaml")
@click.option("--log-level", type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"]), help="Override log level")
def run(config_path: Optional[str], log_level: Optional[str]):
    """Run the Telegram bot (long polling)."""
    config = load_config(config_path)
    try:
        token = config.bot_token
        config.validate()
    except ConfigError as e:
        click.echo(f"❌ Configuration error: {e}", err=True)
        sys.exit(1)

    setup_logging(log_level or config.log_level)

    try:
        asyncio.run(serve(config, token))
    except KeyboardInterrupt:
        click.echo("\n⚠️ Stopped")


async def serve(config: Config, token: str):
    """Run until SIGINT/SIGTERM, then drain in-flight requests."""
    from .channels.telegram import TelegramChannel
    from .orchestrator import Orchestrator
    from .sources.base import sweep_workspaces

    sweep_workspaces(config.temp_dir)

    channel = TelegramChannel(token)
    orchestrator = Orchestrator(config, channel)
    channel.attach(orchestrator)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # Windows: rely on KeyboardInterrupt
            pass

    await channel.start()
    logger.info(
        "media-courier %s running (strategy=%s, max jobs=%d). Press Ctrl+C to stop.",
        __version__, config.fetch_strategy, config.max_concurrent_jobs,
    )
    try:
        await stop.wait()
    finally:
        logger.info("Shutting down...")
        await channel.stop_polling()
        await orchestrator.shutdown(grace=SHUTDOWN_GRACE)
        await channel.stop()


@cli.command()
@click.argument("url")
@click.option("--config", "config_path", type=click.Path(dir_okay=False), help="Path to config.yaml")
def inspect(url: str, config_path: Optional[str]):
    """Resolve a link and show its deliverable renditions.

    Does not download anything and does not need a bot token.
    """
    from .orchestrator import format_duration
    from .resolver import SourceResolver

    config = load_config(config_path)
    resolver = SourceResolver(config)

    try:
        metadata = asyncio.run(resolver.resolve(url))
    except CourierError as e:
        click.echo(f"❌ {e.kind}: {e.detail}", err=True)
        sys.exit(1)

    click.echo(f"🎬 {metadata.title}")
    click.echo(f"   ID: {metadata.source_id}")
    click.echo(f"   Duration: {format_duration(metadata.duration)}")
    if metadata.uploader:
        click.echo(f"   Uploader: {metadata.uploader}")
    if metadata.duration is None or metadata.duration > config.max_duration:
        click.echo(f"   ⚠️ Over the {config.max_duration}s duration limit")
    click.echo()

    if metadata.renditions:
        click.echo("📹 Video renditions:")
        for d in metadata.renditions:
            size = f"  ~{d.filesize / (1024 * 1024):.1f} MB" if d.filesize else ""
            click.echo(f"   {d.quality_label:>8}  {d.container}  format {d.format_handle}{size}")
    else:
        click.echo("📹 No deliverable video rendition")
    click.echo(f"🎵 Audio: {'available' if metadata.has_audio else 'not available'}")


if __name__ == "__main__":
    cli()
