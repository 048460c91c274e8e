"""Unified CLI for roomlink using Click."""

import asyncio
import logging
import sys

import click
from loguru import logger

from roomlink.config import get_config

LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR"]


def setup_logging(level: str):
    """Configure stdlib logging for the library modules."""
    logging.basicConfig(
        level=getattr(logging, level),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        force=True,
    )


@click.group()
@click.option(
    "--log-level",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    default="INFO",
    help="Logging verbosity.",
)
def cli(log_level):
    setup_logging(log_level.upper())


# =============================================================================
# Signaling Server
# =============================================================================


@cli.command()
@click.option("--host", default="0.0.0.0", help="Interface to listen on.")
@click.option("--port", default=8765, type=int, help="Port to listen on.")
def serve(host, port):
    """Run the room relay signaling server.

    Example:
        roomlink serve --port 8765
    """
    from roomlink.signaling_server import main

    try:
        asyncio.run(main(host, port))
    except KeyboardInterrupt:
        logger.info("Signaling server stopped by user")


# =============================================================================
# Room Session
# =============================================================================


JOIN_HELP = """Commands:
  /room [ROOM]        switch room (no argument: global room)
  /name NAME          rejoin under a new display name
  /peers              list known peers
  /file PATH          send a file to every connected peer
  /audio on|off       toggle outgoing audio
  /video on|off       toggle outgoing video
  /quit               leave and exit
Anything else is sent as a chat message."""


def _print_peers(peers):
    if not peers:
        click.echo("No peers")
        return
    for record in peers:
        click.echo(
            f"  {record.display_name or '?'} ({record.identity}) "
            f"{record.negotiation_state.value}"
        )


async def _handle_command(manager, line: str) -> bool:
    """Apply one input line. Returns False when the session should end."""
    if not line.startswith("/"):
        manager.send_application_message(line)
        return True

    command, _, arg = line[1:].partition(" ")
    arg = arg.strip()
    if command == "quit":
        return False
    if command == "room":
        await manager.switch_room(arg or None)
        click.echo(f"Switched to room {arg or 'global'} as {manager.local_identity}")
    elif command == "name":
        if not arg:
            click.echo("Usage: /name NAME")
        else:
            await manager.change_identity(display_name=arg)
    elif command == "peers":
        _print_peers(manager.peers)
    elif command == "file":
        try:
            transfer = await manager.send_file(arg)
        except OSError as e:
            logger.error(f"Cannot send file: {e}")
        else:
            if transfer is not None:
                click.echo(f"Sent {transfer.name} ({transfer.size} bytes)")
    elif command in ("audio", "video"):
        enabled = arg.lower() != "off"
        if command == "audio":
            manager.toggle_local_audio(enabled)
        else:
            manager.toggle_local_video(enabled)
    else:
        click.echo(JOIN_HELP)
    return True


async def run_join(config, name, room, media, call_id):
    from roomlink.session import SessionManager

    manager = SessionManager(
        config=config,
        on_peers_changed=_print_peers,
        on_message=lambda m: click.echo(f"[{m.peer_name}] {m.content}"),
        on_file_transfer=lambda t: click.echo(
            f"Received file {t.name} ({t.size} bytes) from {t.peer_name}"
        ),
    )
    manager.active_call_id = call_id
    if media:
        manager.start_media()

    loop = asyncio.get_running_loop()
    try:
        await manager.start(name, room)
        click.echo(JOIN_HELP)
        while True:
            line = await loop.run_in_executor(None, sys.stdin.readline)
            if not line:
                break
            line = line.strip()
            if line and not await _handle_command(manager, line):
                break
    finally:
        await manager.shutdown()


@cli.command()
@click.option("--name", "-n", default="Guest", help="Display name announced to peers.")
@click.option("--room", "-r", default=None, help="Room to join (default: global room).")
@click.option("--server", "-s", default=None, help="Signaling server websocket URL.")
@click.option(
    "--media/--no-media",
    default=False,
    help="Capture local audio/video from the configured devices.",
)
@click.option(
    "--call-id",
    default=None,
    help="Call record to mark as ended on the call tracker when leaving.",
)
def join(name, room, server, media, call_id):
    """Join a room and connect to every peer in it.

    Examples:

        roomlink join --name alice --room standup

        roomlink join --server ws://signal.example.org:8765 --media
    """
    config = get_config()
    if server:
        config.signaling_websocket = server

    logger.info(f"Joining room {room or 'global'} via {config.signaling_websocket}")
    try:
        asyncio.run(run_join(config, name, room, media, call_id))
    except KeyboardInterrupt:
        logger.info("Session ended by user")
    except Exception as e:
        logger.error(f"Session error: {e}")
        sys.exit(1)


# =============================================================================
# Configuration
# =============================================================================


@cli.command(name="config")
def show_config():
    """Show the active configuration."""
    config = get_config()
    click.echo(f"Environment:        {config.environment}")
    click.echo(f"Signaling server:   {config.signaling_websocket}")
    click.echo(f"Call tracker:       {config.call_api_url}")
    click.echo(
        f"Discovery:          initial delay {config.discovery.initial_delay}s, "
        f"interval {config.discovery.interval}s"
    )
    timeout = config.negotiation.timeout
    timeout_text = f"{timeout}s" if timeout else "disabled"
    click.echo(f"Negotiation timeout: {timeout_text}")
    click.echo(f"ICE servers:        {len(config.ice_servers)}")
    for server in config.ice_servers:
        click.echo(f"  {server.urls}")
    click.echo(f"Video device:       {config.media.video_device or 'none'}")
    click.echo(f"Audio device:       {config.media.audio_device or 'none'}")


if __name__ == "__main__":
    cli()
