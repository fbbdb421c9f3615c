"""voyeurs follower entry point.

Usage: python -m client [config.toml]
"""
from __future__ import annotations
import asyncio
import sys
from pathlib import Path

from client.connection import FollowerClient
from shared.config import load_config
from shared.errors import SyncError
from shared.logging_utils import setup_from_settings
from shared.mpv_player import MpvPlayer


async def _run(config) -> None:
    player = MpvPlayer(
        config.player.ipc_socket,
        command_timeout=config.player.command_timeout_s,
        echo_window=config.player.echo_ignore_window_s,
    )
    await player.connect()
    await player.show_text("Connected to voyeurs", 5000)
    client = FollowerClient(player, config)
    try:
        await client.run(config.client.server_host, config.network.port)
    finally:
        await client.stop()
        await player.close()


def main() -> None:
    config = load_config(Path(sys.argv[1]) if len(sys.argv) > 1 else None)
    logger = setup_from_settings("client", config.logging)
    errors = config.validate()
    if errors:
        for err in errors:
            logger.error("Config: %s", err)
        sys.exit(2)
    logger.info("voyeurs follower starting")

    try:
        asyncio.run(_run(config))
    except KeyboardInterrupt:
        logger.info("Interrupted")
    except SyncError as e:
        logger.critical("Follower stopped: %s", e)
        sys.exit(1)


if __name__ == "__main__":
    main()
