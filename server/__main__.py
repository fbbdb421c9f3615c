"""voyeurs authority entry point.

Usage: python -m server [config.toml]
"""
from __future__ import annotations
import asyncio
import sys
from pathlib import Path

from server.server import AuthorityServer
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
    server = AuthorityServer(config, player, username=config.client.username)
    try:
        await server.start()
        await server.wait_closed()
    finally:
        await server.stop()
        await player.close()


def main() -> None:
    config = load_config(Path(sys.argv[1]) if len(sys.argv) > 1 else None)
    logger = setup_from_settings("server", config.logging)
    errors = config.validate()
    if errors:
        for err in errors:
            logger.error("Config: %s", err)
        sys.exit(2)
    logger.info("voyeurs authority starting")

    try:
        asyncio.run(_run(config))
    except KeyboardInterrupt:
        logger.info("Interrupted")
    except SyncError as e:
        logger.critical("Authority stopped: %s", e)
        sys.exit(1)


if __name__ == "__main__":
    main()
