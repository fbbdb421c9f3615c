"""voyeurs player adapter for mpv's JSON IPC socket.

mpv is expected to be running already, started with
``--input-ipc-server=<socket>``; this module never launches it.
"""
from __future__ import annotations
import asyncio
import itertools
import json
import logging
import time
from contextlib import suppress
from typing import Any, Optional

from shared.errors import PlayerAdapterError
from shared.player import (
    ChangeCallback, ChangeOrigin, LostCallback, PlaybackStateChange, PlayerAdapter,
)
from shared.protocol import PlaybackState

logger = logging.getLogger("voyeurs.shared.mpv")

# property name in mpv -> property name in PlaybackStateChange
_OBSERVED = {"pause": "pause", "speed": "speed", "path": "media"}


class MpvPlayer(PlayerAdapter):
    """
    Controls mpv via JSON IPC.

    Changes mpv reports shortly after we issued the matching command are
    tagged ChangeOrigin.ADAPTER; everything else is ChangeOrigin.PLAYER.
    """

    def __init__(self, socket_path: str, command_timeout: float = 3.0, echo_window: float = 0.5):
        self.socket_path = socket_path
        self.command_timeout = command_timeout
        self.echo_window = echo_window
        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Optional[asyncio.StreamWriter] = None
        self._pending: dict[int, asyncio.Future] = {}
        self._ids = itertools.count(1)
        self._read_task: Optional[asyncio.Task] = None
        self._subscribers: list[ChangeCallback] = []
        self._lost_callbacks: list[LostCallback] = []
        self._expected: dict[str, float] = {}  # change property -> deadline
        self._initial_seen: set[str] = set()
        self._load_waiter: Optional[asyncio.Future] = None
        self._connected = False
        self._closing = False

    async def connect(self) -> None:
        try:
            self._reader, self._writer = await asyncio.open_unix_connection(self.socket_path)
        except OSError as e:
            raise PlayerAdapterError(f"Cannot connect to mpv at {self.socket_path}: {e}") from e
        self._connected = True
        self._read_task = asyncio.create_task(self._read_loop())
        for obs_id, name in enumerate(_OBSERVED, start=1):
            await self._command("observe_property", obs_id, name)
        logger.info("Connected to mpv IPC socket %s", self.socket_path)

    async def close(self) -> None:
        self._connected = False
        self._closing = True
        if self._read_task:
            self._read_task.cancel()
            with suppress(asyncio.CancelledError):
                await self._read_task
        if self._writer:
            self._writer.close()
            with suppress(OSError):
                await self._writer.wait_closed()
        for fut in self._pending.values():
            if not fut.done():
                fut.set_exception(PlayerAdapterError("mpv connection closed"))
        self._pending.clear()
        logger.info("mpv connection closed")

    @property
    def is_connected(self) -> bool:
        return self._connected

    # ---- IPC plumbing ----

    async def _read_loop(self) -> None:
        """Read responses and events from mpv."""
        while self._reader:
            try:
                line = await self._reader.readline()
            except (ConnectionError, asyncio.IncompleteReadError) as e:
                logger.warning("mpv read error: %s", e)
                break
            if not line:
                break
            try:
                data = json.loads(line.decode().strip())
            except (UnicodeDecodeError, json.JSONDecodeError):
                logger.debug("Ignoring unparsable mpv line: %r", line)
                continue
            if "event" in data:
                self._handle_event(data)
            elif "request_id" in data:
                fut = self._pending.pop(data["request_id"], None)
                if fut and not fut.done():
                    fut.set_result(data)
        self._connected = False
        error = PlayerAdapterError("mpv IPC stream ended")
        for fut in self._pending.values():
            if not fut.done():
                fut.set_exception(error)
        if self._load_waiter and not self._load_waiter.done():
            self._load_waiter.set_exception(error)
        if self._closing:
            return
        logger.warning("mpv IPC stream ended")
        for callback in list(self._lost_callbacks):
            callback(error)

    async def _command(self, *args: Any) -> dict:
        """Send a command to mpv and wait for its reply."""
        if not self._connected or not self._writer:
            raise PlayerAdapterError("mpv is not connected")
        req_id = next(self._ids)
        cmd = json.dumps({"command": list(args), "request_id": req_id}) + "\n"
        fut: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending[req_id] = fut
        try:
            self._writer.write(cmd.encode())
            await self._writer.drain()
            return await asyncio.wait_for(fut, timeout=self.command_timeout)
        except asyncio.TimeoutError:
            raise PlayerAdapterError(f"mpv command timed out: {args[0]}") from None
        except OSError as e:
            raise PlayerAdapterError(f"mpv command failed: {e}") from e
        finally:
            self._pending.pop(req_id, None)

    async def _checked(self, *args: Any) -> None:
        result = await self._command(*args)
        if result.get("error") != "success":
            raise PlayerAdapterError(f"mpv rejected {args[0]}: {result.get('error')}")

    async def _get(self, name: str) -> Any:
        result = await self._command("get_property", name)
        error = result.get("error")
        if error == "success":
            return result.get("data")
        if error == "property unavailable":
            return None
        raise PlayerAdapterError(f"mpv get_property {name}: {error}")

    # ---- change tagging ----

    def _expect(self, prop: str) -> None:
        self._expected[prop] = time.monotonic() + self.echo_window

    def _origin(self, prop: str) -> ChangeOrigin:
        deadline = self._expected.pop(prop, None)
        if deadline is not None and time.monotonic() <= deadline:
            return ChangeOrigin.ADAPTER
        return ChangeOrigin.PLAYER

    def _emit(self, prop: str, value: Any, origin: Optional[ChangeOrigin] = None) -> None:
        change = PlaybackStateChange(property=prop, value=value, origin=origin or self._origin(prop))
        for callback in list(self._subscribers):
            callback(change)

    def _handle_event(self, data: dict) -> None:
        event = data.get("event")
        if event == "property-change":
            name = data.get("name")
            prop = _OBSERVED.get(name)
            if prop is None:
                return
            # observe_property always reports the current value once
            if prop not in self._initial_seen:
                self._initial_seen.add(prop)
                return
            if prop == "media":
                return  # reported on file-loaded instead
            self._emit(prop, data.get("data"))
        elif event == "seek":
            self._emit("seek", None)
        elif event == "file-loaded":
            if self._load_waiter and not self._load_waiter.done():
                self._load_waiter.set_result(None)
                self._emit("media", None, ChangeOrigin.ADAPTER)
            else:
                self._emit("media", None)
        elif event == "end-file" and data.get("reason") == "error":
            if self._load_waiter and not self._load_waiter.done():
                self._load_waiter.set_exception(
                    PlayerAdapterError(f"mpv failed to load file: {data.get('file_error', 'unknown')}"))

    # ---- PlayerAdapter ----

    def subscribe(self, callback: ChangeCallback) -> None:
        self._subscribers.append(callback)

    def subscribe_lost(self, callback: LostCallback) -> None:
        self._lost_callbacks.append(callback)

    async def get_state(self) -> PlaybackState:
        paused = await self._get("pause")
        position = await self._get("time-pos")
        speed = await self._get("speed")
        path = await self._get("path")
        return PlaybackState(
            media_ref=path or "",
            position=float(position or 0.0),
            paused=bool(paused) if paused is not None else True,
            rate=float(speed or 1.0),
        )

    async def set_paused(self, paused: bool) -> None:
        self._expect("pause")
        await self._checked("set_property", "pause", paused)

    async def seek(self, position: float) -> None:
        self._expect("seek")
        await self._checked("seek", position, "absolute")

    async def set_rate(self, rate: float) -> None:
        self._expect("speed")
        await self._checked("set_property", "speed", rate)

    async def load(self, media_ref: str) -> None:
        self._load_waiter = asyncio.get_running_loop().create_future()
        try:
            await self._checked("loadfile", media_ref, "replace")
            await asyncio.wait_for(self._load_waiter, timeout=self.command_timeout * 5)
        except asyncio.TimeoutError:
            raise PlayerAdapterError(f"mpv did not finish loading {media_ref}") from None
        finally:
            self._load_waiter = None

    async def show_text(self, text: str, duration_ms: int = 2000) -> None:
        await self._checked("show-text", text, str(duration_ms))
