"""voyeurs authority WebSocket server."""
from __future__ import annotations
import asyncio
import logging
from contextlib import suppress
from typing import Callable, Optional

import websockets
from websockets.asyncio.server import Server, ServerConnection

from server.authority import AuthorityState
from shared.config import Config
from shared.errors import HandshakeFailed, PlayerAdapterError, ProtocolError
from shared.player import ChangeOrigin, PlaybackStateChange, PlayerAdapter
from shared.protocol import (
    Error, FrameReader, FullState, Hello, Message, Ping, Pong, StateDelta, encode,
)
from shared.session import ConnectionSession, Role

logger = logging.getLogger("voyeurs.server.server")

OUTBOUND_QUEUE_SIZE = 256


class PeerConnection:
    """One follower connection: its session, outbound queue and timers."""

    def __init__(self, ws: ServerConnection, session: ConnectionSession):
        self.ws = ws
        self.session = session
        self.reader = FrameReader()
        self._outbound: asyncio.Queue[bytes] = asyncio.Queue(maxsize=OUTBOUND_QUEUE_SIZE)
        self._tasks: list[asyncio.Task] = []

    @property
    def id(self) -> str:
        return self.session.id

    @property
    def name(self) -> str:
        return self.session.peer_name or self.session.id[:8]

    @property
    def is_live(self) -> bool:
        return self.session.is_live

    def enqueue(self, msg: Message) -> bool:
        """Queue a message for sending; never blocks the caller."""
        if self.session.is_closed:
            return False
        try:
            self._outbound.put_nowait(encode(msg))
        except asyncio.QueueFull:
            logger.warning("Peer %s is not draining its queue; closing", self.name)
            self.session.close("outbound queue overflow")
            asyncio.ensure_future(self.ws.close())
            return False
        return True

    async def _writer(self) -> None:
        while True:
            data = await self._outbound.get()
            await self.ws.send(data)

    def start(self, *loops) -> None:
        self._tasks.append(asyncio.create_task(self._writer()))
        for loop in loops:
            self._tasks.append(asyncio.create_task(loop))

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            with suppress(asyncio.CancelledError, websockets.exceptions.ConnectionClosed):
                await task
        self._tasks.clear()


class AuthorityServer:
    """
    Holds the authoritative PlaybackState and keeps every follower on it.

    Only genuine user input on the local player (ChangeOrigin.PLAYER)
    becomes an authoritative change. A failure of the local player is
    fatal: there is no other authority to fall back on.
    """

    def __init__(
        self,
        config: Optional[Config] = None,
        player: Optional[PlayerAdapter] = None,
        username: str = "authority",
    ):
        self.config = config or Config()
        self.player = player
        self.username = username
        self.authority = AuthorityState()
        self.port = self.config.network.port
        self.fatal_error: Optional[BaseException] = None
        self._peers: dict[str, PeerConnection] = {}
        self._events: asyncio.Queue[PlaybackStateChange] = asyncio.Queue(
            maxsize=self.config.player.queue_size)
        self._ws_server: Optional[Server] = None
        self._tasks: list[asyncio.Task] = []
        self._stopped = asyncio.Event()
        self._running = False

        # Callbacks
        self.on_peer_synced: Optional[Callable[[PeerConnection], None]] = None
        self.on_peer_disconnected: Optional[Callable[[PeerConnection], None]] = None

    @property
    def peers(self) -> dict[str, PeerConnection]:
        return self._peers

    async def start(self) -> None:
        if self.player is not None:
            local = await self.player.get_state()
            await self.authority.reset(local)
            self.player.subscribe(self._on_player_change)
            self.player.subscribe_lost(self._player_failed)
        self._running = True
        self._ws_server = await websockets.serve(
            self._handle_peer, self.config.network.host, self.config.network.port
        )
        self.port = next(iter(self._ws_server.sockets)).getsockname()[1]
        logger.info("Authority listening on port %d", self.port)
        self._tasks.append(asyncio.create_task(self._full_state_loop()))
        if self.player is not None:
            self._tasks.append(asyncio.create_task(self._local_event_loop()))

    async def stop(self) -> None:
        self._running = False
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            with suppress(asyncio.CancelledError):
                await task
        self._tasks.clear()
        if self._ws_server:
            self._ws_server.close()
            await self._ws_server.wait_closed()
            self._ws_server = None
        self._stopped.set()

    async def wait_closed(self) -> None:
        """Block until stopped; re-raises the error that stopped us, if any."""
        await self._stopped.wait()
        if self.fatal_error is not None:
            raise self.fatal_error

    # ---- authoritative changes ----

    async def apply_local_change(self, **fields):
        return await self.authority.apply_change(**fields)

    def _on_player_change(self, change: PlaybackStateChange) -> None:
        if change.origin is ChangeOrigin.ADAPTER:
            return
        if self._events.full():
            # every event makes us re-read the whole player state; older ones add nothing
            self._events.get_nowait()
        self._events.put_nowait(change)

    def _player_failed(self, error: PlayerAdapterError) -> None:
        """Without its player the authority has nothing to serve."""
        if self.fatal_error is not None:
            return
        logger.critical("Authority player failed: %s", error)
        self.fatal_error = error
        asyncio.ensure_future(self.stop())

    async def _local_event_loop(self) -> None:
        while self._running:
            change = await self._events.get()
            logger.debug("Local player change: %s=%r", change.property, change.value)
            try:
                local = await self.player.get_state()
            except PlayerAdapterError as e:
                self._player_failed(e)
                return
            await self.authority.apply_change(
                media_ref=local.media_ref,
                position=local.position,
                paused=local.paused,
                rate=local.rate,
            )

    async def _full_state_loop(self) -> None:
        """Periodically re-send FullState so recovering followers converge."""
        while self._running:
            await asyncio.sleep(self.config.sync.full_state_interval_s)
            count = await self.authority.broadcast_full_state()
            logger.debug("Re-sent FullState to %d peer(s)", count)

    # ---- per-connection handling ----

    async def _notify(self, text: str) -> None:
        if self.player is None:
            return
        try:
            await self.player.show_text(text, 2000)
        except PlayerAdapterError as e:
            logger.debug("Could not show notice: %s", e)

    async def _ping_loop(self, peer: PeerConnection) -> None:
        sync = self.config.sync
        while not peer.session.is_closed:
            await asyncio.sleep(sync.ping_interval_s)
            peer.session.check_liveness()
            if peer.session.is_live:
                peer.enqueue(peer.session.make_ping())

    async def _handshake(self, ws: ServerConnection, peer: PeerConnection) -> None:
        session = peer.session
        session.begin_handshake()
        await ws.send(encode(Hello(username=self.username)))
        hello: Optional[Message] = None
        while hello is None:
            left = session.handshake_time_left()
            if left <= 0:
                raise asyncio.TimeoutError
            raw = await asyncio.wait_for(ws.recv(), timeout=left)
            if isinstance(raw, str):
                raise ProtocolError("Text frames are not part of the protocol")
            messages = peer.reader.feed(raw)
            if messages:
                hello = messages[0]
                for extra in messages[1:]:
                    self._dispatch(peer, extra)
        if not isinstance(hello, Hello):
            raise HandshakeFailed(f"Expected HELLO, got {hello.TYPE}")
        if hello.username and not hello.username.isalnum():
            raise HandshakeFailed(f"Invalid username {hello.username!r}")
        session.complete_handshake(hello)

    async def _handle_peer(self, ws: ServerConnection) -> None:
        session = ConnectionSession(Role.AUTHORITY, self.config.sync)
        peer = PeerConnection(ws, session)
        registered = False
        try:
            try:
                await self._handshake(ws, peer)
            except asyncio.TimeoutError:
                session.fail_handshake("timed out")
                return
            except ProtocolError as e:
                session.fail_handshake(str(e))
                await self._send_error(ws, str(e))
                return

            self._peers[peer.id] = peer
            await self.authority.add_peer(peer)
            registered = True
            peer.start(self._ping_loop(peer))
            logger.info("Peer synced: %s (%s), %d connected",
                        peer.name, peer.id, self.authority.peer_count)
            await self._notify(f"{peer.name}: connected")
            if self.on_peer_synced:
                self.on_peer_synced(peer)

            async for raw in ws:
                if isinstance(raw, str):
                    raise ProtocolError("Text frames are not part of the protocol")
                for msg in peer.reader.feed(raw):
                    self._dispatch(peer, msg)
                if session.is_closed:
                    break
        except ProtocolError as e:
            logger.warning("Protocol error from %s: %s", peer.name, e)
            session.close(f"protocol error: {e}")
            await self._send_error(ws, str(e))
        except websockets.exceptions.ConnectionClosed:
            pass
        finally:
            session.close(session.close_reason or "disconnected")
            await peer.stop()
            if registered:
                await self.authority.remove_peer(peer.id)
                self._peers.pop(peer.id, None)
                logger.info("Peer disconnected: %s, %d connected",
                            peer.name, self.authority.peer_count)
                await self._notify(f"{peer.name}: disconnected")
                if self.on_peer_disconnected:
                    self.on_peer_disconnected(peer)

    def _dispatch(self, peer: PeerConnection, msg: Message) -> None:
        session = peer.session
        if session.record_activity():
            logger.info("Peer %s back in sync", peer.name)
        if isinstance(msg, Ping):
            peer.enqueue(Pong(echoed_sent_time=msg.sent_time))
        elif isinstance(msg, Pong):
            rtt = session.handle_pong(msg)
            if rtt is not None:
                logger.debug("RTT to %s: %.1fms (one-way est. %.1fms)",
                             peer.name, rtt, session.estimator.one_way_delay_ms)
        elif isinstance(msg, Error):
            logger.warning("Peer %s reported error: %s", peer.name, msg.reason)
            session.close(f"peer error: {msg.reason}")
        elif isinstance(msg, (FullState, StateDelta)):
            logger.warning("Ignoring %s from follower %s; only the authority sets state",
                           msg.TYPE, peer.name)
        elif isinstance(msg, Hello):
            logger.debug("Duplicate HELLO from %s ignored", peer.name)

    async def _send_error(self, ws: ServerConnection, reason: str) -> None:
        with suppress(websockets.exceptions.ConnectionClosed):
            await ws.send(encode(Error(reason=reason)))
