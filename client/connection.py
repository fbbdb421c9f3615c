"""voyeurs follower connection to the authority."""
from __future__ import annotations
import asyncio
import logging
import time
from contextlib import suppress
from typing import Callable, Optional

import websockets
from websockets.asyncio.client import ClientConnection, connect

from shared.config import Config
from shared.errors import (
    HandshakeFailed, MediaLoadFailed, PlayerAdapterError, ProtocolError, ReconnectExhausted,
    TransportError, UnsupportedVersion,
)
from shared.player import ActionDispatcher, ChangeOrigin, PlaybackStateChange, Plan, PlayerAdapter
from shared.protocol import (
    Error, FrameReader, FullState, Hello, Message, PlaybackState, Ping, Pong, StateDelta, encode,
)
from shared.reconcile import NOOP, Action, is_stream_url, media_name, reconcile
from shared.session import Backoff, ConnectionSession, Role, SessionState

logger = logging.getLogger("voyeurs.client.connection")


class FollowerClient:
    """
    Keeps the local player on the authority's state.

    The follower never authors state. Local user input is answered by
    re-applying the authoritative state; changes caused by our own
    commands are recognised and ignored.
    """

    def __init__(
        self,
        player: PlayerAdapter,
        config: Optional[Config] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.player = player
        self.config = config or Config()
        self._clock = clock
        self.authoritative: Optional[PlaybackState] = None
        self.applied_epoch: Optional[int] = None
        self._received_at = 0.0
        self.session: Optional[ConnectionSession] = None
        self.dispatcher: Optional[ActionDispatcher] = None
        self._ws: Optional[ClientConnection] = None
        self._reader = FrameReader()
        rc = self.config.reconnect
        self._backoff = Backoff(rc.initial_delay_s, rc.max_delay_s, rc.max_attempts)
        self._remote_until = 0.0
        self._warned_media: Optional[str] = None
        self._failed_media: Optional[str] = None
        self.fatal_error: Optional[PlayerAdapterError] = None
        self._running = False
        self._tasks: list[asyncio.Task] = []
        self.player.subscribe(self._on_player_change)
        self.player.subscribe_lost(self._on_player_lost)

        # Callbacks
        self.on_synced: Optional[Callable[[ConnectionSession], None]] = None
        self.on_state_applied: Optional[Callable[[Action], None]] = None

    # ---- authoritative state ----

    def accept_state(self, state: PlaybackState) -> bool:
        """Cache ``state`` unless it is stale. Returns True if it was taken."""
        if self.applied_epoch is not None and state.epoch <= self.applied_epoch:
            logger.debug("Dropping stale state epoch %d (applied %d)", state.epoch, self.applied_epoch)
            return False
        self.authoritative = state
        self.applied_epoch = state.epoch
        if self._failed_media is not None and state.media_ref != self._failed_media:
            self._failed_media = None
        self._received_at = self._clock()
        return True

    def _plan(self, state: PlaybackState, received_at: float) -> Plan:
        def plan(local: PlaybackState) -> Action:
            if self.session is None or self.session.is_closed:
                return NOOP
            delay, tolerance = self.session.correction_params()
            refusal = self._load_refusal(state.media_ref)
            if refusal and media_name(local.media_ref) != media_name(state.media_ref):
                self._warn_media_mismatch(state.media_ref, refusal)
            return reconcile(
                local,
                state,
                delay,
                elapsed=self._clock() - received_at,
                tolerance=tolerance,
                rate_tolerance=self.config.sync.rate_tolerance,
                accept_source=refusal is None,
            )
        return plan

    def _load_refusal(self, media_ref: str) -> Optional[str]:
        """Why ``media_ref`` must not be loaded here, or None if it may be."""
        if not self.config.client.accept_source:
            return "accept_source is off"
        if not is_stream_url(media_ref):
            return "it is not a stream URL"
        if media_ref == self._failed_media:
            return "it failed to load"
        return None

    def _warn_media_mismatch(self, media_ref: str, reason: str) -> None:
        if self._warned_media == media_ref:
            return
        self._warned_media = media_ref
        logger.warning("Authority is playing %r; not loading it (%s)", media_ref, reason)
        asyncio.ensure_future(self._notice("media does not match the authority's media"))

    async def _notice(self, text: str) -> None:
        try:
            await self.player.show_text(text, 2000)
        except PlayerAdapterError as e:
            logger.debug("Could not show notice: %s", e)

    def schedule_reconcile(self) -> bool:
        if self.authoritative is None or self.dispatcher is None:
            return False
        return self.dispatcher.submit(self._plan(self.authoritative, self._received_at))

    # ---- player events ----

    def _on_applied(self, action: Action) -> None:
        self._remote_until = self._clock() + self.config.player.echo_ignore_window_s
        if self.on_state_applied:
            self.on_state_applied(action)

    def _on_player_failure(self, error: PlayerAdapterError) -> None:
        if isinstance(error, MediaLoadFailed):
            # stays put until the authority moves to other media
            self._failed_media = error.media_ref
            return
        if self.session is not None:
            self.session.mark_degraded(f"player unresponsive: {error}")

    def _on_player_lost(self, error: PlayerAdapterError) -> None:
        if self.fatal_error is not None:
            return
        logger.critical("Player went away: %s", error)
        self.fatal_error = error
        asyncio.ensure_future(self.stop())

    def is_echo(self, change: PlaybackStateChange) -> bool:
        return change.origin is ChangeOrigin.ADAPTER or self._clock() < self._remote_until

    def _on_player_change(self, change: PlaybackStateChange) -> None:
        if self.is_echo(change):
            logger.debug("Suppressed echo of our own %s", change.property)
            return
        logger.info("Local %s change ignored; following the authority", change.property)
        self.schedule_reconcile()

    # ---- connection ----

    async def run(self, host: str, port: int) -> None:
        """
        Stay connected until stop().

        Raises ReconnectExhausted when out of attempts, and the player's error
        if the local player goes away.
        """
        self._running = True
        uri = f"ws://{host}:{port}"
        while self._running:
            try:
                await self._connect_once(uri)
            except (UnsupportedVersion, HandshakeFailed):
                raise
            except ProtocolError as e:
                logger.warning("Protocol error, reconnecting: %s", e)
            except (OSError, asyncio.TimeoutError, websockets.exceptions.WebSocketException,
                    TransportError) as e:
                logger.warning("Connection lost: %s", e)
            if not self._running:
                break
            delay = self._backoff.next_delay()
            if delay is None:
                logger.error("Giving up on %s after %d attempts", uri, self._backoff.attempt)
                raise ReconnectExhausted(self._backoff.attempt)
            logger.info("Reconnecting in %.1fs (attempt %d/%d)",
                        delay, self._backoff.attempt, self._backoff.max_attempts)
            await asyncio.sleep(delay)
        if self.fatal_error is not None:
            raise self.fatal_error

    async def stop(self) -> None:
        self._running = False
        if self._ws is not None:
            await self._ws.close()

    async def _connect_once(self, uri: str) -> None:
        sync = self.config.sync
        session = ConnectionSession(Role.FOLLOWER, sync, clock=self._clock)
        self.session = session
        # epochs only order messages within one connection; a restarted authority starts over
        self.applied_epoch = None
        self._failed_media = None
        self._reader = FrameReader()
        player_cfg = self.config.player
        self.dispatcher = ActionDispatcher(
            self.player,
            maxsize=player_cfg.queue_size,
            retry_attempts=player_cfg.retry_attempts,
            retry_delay=player_cfg.retry_delay_s,
            on_failure=self._on_player_failure,
            on_applied=self._on_applied,
        )
        logger.info("Connecting to %s", uri)
        try:
            async with connect(uri, open_timeout=sync.handshake_timeout_s) as ws:
                self._ws = ws
                await self._handshake(ws, session)
                self._backoff.reset()
                self.dispatcher.start()
                logger.info("Synced with authority %s", session.peer_name or uri)
                if self.on_synced:
                    self.on_synced(session)
                self._tasks = [
                    asyncio.create_task(self._ping_loop(ws, session)),
                    asyncio.create_task(self._drift_loop(session)),
                ]
                async for raw in ws:
                    if isinstance(raw, str):
                        raise ProtocolError("Text frames are not part of the protocol")
                    for msg in self._reader.feed(raw):
                        await self._dispatch(ws, session, msg)
                    if session.is_closed:
                        break
        except ProtocolError as e:
            if self._ws is not None:
                with suppress(websockets.exceptions.ConnectionClosed):
                    await self._ws.send(encode(Error(reason=str(e))))
            session.close(f"protocol error: {e}")
            raise
        finally:
            session.close(session.close_reason or "disconnected")
            for task in self._tasks:
                task.cancel()
            for task in self._tasks:
                with suppress(asyncio.CancelledError, websockets.exceptions.ConnectionClosed):
                    await task
            self._tasks = []
            await self.dispatcher.close()
            self._ws = None

    async def _handshake(self, ws: ClientConnection, session: ConnectionSession) -> None:
        session.begin_handshake()
        await ws.send(encode(Hello(username=self.config.client.username)))
        pending: list[Message] = []
        try:
            while not pending:
                left = session.handshake_time_left()
                if left <= 0:
                    raise asyncio.TimeoutError
                raw = await asyncio.wait_for(ws.recv(), timeout=left)
                if isinstance(raw, str):
                    raise HandshakeFailed("Text frame during handshake")
                pending = self._reader.feed(raw)
        except asyncio.TimeoutError:
            session.fail_handshake("timed out")
            raise HandshakeFailed("No HELLO from authority") from None
        except UnsupportedVersion:
            session.fail_handshake("unsupported protocol version")
            raise
        hello, rest = pending[0], pending[1:]
        if not isinstance(hello, Hello):
            session.fail_handshake(f"expected HELLO, got {hello.TYPE}")
            raise HandshakeFailed(f"Expected HELLO, got {hello.TYPE}")
        session.complete_handshake(hello)
        for msg in rest:
            await self._dispatch(ws, session, msg)

    async def _dispatch(self, ws: ClientConnection, session: ConnectionSession, msg: Message) -> None:
        session.record_activity()
        if isinstance(msg, (FullState, StateDelta)):
            if self.accept_state(msg.state):
                logger.debug("Epoch %d received (%s)", msg.state.epoch, msg.TYPE)
                self.schedule_reconcile()
        elif isinstance(msg, Ping):
            await ws.send(encode(Pong(echoed_sent_time=msg.sent_time)))
        elif isinstance(msg, Pong):
            rtt = session.handle_pong(msg)
            if rtt is not None:
                logger.debug("RTT %.1fms, one-way est. %.1fms", rtt, session.estimator.one_way_delay_ms)
        elif isinstance(msg, Error):
            logger.warning("Authority reported error: %s", msg.reason)
            session.close(f"peer error: {msg.reason}")
        elif isinstance(msg, Hello):
            logger.debug("Duplicate HELLO ignored")

    async def _ping_loop(self, ws: ClientConnection, session: ConnectionSession) -> None:
        while not session.is_closed:
            await asyncio.sleep(self.config.sync.ping_interval_s)
            session.check_liveness()
            await ws.send(encode(session.make_ping()))

    async def _drift_loop(self, session: ConnectionSession) -> None:
        """Re-check position against the cached authoritative state between updates."""
        while not session.is_closed:
            await asyncio.sleep(self.config.sync.drift_check_interval_s)
            if session.state in (SessionState.SYNCED, SessionState.DEGRADED):
                self.schedule_reconcile()
