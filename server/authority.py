"""voyeurs authoritative playback state.

The authority owns exactly one PlaybackState. Every mutation and every
broadcast snapshot goes through ``AuthorityState`` under a single lock,
so a broadcast can never observe a half-applied change or a peer that is
being torn down.
"""
from __future__ import annotations
import asyncio
import dataclasses
import logging
import time
from typing import TYPE_CHECKING, Callable, Optional

from shared.protocol import FullState, PlaybackState, StateDelta

if TYPE_CHECKING:
    from server.server import PeerConnection as Peer

logger = logging.getLogger("voyeurs.server.authority")


class AuthorityState:
    def __init__(self, initial: Optional[PlaybackState] = None, clock: Callable[[], float] = time.monotonic):
        self._state = initial or PlaybackState()
        self._clock = clock
        self._changed_at = clock()
        self._peers: dict[str, Peer] = {}
        self._lock = asyncio.Lock()

    @property
    def epoch(self) -> int:
        return self._state.epoch

    def current(self) -> PlaybackState:
        """The state as of now: position advanced by the time spent playing."""
        state = self._state
        if state.paused:
            return state
        elapsed = self._clock() - self._changed_at
        return dataclasses.replace(state, position=state.position + elapsed * state.rate)

    @property
    def peer_count(self) -> int:
        return len(self._peers)

    def _live_peers(self) -> list[Peer]:
        return [p for p in self._peers.values() if p.is_live]

    async def reset(self, state: PlaybackState) -> None:
        """Replace the state wholesale (startup); keeps the epoch monotonic."""
        async with self._lock:
            epoch = max(state.epoch, self._state.epoch)
            self._state = dataclasses.replace(state, epoch=epoch)
            self._changed_at = self._clock()

    async def apply_change(self, **fields) -> PlaybackState:
        """
        Single entry point for authoritative changes.

        Bumps the epoch, stores the new state and queues a StateDelta for
        every live peer, all under the lock.
        """
        unknown = set(fields) - {"media_ref", "position", "paused", "rate"}
        if unknown:
            raise TypeError(f"Unknown PlaybackState fields: {sorted(unknown)}")
        rate = fields.get("rate")
        if rate is not None and rate <= 0:
            raise ValueError("rate must be positive")
        async with self._lock:
            new = dataclasses.replace(self.current(), **fields, epoch=self._state.epoch + 1)
            self._state = new
            self._changed_at = self._clock()
            peers = self._live_peers()
            for peer in peers:
                peer.enqueue(StateDelta(new))
        logger.info(
            "Epoch %d: %s @ %.3fs %s x%.2f -> %d peer(s)",
            new.epoch, new.media_ref or "<none>", new.position,
            "paused" if new.paused else "playing", new.rate, len(peers),
        )
        return new

    async def add_peer(self, peer: Peer) -> PlaybackState:
        """Register a freshly synced peer and queue its join-in-progress FullState."""
        async with self._lock:
            self._peers[peer.id] = peer
            state = self.current()
            peer.enqueue(FullState(state))
        return state

    async def remove_peer(self, peer_id: str) -> None:
        async with self._lock:
            self._peers.pop(peer_id, None)

    async def broadcast_full_state(self) -> int:
        async with self._lock:
            state = self.current()
            peers = self._live_peers()
            for peer in peers:
                peer.enqueue(FullState(state))
        return len(peers)
