"""Shared test fixtures: an in-memory player and a hand-driven clock."""
from __future__ import annotations
import asyncio
import dataclasses

import pytest

from shared.errors import PlayerAdapterError
from shared.player import ChangeOrigin, PlaybackStateChange, PlayerAdapter
from shared.protocol import PlaybackState


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class MemoryPlayer(PlayerAdapter):
    """Player that just remembers its state. Commands echo back as ADAPTER changes."""

    def __init__(self, state: PlaybackState | None = None):
        self.state = state or PlaybackState(media_ref="", position=0.0, paused=True, rate=1.0)
        self.calls: list[tuple] = []
        self.notices: list[str] = []
        self.failures = 0  # fail this many upcoming calls
        self.unloadable: set[str] = set()
        self._subscribers = []
        self._lost = []

    def _maybe_fail(self) -> None:
        if self.failures > 0:
            self.failures -= 1
            raise PlayerAdapterError("player not responding")

    def _emit(self, prop, value, origin) -> None:
        for cb in list(self._subscribers):
            cb(PlaybackStateChange(property=prop, value=value, origin=origin))

    def _command(self, name, prop, value, **changes) -> None:
        self._maybe_fail()
        self.calls.append((name, value))
        self.state = dataclasses.replace(self.state, **changes)
        self._emit(prop, value, ChangeOrigin.ADAPTER)

    def user_change(self, prop: str = "pause", **changes) -> None:
        """Simulate someone operating the player directly."""
        self.state = dataclasses.replace(self.state, **changes)
        self._emit(prop, None, ChangeOrigin.PLAYER)

    def subscribe(self, callback) -> None:
        self._subscribers.append(callback)

    def subscribe_lost(self, callback) -> None:
        self._lost.append(callback)

    def lose(self) -> None:
        """Simulate the player process going away."""
        for cb in list(self._lost):
            cb(PlayerAdapterError("player went away"))

    async def get_state(self) -> PlaybackState:
        self._maybe_fail()
        return self.state

    async def set_paused(self, paused: bool) -> None:
        self._command("set_paused", "pause", paused, paused=paused)

    async def seek(self, position: float) -> None:
        self._command("seek", "seek", position, position=position)

    async def set_rate(self, rate: float) -> None:
        self._command("set_rate", "speed", rate, rate=rate)

    async def load(self, media_ref: str) -> None:
        if media_ref in self.unloadable:
            self.calls.append(("load", media_ref))
            raise PlayerAdapterError(f"cannot open {media_ref}")
        self._command("load", "media", media_ref, media_ref=media_ref, position=0.0)

    async def show_text(self, text: str, duration_ms: int = 2000) -> None:
        self.notices.append(text)


async def wait_until(predicate, timeout: float = 3.0, interval: float = 0.01) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(interval)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def player() -> MemoryPlayer:
    return MemoryPlayer()
