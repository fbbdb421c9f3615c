"""voyeurs player adapter contract and the per-connection action dispatcher."""
from __future__ import annotations
import asyncio
import logging
from abc import ABC, abstractmethod
from collections import deque
from contextlib import suppress
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional

from shared.errors import MediaLoadFailed, PlayerAdapterError
from shared.protocol import PlaybackState
from shared.reconcile import Action, LoadMedia, Seek, SetPaused, SetRate
from shared.session import Backoff

logger = logging.getLogger("voyeurs.shared.player")


class ChangeOrigin(str, Enum):
    PLAYER = "player"  # the user did something to the player
    ADAPTER = "adapter"  # the player is reporting a command we issued


@dataclass(frozen=True)
class PlaybackStateChange:
    property: str  # "pause" | "seek" | "speed" | "media"
    value: Any
    origin: ChangeOrigin


ChangeCallback = Callable[[PlaybackStateChange], None]
LostCallback = Callable[[PlayerAdapterError], None]


class PlayerAdapter(ABC):
    """
    Control surface of a local media player.

    Implementations must tag every change delivered to subscribers with
    its origin, so that changes caused by our own commands are never
    mistaken for user input. Any failure to talk to the player raises
    PlayerAdapterError.
    """

    @abstractmethod
    async def get_state(self) -> PlaybackState:
        """Current local state. ``epoch`` is meaningless here and left at 0."""
        raise NotImplementedError

    @abstractmethod
    async def set_paused(self, paused: bool) -> None:
        raise NotImplementedError

    @abstractmethod
    async def seek(self, position: float) -> None:
        raise NotImplementedError

    @abstractmethod
    async def set_rate(self, rate: float) -> None:
        raise NotImplementedError

    @abstractmethod
    async def load(self, media_ref: str) -> None:
        raise NotImplementedError

    @abstractmethod
    def subscribe(self, callback: ChangeCallback) -> None:
        raise NotImplementedError

    async def show_text(self, text: str, duration_ms: int = 2000) -> None:
        """On-screen notice; players without an OSD just log it."""
        logger.info("Player notice: %s", text)

    def subscribe_lost(self, callback: LostCallback) -> None:
        """Called once if the player goes away for good. In-process players never do."""


async def execute_action(player: PlayerAdapter, action: Action) -> None:
    for step in action:
        if isinstance(step, LoadMedia):
            try:
                await player.load(step.media_ref)
            except PlayerAdapterError as e:
                raise MediaLoadFailed(step.media_ref, str(e)) from e
        elif isinstance(step, Seek):
            await player.seek(max(0.0, step.position))
        elif isinstance(step, SetPaused):
            await player.set_paused(step.paused)
        elif isinstance(step, SetRate):
            await player.set_rate(step.rate)


# Given the freshly read local state, decide what to do.
Plan = Callable[[PlaybackState], Action]


class ActionDispatcher:
    """
    Runs player commands off the network task.

    Work is queued as plans rather than finished actions: the local state
    is read right before acting, so a plan is always current when it runs.
    The queue is bounded; when it is full the oldest plan is dropped since
    every newer plan supersedes it.
    """

    def __init__(
        self,
        player: PlayerAdapter,
        maxsize: int = 8,
        retry_attempts: int = 3,
        retry_delay: float = 0.2,
        on_failure: Optional[Callable[[PlayerAdapterError], None]] = None,
        on_applied: Optional[Callable[[Action], None]] = None,
    ):
        self.player = player
        self.maxsize = maxsize
        self.retry_attempts = retry_attempts
        self.retry_delay = retry_delay
        self.on_failure = on_failure
        self.on_applied = on_applied
        self.dropped = 0
        self._queue: deque[Plan] = deque()
        self._wakeup = asyncio.Event()
        self._idle = asyncio.Event()
        self._idle.set()
        self._closed = False
        self._task: Optional[asyncio.Task] = None

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._run())

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def pending(self) -> int:
        return len(self._queue)

    def submit(self, plan: Plan) -> bool:
        if self._closed:
            return False
        if len(self._queue) >= self.maxsize:
            self._queue.popleft()
            self.dropped += 1
            logger.debug("Player queue full; dropped oldest plan (%d dropped)", self.dropped)
        self._queue.append(plan)
        self._idle.clear()
        self._wakeup.set()
        return True

    async def join(self) -> None:
        """Wait until everything queued so far has been carried out."""
        await self._idle.wait()

    async def _run(self) -> None:
        while not self._closed:
            await self._wakeup.wait()
            self._wakeup.clear()
            while self._queue and not self._closed:
                plan = self._queue.popleft()
                await self._carry_out(plan)
            if not self._queue:
                self._idle.set()

    async def _carry_out(self, plan: Plan) -> None:
        backoff = Backoff(self.retry_delay, self.retry_delay * 8, self.retry_attempts)
        while not self._closed:
            try:
                local = await self.player.get_state()
                action = plan(local)
                if action:
                    logger.debug("Applying %s", action)
                    await execute_action(self.player, action)
                    if self.on_applied:
                        self.on_applied(action)
                return
            except MediaLoadFailed as e:
                # retrying will not make the file appear
                logger.warning("%s", e)
                if self.on_failure:
                    self.on_failure(e)
                return
            except PlayerAdapterError as e:
                delay = backoff.next_delay()
                if delay is None:
                    logger.error("Player command failed after %d retries: %s", self.retry_attempts, e)
                    if self.on_failure:
                        self.on_failure(e)
                    return
                logger.warning("Player command failed (%s); retrying in %.2fs", e, delay)
                await asyncio.sleep(delay)

    async def close(self) -> None:
        self._closed = True
        self._queue.clear()
        self._idle.set()
        if self._task:
            self._task.cancel()
            with suppress(asyncio.CancelledError):
                await self._task
            self._task = None
