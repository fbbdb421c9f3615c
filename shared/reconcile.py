"""voyeurs reconciliation: what a follower must do to match the authority.

Everything in here is pure. Given the same local state, authoritative
state and delay, ``reconcile`` always returns the same action.
"""
from __future__ import annotations
from dataclasses import dataclass
from typing import Union
from urllib.parse import urlsplit

from shared.protocol import PlaybackState

DEFAULT_TOLERANCE_S = 0.3
DEFAULT_RATE_TOLERANCE = 0.001


@dataclass(frozen=True)
class LoadMedia:
    media_ref: str


@dataclass(frozen=True)
class Seek:
    position: float


@dataclass(frozen=True)
class SetPaused:
    paused: bool


@dataclass(frozen=True)
class SetRate:
    rate: float


Command = Union[LoadMedia, Seek, SetPaused, SetRate]
# Commands are applied in order; the empty tuple is a no-op.
Action = tuple[Command, ...]
NOOP: Action = ()


def is_stream_url(media_ref: str) -> bool:
    """True for refs any machine can open (``scheme://host/...``).

    Plain paths and ``file:///`` URLs only exist on the authority's machine.
    """
    parts = urlsplit(media_ref)
    return len(parts.scheme) > 1 and bool(parts.netloc)


def media_name(media_ref: str) -> str:
    """Last path component, for telling whether two refs are the same file."""
    path = urlsplit(media_ref).path if is_stream_url(media_ref) else media_ref
    return path.replace("\\", "/").rstrip("/").rsplit("/", 1)[-1]


def expected_position(authoritative: PlaybackState, delay: float, elapsed: float = 0.0) -> float:
    """Where the authority's player is right now, as seen from the follower."""
    if authoritative.paused:
        return authoritative.position
    return authoritative.position + (delay + elapsed) * authoritative.rate


def reconcile(
    local: PlaybackState,
    authoritative: PlaybackState,
    delay: float,
    *,
    elapsed: float = 0.0,
    tolerance: float = DEFAULT_TOLERANCE_S,
    rate_tolerance: float = DEFAULT_RATE_TOLERANCE,
    accept_source: bool = True,
) -> Action:
    """
    Compute the corrective action for a follower.

    delay: estimated one-way network delay in seconds.
    elapsed: seconds since the authoritative state was received.
    accept_source: when False a different media_ref is never loaded;
        position, pause and rate are still matched.
    """
    target = expected_position(authoritative, delay, elapsed)
    steps: list[Command] = []

    if authoritative.media_ref != local.media_ref and accept_source:
        # A fresh load has no meaningful drift; set everything outright.
        return (
            LoadMedia(authoritative.media_ref),
            SetPaused(authoritative.paused),
            SetRate(authoritative.rate),
            Seek(target),
        )

    if authoritative.paused != local.paused:
        if authoritative.paused:
            steps.append(SetPaused(True))
            if abs(local.position - target) > tolerance:
                steps.append(Seek(target))
        else:
            steps.append(Seek(target))
            steps.append(SetPaused(False))
    elif abs(local.position - target) > tolerance:
        steps.append(Seek(target))

    if abs(local.rate - authoritative.rate) > rate_tolerance:
        steps.append(SetRate(authoritative.rate))

    return tuple(steps)


def apply_action(state: PlaybackState, action: Action) -> PlaybackState:
    """Local state after a player has carried out ``action``."""
    media_ref, position, paused, rate = state.media_ref, state.position, state.paused, state.rate
    for step in action:
        if isinstance(step, LoadMedia):
            media_ref, position = step.media_ref, 0.0
        elif isinstance(step, Seek):
            position = step.position
        elif isinstance(step, SetPaused):
            paused = step.paused
        elif isinstance(step, SetRate):
            rate = step.rate
    return PlaybackState(media_ref=media_ref, position=position, paused=paused, rate=rate, epoch=state.epoch)
