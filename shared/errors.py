"""voyeurs error taxonomy."""
from __future__ import annotations


class SyncError(Exception):
    """Base class for all voyeurs errors."""


class ProtocolError(SyncError):
    """Peer sent something we cannot accept. Connection-fatal."""


class DecodeError(ProtocolError):
    pass


class MalformedMessage(DecodeError):
    """Truncated, corrupt or structurally invalid frame."""


class UnsupportedVersion(DecodeError):
    def __init__(self, version: int):
        super().__init__(f"Protocol version {version} is incompatible")
        self.version = version


class HandshakeFailed(ProtocolError):
    pass


class TransportError(SyncError):
    """Connection reset, refused or timed out."""


class ReconnectExhausted(TransportError):
    def __init__(self, attempts: int):
        super().__init__(f"Gave up reconnecting after {attempts} attempts")
        self.attempts = attempts


class PlayerAdapterError(SyncError):
    """Local player unreachable or rejected a command."""


class MediaLoadFailed(PlayerAdapterError):
    """The player is fine but could not open this media."""

    def __init__(self, media_ref: str, detail: str):
        super().__init__(f"Cannot load {media_ref!r}: {detail}")
        self.media_ref = media_ref


class InvalidTransition(SyncError):
    def __init__(self, current, target):
        super().__init__(f"Invalid session transition {current.value} -> {target.value}")
        self.current = current
        self.target = target
