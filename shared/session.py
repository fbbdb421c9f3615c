"""voyeurs per-connection session state machine."""
from __future__ import annotations
import logging
import time
import uuid
from enum import Enum
from typing import Callable, Optional

from shared.clock_sync import ClockEstimator
from shared.config import SyncSettings
from shared.errors import HandshakeFailed, InvalidTransition
from shared.protocol import SUPPORTED_VERSIONS, Hello, Ping, Pong

logger = logging.getLogger("voyeurs.shared.session")


class Role(str, Enum):
    AUTHORITY = "authority"
    FOLLOWER = "follower"


class SessionState(str, Enum):
    CONNECTING = "connecting"
    HANDSHAKING = "handshaking"
    SYNCED = "synced"
    DEGRADED = "degraded"
    CLOSED = "closed"


_TRANSITIONS: dict[SessionState, frozenset[SessionState]] = {
    SessionState.CONNECTING: frozenset({SessionState.HANDSHAKING, SessionState.CLOSED}),
    SessionState.HANDSHAKING: frozenset({SessionState.SYNCED, SessionState.CLOSED}),
    SessionState.SYNCED: frozenset({SessionState.DEGRADED, SessionState.CLOSED}),
    SessionState.DEGRADED: frozenset({SessionState.SYNCED, SessionState.CLOSED}),
    SessionState.CLOSED: frozenset(),
}

CLOSE_HANDSHAKE_FAILED = "HandshakeFailed"


class ConnectionSession:
    """
    Lifecycle and delay bookkeeping for one connection.

    All timing goes through ``clock`` (seconds, monotonic) so the state
    machine can be driven deterministically.
    """

    def __init__(
        self,
        role: Role,
        settings: Optional[SyncSettings] = None,
        session_id: Optional[str] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.settings = settings or SyncSettings()
        self.id = session_id or str(uuid.uuid4())
        self.role = role
        self.state = SessionState.CONNECTING
        self.peer_name = ""
        self.close_reason: Optional[str] = None
        self.estimator = ClockEstimator(
            alpha=self.settings.ewma_alpha,
            window=self.settings.rtt_window,
            outlier_factor=self.settings.outlier_factor,
            outlier_limit=self.settings.outlier_limit,
        )
        self._clock = clock
        self.started_at = clock()
        self.last_activity_time = self.started_at

    # ---- derived ----

    @property
    def rtt_samples(self):
        return self.estimator.rtt_samples

    @property
    def estimated_one_way_delay(self) -> float:
        return self.estimator.estimate_one_way_delay()

    @property
    def is_live(self) -> bool:
        """True once handshaken and until closed."""
        return self.state in (SessionState.SYNCED, SessionState.DEGRADED)

    @property
    def is_closed(self) -> bool:
        return self.state == SessionState.CLOSED

    @property
    def idle_for(self) -> float:
        return self._clock() - self.last_activity_time

    def now_ms(self) -> int:
        """Milliseconds since this session started; the unit of Ping/Pong times."""
        return int((self._clock() - self.started_at) * 1000)

    # ---- transitions ----

    def _transition(self, target: SessionState) -> None:
        if target not in _TRANSITIONS[self.state]:
            raise InvalidTransition(self.state, target)
        logger.debug("Session %s: %s -> %s", self.id, self.state.value, target.value)
        self.state = target

    def begin_handshake(self) -> None:
        self._transition(SessionState.HANDSHAKING)

    def complete_handshake(self, hello: Hello) -> None:
        """Accept the peer's Hello; closes the session and raises on mismatch."""
        if self.state != SessionState.HANDSHAKING:
            raise InvalidTransition(self.state, SessionState.SYNCED)
        if hello.protocol_version not in SUPPORTED_VERSIONS:
            self.close(CLOSE_HANDSHAKE_FAILED)
            raise HandshakeFailed(f"Peer speaks protocol version {hello.protocol_version}")
        self.peer_name = hello.username
        self.last_activity_time = self._clock()
        self._transition(SessionState.SYNCED)

    def fail_handshake(self, detail: str) -> None:
        logger.warning("Session %s handshake failed: %s", self.id, detail)
        self.close(CLOSE_HANDSHAKE_FAILED)

    def handshake_time_left(self) -> float:
        """Seconds left of the handshake deadline, counted from session start."""
        if self.state not in (SessionState.CONNECTING, SessionState.HANDSHAKING):
            return 0.0
        return max(0.0, self.settings.handshake_timeout_s - (self._clock() - self.started_at))

    def record_activity(self) -> bool:
        """Note an inbound message. Returns True if this brought a Degraded session back."""
        self.last_activity_time = self._clock()
        if self.state == SessionState.DEGRADED:
            self._transition(SessionState.SYNCED)
            logger.info("Session %s recovered", self.id)
            return True
        return False

    def check_liveness(self) -> bool:
        """Degrade a silent Synced session. Returns True if it just degraded."""
        if self.state == SessionState.SYNCED and self.idle_for > self.settings.liveness_window_s:
            self._transition(SessionState.DEGRADED)
            logger.warning("Session %s silent for %.1fs; degraded", self.id, self.idle_for)
            return True
        return False

    def mark_degraded(self, reason: str) -> None:
        if self.state == SessionState.SYNCED:
            self._transition(SessionState.DEGRADED)
            logger.warning("Session %s degraded: %s", self.id, reason)

    def close(self, reason: str = "closed") -> None:
        if self.state == SessionState.CLOSED:
            return
        self._transition(SessionState.CLOSED)
        self.close_reason = reason
        logger.info("Session %s closed: %s", self.id, reason)

    # ---- pings ----

    def make_ping(self) -> Ping:
        sent = self.now_ms()
        self.estimator.record_ping_sent(sent)
        return Ping(sent_time=sent)

    def handle_pong(self, pong: Pong) -> Optional[float]:
        return self.estimator.record_pong_received(self.now_ms(), pong.echoed_sent_time)

    def correction_params(self) -> tuple[float, float]:
        """(delay, tolerance) to reconcile with; conservative while degraded."""
        if self.state == SessionState.DEGRADED or self.estimator.degraded:
            return 0.0, self.settings.degraded_drift_tolerance_s
        return self.estimated_one_way_delay, self.settings.drift_tolerance_s


class Backoff:
    """Capped exponential backoff with a fixed attempt budget."""

    def __init__(self, initial_delay: float, max_delay: float, max_attempts: int, factor: float = 2.0):
        self.initial_delay = initial_delay
        self.max_delay = max_delay
        self.max_attempts = max_attempts
        self.factor = factor
        self.attempt = 0

    def next_delay(self) -> Optional[float]:
        """Delay before the next attempt, or None when the budget is spent."""
        if self.attempt >= self.max_attempts:
            return None
        delay = min(self.max_delay, self.initial_delay * (self.factor ** self.attempt))
        self.attempt += 1
        return delay

    def reset(self) -> None:
        self.attempt = 0
