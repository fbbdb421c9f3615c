"""voyeurs one-way delay estimation from Ping/Pong round trips."""
from __future__ import annotations
import statistics
from collections import OrderedDict, deque
from typing import Optional


class ClockEstimator:
    """
    Smoothed one-way network delay for a single connection.

    Times handed in are integer milliseconds on the local session clock
    (the same clock that stamped the outgoing Ping). The delay estimate is
    an EWMA of rtt/2; RTTs far above the running estimate are kept out of
    the average and, when they keep coming, flag the link as degraded.
    """

    OUTLIER_FLOOR_MS = 5.0  # never call an RTT below this an outlier
    MAX_OUTSTANDING = 32

    def __init__(
        self,
        alpha: float = 0.2,
        window: int = 8,
        outlier_factor: float = 3.0,
        outlier_limit: int = 3,
    ) -> None:
        if not 0.0 < alpha <= 1.0:
            raise ValueError("alpha must be in (0, 1]")
        if window < 1:
            raise ValueError("window must be >= 1")
        self.alpha = alpha
        self.outlier_factor = outlier_factor
        self.outlier_limit = outlier_limit
        self._window = window
        self.rtt_samples: deque[float] = deque(maxlen=window)
        self._outliers: deque[float] = deque(maxlen=window)
        self._outstanding: OrderedDict[int, None] = OrderedDict()
        self._rtt_ms: Optional[float] = None
        self.degraded = False

    def record_ping_sent(self, sent_ms: int) -> None:
        self._outstanding[sent_ms] = None
        while len(self._outstanding) > self.MAX_OUTSTANDING:
            self._outstanding.popitem(last=False)

    def record_pong_received(self, now_ms: int, echoed_ms: int) -> Optional[float]:
        """Returns the measured RTT in ms, or None for a pong we never asked for."""
        if echoed_ms not in self._outstanding:
            return None
        del self._outstanding[echoed_ms]
        rtt = float(max(0, now_ms - echoed_ms))
        self.rtt_samples.append(rtt)
        self._add_sample(rtt)
        return rtt

    def _add_sample(self, rtt: float) -> None:
        if self._rtt_ms is None:
            self._rtt_ms = rtt
            return
        limit = self._rtt_ms * self.outlier_factor
        if rtt > limit and rtt > self.OUTLIER_FLOOR_MS:
            self._outliers.append(rtt)
            if len(self._outliers) >= self.outlier_limit:
                self.degraded = True
            # A whole window of outliers means the path itself changed
            if len(self._outliers) >= self._window:
                self._rtt_ms = statistics.median(self._outliers)
                self._outliers.clear()
                self.degraded = False
            return
        self._outliers.clear()
        self.degraded = False
        self._rtt_ms = self.alpha * rtt + (1.0 - self.alpha) * self._rtt_ms

    @property
    def rtt_ms(self) -> Optional[float]:
        return self._rtt_ms

    @property
    def one_way_delay_ms(self) -> float:
        if self._rtt_ms is None:
            return 0.0
        return self._rtt_ms / 2.0

    def estimate_one_way_delay(self) -> float:
        """Current one-way delay estimate in seconds (0.0 before any sample)."""
        return self.one_way_delay_ms / 1000.0

    @property
    def sample_count(self) -> int:
        return len(self.rtt_samples)
