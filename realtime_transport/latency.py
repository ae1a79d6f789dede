# =============================================================================
# Realtime Transport -- Latency Sampler
# =============================================================================
#
# Bounded ring of recent round-trip samples -> average and quality.
# =============================================================================

from __future__ import annotations

import time
from collections import deque

from .constants import (
    LATENCY_WINDOW_SIZE,
    QUALITY_EXCELLENT_JITTER,
    QUALITY_EXCELLENT_LATENCY,
    QUALITY_FAIR_JITTER,
    QUALITY_FAIR_LATENCY,
    QUALITY_GOOD_JITTER,
    QUALITY_GOOD_LATENCY,
)
from .types import ConnectionQuality, LatencySample


class LatencySampler:
    """Keep the most recent round-trip times, oldest evicted first."""

    def __init__(self, window_size: int = LATENCY_WINDOW_SIZE) -> None:
        self._samples: deque[LatencySample] = deque(maxlen=window_size)

    def record(self, latency_ms: int) -> LatencySample:
        sample = LatencySample(timestamp=int(time.time() * 1000), latency=latency_ms)
        self._samples.append(sample)
        return sample

    @property
    def samples(self) -> list[LatencySample]:
        return list(self._samples)

    @property
    def last(self) -> int | None:
        return self._samples[-1].latency if self._samples else None

    @property
    def average(self) -> int | None:
        """Rounded mean of the retained samples, ``None`` when empty."""
        if not self._samples:
            return None
        return round(sum(s.latency for s in self._samples) / len(self._samples))

    @property
    def jitter(self) -> float:
        """Average absolute difference between consecutive samples."""
        lats = [s.latency for s in self._samples]
        if len(lats) < 2:
            return 0.0
        diffs = [abs(lats[i] - lats[i - 1]) for i in range(1, len(lats))]
        return round(sum(diffs) / len(diffs), 2)

    @property
    def quality(self) -> ConnectionQuality:
        if len(self._samples) < 2:
            return ConnectionQuality.UNKNOWN

        avg = self.average or 0
        jitter = self.jitter

        if avg <= QUALITY_EXCELLENT_LATENCY and jitter <= QUALITY_EXCELLENT_JITTER:
            return ConnectionQuality.EXCELLENT
        if avg <= QUALITY_GOOD_LATENCY and jitter <= QUALITY_GOOD_JITTER:
            return ConnectionQuality.GOOD
        if avg <= QUALITY_FAIR_LATENCY and jitter <= QUALITY_FAIR_JITTER:
            return ConnectionQuality.FAIR
        return ConnectionQuality.POOR

    def __len__(self) -> int:
        return len(self._samples)

    def reset(self) -> None:
        self._samples.clear()
