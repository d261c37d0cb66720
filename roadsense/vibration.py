"""
Vibration signal processing.

VibrationSignalProcessor turns a stream of raw 3-axis accelerometer readings
into a smoothed roughness value in g:

  1. Low-pass each axis to track gravity:  g = α·sample + (1-α)·g
  2. Linear acceleration = (sample - g) / 9.80665
  3. Sliding window of |linear Z|, running sum of squares → RMS in O(1)

RoughnessAnalyzer reduces a segment's worth of roughness values to a single
RMS magnitude, a consistency score and a condition label.
"""

import logging
import math
import threading
from collections import deque

import numpy as np

from .config import (
    DEFAULT_CONDITION_THRESHOLDS,
    DEFAULT_HISTORY_SIZE,
    DEFAULT_LOWPASS_ALPHA,
    DEFAULT_ROUGHNESS_WINDOW,
)
from .models import AccelerationReading, Condition

logger = logging.getLogger(__name__)

STANDARD_GRAVITY = 9.80665  # m/s²


# ===== Signal Processor =====

class VibrationSignalProcessor:
    """Gravity removal and windowed RMS over a live accelerometer stream.

    Readings arrive on the sensor thread; the roughness value, the latest
    linear acceleration and the rolling history are read from other threads,
    so every update and read happens under one lock.
    """

    def __init__(self, alpha: float = DEFAULT_LOWPASS_ALPHA,
                 window_size: int = DEFAULT_ROUGHNESS_WINDOW,
                 history_size: int = DEFAULT_HISTORY_SIZE,
                 available: bool = True):
        if not 0.0 < alpha < 1.0:
            raise ValueError(f"alpha must be in (0, 1), got {alpha}")
        if window_size <= 0 or history_size <= 0:
            raise ValueError("window_size and history_size must be positive")

        self.alpha = alpha
        self.window_size = window_size
        self.history_size = history_size
        self._available = available
        self._lock = threading.Lock()
        self._reset_state()

    def _reset_state(self):
        self._gravity = None
        self._linear = (0.0, 0.0, 0.0)
        self._window = deque()
        self._sum_sq = 0.0
        self._roughness = 0.0
        self._history = deque(maxlen=self.history_size)
        self._sample_count = 0

    @classmethod
    def from_config(cls, config, available: bool = True) -> "VibrationSignalProcessor":
        return cls(alpha=config.lowpass_alpha, window_size=config.roughness_window,
                   history_size=config.history_size, available=available)

    # --- state ---

    @property
    def available(self) -> bool:
        return self._available

    def set_available(self, available: bool):
        """Mark the acceleration source as present or missing.

        Losing the source clears all derived metrics back to zero.
        """
        with self._lock:
            if not available and self._available:
                logger.warning("Acceleration source unavailable, roughness metrics reset")
            self._available = available
            if not available:
                self._reset_state()

    def reset(self):
        with self._lock:
            self._reset_state()

    # --- input ---

    def process(self, x: float, y: float, z: float) -> float:
        """Feed one raw reading (m/s²). Returns the updated roughness in g."""
        if not self._available:
            return 0.0
        if not (math.isfinite(x) and math.isfinite(y) and math.isfinite(z)):
            logger.debug("Dropping non-finite acceleration reading (%s, %s, %s)", x, y, z)
            return self.roughness

        with self._lock:
            sample = (x, y, z)
            if self._gravity is None:
                # Seed with the first reading so the filter starts settled
                self._gravity = sample
            else:
                a = self.alpha
                self._gravity = tuple(a * s + (1.0 - a) * g
                                      for s, g in zip(sample, self._gravity))

            self._linear = tuple((s - g) / STANDARD_GRAVITY
                                 for s, g in zip(sample, self._gravity))

            value = abs(self._linear[2])
            self._window.append(value)
            self._sum_sq += value * value
            if len(self._window) > self.window_size:
                old = self._window.popleft()
                self._sum_sq -= old * old
            # Guard against accumulated rounding pushing the sum below zero
            self._sum_sq = max(self._sum_sq, 0.0)

            self._roughness = math.sqrt(self._sum_sq / len(self._window))
            self._history.append(self._roughness)
            self._sample_count += 1
            return self._roughness

    def process_reading(self, reading: AccelerationReading) -> float:
        return self.process(reading.x, reading.y, reading.z)

    # --- outputs ---

    @property
    def roughness(self) -> float:
        """Current smoothed roughness (g RMS of |linear Z| over the window)."""
        with self._lock:
            return self._roughness if self._available else 0.0

    @property
    def linear_acceleration(self) -> tuple:
        """Latest gravity-removed acceleration (x, y, z) in g."""
        with self._lock:
            return self._linear if self._available else (0.0, 0.0, 0.0)

    @property
    def magnitude(self) -> float:
        """Instantaneous 3-axis magnitude of the linear acceleration in g."""
        x, y, z = self.linear_acceleration
        return math.sqrt(x * x + y * y + z * z)

    @property
    def history(self) -> list:
        """Rolling roughness history, oldest first, at most history_size points."""
        with self._lock:
            return list(self._history)

    @property
    def sample_count(self) -> int:
        with self._lock:
            return self._sample_count


# ===== Segment Analysis =====

class RoughnessAnalyzer:
    """Aggregate statistics over a segment's roughness samples."""

    def __init__(self, thresholds: tuple = DEFAULT_CONDITION_THRESHOLDS):
        thresholds = tuple(float(t) for t in thresholds)
        if len(thresholds) != 3 or not thresholds[0] < thresholds[1] < thresholds[2]:
            raise ValueError(f"thresholds must be 3 ascending values, got {thresholds}")
        self.thresholds = thresholds

    @staticmethod
    def rms(samples) -> float:
        if len(samples) == 0:
            return 0.0
        s = np.asarray(samples, dtype=np.float64)
        return float(np.sqrt(np.mean(s**2)))

    @staticmethod
    def magnitude_rms(x, y, z) -> float:
        """RMS of per-index vector magnitudes, truncated to the shortest axis."""
        n = min(len(x), len(y), len(z))
        if n == 0:
            return 0.0
        ax = np.asarray(x[:n], dtype=np.float64)
        ay = np.asarray(y[:n], dtype=np.float64)
        az = np.asarray(z[:n], dtype=np.float64)
        magnitudes = np.sqrt(ax**2 + ay**2 + az**2)
        return float(np.sqrt(np.mean(magnitudes**2)))

    @staticmethod
    def consistency(samples) -> float:
        """1 / (1 + stddev): 1.0 for a perfectly steady signal, towards 0 as it scatters."""
        if len(samples) == 0:
            return 0.0
        std = float(np.std(np.asarray(samples, dtype=np.float64)))
        return 1.0 / (1.0 + std)

    def classify(self, rms: float) -> Condition:
        good, fair, light = self.thresholds
        if rms < good:
            return Condition.GOOD
        elif rms < fair:
            return Condition.FAIR
        elif rms < light:
            return Condition.LIGHTLY_DAMAGED
        else:
            return Condition.SEVERELY_DAMAGED
