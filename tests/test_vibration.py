"""Tests for the accelerometer pipeline and per-segment roughness statistics."""

import math

import numpy as np
import pytest

from roadsense.config import SurveyConfig
from roadsense.models import AccelerationReading, Condition
from roadsense.vibration import STANDARD_GRAVITY, RoughnessAnalyzer, VibrationSignalProcessor


def feed(processor, zs, x=0.0, y=0.0):
    return [processor.process(x, y, z) for z in zs]


class TestVibrationSignalProcessor:

    def test_at_rest_reads_zero(self):
        """A device lying still produces no roughness."""
        p = VibrationSignalProcessor()
        values = feed(p, [STANDARD_GRAVITY] * 200)
        assert values[-1] == pytest.approx(0.0, abs=1e-12)
        assert p.linear_acceleration == pytest.approx((0.0, 0.0, 0.0), abs=1e-12)

    def test_step_produces_decaying_response(self):
        """A sudden 1 g step shows up and then fades as the filter tracks it."""
        p = VibrationSignalProcessor(window_size=5)
        feed(p, [STANDARD_GRAVITY] * 50)
        feed(p, [2 * STANDARD_GRAVITY])
        first = p.linear_acceleration[2]
        assert first == pytest.approx(1.0 - 0.15)
        assert p.roughness > 0

        feed(p, [2 * STANDARD_GRAVITY] * 200)
        assert p.linear_acceleration[2] == pytest.approx(0.0, abs=1e-6)
        assert p.roughness == pytest.approx(0.0, abs=1e-6)

    def test_running_rms_matches_recompute(self):
        """The O(1) running sum agrees with a direct RMS over the window."""
        rng = np.random.default_rng(0)
        window = 20
        p = VibrationSignalProcessor(window_size=window)
        linear_z = []
        for z in STANDARD_GRAVITY + rng.normal(0, 3.0, 500):
            roughness = p.process(0.0, 0.0, float(z))
            linear_z.append(abs(p.linear_acceleration[2]))
            recent = np.asarray(linear_z[-window:])
            assert roughness == pytest.approx(float(np.sqrt(np.mean(recent**2))), rel=1e-9, abs=1e-12)

    def test_gravity_seeded_from_first_reading(self):
        """A device mounted on its side does not read as a huge first impact."""
        p = VibrationSignalProcessor()
        p.process(STANDARD_GRAVITY, 0.0, 0.0)
        assert p.roughness == 0.0
        assert p.magnitude == 0.0

    def test_history_bounded_fifo(self):
        p = VibrationSignalProcessor(window_size=1, history_size=5)
        rng = np.random.default_rng(1)
        values = feed(p, STANDARD_GRAVITY + rng.normal(0, 2.0, 12))
        assert p.history == values[-5:]
        assert p.sample_count == 12

    def test_unavailable_source(self):
        """Without an accelerometer every output is zero and nothing raises."""
        p = VibrationSignalProcessor(available=False)
        assert p.process(1.0, 2.0, 30.0) == 0.0
        assert p.roughness == 0.0
        assert p.linear_acceleration == (0.0, 0.0, 0.0)
        assert p.history == []

    def test_losing_source_resets_metrics(self):
        p = VibrationSignalProcessor()
        feed(p, [STANDARD_GRAVITY, 3 * STANDARD_GRAVITY])
        assert p.roughness > 0
        p.set_available(False)
        assert p.roughness == 0.0
        assert p.history == []
        assert p.sample_count == 0

    def test_non_finite_dropped(self):
        p = VibrationSignalProcessor()
        feed(p, [STANDARD_GRAVITY, 2 * STANDARD_GRAVITY])
        before = p.roughness
        assert p.process(0.0, 0.0, math.nan) == before
        assert p.process(math.inf, 0.0, STANDARD_GRAVITY) == before
        assert p.sample_count == 2

    def test_magnitude(self):
        p = VibrationSignalProcessor()
        p.process(0.0, 0.0, 0.0)
        p.process(3.0, 4.0, 0.0)
        x, y, z = p.linear_acceleration
        assert p.magnitude == pytest.approx(math.sqrt(x * x + y * y + z * z))
        assert p.magnitude > 0

    def test_process_reading(self):
        p = VibrationSignalProcessor()
        assert p.process_reading(AccelerationReading(0, 0.0, 0.0, STANDARD_GRAVITY)) == 0.0

    def test_from_config(self):
        config = SurveyConfig(lowpass_alpha=0.3, roughness_window=7, history_size=11)
        p = VibrationSignalProcessor.from_config(config)
        assert (p.alpha, p.window_size, p.history_size) == (0.3, 7, 11)

    @pytest.mark.parametrize("alpha", [0.0, 1.0, -0.1, 1.5])
    def test_bad_alpha(self, alpha):
        with pytest.raises(ValueError):
            VibrationSignalProcessor(alpha=alpha)

    def test_roughness_never_negative(self):
        rng = np.random.default_rng(2)
        p = VibrationSignalProcessor()
        values = feed(p, rng.normal(0, 1e6, 1000), x=1e-12)
        assert min(values) >= 0.0


class TestRoughnessAnalyzer:

    def test_rms(self):
        assert RoughnessAnalyzer.rms([0.2, 0.4]) == pytest.approx(math.sqrt(0.1))
        assert RoughnessAnalyzer.rms([]) == 0.0

    def test_magnitude_rms_truncates(self):
        """Axes of unequal length are cut to the shortest one."""
        value = RoughnessAnalyzer.magnitude_rms([3.0, 99.0], [4.0], [0.0, 0.0, 0.0])
        assert value == pytest.approx(5.0)
        assert RoughnessAnalyzer.magnitude_rms([], [1.0], [1.0]) == 0.0

    def test_consistency(self):
        assert RoughnessAnalyzer.consistency([0.5, 0.5, 0.5]) == 1.0
        assert RoughnessAnalyzer.consistency([]) == 0.0
        assert RoughnessAnalyzer.consistency([0.0, 2.0]) == pytest.approx(0.5)

    @pytest.mark.parametrize("rms, expected", [
        (0.0, Condition.GOOD),
        (0.299, Condition.GOOD),
        (0.3, Condition.FAIR),
        (0.599, Condition.FAIR),
        (0.6, Condition.LIGHTLY_DAMAGED),
        (0.999, Condition.LIGHTLY_DAMAGED),
        (1.0, Condition.SEVERELY_DAMAGED),
        (5.0, Condition.SEVERELY_DAMAGED),
    ])
    def test_classify_boundaries(self, rms, expected):
        assert RoughnessAnalyzer().classify(rms) is expected

    def test_custom_thresholds(self):
        analyzer = RoughnessAnalyzer((0.1, 0.2, 0.3))
        assert analyzer.classify(0.15) is Condition.FAIR

    @pytest.mark.parametrize("thresholds", [(0.6, 0.3, 1.0), (0.3, 0.3, 1.0), (0.3, 0.6)])
    def test_bad_thresholds(self, thresholds):
        with pytest.raises(ValueError):
            RoughnessAnalyzer(thresholds)
