"""
Unit tests for the frequency-response estimator, sweep tracking and the
phase search.

Synthetic responses with known gain and lag are fed through the estimator
at the scheduler rate; the estimates must recover them.
"""

import numpy as np
import pytest
import sys
from pathlib import Path

# Add repository root to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent.parent))

from heli_autotune.core.errors import (
    EstimateNotReady,
    FrequencyRangeExceeded,
    SearchNonConvergence,
)
from heli_autotune.core.excitation import ExcitationGenerator
from heli_autotune.core.frequency_response import (
    FreqRespCalcType,
    FreqRespEstimator,
    FreqRespInput,
    FrequencySearch,
    InputType,
    MaxGainRecord,
    ResponseType,
    SweepInfo,
    SweepProgress,
)


LOOP_RATE_HZ = 400.0


def run_dwell(est, freq, gain, lag_deg, n_ticks):
    """Feed a dwell with output = gain * sin(theta - lag)."""
    lag = np.deg2rad(lag_deg)
    for k in range(n_ticks):
        # Half-sample offset keeps samples off the cycle boundaries
        t = (k + 0.5) / LOOP_RATE_HZ
        theta = 2.0 * np.pi * freq * t
        est.update(np.sin(theta), gain * np.sin(theta - lag), theta, freq)


class TestDwellEstimate:
    """Gain and phase recovery from a constant-frequency dwell."""

    @pytest.fixture
    def est(self):
        est = FreqRespEstimator()
        est.init(InputType.DWELL, num_dwell_cycles=4, pre_calc_cycles=2)
        return est

    def test_not_ready_before_final_cycle(self, est):
        # 10 Hz at 400 Hz: 40 ticks per cycle, stop inside the last cycle
        run_dwell(est, 10.0, 0.8, 30.0, 150)
        assert not est.cycle_complete
        with pytest.raises(EstimateNotReady):
            est.get_point()

    def test_known_gain_and_phase(self, est):
        run_dwell(est, 10.0, 0.8, 30.0, 170)
        assert est.cycle_complete
        point = est.get_point()
        assert point.freq == 10.0
        assert point.gain == pytest.approx(0.8, rel=1e-3)
        assert point.phase == pytest.approx(30.0, abs=0.1)
        assert est.cycles_measured == 2

    def test_point_frozen_after_completion(self, est):
        run_dwell(est, 10.0, 0.8, 30.0, 170)
        first = est.get_point()
        est.update(5.0, -5.0, 2.0 * np.pi * 10.5, 10.0)
        assert est.get_point() == first

    @pytest.mark.parametrize("lag_deg, expected", [
        (200.0, 200.0),
        (-20.0, -20.0),
        (330.0, -30.0),
    ])
    def test_phase_wrap_window(self, est, lag_deg, expected):
        run_dwell(est, 10.0, 1.0, lag_deg, 170)
        assert est.get_point().phase == pytest.approx(expected, abs=0.1)

    def test_finish_closes_last_cycle(self, est):
        # Record ends exactly at the fourth cycle boundary
        run_dwell(est, 10.0, 1.2, 45.0, 160)
        assert not est.cycle_complete
        est.finish()
        assert est.cycle_complete
        assert est.get_point().gain == pytest.approx(1.2, rel=1e-3)

    def test_zero_input_gives_invalid_point(self, est):
        for k in range(170):
            theta = 2.0 * np.pi * 10.0 * (k + 0.5) / LOOP_RATE_HZ
            est.update(0.0, np.sin(theta), theta, 10.0)
        assert not est.get_point().is_valid


class TestSweepEstimate:
    """Per-cycle points from an exponential chirp through a pure delay."""

    DELAY_S = 0.05

    @pytest.fixture
    def points(self):
        gen = ExcitationGenerator(sweep_time_ms=23000.0)
        gen.init(2.0, 20.0, 1.0, 60.0, FreqRespInput.MOTOR, FreqRespCalcType.RATE,
                 ResponseType.RATE, InputType.SWEEP)
        est = FreqRespEstimator()
        est.init(InputType.SWEEP, num_dwell_cycles=0, pre_calc_cycles=1)

        points = []
        dt_ms = 1000.0 / LOOP_RATE_HZ
        delay_ms = 1000.0 * self.DELAY_S
        for t_ms in np.arange(0.0, 23000.0, dt_ms):
            theta = gen.phase_at(t_ms)
            y = np.sin(gen.phase_at(t_ms - delay_ms)) if t_ms >= delay_ms else 0.0
            est.update(np.sin(theta), y, theta, gen.frequency_at(t_ms))
            if est.cycle_complete:
                points.append(est.get_point())
                est.reset_cycle_complete()
        return points

    def test_point_every_cycle(self, points):
        assert len(points) > 100
        freqs = np.array([p.freq for p in points])
        assert np.all(np.diff(freqs) > 0.0)

    def test_unity_gain(self, points):
        gains = np.array([p.gain for p in points[5:]])
        assert np.all(np.abs(gains - 1.0) < 0.15)

    def test_phase_unwraps_past_270(self, points):
        phases = np.array([p.phase for p in points])
        assert np.all(np.diff(phases) > -10.0)
        assert phases[-1] > 315.0
        # Lag of a pure delay is 360 f tau
        mid = points[len(points) // 2]
        assert mid.phase == pytest.approx(360.0 * mid.freq * self.DELAY_S, abs=10.0)


class TestSweepMilestones:
    """A 2-20 Hz sweep through a delay that lags 180° at the 9 s point."""

    CROSSING_MS = 9000.0

    @pytest.fixture
    def tracked(self):
        gen = ExcitationGenerator(sweep_time_ms=23000.0)
        gen.init(2.0, 20.0, 1.0, 60.0, FreqRespInput.MOTOR, FreqRespCalcType.RATE,
                 ResponseType.RATE, InputType.SWEEP)
        est = FreqRespEstimator()
        est.init(InputType.SWEEP, num_dwell_cycles=0, pre_calc_cycles=1)
        sweep = SweepProgress()

        delay_ms = 1000.0 * 0.5 / gen.frequency_at(self.CROSSING_MS)
        dt_ms = 1000.0 / LOOP_RATE_HZ
        advanced_at = []
        for t_ms in np.arange(0.0, 16000.0, dt_ms):
            theta = gen.phase_at(t_ms)
            y = np.sin(gen.phase_at(t_ms - delay_ms)) if t_ms >= delay_ms else 0.0
            est.update(np.sin(theta), y, theta, gen.frequency_at(t_ms))
            if est.cycle_complete:
                if sweep.update(est.get_point()):
                    advanced_at.append((float(t_ms), sweep.progress))
                est.reset_cycle_complete()
        return gen, sweep, advanced_at

    def test_progress_reaches_180_near_crossing(self, tracked):
        _, _, advanced_at = tracked
        t_ms, progress = advanced_at[0]
        assert progress == 1
        assert t_ms == pytest.approx(self.CROSSING_MS, abs=500.0)

    def test_ph180_frequency_matches_sweep(self, tracked):
        gen, sweep, _ = tracked
        assert sweep.ph180.freq == pytest.approx(gen.frequency_at(self.CROSSING_MS), abs=0.3)
        assert sweep.ph180.phase == pytest.approx(180.0, abs=15.0)
        assert sweep.ph180.gain == pytest.approx(1.0, abs=0.15)


class TestSweepProgress:
    """Milestones reached over a sweep."""

    def test_progress_is_monotonic(self):
        sweep = SweepProgress()
        assert sweep.update(SweepInfo(3.0, 1.1, 120.0)) is False
        assert sweep.update(SweepInfo(5.2, 1.5, 181.0)) is True
        assert sweep.progress == 1
        # A later point below 180 cannot move progress back
        assert sweep.update(SweepInfo(5.5, 1.4, 175.0)) is False
        assert sweep.progress == 1
        assert sweep.update(SweepInfo(9.0, 0.4, 272.0)) is True
        assert sweep.progress == 2
        assert sweep.ph180.freq == 5.2
        assert sweep.ph270.freq == 9.0

    def test_max_gain_tracked(self):
        sweep = SweepProgress()
        for point in (SweepInfo(2.0, 1.0, 20.0), SweepInfo(4.0, 1.8, 90.0), SweepInfo(6.0, 0.9, 200.0)):
            sweep.update(point)
        assert sweep.maxgain.freq == 4.0
        assert sweep.maxgain.gain == 1.8

    def test_skips_straight_to_180_only(self):
        sweep = SweepProgress()
        # One point past 270 reaches 180 first; 270 needs another point
        sweep.update(SweepInfo(9.0, 0.5, 280.0))
        assert sweep.progress == 1
        assert sweep.ph270.freq == 0.0

    def test_invalid_points_ignored(self):
        sweep = SweepProgress()
        assert sweep.update(SweepInfo(5.0, np.nan, 190.0)) is False
        assert sweep.progress == 0

    def test_reset(self):
        sweep = SweepProgress()
        sweep.update(SweepInfo(5.0, 1.0, 190.0))
        sweep.reset()
        assert sweep.progress == 0
        assert sweep.ph180 == SweepInfo()


class TestMaxGainRecord:
    """The ceiling record only moves to more conservative values."""

    def test_first_update_sets(self):
        record = MaxGainRecord()
        assert not record.is_set
        assert record.update(SweepInfo(6.0, 1.5, 161.0), 0.4)
        assert record.is_set
        assert record.max_allowed == 0.4

    def test_only_lower_ceiling_replaces(self):
        record = MaxGainRecord()
        record.update(SweepInfo(6.0, 1.5, 161.0), 0.4)
        assert not record.update(SweepInfo(7.0, 1.2, 161.0), 0.5)
        assert record.freq == 6.0
        assert record.update(SweepInfo(7.0, 1.9, 161.0), 0.3)
        assert record.freq == 7.0

    def test_repeat_update_is_idempotent(self):
        record = MaxGainRecord()
        point = SweepInfo(6.0, 1.5, 161.0)
        record.update(point, 0.4)
        assert not record.update(point, 0.4)
        assert record.max_allowed == 0.4


class TestFrequencySearch:
    """Step-and-interpolate search for a target phase."""

    @pytest.fixture
    def search(self):
        return FrequencySearch(min_sweep_freq=1.0, max_sweep_freq=12.0)

    def test_range_is_inclusive(self, search):
        assert not search.exceeded_freq_range(1.0)
        assert not search.exceeded_freq_range(12.0)
        assert search.exceeded_freq_range(12.01)
        assert search.exceeded_freq_range(0.99)

    def test_within_tolerance_accepted(self, search):
        found, est, new_freq = search.freq_search_for_phase(SweepInfo(5.0, 1.3, 182.0), 180.0, 1.0)
        assert found
        assert est.freq == 5.0
        assert new_freq == 5.0

    def test_steps_towards_phase(self, search):
        found, _, new_freq = search.freq_search_for_phase(SweepInfo(5.0, 1.3, 150.0), 180.0, 1.0)
        assert not found
        assert new_freq == 6.0
        found, _, new_freq = search.freq_search_for_phase(SweepInfo(5.0, 1.3, 210.0), 180.0, 1.0)
        assert not found
        assert new_freq == 4.0

    def test_bracket_interpolates(self, search):
        search.freq_search_for_phase(SweepInfo(5.0, 1.0, 150.0), 180.0, 1.0)
        found, est, new_freq = search.freq_search_for_phase(SweepInfo(6.0, 2.0, 190.0), 180.0, 1.0)
        assert found
        assert est.freq == pytest.approx(5.75)
        assert est.gain == pytest.approx(1.75)
        assert est.phase == 180.0
        assert new_freq == pytest.approx(5.75)
        # Search state is cleared after a find
        assert search.prev_test is None

    def test_step_out_of_range_raises(self, search):
        with pytest.raises(FrequencyRangeExceeded) as exc_info:
            search.freq_search_for_phase(SweepInfo(12.0, 0.9, 100.0), 180.0, 1.0)
        assert exc_info.value.frequency == 13.0

    def test_measurement_out_of_range_raises(self, search):
        with pytest.raises(FrequencyRangeExceeded):
            search.freq_search_for_phase(SweepInfo(0.5, 0.9, 100.0), 180.0, 1.0)

    def test_step_budget_bounded(self, search):
        budget = search.max_steps(1.0)
        assert budget == 13
        point = SweepInfo(5.0, 1.0, 100.0)
        for _ in range(budget):
            search.freq_search_for_phase(point, 180.0, 1.0)
        with pytest.raises(SearchNonConvergence):
            search.freq_search_for_phase(point, 180.0, 1.0)

    def test_nonpositive_increment_rejected(self, search):
        with pytest.raises(ValueError):
            search.freq_search_for_phase(SweepInfo(5.0, 1.0, 100.0), 180.0, 0.0)
