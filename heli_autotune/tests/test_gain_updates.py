"""
Unit tests for the gain store, the gain update algorithms and the
helicopter tune strategy.

The update algorithms are driven with hand-built frequency-response points
so every step of each search can be checked exactly.
"""

import numpy as np
import pytest
import sys
from dataclasses import replace
from pathlib import Path

# Add repository root to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent.parent))

from heli_autotune.core.config import AutotuneConfig, Axis, TuneType
from heli_autotune.core.errors import (
    FrequencyRangeExceeded,
    SearchNonConvergence,
    TuneTestFailure,
    UnsupportedTuneType,
)
from heli_autotune.core.frequency_response import (
    FreqRespCalcType,
    ResponseType,
    SweepInfo,
    SweepProgress,
)
from heli_autotune.core.tuning import (
    AngleGains,
    GainSetKind,
    GainStore,
    GainUpdateEngine,
    HeliTuneStrategy,
    RateGains,
    TuneGains,
    VehicleControl,
)
from heli_autotune.core.tuning.gain_updates import (
    GAIN_MARGIN_FACTOR,
    MAX_GAINS_D_FRACTION,
    MAX_GAINS_P_FRACTION,
    RFF_MAX,
    RFF_MIN,
)


class RecordingVehicle(VehicleControl):
    """In-memory controller gains that log every write."""

    def __init__(self):
        self.rate = {
            Axis.ROLL: RateGains(p=0.1, i=0.08, d=0.002, ff=0.15, flt_t=20.0, flt_e=10.0, smax=50.0),
            Axis.PITCH: RateGains(p=0.12, i=0.1, d=0.003, ff=0.18, flt_t=20.0, flt_e=10.0, smax=50.0),
        }
        self.angle = {
            Axis.ROLL: AngleGains(p=4.5, max_accel=15.0, max_rate=0.0),
            Axis.PITCH: AngleGains(p=5.0, max_accel=15.0, max_rate=0.0),
        }
        self.writes = []
        self.saved = {}

    def get_rate_gains(self, axis):
        return replace(self.rate[axis])

    def set_rate_gains(self, axis, gains):
        self.rate[axis] = replace(gains)
        self.writes.append(('rate', axis))

    def get_angle_gains(self, axis):
        return replace(self.angle[axis])

    def set_angle_gains(self, axis, gains):
        self.angle[axis] = replace(gains)
        self.writes.append(('angle', axis))

    def save_gains(self, axis, rate, angle):
        self.saved[axis] = (rate, angle)


@pytest.fixture
def vehicle():
    return RecordingVehicle()


@pytest.fixture
def store(vehicle):
    store = GainStore(vehicle, [Axis.ROLL, Axis.PITCH])
    store.backup_gains_and_initialise()
    return store


@pytest.fixture
def engine():
    return GainUpdateEngine(AutotuneConfig())


class TestGainStore:
    """Gain set switching and working values."""

    def test_backup_seeds_working_values(self, store):
        assert store.active == GainSetKind.ORIG
        tune = store.tune[Axis.ROLL]
        assert tune.rate_p == 0.1
        assert tune.rate_ff == 0.15
        assert tune.angle_p == 4.5
        assert tune.max_accel == 15.0

    def test_ff_test_gains_are_open_loop(self, store):
        gains = store.test_gain_set(Axis.ROLL, TuneType.RATE_FF_UP)
        assert gains.rate.p == 0.0
        assert gains.rate.i == 0.0
        assert gains.rate.d == 0.0
        assert gains.rate.ff == 0.15
        assert gains.rate.flt_t == 20.0
        assert gains.rate.flt_e == 0.0
        assert gains.rate.smax == 0.0

    def test_max_gains_test_has_no_integrator(self, store):
        gains = store.test_gain_set(Axis.ROLL, TuneType.MAX_GAINS)
        assert gains.rate.i == 0.0
        assert gains.rate.p == 0.1
        assert gains.rate.d == 0.002

    def test_rate_test_integrator_follows_ff(self, store):
        gains = store.test_gain_set(Axis.ROLL, TuneType.RATE_P_UP)
        assert gains.rate.i == pytest.approx(0.075)

    def test_every_switch_writes_whole_group(self, store, vehicle):
        vehicle.writes.clear()
        store.load_test_gains(Axis.ROLL, TuneType.RATE_D_UP)
        assert vehicle.writes == [('rate', Axis.ROLL), ('angle', Axis.ROLL)]
        assert store.active == GainSetKind.TEST

    def test_intra_test_keeps_other_axes_original(self, store, vehicle):
        store.set_tune_value(Axis.PITCH, 'rate_p', 0.3)
        store.load_intra_test_gains(Axis.ROLL)
        assert vehicle.rate[Axis.PITCH].p == 0.12
        assert store.active == GainSetKind.INTRA_TEST

    def test_load_orig_restores_backup(self, store, vehicle):
        store.set_tune_value(Axis.ROLL, 'rate_p', 0.5)
        store.load_test_gains(Axis.ROLL, TuneType.RATE_P_UP)
        assert vehicle.rate[Axis.ROLL].p == 0.5
        store.load_orig_gains()
        assert vehicle.rate[Axis.ROLL] == RateGains(
            p=0.1, i=0.08, d=0.002, ff=0.15, flt_t=20.0, flt_e=10.0, smax=50.0
        )

    @pytest.mark.parametrize("value", [-0.01, np.nan])
    def test_invalid_values_rejected(self, store, value):
        assert not store.set_tune_value(Axis.ROLL, 'rate_d', value)
        assert store.tune[Axis.ROLL].rate_d == 0.002

    def test_snapshot_restore(self, store):
        snap = store.snapshot_tune(Axis.ROLL)
        store.set_tune_value(Axis.ROLL, 'rate_ff', 0.3)
        store.restore_tune(Axis.ROLL, snap)
        assert store.tune[Axis.ROLL].rate_ff == 0.15

    def test_tuned_set_and_save(self, store, vehicle):
        tuned = TuneGains(rate_p=0.2, rate_d=0.004, rate_ff=0.16, angle_p=6.0, max_accel=12.0)
        gains = store.set_axis_tuned(Axis.ROLL, tuned)
        assert gains.rate.i == pytest.approx(0.08)
        # Filters and slew limit carry over from the originals
        assert gains.rate.flt_e == 10.0
        assert gains.angle.max_accel == 12.0

        store.load_tuned_gains()
        assert vehicle.rate[Axis.ROLL].p == 0.2
        # Pitch was never tuned and keeps its original gains
        assert vehicle.rate[Axis.PITCH].p == 0.12

        store.save_tuning_gains()
        assert set(vehicle.saved) == {Axis.ROLL}
        assert vehicle.saved[Axis.ROLL][1].p == 6.0


class TestRateFFUpdate:
    """Feed-forward dwell updates."""

    def test_within_tolerance_converges(self, engine, store):
        result = engine.updating_rate_ff_up(store, Axis.ROLL, SweepInfo(1.0, 0.96, 10.0))
        assert result.converged
        assert store.tune[Axis.ROLL].rate_ff == 0.15

    def test_large_error_scaled_with_limit(self, engine, store):
        result = engine.updating_rate_ff_up(store, Axis.ROLL, SweepInfo(1.0, 0.5, 10.0))
        assert not result.converged
        assert result.next_freq == 1.0
        assert store.tune[Axis.ROLL].rate_ff == pytest.approx(0.15 * 1.25)

    def test_medium_error_five_percent(self, engine, store):
        engine.updating_rate_ff_up(store, Axis.ROLL, SweepInfo(1.0, 1.1, 10.0))
        assert store.tune[Axis.ROLL].rate_ff == pytest.approx(0.15 * 0.95)

    def test_small_error_two_percent(self, engine, store):
        engine.updating_rate_ff_up(store, Axis.ROLL, SweepInfo(1.0, 0.9, 10.0))
        assert store.tune[Axis.ROLL].rate_ff == pytest.approx(0.15 * 1.02)

    def test_zero_ff_starts_at_minimum(self, engine, store):
        store.set_tune_value(Axis.ROLL, 'rate_ff', 0.0)
        engine.updating_rate_ff_up(store, Axis.ROLL, SweepInfo(1.0, 0.1, 10.0))
        assert store.tune[Axis.ROLL].rate_ff == RFF_MIN

    def test_ceiling_converges(self, engine, store):
        store.set_tune_value(Axis.ROLL, 'rate_ff', 0.45)
        result = engine.updating_rate_ff_up(store, Axis.ROLL, SweepInfo(1.0, 0.5, 10.0))
        assert result.converged
        assert store.tune[Axis.ROLL].rate_ff == RFF_MAX

    def test_invalid_point_repeats_dwell(self, engine, store):
        result = engine.updating_rate_ff_up(store, Axis.ROLL, SweepInfo(1.0, np.nan, np.nan))
        assert not result.converged
        assert result.next_freq == 1.0
        assert store.tune[Axis.ROLL].rate_ff == 0.15


class TestMaxGainsUpdate:
    """Gain ceilings from the 161 and 251 degree points."""

    def test_high_gain_latches_p_ceiling(self, engine, store):
        """A response at the gain limit fixes the P ceiling at the measured point."""
        result = engine.updating_max_gains(store, Axis.ROLL, SweepInfo(5.0, 1.2, 150.0))
        assert not result.converged
        assert result.next_freq == 6.0

        result = engine.updating_max_gains(store, Axis.ROLL, SweepInfo(7.0, 2.3, 175.0))
        assert engine.state.found_max_p
        rec_p = engine.max_gain_p(Axis.ROLL)
        assert rec_p.freq == 7.0
        assert rec_p.max_allowed == pytest.approx(GAIN_MARGIN_FACTOR / 2.3)
        assert result.next_freq == 7.0

        # D search: below 251 steps up, then the bracket is interpolated
        result = engine.updating_max_gains(store, Axis.ROLL, SweepInfo(7.0, 0.8, 200.0))
        assert result.next_freq == 8.0
        result = engine.updating_max_gains(store, Axis.ROLL, SweepInfo(9.0, 0.5, 255.0))
        assert result.converged

        ratio = 51.0 / 55.0
        freq = 7.0 + 2.0 * ratio
        gain = 0.8 - 0.3 * ratio
        rec_d = engine.max_gain_d(Axis.ROLL)
        assert rec_d.freq == pytest.approx(freq)
        assert rec_d.max_allowed == pytest.approx(GAIN_MARGIN_FACTOR / (2.0 * np.pi * freq * gain))

        tune = store.tune[Axis.ROLL]
        assert tune.rate_p == pytest.approx(MAX_GAINS_P_FRACTION * rec_p.max_allowed)
        assert tune.rate_d == pytest.approx(MAX_GAINS_D_FRACTION * rec_d.max_allowed)

    def test_phase_found_within_tolerance(self, engine, store):
        engine.updating_max_gains(store, Axis.ROLL, SweepInfo(5.0, 0.9, 160.0))
        assert engine.state.found_max_p
        assert engine.max_gain_p(Axis.ROLL).max_allowed == pytest.approx(GAIN_MARGIN_FACTOR / 0.9)

    def test_step_beyond_range_fails(self, engine, store):
        with pytest.raises(FrequencyRangeExceeded):
            engine.updating_max_gains(store, Axis.ROLL, SweepInfo(12.0, 0.9, 120.0))

    def test_test_budget(self, store):
        engine = GainUpdateEngine(AutotuneConfig(max_tests_per_tune=2))
        engine.updating_max_gains(store, Axis.ROLL, SweepInfo(3.0, 0.9, 100.0))
        engine.updating_max_gains(store, Axis.ROLL, SweepInfo(4.0, 0.9, 110.0))
        with pytest.raises(SearchNonConvergence):
            engine.updating_max_gains(store, Axis.ROLL, SweepInfo(5.0, 0.9, 120.0))

    def test_reset_clears_latches_not_ceilings(self, engine, store):
        engine.updating_max_gains(store, Axis.ROLL, SweepInfo(5.0, 0.9, 160.0))
        engine.reset_update_gain_variables()
        assert not engine.state.found_max_p
        assert engine.max_gain_p(Axis.ROLL).is_set
        engine.reset_maxgains_update_gain_variables(Axis.ROLL)
        assert not engine.max_gain_p(Axis.ROLL).is_set


class TestRatePDUpdate:
    """Rate P and D steps at the 180 degree point."""

    def test_rate_p_steps_then_backs_off(self, engine, store):
        engine.max_gain_p(Axis.ROLL).update(SweepInfo(6.0, 1.5, 161.0), 0.5)
        result = engine.updating_rate_p_up(store, Axis.ROLL, SweepInfo(5.0, 1.0, 181.0))
        assert not result.converged
        assert result.next_freq == 5.0
        assert store.tune[Axis.ROLL].rate_p == pytest.approx(0.125)

        result = engine.updating_rate_p_up(store, Axis.ROLL, SweepInfo(5.0, 1.5, 180.0))
        assert result.converged
        assert store.tune[Axis.ROLL].rate_p == pytest.approx(0.1)

    def test_rate_p_stops_at_ceiling_fraction(self, engine, store):
        engine.max_gain_p(Axis.ROLL).update(SweepInfo(6.0, 1.5, 161.0), 0.5)
        store.set_tune_value(Axis.ROLL, 'rate_p', 0.35)
        result = engine.updating_rate_p_up(store, Axis.ROLL, SweepInfo(5.0, 1.0, 180.0))
        assert result.converged
        assert store.tune[Axis.ROLL].rate_p == 0.35

    def test_rate_p_searches_phase_first(self, engine, store):
        result = engine.updating_rate_p_up(store, Axis.ROLL, SweepInfo(5.0, 1.0, 160.0))
        assert not result.converged
        assert result.next_freq == 5.25
        assert store.tune[Axis.ROLL].rate_p == 0.1

    def test_rate_d_raised_while_gain_falls(self, engine, store):
        engine.max_gain_d(Axis.ROLL).update(SweepInfo(9.0, 0.5, 251.0), 0.02)
        engine.updating_rate_d_up(store, Axis.ROLL, SweepInfo(5.0, 1.0, 180.0))
        assert store.tune[Axis.ROLL].rate_d == pytest.approx(0.003)
        engine.updating_rate_d_up(store, Axis.ROLL, SweepInfo(5.0, 0.9, 180.0))
        assert store.tune[Axis.ROLL].rate_d == pytest.approx(0.004)

        result = engine.updating_rate_d_up(store, Axis.ROLL, SweepInfo(5.0, 0.95, 180.0))
        assert result.converged
        assert store.tune[Axis.ROLL].rate_d == pytest.approx(0.003)


class TestAnglePUpdate:
    """Peak location and angle P increase."""

    def test_peak_then_p_interpolation(self, engine, store):
        steps = [
            (SweepInfo(3.0, 1.0, 60.0), 3.5),
            (SweepInfo(3.5, 1.1, 80.0), 4.0),
            # Gain below 90% of the peak ends the coarse search
            (SweepInfo(4.0, 0.95, 100.0), 3.25),
            (SweepInfo(3.25, 1.05, 70.0), 3.75),
            (SweepInfo(3.75, 1.12, 90.0), 3.75),
        ]
        for point, expected_freq in steps:
            result = engine.updating_angle_p_up(store, Axis.ROLL, point)
            assert not result.converged
            assert result.next_freq == pytest.approx(expected_freq)
        assert engine.state.found_peak
        assert engine.state.freq_max == 3.75
        assert engine.state.gain_max == 1.12
        assert engine.state.phase_max == 90.0

        result = engine.updating_angle_p_up(store, Axis.ROLL, SweepInfo(3.75, 1.2, 90.0))
        assert store.tune[Axis.ROLL].angle_p == pytest.approx(5.0)
        assert result.next_freq == 3.75

        result = engine.updating_angle_p_up(store, Axis.ROLL, SweepInfo(3.75, 1.6, 90.0))
        assert result.converged
        assert store.tune[Axis.ROLL].angle_p == pytest.approx(4.75)

    def test_freq_from_sweep(self, engine):
        sweep = SweepProgress()
        with pytest.raises(TuneTestFailure):
            engine.freq_from_sweep(TuneType.RATE_P_UP, sweep)
        for point in (SweepInfo(2.0, 0.8, 40.0), SweepInfo(3.0, 1.3, 120.0), SweepInfo(5.5, 1.0, 182.0)):
            sweep.update(point)
        assert engine.freq_from_sweep(TuneType.RATE_P_UP, sweep) == 5.5
        assert engine.freq_from_sweep(TuneType.ANGLE_P_UP, sweep) == 3.0


class TestHeliTuneStrategy:
    """Helicopter capabilities, backoff and excitation limits."""

    @pytest.fixture
    def strategy(self):
        return HeliTuneStrategy()

    def test_down_tune_types_unsupported(self, strategy):
        with pytest.raises(UnsupportedTuneType):
            strategy.set_tune_sequence(0, [TuneType.RATE_D_DOWN])
        with pytest.raises(UnsupportedTuneType):
            strategy.test_config(TuneType.ANGLE_P_DOWN)

    def test_backoff_never_raises_gain(self, strategy, store):
        for tune_type in (TuneType.RATE_FF_UP, TuneType.RATE_P_UP, TuneType.RATE_D_UP, TuneType.ANGLE_P_UP):
            name = strategy.TUNED_FIELD[tune_type]
            raw = getattr(store.tune[Axis.ROLL], name)
            value = strategy.set_tuning_gains_with_backoff(store, Axis.ROLL, tune_type)
            assert value <= raw
        assert store.tune[Axis.ROLL].rate_ff == 0.15
        assert store.tune[Axis.ROLL].rate_p == pytest.approx(0.09)
        assert strategy.set_tuning_gains_with_backoff(store, Axis.ROLL, TuneType.MAX_GAINS) is None

    def test_rate_excitation_limits(self, strategy):
        config = AutotuneConfig()
        cfg = strategy.test_config(TuneType.MAX_GAINS)
        # Low frequency is rate limited, high frequency acceleration limited
        assert strategy.excitation_amplitude(config, Axis.ROLL, cfg, 1.0) == pytest.approx(np.deg2rad(50.0))
        assert strategy.excitation_amplitude(config, Axis.ROLL, cfg, 10.0) == pytest.approx(
            np.deg2rad(720.0) / (2.0 * np.pi * 10.0)
        )

    def test_angle_excitation_limits(self, strategy):
        config = AutotuneConfig()
        cfg = strategy.test_config(TuneType.ANGLE_P_UP)
        assert cfg.resp_type == ResponseType.ANGLE
        assert strategy.excitation_amplitude(config, Axis.ROLL, cfg, 0.5) == pytest.approx(np.deg2rad(15.0))
        assert strategy.excitation_amplitude(config, Axis.ROLL, cfg, 5.0) == pytest.approx(
            np.deg2rad(720.0) / (2.0 * np.pi * 5.0) ** 2
        )

    def test_rate_pd_tests_use_disturbance(self, strategy):
        assert strategy.test_config(TuneType.RATE_P_UP).calc_type == FreqRespCalcType.DRB
        assert strategy.test_config(TuneType.RATE_D_UP).sweep_first

    def test_filter_frequency_below_nyquist(self, strategy):
        assert strategy.filter_frequency(AutotuneConfig()) == pytest.approx(36.0)
        config = AutotuneConfig(loop_rate_hz=50.0, max_sweep_freq=12.0)
        assert strategy.filter_frequency(config) == pytest.approx(20.0)
