"""
Gain Update Engine

Per-tune-type gain update algorithms. Each algorithm runs once per completed
test (never per tick), consumes the test's frequency-response point, adjusts
one working gain in the ``GainStore`` and returns the next test frequency
together with a convergence flag.

Algorithms
----------
- **Rate FF up**: scale FF until the target-referenced response gain at the
  dwell frequency sits within ``FF_TARGET_GAIN ± FF_GAIN_TOLERANCE``.
- **Max gains**: locate the 161° (P) and 251° (D) phase points of the
  motor-referenced response and derive the gain ceilings from a fixed gain
  margin of 2.42 dB:

  $$P_{max} = \\frac{10^{-2.42/20}}{|G(f_{161})|}, \\qquad
    D_{max} = \\frac{10^{-2.42/20}}{2\\pi f_{251} |G(f_{251})|}$$

  A response gain at or above ``max_resp_gain`` latches the P ceiling at the
  measured point immediately.
- **Rate P up**: at the 180° point, raise P in steps of 5% of its ceiling
  while the response gain is below ``max_resp_gain``.
- **Rate D up**: at the 180° point, raise D in steps of 5% of its ceiling
  while the response gain keeps falling; step back once it stops.
- **Angle P up**: find the angle-response gain peak, then raise angle P in
  0.5 steps until the peak reaches ``max_resp_gain``.

Gains are never set negative; a negative proposal leaves the previous value.
"""

from dataclasses import dataclass, field
from typing import Dict, List

import numpy as np

from heli_autotune.core.config.autotune_config import Axis, TuneType
from heli_autotune.core.errors import SearchNonConvergence, TuneTestFailure
from heli_autotune.core.frequency_response import (
    FrequencySearch,
    MaxGainRecord,
    SweepInfo,
    SweepProgress,
)


RP_MIN = 0.01
RP_MAX = 2.0
RD_MIN = 0.0
RD_MAX = 0.020
RFF_MIN = 0.025
RFF_MAX = 0.5
SP_MIN = 0.5
SP_MAX = 10.0

FF_TARGET_GAIN = 0.95
FF_GAIN_TOLERANCE = 0.025

MAX_GAIN_P_PHASE = 161.0
MAX_GAIN_D_PHASE = 251.0
RATE_PD_PHASE = 180.0

# 2.42 dB gain margin
GAIN_MARGIN_FACTOR = 10.0 ** (-2.42 / 20.0)

MAX_GAINS_P_FRACTION = 0.35
MAX_GAINS_D_FRACTION = 0.25
RATE_PD_STEP_FRACTION = 0.05
RATE_PD_CEILING_FRACTION = 0.6

MAX_GAINS_FREQ_INCR = 1.0
RATE_PD_FREQ_INCR = 0.25
ANGLE_P_FREQ_INCR = 0.5
ANGLE_P_GAIN_INCR = 0.5
ANGLE_P_PEAK_DROP = 0.9


@dataclass
class UpdateResult:
    """
    Outcome of one gain update.

    Attributes
    ----------
    next_freq : float
        Frequency of the next test [Hz], 0 when converged
    converged : bool
        True once the tune type has finished
    """
    next_freq: float = 0.0
    converged: bool = False


@dataclass
class UpdateGainState:
    """
    State carried between the tests of one tune type.

    The ``found_*`` flags are one-shot latches; they are only cleared by
    building a fresh state between tune types.
    """
    found_max_p: bool = False
    found_max_d: bool = False
    found_max_gain_freq: bool = False
    found_peak: bool = False
    gain_max: float = 0.0
    phase_max: float = 0.0
    freq_max: float = 0.0
    refine_freqs: List[float] = field(default_factory=list)
    sp_prev_gain: float = 0.0
    rd_prev_gain: float = 0.0
    tests: int = 0

    @classmethod
    def fresh(cls) -> 'UpdateGainState':
        return cls()


class GainUpdateEngine:
    """
    Gain update algorithms for the helicopter tune types.

    Parameters
    ----------
    config : AutotuneConfig
        Session configuration (frequency range, response gain threshold,
        update budget)
    """

    def __init__(self, config):
        self.config = config
        self.search = FrequencySearch(config.min_sweep_freq, config.max_sweep_freq)
        self.max_rate_p: Dict[Axis, MaxGainRecord] = {}
        self.max_rate_d: Dict[Axis, MaxGainRecord] = {}
        self.state = UpdateGainState.fresh()

    def reset_update_gain_variables(self) -> None:
        """Clear latches and search history before a new tune type."""
        self.state = UpdateGainState.fresh()
        self.search.reset()

    def reset_maxgains_update_gain_variables(self, axis: Axis) -> None:
        """Forget the max-gain ceilings of ``axis``."""
        self.max_rate_p[axis] = MaxGainRecord()
        self.max_rate_d[axis] = MaxGainRecord()

    def max_gain_p(self, axis: Axis) -> MaxGainRecord:
        return self.max_rate_p.setdefault(axis, MaxGainRecord())

    def max_gain_d(self, axis: Axis) -> MaxGainRecord:
        return self.max_rate_d.setdefault(axis, MaxGainRecord())

    def _count_test(self) -> None:
        self.state.tests += 1
        if self.state.tests > self.config.max_tests_per_tune:
            raise SearchNonConvergence(
                f"no convergence after {self.config.max_tests_per_tune} tests"
            )

    def freq_from_sweep(self, tune_type: TuneType, sweep: SweepProgress) -> float:
        """
        Starting dwell frequency derived from an initial sweep.

        Rate tune types start at the 180° point of the analysed pipeline,
        angle P at its gain peak.

        Raises
        ------
        TuneTestFailure
            If the sweep never reached the required milestone
        """
        if tune_type == TuneType.ANGLE_P_UP:
            if not sweep.maxgain.is_valid:
                raise TuneTestFailure("sweep produced no angle response peak")
            freq = sweep.maxgain.freq
        else:
            if sweep.progress < 1:
                raise TuneTestFailure("sweep never reached 180 deg phase")
            freq = sweep.ph180.freq
        return self.search.check_freq(freq)

    def updating_rate_ff_up(self, store, axis: Axis, point: SweepInfo) -> UpdateResult:
        """
        Adjust rate FF from a target-referenced dwell.

        Far from the target gain (more than 0.2 off) FF is scaled by the gain
        ratio, bounded to ±25%; closer in it moves in 5% and then 2% steps.
        """
        self._count_test()
        dwell_freq = self.config.min_sweep_freq
        if not point.is_valid:
            return UpdateResult(dwell_freq, False)

        gain = point.gain
        error = gain - FF_TARGET_GAIN
        if abs(error) <= FF_GAIN_TOLERANCE:
            return UpdateResult(0.0, True)

        ff = store.tune[axis].rate_ff
        if ff <= 0.0:
            new_ff = RFF_MIN
        elif abs(error) > 0.2:
            scale = FF_TARGET_GAIN / gain if gain > 0.0 else 1.25
            new_ff = ff * float(np.clip(scale, 0.75, 1.25))
        elif abs(error) > 0.1:
            new_ff = ff * (0.95 if error > 0.0 else 1.05)
        else:
            new_ff = ff * (0.98 if error > 0.0 else 1.02)

        if new_ff >= RFF_MAX:
            store.set_tune_value(axis, 'rate_ff', RFF_MAX)
            return UpdateResult(0.0, True)
        store.set_tune_value(axis, 'rate_ff', new_ff)
        return UpdateResult(dwell_freq, False)

    def updating_max_gains(self, store, axis: Axis, point: SweepInfo) -> UpdateResult:
        """
        Find the P and D gain ceilings from motor-referenced dwells.

        On convergence the working P and D are seeded at 35% and 25% of their
        ceilings.
        """
        self._count_test()
        if not point.is_valid:
            return UpdateResult(point.freq, False)

        state = self.state
        rec_p = self.max_gain_p(axis)
        rec_d = self.max_gain_d(axis)
        next_freq = point.freq

        if not state.found_max_p:
            if point.gain >= self.config.max_resp_gain:
                state.found_max_p = True
                rec_p.update(point, self._p_ceiling(point))
                self.search.reset()
            else:
                found, est, next_freq = self.search.freq_search_for_phase(
                    point, MAX_GAIN_P_PHASE, MAX_GAINS_FREQ_INCR
                )
                if found:
                    state.found_max_p = True
                    rec_p.update(est, self._p_ceiling(est))
                    next_freq = est.freq
        elif not state.found_max_d:
            found, est, next_freq = self.search.freq_search_for_phase(
                point, MAX_GAIN_D_PHASE, MAX_GAINS_FREQ_INCR
            )
            if found:
                state.found_max_d = True
                rec_d.update(est, self._d_ceiling(est))

        if state.found_max_p and state.found_max_d:
            store.set_tune_value(axis, 'rate_p', MAX_GAINS_P_FRACTION * rec_p.max_allowed)
            store.set_tune_value(axis, 'rate_d', MAX_GAINS_D_FRACTION * rec_d.max_allowed)
            return UpdateResult(0.0, True)
        return UpdateResult(self.search.check_freq(next_freq), False)

    @staticmethod
    def _p_ceiling(point: SweepInfo) -> float:
        if point.gain <= 0.0:
            return 2.0 * RP_MAX
        return float(min(GAIN_MARGIN_FACTOR / point.gain, 2.0 * RP_MAX))

    @staticmethod
    def _d_ceiling(point: SweepInfo) -> float:
        omega_gain = 2.0 * np.pi * point.freq * point.gain
        if omega_gain <= 0.0:
            return 2.0 * RD_MAX
        return float(min(GAIN_MARGIN_FACTOR / omega_gain, 2.0 * RD_MAX))

    def updating_rate_p_up(self, store, axis: Axis, point: SweepInfo) -> UpdateResult:
        """Raise rate P at the 180° point until the response gain limit is reached."""
        self._count_test()
        if not point.is_valid:
            return UpdateResult(point.freq, False)

        found, est, next_freq = self.search.freq_search_for_phase(
            point, RATE_PD_PHASE, RATE_PD_FREQ_INCR
        )
        if not found:
            return UpdateResult(next_freq, False)

        rec = self.max_gain_p(axis)
        max_allowed = rec.max_allowed if rec.is_set else RP_MAX
        step = RATE_PD_STEP_FRACTION * max_allowed
        p = store.tune[axis].rate_p

        if est.gain > self.config.max_resp_gain:
            store.set_tune_value(axis, 'rate_p', max(p - step, RP_MIN))
            return UpdateResult(0.0, True)
        if p < RATE_PD_CEILING_FRACTION * max_allowed and p < RP_MAX:
            store.set_tune_value(axis, 'rate_p', min(p + step, RP_MAX))
            return UpdateResult(self.search.check_freq(est.freq), False)
        return UpdateResult(0.0, True)

    def updating_rate_d_up(self, store, axis: Axis, point: SweepInfo) -> UpdateResult:
        """Raise rate D at the 180° point while the response gain keeps falling."""
        self._count_test()
        if not point.is_valid:
            return UpdateResult(point.freq, False)

        found, est, next_freq = self.search.freq_search_for_phase(
            point, RATE_PD_PHASE, RATE_PD_FREQ_INCR
        )
        if not found:
            return UpdateResult(next_freq, False)

        state = self.state
        rec = self.max_gain_d(axis)
        max_allowed = rec.max_allowed if rec.is_set else RD_MAX
        step = RATE_PD_STEP_FRACTION * max_allowed
        d = store.tune[axis].rate_d

        gain_falling = state.rd_prev_gain == 0.0 or est.gain < state.rd_prev_gain
        if gain_falling and d < RATE_PD_CEILING_FRACTION * max_allowed and d < RD_MAX:
            state.rd_prev_gain = est.gain
            store.set_tune_value(axis, 'rate_d', min(d + step, RD_MAX))
            return UpdateResult(self.search.check_freq(est.freq), False)

        if not gain_falling:
            # The previous D gave the lowest response gain
            store.set_tune_value(axis, 'rate_d', max(d - step, RD_MIN))
        return UpdateResult(0.0, True)

    def updating_angle_p_up(self, store, axis: Axis, point: SweepInfo) -> UpdateResult:
        """
        Raise angle P until the angle-response peak reaches ``max_resp_gain``.

        The peak is located first: dwells step up in 0.5 Hz increments until
        the gain falls below 90% of the largest seen (``found_max_gain_freq``),
        then the half steps either side of it are checked (``found_peak``).
        All later dwells run at the peak frequency.
        """
        self._count_test()
        if not point.is_valid:
            return UpdateResult(point.freq, False)

        state = self.state
        if not state.found_max_gain_freq:
            self._track_peak(point)
            if point.gain < ANGLE_P_PEAK_DROP * state.gain_max:
                return self._start_peak_refinement()
            next_freq = point.freq + ANGLE_P_FREQ_INCR
            if self.search.exceeded_freq_range(next_freq):
                return self._start_peak_refinement()
            return UpdateResult(next_freq, False)

        if not state.found_peak:
            self._track_peak(point)
            if state.refine_freqs:
                return UpdateResult(state.refine_freqs.pop(0), False)
            state.found_peak = True
            state.sp_prev_gain = 0.0
            return UpdateResult(state.freq_max, False)

        angle_p = store.tune[axis].angle_p
        target = self.config.max_resp_gain
        if point.gain < target:
            if angle_p >= SP_MAX:
                return UpdateResult(0.0, True)
            state.sp_prev_gain = point.gain
            store.set_tune_value(axis, 'angle_p', min(max(angle_p, SP_MIN) + ANGLE_P_GAIN_INCR, SP_MAX))
            return UpdateResult(state.freq_max, False)

        prev_gain = state.sp_prev_gain
        if prev_gain > 0.0 and point.gain > prev_gain:
            # Interpolate between the last two P values to hit the target gain
            prev_p = angle_p - ANGLE_P_GAIN_INCR
            new_p = prev_p + ANGLE_P_GAIN_INCR * (target - prev_gain) / (point.gain - prev_gain)
        else:
            new_p = angle_p - ANGLE_P_GAIN_INCR
        store.set_tune_value(axis, 'angle_p', float(np.clip(new_p, SP_MIN, SP_MAX)))
        return UpdateResult(0.0, True)

    def _track_peak(self, point: SweepInfo) -> None:
        state = self.state
        if point.gain > state.gain_max:
            state.gain_max = point.gain
            state.phase_max = point.phase
            state.freq_max = point.freq

    def _start_peak_refinement(self) -> UpdateResult:
        state = self.state
        state.found_max_gain_freq = True
        half_step = 0.5 * ANGLE_P_FREQ_INCR
        state.refine_freqs = [
            f for f in (state.freq_max - half_step, state.freq_max + half_step)
            if not self.search.exceeded_freq_range(f)
        ]
        if state.refine_freqs:
            return UpdateResult(state.refine_freqs.pop(0), False)
        state.found_peak = True
        return UpdateResult(self.search.check_freq(state.freq_max), False)
