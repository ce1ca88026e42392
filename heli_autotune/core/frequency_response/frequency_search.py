"""
Frequency Search for a Target Phase

Step-and-interpolate search used by the max-gain, rate P and rate D tune
types to find the frequency at which the closed-loop response reaches a
desired phase lag.

Search Rule
-----------
1. A measurement within ``PHASE_TOLERANCE_DEG`` of the desired phase is
   accepted as is.
2. Once two consecutive measurements bracket the desired phase, frequency
   and gain are linearly interpolated in phase between them:

   $$f^* = f_a + (\\phi^* - \\phi_a) \\frac{f_b - f_a}{\\phi_b - \\phi_a}$$

3. Otherwise the frequency is stepped by ``freq_incr`` towards the desired
   phase (up when the lag is too small, down when it is too large).

A step that would leave [min_sweep_freq, max_sweep_freq] raises
``FrequencyRangeExceeded``; the candidate is never clamped. The number of
steps is bounded by ceil((max - min) / freq_incr) + 2, after which
``SearchNonConvergence`` is raised.
"""

import numpy as np
from typing import Optional, Tuple

from heli_autotune.core.errors import FrequencyRangeExceeded, SearchNonConvergence
from .freq_resp_estimator import SweepInfo


PHASE_TOLERANCE_DEG = 2.5


class FrequencySearch:
    """
    Phase search state shared by the search-based gain updates.

    Parameters
    ----------
    min_sweep_freq : float
        Lowest allowed test frequency [Hz]
    max_sweep_freq : float
        Highest allowed test frequency [Hz]
    phase_tolerance_deg : float
        Accept a measured point this close to the desired phase [deg]
    """

    def __init__(
        self,
        min_sweep_freq: float,
        max_sweep_freq: float,
        phase_tolerance_deg: float = PHASE_TOLERANCE_DEG
    ):
        self.min_sweep_freq = min_sweep_freq
        self.max_sweep_freq = max_sweep_freq
        self.phase_tolerance_deg = phase_tolerance_deg
        self.prev_test: Optional[SweepInfo] = None
        self.steps = 0

    def reset(self) -> None:
        """Forget the previous measurement and the step count."""
        self.prev_test = None
        self.steps = 0

    def exceeded_freq_range(self, frequency: float) -> bool:
        """True if ``frequency`` lies outside the inclusive search range."""
        return frequency < self.min_sweep_freq or frequency > self.max_sweep_freq

    def check_freq(self, frequency: float) -> float:
        """Return ``frequency`` unchanged, raising if it is out of range."""
        if self.exceeded_freq_range(frequency):
            raise FrequencyRangeExceeded(frequency, self.min_sweep_freq, self.max_sweep_freq)
        return frequency

    def max_steps(self, freq_incr: float) -> int:
        return int(np.ceil((self.max_sweep_freq - self.min_sweep_freq) / freq_incr)) + 2

    def freq_search_for_phase(
        self,
        test: SweepInfo,
        desired_phase: float,
        freq_incr: float
    ) -> Tuple[bool, SweepInfo, float]:
        """
        Advance the search with one measured point.

        Parameters
        ----------
        test : SweepInfo
            Latest measurement
        desired_phase : float
            Target phase lag [deg]
        freq_incr : float
            Frequency step while the phase is not yet bracketed [Hz]

        Returns
        -------
        found : bool
            True once the desired phase has been located
        est_data : SweepInfo
            Estimated response at the desired phase (``test`` when not found)
        new_freq : float
            Next frequency to test [Hz]

        Raises
        ------
        FrequencyRangeExceeded
            If the next step leaves the allowed range
        SearchNonConvergence
            If the step budget is used up
        """
        if freq_incr <= 0.0:
            raise ValueError("freq_incr must be positive")
        self.check_freq(test.freq)

        if abs(test.phase - desired_phase) <= self.phase_tolerance_deg:
            self.reset()
            return True, SweepInfo(test.freq, test.gain, test.phase), test.freq

        prev = self.prev_test
        if prev is not None and (prev.phase - desired_phase) * (test.phase - desired_phase) < 0.0:
            ratio = (desired_phase - prev.phase) / (test.phase - prev.phase)
            est = SweepInfo(
                freq=prev.freq + ratio * (test.freq - prev.freq),
                gain=prev.gain + ratio * (test.gain - prev.gain),
                phase=desired_phase
            )
            self.reset()
            return True, est, est.freq

        self.steps += 1
        if self.steps > self.max_steps(freq_incr):
            raise SearchNonConvergence(
                f"phase {desired_phase:.0f} deg not bracketed after {self.steps - 1} steps"
            )

        if test.phase < desired_phase:
            new_freq = test.freq + freq_incr
        else:
            new_freq = test.freq - freq_incr
        self.check_freq(new_freq)

        self.prev_test = test
        return False, test, new_freq
