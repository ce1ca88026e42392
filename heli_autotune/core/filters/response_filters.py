"""
Response Filter Bank

Single-pole low-pass filters used to condition the command, response and
target signals of a frequency-response test.

Two kinds of filtering are applied to every signal:

1. **Noise filter** at the per-test ``filt_freq`` (well above the excitation
   frequency) to attenuate sensor noise.
2. **Trim tracker** at ``0.2 × start_freq``. Subtracting the tracker output
   from the noise-filtered signal recenters the oscillation about zero so the
   estimator only sees the response to the excitation, not slow drift or trim.

The same pair of filters is applied to the input and the output of each
estimator pipeline, so their gain and phase contributions cancel in the
response ratio.

First-order low-pass filter:
    H(s) = ωc / (s + ωc)

Discrete implementation:
    y[k] = y[k-1] + α * (x[k] - y[k-1])
    where α = dt / (dt + τ), τ = 1/ωc
"""

import numpy as np
from dataclasses import dataclass
from typing import Union


class LowPassFilter:
    """
    Single-pole low-pass filter for a scalar signal.

    A cutoff of zero or less disables the filter (output follows input).

    Parameters
    ----------
    sample_rate_hz : float
        Rate at which ``apply`` is called [Hz]
    cutoff_hz : float
        Filter cutoff frequency [Hz]
    """

    def __init__(self, sample_rate_hz: float, cutoff_hz: float = 0.0):
        self.sample_rate_hz = sample_rate_hz
        self.cutoff_hz = cutoff_hz
        self._alpha = self._compute_alpha()
        self._output = self._zero()
        self._initialised = False

    def _zero(self):
        return 0.0

    def _compute_alpha(self) -> float:
        if self.cutoff_hz <= 0.0 or self.sample_rate_hz <= 0.0:
            return 1.0
        dt = 1.0 / self.sample_rate_hz
        tau = 1.0 / (2.0 * np.pi * self.cutoff_hz)
        return dt / (dt + tau)

    def set_cutoff_frequency(self, sample_rate_hz: float, cutoff_hz: float) -> None:
        """Change the cutoff without touching the filter state."""
        self.sample_rate_hz = sample_rate_hz
        self.cutoff_hz = cutoff_hz
        self._alpha = self._compute_alpha()

    def apply(self, sample):
        """Filter one sample and return the new output."""
        if not self._initialised:
            self.reset(sample)
            return self._output
        self._output = self._output + self._alpha * (sample - self._output)
        return self._output

    def reset(self, value=None) -> None:
        """Load the filter state with ``value`` (zero when omitted)."""
        if value is None:
            self._output = self._zero()
            self._initialised = False
        else:
            self._output = self._copy(value)
            self._initialised = True

    def _copy(self, value):
        return float(value)

    @property
    def output(self):
        return self._output

    @property
    def alpha(self) -> float:
        return self._alpha


class LowPassFilter2D(LowPassFilter):
    """Single-pole low-pass filter for a 2-element vector signal."""

    def _zero(self):
        return np.zeros(2)

    def _copy(self, value):
        return np.array(value, dtype=float).reshape(2)

    def apply(self, sample) -> np.ndarray:
        return super().apply(np.asarray(sample, dtype=float).reshape(2))

    @property
    def output(self) -> np.ndarray:
        return self._output.copy()


@dataclass
class FilteredSample:
    """Recentered signals for one tick [command units, rad/s or rad]."""
    command: float
    output: float
    target: float


class ResponseFilterBank:
    """
    Filters applied to the raw command, response and target signals of a test.

    The response slot filters whichever quantity the current test analyses:
    body rate for rate and disturbance tests, attitude for angle tests.

    Attributes
    ----------
    command_filt, rate_filt, target_rate_filt : LowPassFilter
        Noise filters at the test ``filt_freq``
    filt_command_reading, filt_gyro_reading, filt_tgt_rate_reading : LowPassFilter
        Trim trackers at 0.2 × test start frequency
    filt_att_fdbk_from_velxy : LowPassFilter2D
        Velocity-hold attitude feedback [rad]
    """

    TRIM_CUTOFF_RATIO = 0.2
    VEL_FDBK_CUTOFF_HZ = 0.1

    def __init__(self, sample_rate_hz: float):
        self.sample_rate_hz = sample_rate_hz

        self.command_filt = LowPassFilter(sample_rate_hz)
        self.rate_filt = LowPassFilter(sample_rate_hz)
        self.target_rate_filt = LowPassFilter(sample_rate_hz)

        self.filt_command_reading = LowPassFilter(sample_rate_hz)
        self.filt_gyro_reading = LowPassFilter(sample_rate_hz)
        self.filt_tgt_rate_reading = LowPassFilter(sample_rate_hz)

        self.filt_att_fdbk_from_velxy = LowPassFilter2D(sample_rate_hz, self.VEL_FDBK_CUTOFF_HZ)

    def configure(self, start_freq: float, filt_freq: float) -> None:
        """
        Set cutoffs for the upcoming test.

        Parameters
        ----------
        start_freq : float
            Lowest excitation frequency of the test [Hz]
        filt_freq : float
            Noise filter cutoff [Hz]
        """
        trim_cutoff = self.TRIM_CUTOFF_RATIO * start_freq
        for filt in (self.command_filt, self.rate_filt, self.target_rate_filt):
            filt.set_cutoff_frequency(self.sample_rate_hz, filt_freq)
        for filt in (self.filt_command_reading, self.filt_gyro_reading, self.filt_tgt_rate_reading):
            filt.set_cutoff_frequency(self.sample_rate_hz, trim_cutoff)

    def reset(self, command: float, output: float, target: float) -> None:
        """
        Reload every filter with the current raw sample.

        Called at the start of every dwell or sweep so transients from the
        previous test cannot bias the first cycles of the new one.
        """
        self.command_filt.reset(command)
        self.rate_filt.reset(output)
        self.target_rate_filt.reset(target)
        self.filt_command_reading.reset(command)
        self.filt_gyro_reading.reset(output)
        self.filt_tgt_rate_reading.reset(target)
        self.filt_att_fdbk_from_velxy.reset(np.zeros(2))

    def apply(self, command: float, output: float, target: float) -> FilteredSample:
        """Noise-filter and recenter one tick of raw signals."""
        command_nf = self.command_filt.apply(command)
        output_nf = self.rate_filt.apply(output)
        target_nf = self.target_rate_filt.apply(target)

        return FilteredSample(
            command=command_nf - self.filt_command_reading.apply(command_nf),
            output=output_nf - self.filt_gyro_reading.apply(output_nf),
            target=target_nf - self.filt_tgt_rate_reading.apply(target_nf),
        )

    def update_att_fdbk(
        self,
        velocity_xy: Union[np.ndarray, list],
        vel_hold_gain: float
    ) -> np.ndarray:
        """
        Attitude correction that holds position during a test.

        Parameters
        ----------
        velocity_xy : array-like
            Body-frame forward/right ground velocity [m/s]
        vel_hold_gain : float
            Attitude per unit velocity [rad/(m/s)]

        Returns
        -------
        np.ndarray
            (roll, pitch) correction [rad]
        """
        vel = np.asarray(velocity_xy, dtype=float).reshape(2)
        # Rightward drift is countered by rolling left, forward drift by pitching up
        raw = vel_hold_gain * np.array([-vel[1], vel[0]])
        return self.filt_att_fdbk_from_velxy.apply(raw)
