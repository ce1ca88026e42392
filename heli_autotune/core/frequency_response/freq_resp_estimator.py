"""
Frequency-Response Estimator

Estimates closed-loop gain and phase at the excitation frequency from
recentered, tick-by-tick samples, for one input/output pipeline.

Methodology: Single-Bin DFT Correlation
---------------------------------------
Each sample is correlated against the excitation's own accumulated phase θ
(known exactly from the excitation generator), so no external
synchronisation with the test signal is needed and each tick does a constant
amount of work:

$$X = \\sum_k x[k] \\, e^{-j\\theta_k}$$

For an input u and output y the response is

$$G = Y / U, \\quad |G| = |Y| / |U|, \\quad \\text{lag} = -\\angle G$$

Phase is reported as a positive output lag in degrees.

Dwell Tests
-----------
The excitation phase is divided into whole cycles. The first
``pre_calc_cycles`` are discarded as settling; the correlation runs over the
remaining cycles up to ``num_dwell_cycles``. ``cycle_complete`` is only set
once the final cycle ends and the point is frozen from then on.

Sweep Tests
-----------
A point is produced at the end of every excitation cycle (after the
pre-calculation cycles), tagged with the instantaneous frequency at that
tick. Successive sweep phases are unwrapped against the previous cycle so the
lag can grow continuously past 180° and 270°.
"""

import numpy as np
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Optional

from heli_autotune.core.errors import EstimateNotReady


class FreqRespInput(Enum):
    """Reference the response is measured against."""
    MOTOR = auto()      # Mixer input for the axis
    TARGET = auto()     # Commanded target rate or angle


class FreqRespCalcType(Enum):
    """Physical quantity being frequency-analysed."""
    RATE = auto()       # Body rate response
    ANGLE = auto()      # Attitude response
    DRB = auto()        # Body rate response to a disturbance injected at the mixer


class InputType(Enum):
    """Excitation waveform kind."""
    DWELL = auto()
    SWEEP = auto()


class ResponseType(Enum):
    """Which target the excitation drives."""
    RATE = auto()
    ANGLE = auto()


@dataclass(frozen=True)
class SweepInfo:
    """
    Frequency response at one test frequency.

    Attributes
    ----------
    freq : float
        Excitation frequency [Hz]
    gain : float
        Output amplitude / input amplitude
    phase : float
        Output lag relative to input [deg]
    """
    freq: float = 0.0
    gain: float = 0.0
    phase: float = 0.0

    @property
    def is_valid(self) -> bool:
        return bool(np.isfinite(self.gain) and np.isfinite(self.phase) and self.freq > 0.0)


@dataclass
class MaxGainRecord:
    """
    Frequency and gain at which instability risk was detected.

    ``max_allowed`` is the resulting gain ceiling. The record is only replaced
    by a point that yields a lower (more conservative) ceiling.
    """
    freq: float = 0.0
    phase: float = 0.0
    gain: float = 0.0
    max_allowed: float = 0.0

    @property
    def is_set(self) -> bool:
        return self.freq > 0.0

    def update(self, point: SweepInfo, max_allowed: float) -> bool:
        """
        Record ``point`` if it gives a lower ceiling than the stored one.

        Returns
        -------
        bool
            True if the record changed
        """
        if self.is_set and not max_allowed < self.max_allowed:
            return False
        self.freq = point.freq
        self.phase = point.phase
        self.gain = point.gain
        self.max_allowed = max_allowed
        return True

    def reset(self) -> None:
        self.freq = 0.0
        self.phase = 0.0
        self.gain = 0.0
        self.max_allowed = 0.0


@dataclass
class SweepProgress:
    """
    Overall characteristics of the response to a frequency sweep.

    progress: 0 = start, 1 = phase reached 180°, 2 = phase reached 270°.
    """
    maxgain: SweepInfo = field(default_factory=SweepInfo)
    ph180: SweepInfo = field(default_factory=SweepInfo)
    ph270: SweepInfo = field(default_factory=SweepInfo)
    progress: int = 0

    def update(self, point: SweepInfo) -> bool:
        """
        Fold one sweep point into the record.

        Returns
        -------
        bool
            True if ``progress`` advanced
        """
        if not point.is_valid:
            return False
        if point.gain > self.maxgain.gain:
            self.maxgain = point
        if self.progress == 0 and point.phase >= 180.0:
            self.ph180 = point
            self.progress = 1
            return True
        if self.progress == 1 and point.phase >= 270.0:
            self.ph270 = point
            self.progress = 2
            return True
        return False

    def reset(self) -> None:
        self.maxgain = SweepInfo()
        self.ph180 = SweepInfo()
        self.ph270 = SweepInfo()
        self.progress = 0


class FreqRespEstimator:
    """
    Gain and phase estimator for one response pipeline.

    Example Usage
    -------------
    >>> est = FreqRespEstimator()
    >>> est.init(InputType.DWELL, num_dwell_cycles=4, pre_calc_cycles=2)
    >>> for u, y, theta, f in samples:
    ...     est.update(u, y, theta, f)
    ...     if est.cycle_complete:
    ...         point = est.get_point()

    Parameters
    ----------
    phase_floor_deg : float
        Lower edge of the 360° window dwell phases are wrapped into
    """

    def __init__(self, phase_floor_deg: float = -45.0):
        self.phase_floor_deg = phase_floor_deg
        self.input_type = InputType.DWELL
        self.num_dwell_cycles = 0
        self.pre_calc_cycles = 0
        self.reset()

    def init(self, input_type: InputType, num_dwell_cycles: int, pre_calc_cycles: int) -> None:
        """Prepare for a new test and clear all accumulators."""
        self.input_type = input_type
        self.num_dwell_cycles = int(num_dwell_cycles)
        self.pre_calc_cycles = int(pre_calc_cycles)
        self.reset()

    def reset(self) -> None:
        self._cycle = 0
        self._sum_u = 0j
        self._sum_y = 0j
        self._n_samples = 0
        self._cycles_measured = 0
        self._point: Optional[SweepInfo] = None
        self._prev_phase: Optional[float] = None
        self._last_freq = 0.0
        self._finished = False
        self.cycle_complete = False

    def update(
        self,
        input_value: float,
        output_value: float,
        excitation_phase_rad: float,
        frequency: float
    ) -> None:
        """
        Process one recentered sample.

        Parameters
        ----------
        input_value : float
            Recentered input (command or target)
        output_value : float
            Recentered response (rate or angle)
        excitation_phase_rad : float
            Accumulated excitation phase at this sample [rad]
        frequency : float
            Instantaneous excitation frequency [Hz]
        """
        if self._finished:
            return

        cycle = int(excitation_phase_rad // (2.0 * np.pi))
        if cycle != self._cycle:
            self._on_cycle_end()
            self._cycle = cycle
            if self._finished:
                return

        self._last_freq = frequency
        if self._cycle < self._first_measured_cycle:
            return

        basis = np.exp(-1j * excitation_phase_rad)
        self._sum_u += input_value * basis
        self._sum_y += output_value * basis
        self._n_samples += 1

    @property
    def _first_measured_cycle(self) -> int:
        return self.pre_calc_cycles

    def _on_cycle_end(self) -> None:
        if self._cycle < self._first_measured_cycle or self._n_samples == 0:
            return

        self._cycles_measured += 1
        if self.input_type == InputType.SWEEP:
            self._point = self._compute_point(unwrap=True)
            self.cycle_complete = True
            self._sum_u = 0j
            self._sum_y = 0j
            self._n_samples = 0
        elif self._cycle + 1 >= self.num_dwell_cycles:
            self._point = self._compute_point(unwrap=False)
            self.cycle_complete = True
            self._finished = True

    def _compute_point(self, unwrap: bool) -> SweepInfo:
        if np.abs(self._sum_u) < 1e-12:
            return SweepInfo(freq=self._last_freq, gain=np.nan, phase=np.nan)

        response = self._sum_y / self._sum_u
        gain = float(np.abs(response))
        lag = float(-np.rad2deg(np.angle(response)))
        lag = (lag - self.phase_floor_deg) % 360.0 + self.phase_floor_deg

        if unwrap and self._prev_phase is not None:
            lag += 360.0 * np.round((self._prev_phase - lag) / 360.0)
        if unwrap:
            self._prev_phase = lag

        return SweepInfo(freq=self._last_freq, gain=gain, phase=lag)

    def finish(self) -> None:
        """Close out the dwell cycle in progress when the excitation record ends."""
        if self._finished:
            return
        if self.input_type == InputType.DWELL:
            self._on_cycle_end()
        self._finished = True

    def get_point(self) -> SweepInfo:
        """
        Latest completed estimate.

        Raises
        ------
        EstimateNotReady
            If no cycle set has completed yet
        """
        if self._point is None:
            raise EstimateNotReady(
                f"frequency response incomplete: {self._cycle} of "
                f"{self.num_dwell_cycles} cycles"
            )
        return self._point

    def reset_cycle_complete(self) -> None:
        self.cycle_complete = False

    @property
    def cycles_measured(self) -> int:
        """Cycles that contributed to the estimate."""
        return self._cycles_measured
