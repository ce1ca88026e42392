"""
Excitation Generator

Produces the test signal injected into the command path, one sample per
scheduler tick.

Waveforms
---------
**Dwell**: constant-frequency sine for ``num_dwell_cycles`` cycles.

$$x(t) = A \\sin(2\\pi f t)$$

**Sweep**: exponential chirp from f0 to f1 over a fixed record length T.
The instantaneous frequency is a deterministic, monotonically increasing
function of elapsed time:

$$f(t) = f_0 \\left(\\frac{f_1}{f_0}\\right)^{t/T}$$

with accumulated phase

$$\\theta(t) = \\frac{2\\pi f_0 T}{B} \\left(e^{B t / T} - 1\\right), \\quad B = \\ln(f_1/f_0)$$

The amplitude fades out with a raised-cosine window over the last 10% of
the record; the frequency law is unaffected.

Both waveforms are preceded by ``settle_time_ms`` of zero excitation so the
aircraft can reach trim before the measurement starts.
"""

import numpy as np
from dataclasses import dataclass

from heli_autotune.core.frequency_response.freq_resp_estimator import (
    FreqRespInput,
    FreqRespCalcType,
    InputType,
    ResponseType,
)


@dataclass
class ExcitationSample:
    """
    One tick of excitation output.

    Attributes
    ----------
    value : float
        Excitation signal (rad/s for rate tests, rad for angle tests)
    frequency : float
        Instantaneous frequency [Hz]
    phase_rad : float
        Phase accumulated since the waveform started [rad]
    active : bool
        False while settling
    complete : bool
        True once the waveform record has ended
    """
    value: float = 0.0
    frequency: float = 0.0
    phase_rad: float = 0.0
    active: bool = False
    complete: bool = False


class ExcitationGenerator:
    """
    Dwell and sweep test signal generator.

    Besides the waveform, ``init`` records how the running test is wired
    (``filt_freq``, ``freq_resp_input``, ``calc_type``, ``resp_type``).
    The sequencer reads them back to route signals and set filter cutoffs
    for the whole test.

    Example Usage
    -------------
    >>> gen = ExcitationGenerator()
    >>> gen.init(2.0, 20.0, 0.2, 40.0, FreqRespInput.MOTOR,
    ...          FreqRespCalcType.RATE, ResponseType.RATE, InputType.SWEEP)
    >>> sample = gen.update(elapsed_ms)

    Parameters
    ----------
    sweep_time_ms : float
        Sweep record length [ms]
    fade_out_fraction : float
        Fraction of the sweep record over which the amplitude fades out
    """

    def __init__(self, sweep_time_ms: float = 23000.0, fade_out_fraction: float = 0.1):
        self.sweep_time_ms = sweep_time_ms
        self.fade_out_fraction = fade_out_fraction

        self.start_freq = 0.0
        self.stop_freq = 0.0
        self.amplitude = 0.0
        self.filt_freq = 0.0
        self.freq_resp_input = FreqRespInput.MOTOR
        self.calc_type = FreqRespCalcType.RATE
        self.resp_type = ResponseType.RATE
        self.waveform = InputType.DWELL
        self.settle_time_ms = 0.0
        self.num_dwell_cycles = 0

    def init(
        self,
        start_freq: float,
        stop_freq: float,
        amplitude: float,
        filt_freq: float,
        freq_resp_input: FreqRespInput,
        calc_type: FreqRespCalcType,
        resp_type: ResponseType,
        waveform: InputType,
        settle_time_ms: float = 0.0,
        num_dwell_cycles: int = 6
    ) -> None:
        """
        Configure the next test signal.

        Parameters
        ----------
        start_freq, stop_freq : float
            Frequency range [Hz]; equal for a dwell
        amplitude : float
            Peak excitation amplitude
        filt_freq : float
            Noise filter cutoff recorded for the filter bank [Hz]
        freq_resp_input : FreqRespInput
            Reference the response will be measured against
        calc_type : FreqRespCalcType
            Quantity being analysed
        resp_type : ResponseType
            Target the excitation drives
        waveform : InputType
            Dwell or sweep
        settle_time_ms : float
            Zero-excitation lead-in [ms]
        num_dwell_cycles : int
            Dwell length in cycles
        """
        if start_freq <= 0.0 or stop_freq < start_freq:
            raise ValueError(f"invalid excitation range {start_freq} to {stop_freq} Hz")
        self.start_freq = start_freq
        self.stop_freq = stop_freq if waveform == InputType.SWEEP else start_freq
        self.amplitude = amplitude
        self.filt_freq = filt_freq
        self.freq_resp_input = freq_resp_input
        self.calc_type = calc_type
        self.resp_type = resp_type
        self.waveform = waveform
        self.settle_time_ms = settle_time_ms
        self.num_dwell_cycles = num_dwell_cycles

    @property
    def _sweep_rate(self) -> float:
        return np.log(self.stop_freq / self.start_freq)

    @property
    def duration_ms(self) -> float:
        """Length of the waveform record, settle time excluded [ms]."""
        if self.waveform == InputType.SWEEP:
            return self.sweep_time_ms
        return 1000.0 * self.num_dwell_cycles / self.start_freq

    def frequency_at(self, t_ms: float) -> float:
        """
        Instantaneous frequency ``t_ms`` after the waveform started [Hz].
        """
        if self.waveform == InputType.DWELL or self.stop_freq == self.start_freq:
            return self.start_freq
        t_ratio = np.clip(t_ms / self.sweep_time_ms, 0.0, 1.0)
        return float(self.start_freq * np.exp(self._sweep_rate * t_ratio))

    def phase_at(self, t_ms: float) -> float:
        """Phase accumulated ``t_ms`` after the waveform started [rad]."""
        t = max(t_ms, 0.0) * 0.001
        if self.waveform == InputType.DWELL or self.stop_freq == self.start_freq:
            return 2.0 * np.pi * self.start_freq * t
        T = self.sweep_time_ms * 0.001
        B = self._sweep_rate
        return float(2.0 * np.pi * self.start_freq * T / B * (np.exp(B * min(t, T) / T) - 1.0))

    def _window(self, t_ms: float) -> float:
        if self.waveform != InputType.SWEEP or self.fade_out_fraction <= 0.0:
            return 1.0
        fade_ms = self.fade_out_fraction * self.sweep_time_ms
        t_fade = t_ms - (self.sweep_time_ms - fade_ms)
        if t_fade <= 0.0:
            return 1.0
        return float(0.5 * (1.0 + np.cos(np.pi * min(t_fade / fade_ms, 1.0))))

    def update(self, elapsed_ms: float) -> ExcitationSample:
        """
        Excitation sample for a tick ``elapsed_ms`` after the test started.
        """
        t_ms = elapsed_ms - self.settle_time_ms
        if t_ms < 0.0:
            return ExcitationSample(frequency=self.start_freq)

        if t_ms >= self.duration_ms:
            return ExcitationSample(
                frequency=self.frequency_at(self.duration_ms),
                phase_rad=self.phase_at(self.duration_ms),
                active=False,
                complete=True
            )

        theta = self.phase_at(t_ms)
        return ExcitationSample(
            value=self.amplitude * self._window(t_ms) * np.sin(theta),
            frequency=self.frequency_at(t_ms),
            phase_rad=theta,
            active=True,
            complete=False
        )
