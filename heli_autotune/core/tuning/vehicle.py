"""
Vehicle Interfaces and Tune Strategy

Boundary between the autotune engine and the aircraft:

- ``VehicleControl``: narrow gain sink/source implemented by the vehicle's
  control layer (or the digital twin).
- ``VehicleSample`` / ``AutotuneCommand``: per-tick sensor input and the
  command the engine returns to the attitude/rate controllers.
- ``VehicleTuneStrategy``: capability interface selecting which axes and
  tune types a vehicle class supports, how each test is configured and
  which update algorithm handles it. ``HeliTuneStrategy`` is the
  helicopter implementation.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

import numpy as np

from heli_autotune.core.config.autotune_config import (
    Axis,
    TuneType,
    decode_tune_sequence,
)
from heli_autotune.core.errors import UnsupportedTuneType
from heli_autotune.core.frequency_response import (
    FreqRespCalcType,
    FreqRespInput,
    ResponseType,
    SweepInfo,
)
from .gain_store import AngleGains, GainStore, RateGains
from .gain_updates import GainUpdateEngine, UpdateResult


class VehicleControl(ABC):
    """Gain interface exposed by the controllers being tuned."""

    @abstractmethod
    def get_rate_gains(self, axis: Axis) -> RateGains:
        """Current rate controller gains for ``axis``."""

    @abstractmethod
    def set_rate_gains(self, axis: Axis, gains: RateGains) -> None:
        """Replace the rate controller gains for ``axis``."""

    @abstractmethod
    def get_angle_gains(self, axis: Axis) -> AngleGains:
        """Current attitude controller gains for ``axis``."""

    @abstractmethod
    def set_angle_gains(self, axis: Axis, gains: AngleGains) -> None:
        """Replace the attitude controller gains for ``axis``."""

    @abstractmethod
    def save_gains(self, axis: Axis, rate: RateGains, angle: AngleGains) -> None:
        """Persist gains for ``axis``."""


@dataclass
class VehicleSample:
    """
    Vehicle state for one scheduler tick.

    Vectors are ordered roll, pitch, yaw.

    Attributes
    ----------
    rate : np.ndarray
        Body rates [rad/s]
    target_rate : np.ndarray
        Rate controller targets [rad/s]
    attitude : np.ndarray
        Euler attitude [rad]
    target_attitude : np.ndarray
        Attitude controller targets [rad]
    motor_command : np.ndarray
        Mixer input per axis (normalised)
    velocity_xy : np.ndarray
        Body-frame forward/right ground velocity [m/s]
    armed : bool
        Motors armed
    """
    rate: np.ndarray = field(default_factory=lambda: np.zeros(3))
    target_rate: np.ndarray = field(default_factory=lambda: np.zeros(3))
    attitude: np.ndarray = field(default_factory=lambda: np.zeros(3))
    target_attitude: np.ndarray = field(default_factory=lambda: np.zeros(3))
    motor_command: np.ndarray = field(default_factory=lambda: np.zeros(3))
    velocity_xy: np.ndarray = field(default_factory=lambda: np.zeros(2))
    armed: bool = True


@dataclass
class AutotuneCommand:
    """
    Controller command for one tick.

    Attributes
    ----------
    attitude_target : np.ndarray
        Roll, pitch, yaw attitude targets [rad]
    rate_axis : Axis, optional
        Axis flown in rate mode, its attitude target is ignored
    rate_target : float
        Rate target for ``rate_axis`` [rad/s]
    motor_offset : np.ndarray
        Disturbance added to the mixer input per axis
    """
    attitude_target: np.ndarray = field(default_factory=lambda: np.zeros(3))
    rate_axis: Optional[Axis] = None
    rate_target: float = 0.0
    motor_offset: np.ndarray = field(default_factory=lambda: np.zeros(3))


@dataclass(frozen=True)
class TestConfig:
    """How a test of one tune type is excited and analysed."""
    freq_resp_input: FreqRespInput
    calc_type: FreqRespCalcType
    resp_type: ResponseType
    sweep_first: bool       # Locate the starting dwell frequency with a sweep

    # Not a pytest test class despite the name
    __test__ = False


class VehicleTuneStrategy(ABC):
    """Vehicle-class capabilities used by the test sequencer."""

    @property
    @abstractmethod
    def supported_axes(self) -> Sequence[Axis]:
        """Axes this vehicle class can tune."""

    @property
    @abstractmethod
    def supported_tune_types(self) -> Sequence[TuneType]:
        """Tune types with an update algorithm on this vehicle class."""

    @abstractmethod
    def test_config(self, tune_type: TuneType) -> TestConfig:
        """Excitation and analysis configuration for ``tune_type``."""

    @abstractmethod
    def update_gains(
        self,
        engine: GainUpdateEngine,
        store: GainStore,
        axis: Axis,
        tune_type: TuneType,
        point: SweepInfo
    ) -> UpdateResult:
        """Run the update algorithm for ``tune_type`` on one test result."""

    def set_tune_sequence(
        self,
        seq_bitmask: int,
        tune_types: Optional[Sequence[TuneType]] = None
    ) -> List[TuneType]:
        """
        Ordered tune types run on every axis.

        Parameters
        ----------
        seq_bitmask : int
            Sequence bitmask from the configuration
        tune_types : Sequence[TuneType], optional
            Explicit list overriding the bitmask

        Raises
        ------
        UnsupportedTuneType
            If a requested tune type has no algorithm on this vehicle
        """
        sequence = list(tune_types) if tune_types is not None else decode_tune_sequence(seq_bitmask)
        for tune_type in sequence:
            if tune_type not in self.supported_tune_types:
                raise UnsupportedTuneType(
                    f"{tune_type.label} is not supported by {type(self).__name__}"
                )
        return sequence


class HeliTuneStrategy(VehicleTuneStrategy):
    """
    Traditional helicopter tuning.

    Rate D down and angle P down are not available; selecting either is
    rejected when the sequence is built.
    """

    BACKOFF = {
        TuneType.RATE_FF_UP: 1.0,
        TuneType.RATE_P_UP: 0.9,
        TuneType.RATE_D_UP: 0.9,
        TuneType.ANGLE_P_UP: 0.9,
    }

    TUNED_FIELD = {
        TuneType.RATE_FF_UP: 'rate_ff',
        TuneType.RATE_P_UP: 'rate_p',
        TuneType.RATE_D_UP: 'rate_d',
        TuneType.ANGLE_P_UP: 'angle_p',
    }

    # Excitation limits used when the configuration leaves them at zero
    DEFAULT_ACCEL_MAX_DPS2 = {Axis.ROLL: 720.0, Axis.PITCH: 720.0, Axis.YAW: 360.0}
    DEFAULT_RATE_MAX_DPS = {Axis.ROLL: 50.0, Axis.PITCH: 50.0, Axis.YAW: 50.0}

    TARGET_ANGLE_MAX_DEG = {Axis.ROLL: 15.0, Axis.PITCH: 15.0, Axis.YAW: 30.0}

    # Noise filter cutoff relative to the highest test frequency
    NOISE_FILT_RATIO = 3.0

    _TEST_CONFIGS = {
        TuneType.RATE_FF_UP: TestConfig(
            FreqRespInput.TARGET, FreqRespCalcType.RATE, ResponseType.RATE, False),
        TuneType.MAX_GAINS: TestConfig(
            FreqRespInput.MOTOR, FreqRespCalcType.RATE, ResponseType.RATE, True),
        TuneType.RATE_P_UP: TestConfig(
            FreqRespInput.TARGET, FreqRespCalcType.DRB, ResponseType.RATE, True),
        TuneType.RATE_D_UP: TestConfig(
            FreqRespInput.TARGET, FreqRespCalcType.DRB, ResponseType.RATE, True),
        TuneType.ANGLE_P_UP: TestConfig(
            FreqRespInput.TARGET, FreqRespCalcType.ANGLE, ResponseType.ANGLE, True),
    }

    @property
    def supported_axes(self) -> Sequence[Axis]:
        return (Axis.ROLL, Axis.PITCH, Axis.YAW)

    @property
    def supported_tune_types(self) -> Sequence[TuneType]:
        return tuple(self._TEST_CONFIGS)

    def test_config(self, tune_type: TuneType) -> TestConfig:
        try:
            return self._TEST_CONFIGS[tune_type]
        except KeyError:
            raise UnsupportedTuneType(f"no test defined for {tune_type.label}") from None

    def update_gains(
        self,
        engine: GainUpdateEngine,
        store: GainStore,
        axis: Axis,
        tune_type: TuneType,
        point: SweepInfo
    ) -> UpdateResult:
        handlers = {
            TuneType.RATE_FF_UP: engine.updating_rate_ff_up,
            TuneType.MAX_GAINS: engine.updating_max_gains,
            TuneType.RATE_P_UP: engine.updating_rate_p_up,
            TuneType.RATE_D_UP: engine.updating_rate_d_up,
            TuneType.ANGLE_P_UP: engine.updating_angle_p_up,
        }
        handler = handlers.get(tune_type)
        if handler is None:
            raise UnsupportedTuneType(f"{tune_type.label} has no update algorithm")
        return handler(store, axis, point)

    def set_tuning_gains_with_backoff(
        self,
        store: GainStore,
        axis: Axis,
        tune_type: TuneType
    ) -> Optional[float]:
        """
        Derate the converged gain of ``tune_type`` by its backoff factor.

        Returns
        -------
        float or None
            Backed-off gain, None for tune types that produce no final gain
        """
        name = self.TUNED_FIELD.get(tune_type)
        if name is None:
            return None
        raw = getattr(store.tune[axis], name)
        value = raw * self.BACKOFF[tune_type]
        store.set_tune_value(axis, name, value)
        return value

    def default_accel_max_dps2(self, axis: Axis) -> float:
        return self.DEFAULT_ACCEL_MAX_DPS2[axis]

    def default_rate_max_dps(self, axis: Axis) -> float:
        return self.DEFAULT_RATE_MAX_DPS[axis]

    def target_angle_max(self, axis: Axis) -> float:
        """Largest angle excitation for ``axis`` [rad]."""
        return np.deg2rad(self.TARGET_ANGLE_MAX_DEG[axis])

    def excitation_amplitude(
        self,
        config,
        axis: Axis,
        test_cfg: TestConfig,
        freq: float
    ) -> float:
        """
        Excitation amplitude limited by the acceleration and rate ceilings.

        Parameters
        ----------
        config : AutotuneConfig
            Session configuration
        axis : Axis
            Axis under test
        test_cfg : TestConfig
            Excitation kind of the upcoming test
        freq : float
            Highest frequency the waveform reaches [Hz]
        """
        omega = 2.0 * np.pi * freq
        accel_max = config.accel_max_rad(self.default_accel_max_dps2(axis))
        if test_cfg.resp_type == ResponseType.ANGLE:
            return float(min(accel_max / omega ** 2, self.target_angle_max(axis)))
        rate_max = config.rate_max_rad(self.default_rate_max_dps(axis))
        return float(min(accel_max / omega, rate_max))

    def filter_frequency(self, config) -> float:
        """Noise filter cutoff for every test [Hz], kept below Nyquist."""
        return float(min(self.NOISE_FILT_RATIO * config.max_sweep_freq, 0.4 * config.loop_rate_hz))

    def get_testing_step_timeout_ms(self, config) -> float:
        return config.testing_step_timeout_ms

    def axes_from_config(self, config) -> List[Axis]:
        config.validate(self.supported_axes)
        return config.axes

    def tuned_summary(self, store: GainStore, axis: Axis) -> Dict[str, float]:
        gains = store.tuned.get(axis, store.orig[axis])
        return {
            'rate_ff': gains.rate.ff,
            'rate_p': gains.rate.p,
            'rate_i': gains.rate.i,
            'rate_d': gains.rate.d,
            'angle_p': gains.angle.p,
            'max_accel': gains.angle.max_accel,
        }
