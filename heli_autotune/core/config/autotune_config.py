"""
Autotune Configuration

Single validated configuration record for an autotune session. All tunables
that the onboard parameter store exposes are collected here as named fields
with documented ranges; ``validate()`` is run once when a session starts and
the bitmasks are decoded into ordered (Axis, TuneType) sequences at the same
time. Bitmasks exist only at this boundary.

Bitmask Encoding
----------------
axis_bitmask:
    1 = roll, 2 = pitch, 4 = yaw, 8 = yaw (D-focused variant)

seq_bitmask:
    1 = rate feed-forward
    2 = rate P and D (preceded by the max gain test they depend on)
    4 = angle P
    8 = max gain test only (ignored when bit 2 is set)
"""

import warnings
from dataclasses import dataclass, fields
from enum import Enum, auto
from typing import Dict, Any, List, Optional, Sequence

import numpy as np


class Axis(Enum):
    """Control axis under test. Values are the axis bitmask bits."""
    ROLL = 1
    PITCH = 2
    YAW = 4
    YAW_D = 8

    @property
    def index(self) -> int:
        """Index into roll/pitch/yaw ordered vectors."""
        return {Axis.ROLL: 0, Axis.PITCH: 1, Axis.YAW: 2, Axis.YAW_D: 2}[self]

    @property
    def label(self) -> str:
        return {Axis.ROLL: 'Roll', Axis.PITCH: 'Pitch', Axis.YAW: 'Yaw', Axis.YAW_D: 'Yaw(D)'}[self]


class TuneType(Enum):
    """Gain and test procedure active for an axis."""
    RATE_D_UP = auto()
    RATE_D_DOWN = auto()
    RATE_P_UP = auto()
    RATE_FF_UP = auto()
    ANGLE_P_UP = auto()
    ANGLE_P_DOWN = auto()
    MAX_GAINS = auto()

    @property
    def label(self) -> str:
        return {
            TuneType.RATE_D_UP: 'Rate D Up',
            TuneType.RATE_D_DOWN: 'Rate D Down',
            TuneType.RATE_P_UP: 'Rate P Up',
            TuneType.RATE_FF_UP: 'Rate FF Up',
            TuneType.ANGLE_P_UP: 'Angle P Up',
            TuneType.ANGLE_P_DOWN: 'Angle P Down',
            TuneType.MAX_GAINS: 'Find Max Gains',
        }[self]


# Fixed decoding order across axes
AXIS_ORDER = (Axis.ROLL, Axis.PITCH, Axis.YAW, Axis.YAW_D)

SEQ_BITMASK_RATE_FF = 1
SEQ_BITMASK_RATE_PD = 2
SEQ_BITMASK_ANGLE_P = 4
SEQ_BITMASK_MAX_GAIN = 8


def decode_axis_bitmask(axis_bitmask: int) -> List[Axis]:
    """Decode the axis bitmask into axes in the fixed roll, pitch, yaw order."""
    return [axis for axis in AXIS_ORDER if axis_bitmask & axis.value]


def decode_tune_sequence(seq_bitmask: int) -> List[TuneType]:
    """
    Decode the sequence bitmask into the ordered tune types run on every axis.

    Max gains always precedes rate D and rate P since both use its ceilings.
    """
    sequence = []
    if seq_bitmask & SEQ_BITMASK_RATE_FF:
        sequence.append(TuneType.RATE_FF_UP)
    if seq_bitmask & SEQ_BITMASK_RATE_PD:
        sequence.extend([TuneType.MAX_GAINS, TuneType.RATE_D_UP, TuneType.RATE_P_UP])
    elif seq_bitmask & SEQ_BITMASK_MAX_GAIN:
        sequence.append(TuneType.MAX_GAINS)
    if seq_bitmask & SEQ_BITMASK_ANGLE_P:
        sequence.append(TuneType.ANGLE_P_UP)
    return sequence


@dataclass
class AutotuneConfig:
    """
    Configuration for a helicopter autotune session.

    Attributes
    ----------
    axis_bitmask : int
        Axes to tune (1 roll, 2 pitch, 4 yaw, 8 yaw-D)
    seq_bitmask : int
        Tune types run on each axis (see module docstring)
    min_sweep_freq : float
        Lower bound for every frequency-domain test [Hz]
    max_sweep_freq : float
        Upper bound for every frequency-domain test [Hz]
    max_resp_gain : float
        Response gain treated as the instability threshold
    vel_hold_gain : float
        Attitude correction per unit ground velocity during tests [rad/(m/s)]
    accel_max : float
        Excitation angular acceleration ceiling [deg/s²], 0 = vehicle default
    rate_max : float
        Excitation angular rate ceiling [deg/s], 0 = vehicle default
    loop_rate_hz : float
        Rate at which the scheduler ticks the engine [Hz]
    num_dwell_cycles : int
        Total cycles in one dwell, settling cycles included
    pre_calc_cycles : int
        Leading dwell cycles discarded before estimating
    sweep_pre_calc_cycles : int
        Leading sweep cycles discarded before estimating
    settle_time_ms : float
        Zero-excitation period before each test [ms]
    sweep_time_ms : float
        Duration of the frequency sweep [ms]
    testing_step_timeout_ms : float
        Longest a single test may run before it is aborted [ms]
    max_tests_per_tune : int
        Gain-update budget for one (axis, tune type) pair
    level_angle_deg : float
        Roll/pitch attitude considered level [deg]
    level_rate_dps : float
        Body rate considered settled [deg/s]
    level_time_ms : float
        Time the vehicle must remain level before a test starts [ms]
    level_timeout_ms : float
        Time after which a "failing to level" notice is sent [ms]
    announce_interval_ms : float
        Interval between operator progress announcements [ms]
    verbose : bool
        Print operator announcements to stdout
    """
    axis_bitmask: int = 1
    seq_bitmask: int = 3
    min_sweep_freq: float = 1.0
    max_sweep_freq: float = 12.0
    max_resp_gain: float = 1.4
    vel_hold_gain: float = 0.1
    accel_max: float = 0.0
    rate_max: float = 0.0
    loop_rate_hz: float = 400.0
    num_dwell_cycles: int = 6
    pre_calc_cycles: int = 2
    sweep_pre_calc_cycles: int = 1
    settle_time_ms: float = 500.0
    sweep_time_ms: float = 23000.0
    testing_step_timeout_ms: float = 30000.0
    max_tests_per_tune: int = 30
    level_angle_deg: float = 5.0
    level_rate_dps: float = 10.0
    level_time_ms: float = 250.0
    level_timeout_ms: float = 2000.0
    announce_interval_ms: float = 2000.0
    verbose: bool = True

    def validate(self, supported_axes: Optional[Sequence[Axis]] = None) -> None:
        """
        Check every field against its valid range.

        Parameters
        ----------
        supported_axes : Sequence[Axis], optional
            Axes the vehicle class can tune; selecting any other axis fails

        Raises
        ------
        ValueError
            Naming the first offending field
        """
        if not 1 <= self.axis_bitmask <= 15:
            raise ValueError(f"axis_bitmask must be in 1..15, got {self.axis_bitmask}")
        if supported_axes is not None:
            for axis in decode_axis_bitmask(self.axis_bitmask):
                if axis not in supported_axes:
                    raise ValueError(f"axis_bitmask selects unsupported axis {axis.name}")
        if not 1 <= self.seq_bitmask <= 15:
            raise ValueError(f"seq_bitmask must be in 1..15, got {self.seq_bitmask}")
        if self.loop_rate_hz <= 0:
            raise ValueError("loop_rate_hz must be positive")
        if self.min_sweep_freq <= 0:
            raise ValueError("min_sweep_freq must be positive")
        if self.max_sweep_freq <= self.min_sweep_freq:
            raise ValueError("max_sweep_freq must be greater than min_sweep_freq")
        if self.max_sweep_freq > 0.25 * self.loop_rate_hz:
            raise ValueError("max_sweep_freq must not exceed a quarter of loop_rate_hz")
        if not 1.0 <= self.max_resp_gain <= 2.5:
            raise ValueError(f"max_resp_gain must be in 1.0..2.5, got {self.max_resp_gain}")
        for name in ('vel_hold_gain', 'accel_max', 'rate_max', 'settle_time_ms'):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must not be negative")
        if self.pre_calc_cycles < 0 or self.sweep_pre_calc_cycles < 0:
            raise ValueError("pre-calculation cycles must not be negative")
        if self.num_dwell_cycles <= self.pre_calc_cycles:
            raise ValueError("num_dwell_cycles must exceed pre_calc_cycles")
        if self.sweep_time_ms <= 0:
            raise ValueError("sweep_time_ms must be positive")
        if self.testing_step_timeout_ms <= self.settle_time_ms:
            raise ValueError("testing_step_timeout_ms must exceed settle_time_ms")
        if self.max_tests_per_tune < 1:
            raise ValueError("max_tests_per_tune must be at least 1")
        for name in ('level_angle_deg', 'level_rate_dps', 'level_time_ms',
                     'level_timeout_ms', 'announce_interval_ms'):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive")

    @property
    def axes(self) -> List[Axis]:
        return decode_axis_bitmask(self.axis_bitmask)

    @property
    def dt(self) -> float:
        """Scheduler tick period [s]."""
        return 1.0 / self.loop_rate_hz

    def accel_max_rad(self, default_dps2: float) -> float:
        """Excitation acceleration ceiling [rad/s²], falling back to the vehicle default."""
        return np.deg2rad(self.accel_max if self.accel_max > 0 else default_dps2)

    def rate_max_rad(self, default_dps: float) -> float:
        """Excitation rate ceiling [rad/s], falling back to the vehicle default."""
        return np.deg2rad(self.rate_max if self.rate_max > 0 else default_dps)

    @classmethod
    def from_dict(cls, params: Dict[str, Any]) -> 'AutotuneConfig':
        """
        Build a configuration from a flat dictionary (e.g. loaded from JSON).

        Unknown keys are ignored with a warning so that parameter files from
        other vehicle classes can be loaded.
        """
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(params) - known)
        if unknown:
            warnings.warn(f"Ignoring unknown autotune parameters: {unknown}")
        return cls(**{k: v for k, v in params.items() if k in known})
