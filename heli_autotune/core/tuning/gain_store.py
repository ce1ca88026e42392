"""
Gain Store

Holds the gain sets an autotune session switches between and pushes them to
the vehicle's controllers through the narrow ``VehicleControl`` interface.

Gain Sets
---------
- **orig**: backed up once per session before any test gain is applied;
  restored on abort, on a user request to revert, and on disarm before
  tuning completed
- **test**: gains flown during a test, derived per tune type from the
  working tune values
- **intra-test**: gains flown between tests (level recovery)
- **tuned**: backed-off results, built per axis once the axis completes

Exactly one set is active at any instant. Every switch writes the complete
rate and angle parameter group of each affected axis, so the controller never
runs with a partially replaced set.
"""

from dataclasses import dataclass, field, replace
from enum import Enum, auto
from typing import Dict, Iterable, Optional

from heli_autotune.core.config.autotune_config import Axis, TuneType


# Rate I gain as a fraction of FF while testing and in the final tune
FFI_RATIO_FOR_TESTING = 0.5
FFI_RATIO_FINAL = 0.5


@dataclass
class RateGains:
    """Rate controller gains for one axis."""
    p: float = 0.0
    i: float = 0.0
    d: float = 0.0
    ff: float = 0.0
    flt_t: float = 0.0      # Target filter cutoff [Hz]
    flt_e: float = 0.0      # Error filter cutoff [Hz]
    smax: float = 0.0       # Slew rate limit


@dataclass
class AngleGains:
    """Attitude controller gains for one axis."""
    p: float = 0.0
    max_accel: float = 0.0  # [rad/s²]
    max_rate: float = 0.0   # [rad/s], 0 = unlimited


@dataclass
class AxisGainSet:
    """Complete controller parameter group for one axis."""
    rate: RateGains = field(default_factory=RateGains)
    angle: AngleGains = field(default_factory=AngleGains)

    def copy(self) -> 'AxisGainSet':
        return AxisGainSet(rate=replace(self.rate), angle=replace(self.angle))


@dataclass
class TuneGains:
    """Working gain values adjusted by the tuning algorithms."""
    rate_p: float = 0.0
    rate_d: float = 0.0
    rate_ff: float = 0.0
    angle_p: float = 0.0
    max_accel: float = 0.0

    def copy(self) -> 'TuneGains':
        return replace(self)


class GainSetKind(Enum):
    """Which gain set is currently loaded into the controllers."""
    ORIG = auto()
    TUNED = auto()
    TEST = auto()
    INTRA_TEST = auto()


class GainStore:
    """
    Original, working, test and tuned gains for every axis in a session.

    Parameters
    ----------
    vehicle : VehicleControl
        Gain sink exposed by the vehicle's control layer
    axes : Iterable[Axis]
        Axes being tuned this session
    """

    def __init__(self, vehicle, axes: Iterable[Axis]):
        self.vehicle = vehicle
        self.axes = list(axes)
        self.orig: Dict[Axis, AxisGainSet] = {}
        self.tune: Dict[Axis, TuneGains] = {}
        self.tuned: Dict[Axis, AxisGainSet] = {}
        self.active: Optional[GainSetKind] = None

    def backup_gains_and_initialise(self) -> None:
        """Back up the controllers' current gains and seed the working values."""
        self.orig = {}
        self.tune = {}
        self.tuned = {}
        for axis in self.axes:
            gains = AxisGainSet(
                rate=replace(self.vehicle.get_rate_gains(axis)),
                angle=replace(self.vehicle.get_angle_gains(axis)),
            )
            self.orig[axis] = gains
            self.tune[axis] = TuneGains(
                rate_p=gains.rate.p,
                rate_d=gains.rate.d,
                rate_ff=gains.rate.ff,
                angle_p=gains.angle.p,
                max_accel=gains.angle.max_accel,
            )
        self.active = GainSetKind.ORIG

    def load_gain_set(self, axis: Axis, gains: AxisGainSet) -> None:
        """Replace the whole controller parameter group for ``axis``."""
        gains = gains.copy()
        self.vehicle.set_rate_gains(axis, gains.rate)
        self.vehicle.set_angle_gains(axis, gains.angle)

    def load_orig_gains(self) -> None:
        """Switch every axis back to the gains backed up at session start."""
        for axis in self.axes:
            self.load_gain_set(axis, self.orig[axis])
        self.active = GainSetKind.ORIG

    def load_tuned_gains(self) -> None:
        """Switch to tuned gains; axes without a completed tune keep their originals."""
        for axis in self.axes:
            self.load_gain_set(axis, self.tuned.get(axis, self.orig[axis]))
        self.active = GainSetKind.TUNED

    def load_intra_test_gains(self, test_axis: Axis) -> None:
        """Gains flown between tests: originals everywhere except the axis under test."""
        for axis in self.axes:
            if axis == test_axis:
                self.load_gain_set(axis, self.intra_test_gain_set(axis))
            else:
                self.load_gain_set(axis, self.orig[axis])
        self.active = GainSetKind.INTRA_TEST

    def load_test_gains(self, test_axis: Axis, tune_type: TuneType) -> None:
        """Gains flown during a test of ``tune_type`` on ``test_axis``."""
        self.load_gain_set(test_axis, self.test_gain_set(test_axis, tune_type))
        self.active = GainSetKind.TEST

    def intra_test_gain_set(self, axis: Axis) -> AxisGainSet:
        orig = self.orig[axis]
        tune = self.tune[axis]
        return AxisGainSet(
            rate=replace(
                orig.rate,
                p=tune.rate_p,
                i=tune.rate_ff * FFI_RATIO_FOR_TESTING,
                d=tune.rate_d,
                ff=tune.rate_ff,
            ),
            angle=replace(orig.angle, p=tune.angle_p),
        )

    def test_gain_set(self, axis: Axis, tune_type: TuneType) -> AxisGainSet:
        """
        Gains for one test.

        Slew limiting and the error filter are disabled while testing so the
        measured response is that of the linear loop.
        """
        orig = self.orig[axis]
        tune = self.tune[axis]
        if tune_type == TuneType.RATE_FF_UP:
            # Feed-forward is measured open loop
            rate = RateGains(ff=tune.rate_ff, flt_t=orig.rate.flt_t)
        elif tune_type == TuneType.MAX_GAINS:
            rate = RateGains(p=tune.rate_p, d=tune.rate_d, ff=tune.rate_ff, flt_t=orig.rate.flt_t)
        else:
            rate = RateGains(
                p=tune.rate_p,
                i=tune.rate_ff * FFI_RATIO_FOR_TESTING,
                d=tune.rate_d,
                ff=tune.rate_ff,
                flt_t=orig.rate.flt_t,
            )
        return AxisGainSet(rate=rate, angle=replace(orig.angle, p=tune.angle_p))

    def set_tune_value(self, axis: Axis, name: str, value: float) -> bool:
        """
        Set one working gain value.

        Negative values are rejected and the previous value is kept.

        Returns
        -------
        bool
            True if the value was accepted
        """
        if not value >= 0.0:
            return False
        setattr(self.tune[axis], name, float(value))
        return True

    def snapshot_tune(self, axis: Axis) -> TuneGains:
        return self.tune[axis].copy()

    def restore_tune(self, axis: Axis, snapshot: TuneGains) -> None:
        self.tune[axis] = snapshot.copy()

    def set_axis_tuned(self, axis: Axis, tuned: TuneGains) -> AxisGainSet:
        """Freeze backed-off values of a completed axis into its tuned set."""
        orig = self.orig[axis]
        gains = AxisGainSet(
            rate=replace(
                orig.rate,
                p=tuned.rate_p,
                i=tuned.rate_ff * FFI_RATIO_FINAL,
                d=tuned.rate_d,
                ff=tuned.rate_ff,
            ),
            angle=replace(orig.angle, p=tuned.angle_p, max_accel=tuned.max_accel),
        )
        self.tuned[axis] = gains
        return gains

    def save_tuning_gains(self) -> None:
        """Persist tuned gains for every completed axis through the vehicle."""
        for axis, gains in self.tuned.items():
            gains = gains.copy()
            self.vehicle.save_gains(axis, gains.rate, gains.angle)
