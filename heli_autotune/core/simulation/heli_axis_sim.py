"""
Helicopter Axis Digital Twin

Linear single-axis rotorcraft models closed by a rate PID+FF loop and an
angle P loop, used to exercise the autotune engine offline. Gains are read
and written through the same ``VehicleControl`` interface the onboard
controllers expose.

Plant Model
-----------
Body rate response to mixer input, per axis:

$$G(s) = K \\frac{\\omega_n^2}{s^2 + 2\\zeta\\omega_n s + \\omega_n^2} e^{-s\\tau}$$

The transport delay is replaced by a Padé approximation and the model is
discretised at the scheduler rate with a zero-order hold (python-control).
Each tick advances the discrete filter one sample (scipy.signal.lfilter with
carried state).

Controllers
-----------
    rate target  r* = angle_p * (θ* - θ)        (attitude-held axes)
    mixer input  u  = ff r* + P e + I ∫e + D de/dt + disturbance,  e = r* - r

Translational drift follows tilt (g·roll right, -g·pitch forward) with
linear drag, so the velocity-hold feedback has something to act on.
"""

import numpy as np
import control as ctrl
from dataclasses import dataclass, field, replace
from typing import Dict, Optional
from scipy import signal

from heli_autotune.core.config.autotune_config import Axis
from heli_autotune.core.filters import LowPassFilter
from heli_autotune.core.tuning.gain_store import AngleGains, RateGains
from heli_autotune.core.tuning.vehicle import AutotuneCommand, VehicleControl, VehicleSample


GRAVITY = 9.80665
SIM_AXES = (Axis.ROLL, Axis.PITCH, Axis.YAW)


@dataclass
class HeliAxisParams:
    """
    Plant parameters for one axis.

    Attributes
    ----------
    gain : float
        Steady-state rate per unit mixer input [rad/s]
    natural_freq_hz : float
        Rotor/airframe mode natural frequency [Hz]
    damping : float
        Mode damping ratio
    delay_s : float
        Transport delay [s]
    pade_order : int
        Order of the delay approximation
    gyro_noise_std : float
        Gyro white noise [rad/s]
    """
    gain: float = 8.0
    natural_freq_hz: float = 4.0
    damping: float = 0.4
    delay_s: float = 0.03
    pade_order: int = 3
    gyro_noise_std: float = 0.002


def default_axis_params() -> Dict[Axis, HeliAxisParams]:
    return {
        Axis.ROLL: HeliAxisParams(),
        Axis.PITCH: HeliAxisParams(gain=6.0, natural_freq_hz=3.5),
        Axis.YAW: HeliAxisParams(gain=5.0, natural_freq_hz=3.0, damping=0.6),
    }


def default_rate_gains() -> Dict[Axis, RateGains]:
    return {
        Axis.ROLL: RateGains(p=0.03, i=0.05, d=0.001, ff=0.1, flt_t=20.0, flt_e=20.0),
        Axis.PITCH: RateGains(p=0.04, i=0.06, d=0.0015, ff=0.12, flt_t=20.0, flt_e=20.0),
        Axis.YAW: RateGains(p=0.08, i=0.1, d=0.0, ff=0.15, flt_t=20.0, flt_e=2.5),
    }


def default_angle_gains() -> Dict[Axis, AngleGains]:
    return {
        Axis.ROLL: AngleGains(p=4.5, max_accel=np.deg2rad(1100.0), max_rate=0.0),
        Axis.PITCH: AngleGains(p=4.5, max_accel=np.deg2rad(1100.0), max_rate=0.0),
        Axis.YAW: AngleGains(p=4.5, max_accel=np.deg2rad(270.0), max_rate=0.0),
    }


def build_axis_model(params: HeliAxisParams, dt: float) -> ctrl.TransferFunction:
    """Discrete rate-response model of one axis at sample time ``dt``."""
    s = ctrl.tf('s')
    wn = 2.0 * np.pi * params.natural_freq_hz
    mode = params.gain * wn ** 2 / (s ** 2 + 2.0 * params.damping * wn * s + wn ** 2)
    if params.delay_s > 0.0:
        num, den = ctrl.pade(params.delay_s, params.pade_order)
        mode = mode * ctrl.tf(num, den)
    return mode.sample(dt, method='zoh')


class RatePID:
    """Rate PID+FF for one axis, parameterised by ``RateGains``."""

    def __init__(self, gains: RateGains, loop_rate_hz: float, imax: float = 0.5):
        self.loop_rate_hz = loop_rate_hz
        self.dt = 1.0 / loop_rate_hz
        self.imax = imax
        self.target_filt = LowPassFilter(loop_rate_hz)
        self.error_filt = LowPassFilter(loop_rate_hz)
        self.set_gains(gains)
        self.reset()

    def set_gains(self, gains: RateGains) -> None:
        self.gains = replace(gains)
        self.target_filt.set_cutoff_frequency(self.loop_rate_hz, gains.flt_t)
        self.error_filt.set_cutoff_frequency(self.loop_rate_hz, gains.flt_e)

    def reset(self) -> None:
        self.integrator = 0.0
        self.prev_error: Optional[float] = None
        self.target_filt.reset()
        self.error_filt.reset()

    def update(self, target: float, measurement: float) -> float:
        g = self.gains
        target_f = self.target_filt.apply(target)
        error = self.error_filt.apply(target_f - measurement)
        derivative = 0.0 if self.prev_error is None else (error - self.prev_error) / self.dt
        self.prev_error = error
        self.integrator = float(np.clip(self.integrator + g.i * error * self.dt, -self.imax, self.imax))
        return g.ff * target_f + g.p * error + self.integrator + g.d * derivative


class SimulatedHeliAxis:
    """
    Discrete plant state for one axis.

    Parameters
    ----------
    params : HeliAxisParams
        Plant parameters
    loop_rate_hz : float
        Tick rate [Hz]
    """

    def __init__(self, params: HeliAxisParams, loop_rate_hz: float):
        self.params = params
        self.dt = 1.0 / loop_rate_hz
        self.model = build_axis_model(params, self.dt)
        num, den = ctrl.tfdata(self.model)
        self.b = np.atleast_1d(np.squeeze(np.asarray(num[0][0], dtype=float)))
        self.a = np.atleast_1d(np.squeeze(np.asarray(den[0][0], dtype=float)))
        self.reset()

    def reset(self) -> None:
        self.zi = np.zeros(max(len(self.a), len(self.b)) - 1)
        self.rate = 0.0
        self.angle = 0.0

    def step(self, u: float) -> float:
        """Advance one tick with mixer input ``u``; returns the body rate."""
        y, self.zi = signal.lfilter(self.b, self.a, [u], zi=self.zi)
        self.rate = float(y[0])
        self.angle += self.rate * self.dt
        return self.rate


@dataclass
class SimulationState:
    """Latest signals of the simulated helicopter."""
    time_ms: float = 0.0
    rate: np.ndarray = field(default_factory=lambda: np.zeros(3))
    target_rate: np.ndarray = field(default_factory=lambda: np.zeros(3))
    attitude: np.ndarray = field(default_factory=lambda: np.zeros(3))
    target_attitude: np.ndarray = field(default_factory=lambda: np.zeros(3))
    motor_command: np.ndarray = field(default_factory=lambda: np.zeros(3))
    velocity_xy: np.ndarray = field(default_factory=lambda: np.zeros(2))


class SimulatedHelicopter(VehicleControl):
    """
    Three-axis helicopter digital twin implementing ``VehicleControl``.

    Example Usage
    -------------
    >>> heli = SimulatedHelicopter(loop_rate_hz=400.0, seed=42)
    >>> seq = AutotuneSequencer(config, heli)
    >>> seq.start(heli.time_ms)
    >>> while not seq.finished:
    ...     heli.step(seq.update(heli.time_ms, heli.sample()))

    Parameters
    ----------
    loop_rate_hz : float
        Scheduler rate [Hz]
    axis_params : Dict[Axis, HeliAxisParams], optional
        Plant parameters per axis
    rate_gains, angle_gains : Dict, optional
        Initial controller gains per axis
    seed : int
        Random seed for sensor noise
    drag : float
        Translational drag [1/s]
    """

    def __init__(
        self,
        loop_rate_hz: float = 400.0,
        axis_params: Optional[Dict[Axis, HeliAxisParams]] = None,
        rate_gains: Optional[Dict[Axis, RateGains]] = None,
        angle_gains: Optional[Dict[Axis, AngleGains]] = None,
        seed: int = 42,
        drag: float = 0.5
    ):
        self.loop_rate_hz = loop_rate_hz
        self.dt = 1.0 / loop_rate_hz
        self.drag = drag
        self.rng = np.random.default_rng(seed)
        self.armed = True

        self.axis_params = axis_params or default_axis_params()
        self.axes = {axis: SimulatedHeliAxis(self.axis_params[axis], loop_rate_hz) for axis in SIM_AXES}

        rate_gains = rate_gains or default_rate_gains()
        angle_gains = angle_gains or default_angle_gains()
        self.rate_pids = {axis: RatePID(rate_gains[axis], loop_rate_hz) for axis in SIM_AXES}
        self.angle_gains = {axis: replace(angle_gains[axis]) for axis in SIM_AXES}
        self.saved: Dict[Axis, Dict[str, object]] = {}
        self.gain_writes = 0

        self.state = SimulationState()

    # VehicleControl -----------------------------------------------------

    def _check_axis(self, axis: Axis) -> Axis:
        if axis not in self.axes:
            raise ValueError(f"axis {axis.name} is not simulated")
        return axis

    def get_rate_gains(self, axis: Axis) -> RateGains:
        return replace(self.rate_pids[self._check_axis(axis)].gains)

    def set_rate_gains(self, axis: Axis, gains: RateGains) -> None:
        self.rate_pids[self._check_axis(axis)].set_gains(gains)
        self.gain_writes += 1

    def get_angle_gains(self, axis: Axis) -> AngleGains:
        return replace(self.angle_gains[self._check_axis(axis)])

    def set_angle_gains(self, axis: Axis, gains: AngleGains) -> None:
        self.angle_gains[self._check_axis(axis)] = replace(gains)

    def save_gains(self, axis: Axis, rate: RateGains, angle: AngleGains) -> None:
        self.saved[self._check_axis(axis)] = {'rate': replace(rate), 'angle': replace(angle)}

    # Simulation ---------------------------------------------------------

    @property
    def time_ms(self) -> float:
        return self.state.time_ms

    def sample(self) -> VehicleSample:
        """Sensor view of the current state."""
        st = self.state
        noise = np.array([
            self.rng.normal(0.0, self.axis_params[axis].gyro_noise_std) for axis in SIM_AXES
        ])
        return VehicleSample(
            rate=st.rate + noise,
            target_rate=st.target_rate.copy(),
            attitude=st.attitude.copy(),
            target_attitude=st.target_attitude.copy(),
            motor_command=st.motor_command.copy(),
            velocity_xy=st.velocity_xy.copy(),
            armed=self.armed,
        )

    def step(self, command: AutotuneCommand) -> SimulationState:
        """Advance the twin one tick under ``command``."""
        st = self.state
        measured_rate = st.rate.copy()
        for idx, axis in enumerate(SIM_AXES):
            angle_gains = self.angle_gains[axis]
            if command.rate_axis is not None and command.rate_axis.index == idx:
                rate_target = command.rate_target
            else:
                rate_target = angle_gains.p * (command.attitude_target[idx] - st.attitude[idx])
                if angle_gains.max_rate > 0.0:
                    rate_target = float(np.clip(rate_target, -angle_gains.max_rate, angle_gains.max_rate))

            u = self.rate_pids[axis].update(rate_target, measured_rate[idx]) + command.motor_offset[idx]
            u = float(np.clip(u, -1.0, 1.0))

            plant = self.axes[axis]
            st.rate[idx] = plant.step(u)
            st.attitude[idx] = plant.angle
            st.target_rate[idx] = rate_target
            st.motor_command[idx] = u

        st.target_attitude = np.asarray(command.attitude_target, dtype=float).copy()

        roll, pitch = st.attitude[0], st.attitude[1]
        accel = np.array([-GRAVITY * pitch, GRAVITY * roll]) - self.drag * st.velocity_xy
        st.velocity_xy = st.velocity_xy + accel * self.dt
        st.time_ms += 1000.0 * self.dt
        return st
