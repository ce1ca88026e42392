"""
Autotune Test Sequencer

Tick-driven state machine that walks the decoded (axis, tune type)
sequence, runs one dwell or sweep test at a time and hands each completed
test to the gain update engine.

State Flow
----------
    IDLE -> LEVEL_RECOVERY -> TESTING -> GAIN_UPDATE -> LEVEL_RECOVERY ...
         -> DONE | ABORTED

- LEVEL_RECOVERY: intra-test gains, hold level until the aircraft has been
  within the level limits for ``level_time_ms``
- TESTING: test gains, excitation and both response pipelines advance one
  sample per tick
- GAIN_UPDATE: the matching update algorithm consumes the test result once

Every call to ``update`` does a bounded amount of work and returns the
controller command for that tick; nothing blocks or sleeps.

Failures local to one (axis, tune type) pair (``TuneTestFailure``) restore
the working gains of that axis to their values before the tune type started
and the sequence moves on. Disarm or a user stop end the session: tuned gains
are saved if every pair has run, otherwise the original gains are restored.
"""

from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np

from heli_autotune.core.config.autotune_config import AutotuneConfig, Axis, TuneType
from heli_autotune.core.errors import TestTimeout, TuneTestFailure
from heli_autotune.core.excitation import ExcitationGenerator
from heli_autotune.core.filters import ResponseFilterBank
from heli_autotune.core.frequency_response import (
    FreqRespCalcType,
    FreqRespEstimator,
    FreqRespInput,
    InputType,
    ResponseType,
    SweepInfo,
    SweepProgress,
)
from .gain_store import GainStore, TuneGains
from .gain_updates import RFF_MIN, GainUpdateEngine, UpdateResult
from .vehicle import AutotuneCommand, HeliTuneStrategy, TestConfig, VehicleSample


class TuneState(Enum):
    """Sequencer state."""
    IDLE = auto()
    LEVEL_RECOVERY = auto()
    TESTING = auto()
    GAIN_UPDATE = auto()
    DONE = auto()
    ABORTED = auto()


class TuneOutcome(Enum):
    """Result of one (axis, tune type) pair."""
    CONVERGED = auto()
    FAILED = auto()


@dataclass
class TestState:
    """Everything belonging to the test in progress."""
    start_ms: float = 0.0
    waveform: InputType = InputType.DWELL
    test_freq: float = 0.0
    dir_sign: float = 1.0
    filters_reset: bool = False
    complete: bool = False
    trim_attitude: np.ndarray = field(default_factory=lambda: np.zeros(3))
    injected: float = 0.0           # Disturbance in rate units [rad/s]
    motor_per_rate: float = 0.0     # Mixer input per unit disturbance
    sweep_mtr: SweepProgress = field(default_factory=SweepProgress)
    sweep_tgt: SweepProgress = field(default_factory=SweepProgress)
    point_mtr: Optional[SweepInfo] = None
    point_tgt: Optional[SweepInfo] = None

    # Not a pytest test class despite the name
    __test__ = False

    @classmethod
    def fresh(cls) -> 'TestState':
        return cls()


class AutotuneSequencer:
    """
    Helicopter autotune session driven by the vehicle scheduler.

    Example Usage
    -------------
    >>> seq = AutotuneSequencer(AutotuneConfig(axis_bitmask=3), vehicle)
    >>> seq.start(now_ms)
    >>> while not seq.finished:
    ...     command = seq.update(now_ms, vehicle.sample())
    ...     vehicle.apply(command)

    Parameters
    ----------
    config : AutotuneConfig
        Session configuration, validated at ``start``
    vehicle : VehicleControl
        Gain interface of the controllers being tuned
    strategy : VehicleTuneStrategy, optional
        Vehicle-class capabilities (helicopter by default)
    logger : AutotuneLogger, optional
        Telemetry sink
    status_sink : Callable[[str], None], optional
        Receives operator announcements; printed when ``config.verbose``
    """

    def __init__(
        self,
        config: AutotuneConfig,
        vehicle,
        strategy=None,
        logger=None,
        status_sink: Optional[Callable[[str], None]] = None
    ):
        self.config = config
        self.vehicle = vehicle
        self.strategy = strategy or HeliTuneStrategy()
        self.logger = logger
        self.status_sink = status_sink or self._print_status

        self.engine = GainUpdateEngine(config)
        self.gains = GainStore(vehicle, [])
        self.gen = ExcitationGenerator(sweep_time_ms=config.sweep_time_ms)
        self.filters = ResponseFilterBank(config.loop_rate_hz)
        self.freqresp_mtr = FreqRespEstimator()
        self.freqresp_tgt = FreqRespEstimator()

        self.state = TuneState.IDLE
        self.sequence: List[Tuple[Axis, TuneType]] = []
        self.step = 0
        self.test = TestState.fresh()
        self.outcomes: Dict[Tuple[Axis, TuneType], TuneOutcome] = {}
        self.positive_direction = False
        self.next_test_freq = 0.0
        self.last_result: Optional[UpdateResult] = None

        self._tune_snapshot: Optional[TuneGains] = None
        self._tune_types: Optional[Sequence[TuneType]] = None
        self._yaw_hold: Optional[float] = None
        self._level_start_ms: Optional[float] = None
        self._level_wait_start_ms = 0.0
        self._level_announced = False
        self._last_announce_ms = 0.0
        self._now_ms = 0.0
        self._saved = False

    def _print_status(self, message: str) -> None:
        if self.config.verbose:
            print(f"[AutoTune] {message}")

    # ------------------------------------------------------------------
    # Session control
    # ------------------------------------------------------------------

    def set_tune_sequence(self, tune_types: Optional[Sequence[TuneType]] = None) -> List[Tuple[Axis, TuneType]]:
        """
        Decode the axis and sequence bitmasks into ordered (axis, tune type) pairs.

        Parameters
        ----------
        tune_types : Sequence[TuneType], optional
            Explicit tune types overriding ``seq_bitmask``

        Raises
        ------
        ValueError
            If the configuration is invalid or selects an unsupported axis
        UnsupportedTuneType
            If a selected tune type is not supported by the vehicle strategy
        """
        if tune_types is not None:
            self._tune_types = list(tune_types)
        axes = self.strategy.axes_from_config(self.config)
        per_axis = self.strategy.set_tune_sequence(self.config.seq_bitmask, self._tune_types)
        self.sequence = [(axis, tune_type) for axis in axes for tune_type in per_axis]
        return self.sequence

    def start(self, now_ms: float) -> None:
        """Validate the configuration, back up gains and begin the first test."""
        self.set_tune_sequence()
        self.gains = GainStore(self.vehicle, self.config.axes)
        self.gains.backup_gains_and_initialise()
        if self.logger is not None:
            self.logger.set_session_config(self.config)

        self.step = 0
        self.outcomes = {}
        self._saved = False
        self._now_ms = now_ms
        self._last_announce_ms = now_ms
        self._yaw_hold = None
        if not self.sequence:
            self._finish()
            return
        self._begin_tune_type(now_ms, new_axis=True)

    @property
    def current(self) -> Optional[Tuple[Axis, TuneType]]:
        if self.step < len(self.sequence):
            return self.sequence[self.step]
        return None

    @property
    def finished(self) -> bool:
        return self.state in (TuneState.DONE, TuneState.ABORTED)

    @property
    def all_tuning_complete(self) -> bool:
        return self.state == TuneState.DONE

    def stop(self) -> None:
        """User stop: keep and save tuned gains if complete, otherwise revert."""
        if self.state == TuneState.IDLE:
            return
        if self.all_tuning_complete:
            if not self._saved:
                self.gains.save_tuning_gains()
                self._saved = True
                self.status_sink("Tuning saved")
            return
        if self.state != TuneState.ABORTED:
            self.gains.load_orig_gains()
            self.state = TuneState.ABORTED
            self.status_sink("Tuning stopped, original gains restored")

    def disarm(self) -> None:
        """Vehicle disarmed: halt immediately, saving tuned gains if tuning finished."""
        self.stop()

    # ------------------------------------------------------------------
    # Scheduler entry point
    # ------------------------------------------------------------------

    def update(self, now_ms: float, sample: VehicleSample) -> AutotuneCommand:
        """
        Advance the session by one tick.

        Parameters
        ----------
        now_ms : float
            Scheduler timestamp [ms]
        sample : VehicleSample
            Vehicle state for this tick

        Returns
        -------
        AutotuneCommand
            Command for the attitude and rate controllers
        """
        self._now_ms = now_ms
        if self._yaw_hold is None:
            self._yaw_hold = float(sample.attitude[2])

        if self.state == TuneState.IDLE:
            return self._level_command(sample)

        # Disarm after completion still persists the tuned gains
        if not sample.armed:
            self.disarm()
            return self._level_command(sample)

        if self.finished:
            return self._level_command(sample)

        if self.state == TuneState.LEVEL_RECOVERY:
            command = self._level_command(sample)
            if self._check_level(now_ms, sample):
                self.test_init(now_ms, sample)
        elif self.state == TuneState.TESTING:
            axis = self.current[0]
            try:
                command = self.test_run(axis, self.test.dir_sign, now_ms, sample)
            except TuneTestFailure as exc:
                self._fail_tune_type(exc)
                return self._level_command(sample)
            if self.test.complete:
                self.state = TuneState.GAIN_UPDATE
        else:
            command = self._level_command(sample)
            try:
                self._gain_update()
            except TuneTestFailure as exc:
                self._fail_tune_type(exc)

        self.do_gcs_announcements(now_ms)
        return command

    # ------------------------------------------------------------------
    # Tests
    # ------------------------------------------------------------------

    def _test_cfg(self) -> TestConfig:
        return self.strategy.test_config(self.current[1])

    def test_init(self, now_ms: float, sample: VehicleSample) -> None:
        """
        Prepare the next test of the current (axis, tune type).

        A tune type that locates its dwell frequency by sweeping starts with
        a sweep over the full range; every other test is a dwell at
        ``next_test_freq``.
        """
        axis, tune_type = self.current
        cfg = self._test_cfg()
        config = self.config
        self.test = TestState.fresh()

        if cfg.sweep_first and self.next_test_freq <= 0.0:
            waveform = InputType.SWEEP
            start_freq, stop_freq = config.min_sweep_freq, config.max_sweep_freq
            pre_calc = config.sweep_pre_calc_cycles
        else:
            waveform = InputType.DWELL
            if self.next_test_freq <= 0.0:
                self.next_test_freq = config.min_sweep_freq
            start_freq = stop_freq = self.next_test_freq
            pre_calc = config.pre_calc_cycles

        amplitude = self.strategy.excitation_amplitude(config, axis, cfg, stop_freq)
        filt_freq = self.strategy.filter_frequency(config)

        self.gen.init(
            start_freq, stop_freq, amplitude, filt_freq,
            cfg.freq_resp_input, cfg.calc_type, cfg.resp_type, waveform,
            settle_time_ms=config.settle_time_ms,
            num_dwell_cycles=config.num_dwell_cycles,
        )
        self.filters.configure(self.gen.start_freq, self.gen.filt_freq)
        self.freqresp_mtr.init(waveform, config.num_dwell_cycles, pre_calc)
        self.freqresp_tgt.init(waveform, config.num_dwell_cycles, pre_calc)

        # Roll/pitch trim from the level controller, yaw from the held heading
        trim = np.array(sample.target_attitude, dtype=float).copy()
        trim[2] = self._yaw_hold if self._yaw_hold is not None else float(sample.attitude[2])

        self.test.start_ms = now_ms
        self.test.waveform = waveform
        self.test.test_freq = start_freq
        self.test.trim_attitude = trim
        self.test.dir_sign = 1.0 if self.reverse_test_direction() else -1.0
        self.test.motor_per_rate = max(self.gains.tune[axis].rate_ff, RFF_MIN)

        self.gains.load_test_gains(axis, tune_type)
        self.state = TuneState.TESTING
        self._last_announce_ms = now_ms
        if waveform == InputType.SWEEP:
            self.status_sink(
                f"{axis.label} {tune_type.label}: sweep {start_freq:.1f}-{stop_freq:.1f} Hz"
            )
        else:
            self.status_sink(f"{axis.label} {tune_type.label}: dwell {start_freq:.2f} Hz")

    def _signals(self, axis: Axis, sample: VehicleSample) -> Tuple[float, float, float]:
        """Raw (command, output, target) for the axis under test."""
        idx = axis.index
        command = float(sample.motor_command[idx])
        calc_type = self.gen.calc_type
        if calc_type == FreqRespCalcType.ANGLE:
            return command, float(sample.attitude[idx]), float(sample.target_attitude[idx])
        if calc_type == FreqRespCalcType.DRB:
            return command, float(sample.rate[idx]), self.test.injected
        return command, float(sample.rate[idx]), float(sample.target_rate[idx])

    def test_run(self, axis: Axis, dir_sign: float, now_ms: float, sample: VehicleSample) -> AutotuneCommand:
        """
        One tick of the active test.

        Raises
        ------
        TestTimeout
            If the test has run longer than the testing step timeout
        """
        test = self.test
        elapsed = now_ms - test.start_ms
        timeout = self.get_testing_step_timeout_ms()
        if elapsed > timeout:
            raise TestTimeout(elapsed, timeout)

        command, output, target = self._signals(axis, sample)
        exc = self.gen.update(elapsed)

        if exc.active:
            if not test.filters_reset:
                self.filters.reset(command, output, target)
                test.filters_reset = True
            filt = self.filters.apply(command, output, target)
            self.freqresp_mtr.update(filt.command, filt.output, exc.phase_rad, exc.frequency)
            self.freqresp_tgt.update(filt.target, filt.output, exc.phase_rad, exc.frequency)
            if test.waveform == InputType.SWEEP:
                self._collect_sweep_points(now_ms)
            if self.logger is not None:
                self.logger.write_details(
                    now_ms, command, float(sample.target_rate[axis.index]),
                    float(sample.rate[axis.index]), float(sample.target_attitude[axis.index]),
                    float(sample.attitude[axis.index]),
                )

        if exc.complete and not test.complete:
            self.freqresp_mtr.finish()
            self.freqresp_tgt.finish()
            if test.waveform == InputType.DWELL:
                test.point_mtr = self.freqresp_mtr.get_point()
                test.point_tgt = self.freqresp_tgt.get_point()
                if self.logger is not None:
                    self.logger.write_sweep(now_ms, test.point_mtr, test.point_tgt)
            test.complete = True

        value = dir_sign * exc.value
        test.injected = value if self.gen.calc_type == FreqRespCalcType.DRB else 0.0
        return self._test_command(axis, value, sample)

    def _collect_sweep_points(self, now_ms: float) -> None:
        test = self.test
        if not (self.freqresp_mtr.cycle_complete or self.freqresp_tgt.cycle_complete):
            return
        point_mtr = self.freqresp_mtr.get_point() if self.freqresp_mtr.cycle_complete else SweepInfo()
        point_tgt = self.freqresp_tgt.get_point() if self.freqresp_tgt.cycle_complete else SweepInfo()
        self.freqresp_mtr.reset_cycle_complete()
        self.freqresp_tgt.reset_cycle_complete()

        test.sweep_mtr.update(point_mtr)
        test.sweep_tgt.update(point_tgt)
        if self.logger is not None:
            self.logger.write_sweep(now_ms, point_mtr, point_tgt)

        # No need to sweep past 270 deg once the phase milestones are known
        if self._analysed_sweep().progress >= 2 and self.current[1] != TuneType.ANGLE_P_UP:
            test.complete = True

    def _analysed_sweep(self) -> SweepProgress:
        if self.gen.freq_resp_input == FreqRespInput.MOTOR:
            return self.test.sweep_mtr
        return self.test.sweep_tgt

    def _test_command(self, axis: Axis, value: float, sample: VehicleSample) -> AutotuneCommand:
        att_fdbk = self.filters.update_att_fdbk(sample.velocity_xy, self.config.vel_hold_gain)
        attitude = self.test.trim_attitude.copy()
        attitude[:2] += att_fdbk
        command = AutotuneCommand(attitude_target=attitude)

        if self.gen.resp_type == ResponseType.ANGLE:
            command.attitude_target[axis.index] += value
        elif self.gen.calc_type == FreqRespCalcType.DRB:
            command.rate_axis = axis
            command.motor_offset[axis.index] = value * self.test.motor_per_rate
        else:
            command.rate_axis = axis
            command.rate_target = value
        return command

    def reverse_test_direction(self) -> bool:
        """Polarity of the upcoming test; alternates after every test."""
        direction = self.positive_direction
        self.positive_direction = not self.positive_direction
        return direction

    def get_testing_step_timeout_ms(self) -> float:
        return self.strategy.get_testing_step_timeout_ms(self.config)

    # ------------------------------------------------------------------
    # Level recovery
    # ------------------------------------------------------------------

    def _level_command(self, sample: VehicleSample) -> AutotuneCommand:
        attitude = np.zeros(3)
        attitude[:2] = self.filters.update_att_fdbk(sample.velocity_xy, self.config.vel_hold_gain)
        attitude[2] = self._yaw_hold if self._yaw_hold is not None else float(sample.attitude[2])
        return AutotuneCommand(attitude_target=attitude)

    def _check_level(self, now_ms: float, sample: VehicleSample) -> bool:
        level_angle = np.deg2rad(self.config.level_angle_deg)
        level_rate = np.deg2rad(self.config.level_rate_dps)
        is_level = (
            np.all(np.abs(sample.attitude[:2]) <= level_angle)
            and np.all(np.abs(sample.rate) <= level_rate)
        )
        if not is_level:
            self._level_start_ms = None
            if not self._level_announced and now_ms - self._level_wait_start_ms > self.config.level_timeout_ms:
                self._level_announced = True
                self.status_sink("Failing to level, please tune manually")
            return False
        if self._level_start_ms is None:
            self._level_start_ms = now_ms
        return now_ms - self._level_start_ms >= self.config.level_time_ms

    def _enter_level_recovery(self, now_ms: float) -> None:
        axis = self.current[0]
        self.gains.load_intra_test_gains(axis)
        self.state = TuneState.LEVEL_RECOVERY
        self._level_start_ms = None
        self._level_wait_start_ms = now_ms
        self._level_announced = False

    # ------------------------------------------------------------------
    # Gain updates and sequencing
    # ------------------------------------------------------------------

    def _gain_update(self) -> None:
        axis, tune_type = self.current
        test = self.test

        if test.waveform == InputType.SWEEP:
            freq = self.engine.freq_from_sweep(tune_type, self._analysed_sweep())
            result = UpdateResult(next_freq=freq, converged=False)
            point = SweepInfo(freq=freq)
        else:
            point = test.point_mtr if self.gen.freq_resp_input == FreqRespInput.MOTOR else test.point_tgt
            result = self.strategy.update_gains(self.engine, self.gains, axis, tune_type, point)
        self.last_result = result

        tune = self.gains.tune[axis]
        if self.logger is not None:
            self.logger.write_autotune(
                self._now_ms, axis, tune_type, point.freq, point.gain, point.phase,
                tune.rate_ff, tune.rate_p, tune.rate_d, tune.angle_p, tune.max_accel,
            )
        self.do_post_test_gcs_announcements(point)

        if result.converged:
            backed_off = self.strategy.set_tuning_gains_with_backoff(self.gains, axis, tune_type)
            self.outcomes[(axis, tune_type)] = TuneOutcome.CONVERGED
            if backed_off is not None:
                self.status_sink(f"{axis.label} {tune_type.label} complete: {backed_off:.4f}")
            else:
                self.status_sink(f"{axis.label} {tune_type.label} complete")
            self._advance()
        else:
            self.next_test_freq = result.next_freq
            self._enter_level_recovery(self._now_ms)

    def _fail_tune_type(self, exc: TuneTestFailure) -> None:
        axis, tune_type = self.current
        if self._tune_snapshot is not None:
            self.gains.restore_tune(axis, self._tune_snapshot)
        self.outcomes[(axis, tune_type)] = TuneOutcome.FAILED
        self.status_sink(f"{axis.label} {tune_type.label} failed: {exc}")
        self._advance()

    def _begin_tune_type(self, now_ms: float, new_axis: bool) -> None:
        axis, _ = self.current
        if new_axis:
            self.engine.reset_maxgains_update_gain_variables(axis)
        self.engine.reset_update_gain_variables()
        self._tune_snapshot = self.gains.snapshot_tune(axis)
        self.next_test_freq = 0.0
        self.test = TestState.fresh()
        self._enter_level_recovery(now_ms)

    def _advance(self) -> None:
        axis, _ = self.current
        self.step += 1
        next_pair = self.current
        if next_pair is None or next_pair[0] != axis:
            self.gains.set_axis_tuned(axis, self.gains.tune[axis])
            self.report_final_gains(axis)
        if next_pair is None:
            self._finish()
        else:
            self._begin_tune_type(self._now_ms, new_axis=next_pair[0] != axis)

    def _finish(self) -> None:
        self.gains.load_tuned_gains()
        self.state = TuneState.DONE
        self.status_sink("Tuning complete")

    # ------------------------------------------------------------------
    # Operator status
    # ------------------------------------------------------------------

    def do_gcs_announcements(self, now_ms: float) -> None:
        """Periodic progress text while a test runs."""
        if self.state != TuneState.TESTING:
            return
        if now_ms - self._last_announce_ms < self.config.announce_interval_ms:
            return
        self._last_announce_ms = now_ms
        axis, tune_type = self.current
        elapsed = now_ms - self.test.start_ms
        freq = self.gen.frequency_at(max(elapsed - self.config.settle_time_ms, 0.0))
        self.status_sink(f"{axis.label} {tune_type.label} testing at {freq:.2f} Hz")

    def do_post_test_gcs_announcements(self, point: SweepInfo) -> None:
        axis, tune_type = self.current
        tune = self.gains.tune[axis]
        self.status_sink(
            f"{axis.label} {tune_type.label} freq={point.freq:.2f} gain={point.gain:.3f} "
            f"phase={point.phase:.1f} ff={tune.rate_ff:.4f} p={tune.rate_p:.4f} "
            f"d={tune.rate_d:.5f} angle_p={tune.angle_p:.2f}"
        )
        state = self.engine.state
        if tune_type == TuneType.ANGLE_P_UP and state.found_peak:
            self.status_sink(
                f"{axis.label} angle peak freq={state.freq_max:.2f} "
                f"gain={state.gain_max:.3f} phase={state.phase_max:.1f}"
            )

    def report_final_gains(self, axis: Axis) -> None:
        summary = self.strategy.tuned_summary(self.gains, axis)
        self.status_sink(
            f"{axis.label} tuned: FF {summary['rate_ff']:.4f} P {summary['rate_p']:.4f} "
            f"I {summary['rate_i']:.4f} D {summary['rate_d']:.5f} "
            f"Angle P {summary['angle_p']:.2f} Max Accel {np.rad2deg(summary['max_accel']):.0f} deg/s^2"
        )
