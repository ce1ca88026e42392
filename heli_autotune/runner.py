#!/usr/bin/env python3
"""
Command-line runner for the helicopter autotune digital twin.

Runs a complete autotune session against the simulated helicopter and
prints the tuned gains per axis.

Usage:
    python -m heli_autotune.runner --axes 3 --seq 3 --save-dir autotune_logs
    python -m heli_autotune.runner --config autotune_params.json
"""

import argparse
import json
import sys
from pathlib import Path

# Allow running as a script without installing the package
project_root = Path(__file__).resolve().parent.parent
if str(project_root) not in sys.path:
    sys.path.insert(0, str(project_root))

from heli_autotune.core.config import AutotuneConfig
from heli_autotune.core.simulation import SimulatedHelicopter
from heli_autotune.core.telemetry import AutotuneLogger, LoggerConfig
from heli_autotune.core.tuning import AutotuneSequencer, TuneState


def load_config_file(config_path: Path) -> dict:
    """Load autotune parameters from a flat JSON file."""
    if not config_path.exists():
        print(f"Configuration Error: Config file not found at {config_path}")
        sys.exit(1)
    try:
        with open(config_path, 'r') as f:
            params = json.load(f)
    except json.JSONDecodeError:
        print(f"Error: Failed to parse JSON config at {config_path}")
        sys.exit(1)
    return params.get('autotune', params)


def run_session(config: AutotuneConfig, heli: SimulatedHelicopter, logger=None, max_time_s: float = 1800.0):
    """
    Tick the sequencer against the twin until the session ends.

    Returns
    -------
    AutotuneSequencer
        The finished sequencer
    """
    seq = AutotuneSequencer(config, heli, logger=logger)
    seq.start(heli.time_ms)
    max_ticks = int(max_time_s * config.loop_rate_hz)
    for _ in range(max_ticks):
        if seq.finished:
            break
        command = seq.update(heli.time_ms, heli.sample())
        heli.step(command)
    else:
        seq.stop()
    return seq


def main():
    parser = argparse.ArgumentParser(
        description="Helicopter frequency-response autotune on a simulated airframe",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter
    )
    parser.add_argument("--config", type=Path, default=None,
                        help="JSON file with autotune parameters")
    parser.add_argument("--axes", type=int, default=None,
                        help="Axis bitmask (1 roll, 2 pitch, 4 yaw)")
    parser.add_argument("--seq", type=int, default=None,
                        help="Tune sequence bitmask (1 FF, 2 rate P/D, 4 angle P, 8 max gains)")
    parser.add_argument("--max-time", type=float, default=1800.0,
                        help="Simulated time limit in seconds")
    parser.add_argument("--seed", type=int, default=42,
                        help="Random seed for sensor noise")
    parser.add_argument("--save-dir", type=Path, default=None,
                        help="Save telemetry (JSON + CSV) to this directory")
    parser.add_argument("--quiet", action="store_true",
                        help="Suppress progress announcements")

    args = parser.parse_args()

    params = load_config_file(args.config) if args.config else {}
    if args.axes is not None:
        params['axis_bitmask'] = args.axes
    if args.seq is not None:
        params['seq_bitmask'] = args.seq
    if args.quiet:
        params['verbose'] = False

    config = AutotuneConfig.from_dict(params)

    print("=" * 60)
    print(f"Helicopter Autotune (axes={config.axis_bitmask}, seq={config.seq_bitmask})")
    print("=" * 60)

    logger = None
    if args.save_dir is not None:
        logger = AutotuneLogger(LoggerConfig(output_dir=args.save_dir, detail_decimation=4))

    heli = SimulatedHelicopter(loop_rate_hz=config.loop_rate_hz, seed=args.seed)
    try:
        seq = run_session(config, heli, logger=logger, max_time_s=args.max_time)
    except ValueError as e:
        print(f"Configuration Error: {e}")
        sys.exit(1)
    except KeyboardInterrupt:
        print("\nAutotune interrupted by user.")
        sys.exit(0)

    if seq.state == TuneState.DONE:
        seq.stop()

    print("\n" + "=" * 30)
    print(" AUTOTUNE SUMMARY")
    print("=" * 30)
    for (axis, tune_type), outcome in seq.outcomes.items():
        print(f"{axis.label:6s} {tune_type.label:15s} {outcome.name}")
    for axis in config.axes:
        summary = seq.strategy.tuned_summary(seq.gains, axis)
        print(f"{axis.label}: " + ", ".join(f"{k}={v:.4f}" for k, v in summary.items()))
    print(f"Simulated time:     {heli.time_ms / 1000.0:.1f} s")
    print("=" * 30 + "\n")

    if logger is not None:
        logger.save()


if __name__ == "__main__":
    main()
